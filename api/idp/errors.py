"""
OAuth2 protocol errors (RFC 6749 section 5.2, RFC 7591 section 3.2.2).

Raised by the service layer and rendered by the router, either as a JSON error body
or as the HTML error page for browser-facing endpoints.
"""

from typing import Optional


class OAuthError(Exception):
    error = "server_error"
    status_code = 400

    def __init__(self, description: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(description or self.error)
        self.description = description
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(OAuthError):
    error = "invalid_request"


class InvalidClient(OAuthError):
    # Deliberately the same message for unknown client and wrong secret.
    error = "invalid_client"
    status_code = 401

    def __init__(self, description: Optional[str] = "Invalid client credentials", **kwargs):
        super().__init__(description, **kwargs)


class InvalidGrant(OAuthError):
    error = "invalid_grant"
    status_code = 401


class UnauthorizedClient(OAuthError):
    error = "unauthorized_client"


class UnsupportedGrantType(OAuthError):
    error = "unsupported_grant_type"


class UnsupportedResponseType(OAuthError):
    error = "unsupported_response_type"


class InvalidScope(OAuthError):
    error = "invalid_scope"


class InvalidRedirectURI(OAuthError):
    error = "invalid_redirect_uri"


class InvalidState(OAuthError):
    error = "invalid_state"


class AuthenticationFailed(OAuthError):
    """
    Upstream identity provider failure; always fails closed with a generic message.
    """

    error = "authentication_failed"
    status_code = 401

    def __init__(self, description: Optional[str] = "Authentication failed", **kwargs):
        super().__init__(description, **kwargs)


class ServerError(OAuthError):
    error = "server_error"
    status_code = 500

    def __init__(
        self, description: Optional[str] = "Something went wrong, please try again", **kwargs
    ):
        super().__init__(description, **kwargs)
