"""
Response models for OAuth2/IDP functionality.
"""

from typing import List, Optional

from pydantic import BaseModel


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None


class RevocationResponse(BaseModel):
    success: bool = True


class IntrospectionResponse(BaseModel):
    """
    Token introspection (RFC 7662); only "active" is present for inactive tokens.
    """

    active: bool
    token_type: Optional[str] = None
    sub: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    client_id: Optional[str] = None
    scope: Optional[str] = None
    scopes: Optional[List[str]] = None
    exp: Optional[int] = None
    iat: Optional[int] = None


class ClientRegistrationResponse(BaseModel):
    """Dynamic client registration response (RFC 7591); the only time the secret is shown."""

    client_id: str
    client_secret: str
    client_id_issued_at: int
    client_secret_expires_at: int = 0
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str] = ["code"]
    token_endpoint_auth_method: str = "client_secret_post"
    scope: str
