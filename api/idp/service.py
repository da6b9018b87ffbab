"""
Service layer for OAuth2/IDP functionality: the authorization server protocol engine.

Holds no state between requests; everything lives in the injected client registry, token
store and user directory, so any number of stateless instances can serve the flow.
"""

import time
from datetime import timezone
from typing import Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from loguru import logger

from api.constants import (
    AUTH_CODE_EXPIRY_SECONDS,
    SUPPORTED_CODE_CHALLENGE_METHODS,
    SUPPORTED_GRANT_TYPES,
)
from api.idp.errors import (
    AuthenticationFailed,
    InvalidClient,
    InvalidGrant,
    InvalidRedirectURI,
    InvalidRequest,
    InvalidScope,
    UnauthorizedClient,
    UnsupportedGrantType,
    UnsupportedResponseType,
)
from api.idp.federation import IdentityProvider
from api.idp.registry import ClientRegistry
from api.idp.response import (
    ClientRegistrationResponse,
    IntrospectionResponse,
    TokenResponse,
)
from api.idp.schemas import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    OAuthClient,
    TokenKind,
    TokenRequest,
    filter_scopes,
    format_scope,
    parse_scope,
    validate_redirect_uris,
)
from api.idp.state import StateCodec
from api.idp.tokens import TokenStore
from api.user.directory import UserDirectory

DEFAULT_CLIENT_NAME = "Dynamic Client"


def append_query_params(url: str, params: dict) -> str:
    """
    Add params to a URL, keeping its existing query string (and replacing same-named keys).
    """
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthorizationServer:
    def __init__(
        self,
        clients: ClientRegistry,
        tokens: TokenStore,
        users: UserDirectory,
        identity_provider: IdentityProvider,
        state_codec: StateCodec,
        allowed_scopes: Iterable[str],
        code_ttl: int = AUTH_CODE_EXPIRY_SECONDS,
    ):
        self.clients = clients
        self.tokens = tokens
        self.users = users
        self.identity_provider = identity_provider
        self.state_codec = state_codec
        self.allowed_scopes = list(allowed_scopes)
        self.code_ttl = code_ttl

    async def authorize(self, request: AuthorizationRequest) -> str:
        """
        Validate an authorization request and return the identity provider URL to redirect to.
        Every failure is terminal: nothing here ever redirects to an unvalidated URI.
        """
        if not request.client_id or not request.redirect_uri:
            raise InvalidRequest("client_id and redirect_uri are required")

        client = await self.clients.get(request.client_id)
        if not client:
            raise InvalidClient("Unknown client_id", status_code=400)
        if not client.is_valid_redirect_uri(request.redirect_uri):
            raise InvalidRedirectURI("Redirect URI not registered for this application")
        if request.response_type != "code":
            raise UnsupportedResponseType("Only 'code' response type is supported")

        scopes = parse_scope(request.scope)
        if not scopes:
            raise InvalidRequest("scope is required")
        invalid = [s for s in scopes if s not in (client.allowed_scopes or [])]
        if invalid:
            raise InvalidScope(f"Invalid scopes: {', '.join(invalid)}")

        # PKCE, optional on top of the client secret.
        code_challenge_method = request.code_challenge_method
        if request.code_challenge:
            code_challenge_method = code_challenge_method or "plain"
            if code_challenge_method not in SUPPORTED_CODE_CHALLENGE_METHODS:
                raise InvalidRequest("Invalid code_challenge_method")
        elif code_challenge_method:
            raise InvalidRequest("code_challenge_method given without code_challenge")

        normalized = request.model_copy(
            update={
                "scope": format_scope(scopes),
                "state": request.state or "",
                "code_challenge_method": code_challenge_method,
            }
        )
        blob = await self.state_codec.encode(normalized)
        logger.info(f"Authorization request accepted for client_id={client.client_id}")
        return self.identity_provider.build_authorization_url(blob)

    async def handle_callback(
        self,
        provider_code: Optional[str],
        state: Optional[str],
        provider_error: Optional[str] = None,
    ) -> str:
        """
        Complete the provider round-trip and return the client redirect URL carrying the code.
        """
        request = await self.state_codec.decode(state)
        if provider_error:
            logger.warning(f"Identity provider returned error={provider_error}")
            raise AuthenticationFailed("Sign-in was cancelled or denied")
        if not provider_code:
            raise InvalidRequest("Missing code")

        client = await self.clients.get(request.client_id)
        if not client or not client.is_valid_redirect_uri(request.redirect_uri):
            raise InvalidRedirectURI("Redirect URI not registered for this application")

        profile = await self.identity_provider.exchange_code(provider_code)
        user = await self.users.find_or_create(profile)

        code = await self.tokens.issue(
            user_id=user.user_id,
            client_id=client.client_id,
            scopes=parse_scope(request.scope),
            ttl=self.code_ttl,
            kind=TokenKind.CODE,
            redirect_uri=request.redirect_uri,
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
        )
        params = {"code": code}
        if request.state:
            params["state"] = request.state
        logger.success(f"OAuth authorized user {user.user_id} -> {client.client_id}")
        return append_query_params(request.redirect_uri, params)

    async def _authenticate_client(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> OAuthClient:
        if not client_id or not client_secret:
            raise InvalidRequest("client_id and client_secret are required")
        client = await self.clients.authenticate(client_id, client_secret)
        if not client:
            logger.warning(f"Client authentication failed for {client_id=}")
            raise InvalidClient()
        return client

    async def token(self, request: TokenRequest) -> TokenResponse:
        """
        Token endpoint: authorization_code and refresh_token grants.
        """
        if not request.grant_type:
            raise InvalidRequest("grant_type is required")
        if request.grant_type not in SUPPORTED_GRANT_TYPES:
            raise UnsupportedGrantType(f"Unsupported grant_type: {request.grant_type}")
        client = await self._authenticate_client(request.client_id, request.client_secret)
        if not client.supports_grant_type(request.grant_type):
            raise UnauthorizedClient(f"Client is not allowed to use {request.grant_type}")

        if request.grant_type == "authorization_code":
            if not request.code:
                raise InvalidRequest("code is required")
            pair = await self.tokens.exchange_code(
                request.code,
                client.client_id,
                redirect_uri=request.redirect_uri,
                code_verifier=request.code_verifier,
            )
            if not pair:
                raise InvalidGrant("Invalid authorization code")
            logger.success(f"Access token issued for client_id={client.client_id}")
        else:
            if not request.refresh_token:
                raise InvalidRequest("refresh_token is required")
            pair = await self.tokens.rotate_refresh(request.refresh_token, client.client_id)
            if not pair:
                raise InvalidGrant("Invalid refresh token")
            logger.success(f"Access token refreshed for client_id={client.client_id}")

        return TokenResponse(
            access_token=pair.access_token,
            token_type="Bearer",
            expires_in=pair.expires_in,
            refresh_token=pair.refresh_token,
            scope=format_scope(pair.scopes),
        )

    async def revoke(
        self, token: Optional[str], client_id: Optional[str], client_secret: Optional[str]
    ) -> None:
        """
        Token revocation (RFC 7009); succeeds whether or not the token existed.
        """
        if not token:
            raise InvalidRequest("token is required")
        client = await self._authenticate_client(client_id, client_secret)
        if await self.tokens.revoke(token, client_id=client.client_id):
            logger.info(f"Token revoked for client_id={client.client_id}")

    async def introspect(self, token: Optional[str]) -> IntrospectionResponse:
        """
        Token introspection for the resource API; only live access tokens are active.
        """
        if not token:
            raise InvalidRequest("token is required")
        info = await self.tokens.lookup(token, TokenKind.ACCESS)
        if not info:
            return IntrospectionResponse(active=False)
        user = await self.users.get(info.user_id)
        if not user:
            return IntrospectionResponse(active=False)
        return IntrospectionResponse(
            active=True,
            token_type="access_token",
            sub=user.user_id,
            user_id=user.user_id,
            email=user.email,
            client_id=info.client_id,
            scope=format_scope(info.scopes),
            scopes=info.scopes,
            exp=int(info.expires_at.replace(tzinfo=timezone.utc).timestamp()),
            iat=int(info.created_at.replace(tzinfo=timezone.utc).timestamp()),
        )

    async def register(self, request: ClientRegistrationRequest) -> ClientRegistrationResponse:
        """
        Dynamic client registration (RFC 7591). Unknown scopes are silently dropped so generic
        registration clients keep working; the secret is returned here and never again.
        """
        redirect_uris = validate_redirect_uris(request.redirect_uris)
        requested = parse_scope(request.scope) or self.allowed_scopes
        scopes = filter_scopes(requested, self.allowed_scopes)
        grant_types = filter_scopes(
            request.grant_types or SUPPORTED_GRANT_TYPES, SUPPORTED_GRANT_TYPES
        ) or list(SUPPORTED_GRANT_TYPES)
        name = request.client_name or DEFAULT_CLIENT_NAME

        client, client_secret = await self.clients.create(
            name=name,
            redirect_uris=redirect_uris,
            scopes=scopes,
            grant_types=grant_types,
        )
        logger.success(f"Dynamic client registered: {client.client_id} ({name})")
        return ClientRegistrationResponse(
            client_id=client.client_id,
            client_secret=client_secret,
            client_id_issued_at=int(time.time()),
            client_name=name,
            redirect_uris=redirect_uris,
            grant_types=grant_types,
            scope=format_scope(scopes),
        )
