"""
OAuth2/IDP Router for authentication and authorization endpoints.
"""

import base64
from typing import Optional, Tuple
from urllib.parse import unquote

from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse
from loguru import logger
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from api.constants import SUPPORTED_CODE_CHALLENGE_METHODS, SUPPORTED_GRANT_TYPES
from api.idp.errors import InvalidRequest, OAuthError, ServerError
from api.idp.response import (
    ClientRegistrationResponse,
    IntrospectionResponse,
    RevocationResponse,
    TokenResponse,
)
from api.idp.schemas import (
    AuthorizationRequest,
    ClientRegistrationRequest,
    TokenRequest,
    get_available_scopes,
)
from api.idp.service import AuthorizationServer
from api.idp.templater import error_page

router = APIRouter()
well_known_router = APIRouter()


def get_authorization_server(request: Request) -> AuthorizationServer:
    return request.app.state.authorization_server


def _error_html(request: Request, exc: OAuthError) -> HTMLResponse:
    settings = getattr(request.app.state, "settings", None)
    return HTMLResponse(
        content=error_page(
            exc.error,
            exc.description or "",
            service_name=settings.service_name if settings else "",
        ),
        status_code=exc.status_code,
    )


def _basic_credentials(request: Request) -> Tuple[Optional[str], Optional[str]]:
    """
    Client credentials from an HTTP Basic header (RFC 6749 section 2.3.1), if present.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Basic "):
        return None, None
    try:
        decoded = base64.b64decode(auth_header[6:], validate=True).decode()
        client_id, client_secret = decoded.split(":", 1)
    except ValueError:
        raise InvalidRequest("Malformed Basic authorization header")
    return unquote(client_id), unquote(client_secret)


async def _read_params(request: Request) -> dict:
    """
    Request parameters from either a JSON or a form-encoded body.
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise InvalidRequest("Malformed JSON body")
        if not isinstance(body, dict):
            raise InvalidRequest("Request body must be a JSON object")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _optional_str(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


@router.get("/scopes")
async def list_scopes(server: AuthorizationServer = Depends(get_authorization_server)):
    """
    List all available OAuth2 scopes with descriptions.
    This endpoint is public and can be used for documentation or scope selection UIs.
    """
    return {"scopes": get_available_scopes(server.allowed_scopes)}


@router.get("/authorize", response_class=HTMLResponse)
async def authorize(
    request: Request,
    response_type: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth2 Authorization Endpoint.
    Validates the request, then sends the browser to the identity provider.
    Errors are rendered as a page, never redirected, since the redirect URI may be hostile.
    """
    try:
        if not response_type:
            raise InvalidRequest("response_type is required")
        url = await server.authorize(
            AuthorizationRequest(
                client_id=client_id or "",
                redirect_uri=redirect_uri or "",
                scope=scope or "",
                state=state or "",
                response_type=response_type,
                code_challenge=code_challenge or None,
                code_challenge_method=code_challenge_method or None,
            )
        )
    except OAuthError as exc:
        logger.warning(f"Rejected authorization request for {client_id=}: {exc.error}")
        return _error_html(request, exc)
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.get("/google-callback", response_class=HTMLResponse)
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    Identity provider redirect target; issues our authorization code to the client.
    """
    try:
        url = await server.handle_callback(code, state, error)
    except OAuthError as exc:
        logger.warning(f"OAuth callback failed: {exc.error}")
        return _error_html(request, exc)
    except (SQLAlchemyError, RuntimeError) as exc:
        logger.exception(f"Unexpected error completing OAuth callback: {exc}")
        return _error_html(request, ServerError())
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


@router.post("/token", response_model=TokenResponse)
async def token_endpoint(
    request: Request,
    response: Response,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth2 Token Endpoint; accepts form-encoded or JSON bodies.
    """
    params = await _read_params(request)
    header_client_id, header_client_secret = _basic_credentials(request)
    token = await server.token(
        TokenRequest(
            grant_type=_optional_str(params.get("grant_type")) or "",
            client_id=_optional_str(params.get("client_id")) or header_client_id,
            client_secret=_optional_str(params.get("client_secret")) or header_client_secret,
            code=_optional_str(params.get("code")),
            redirect_uri=_optional_str(params.get("redirect_uri")),
            refresh_token=_optional_str(params.get("refresh_token")),
            code_verifier=_optional_str(params.get("code_verifier")),
        )
    )
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return token


@router.post("/revoke", response_model=RevocationResponse)
async def revoke_token_endpoint(
    request: Request,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """OAuth2 Token Revocation Endpoint (RFC 7009)."""
    params = await _read_params(request)
    header_client_id, header_client_secret = _basic_credentials(request)
    await server.revoke(
        _optional_str(params.get("token")),
        _optional_str(params.get("client_id")) or header_client_id,
        _optional_str(params.get("client_secret")) or header_client_secret,
    )
    # Always succeed per RFC 7009, even if the token was not found.
    return RevocationResponse()


@router.post("/introspect", response_model=IntrospectionResponse, response_model_exclude_none=True)
async def introspect_token(
    request: Request,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    OAuth2 Token Introspection Endpoint (RFC 7662).

    Used by the resource API to validate bearer tokens. Returns:
        - active: Whether the token is a live access token
        - sub / user_id / email: The user the token acts for
        - client_id: The client that the token was issued to
        - scope / scopes: Granted scopes (space separated, and as a list)
        - exp / iat: Expiration and issue timestamps (Unix epoch)
    """
    params = await _read_params(request)
    return await server.introspect(_optional_str(params.get("token")))


@router.post(
    "/register",
    response_model=ClientRegistrationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_client(
    request: Request,
    response: Response,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """
    Dynamic Client Registration (RFC 7591), used by MCP clients to onboard themselves.
    """
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Malformed JSON body")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    try:
        args = ClientRegistrationRequest.model_validate(body)
    except ValidationError as exc:
        raise InvalidRequest(f"Invalid client metadata: {exc.errors()[0]['msg']}")
    registration = await server.register(args)
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"
    return registration


@well_known_router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata(
    request: Request,
    response: Response,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """Authorization server metadata (RFC 8414)."""
    issuer = request.app.state.settings.issuer
    response.headers["Cache-Control"] = "public, max-age=3600"
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "revocation_endpoint": f"{issuer}/oauth/revoke",
        "introspection_endpoint": f"{issuer}/oauth/introspect",
        "registration_endpoint": f"{issuer}/oauth/register",
        "scopes_supported": server.allowed_scopes,
        "response_types_supported": ["code"],
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "token_endpoint_auth_methods_supported": ["client_secret_post", "client_secret_basic"],
        "code_challenge_methods_supported": list(SUPPORTED_CODE_CHALLENGE_METHODS),
    }
