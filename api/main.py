"""
Health data API: OAuth2 authorization server and first-party auth routes.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.config import Settings, get_settings
from api.database import create_engine, create_sessionmaker, init_db
from api.idp.errors import OAuthError
from api.idp.federation import GoogleIdentityProvider, IdentityProvider
from api.idp.registry import ClientRegistry
from api.idp.router import router as idp_router
from api.idp.router import well_known_router
from api.idp.service import AuthorizationServer
from api.idp.state import StateCodec
from api.idp.tokens import TokenStore
from api.user.directory import UserDirectory
from api.user.router import router as user_router


def configure_services(
    app: FastAPI,
    settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    identity_provider: Optional[IdentityProvider] = None,
) -> AuthorizationServer:
    """
    Build the stores and the protocol engine and attach them to app.state.
    """
    clients = ClientRegistry(session_maker)
    tokens = TokenStore(session_maker)
    users = UserDirectory(session_maker)
    if identity_provider is None:
        identity_provider = GoogleIdentityProvider(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            additional_audiences=settings.google_additional_audiences,
        )
    server = AuthorizationServer(
        clients=clients,
        tokens=tokens,
        users=users,
        identity_provider=identity_provider,
        state_codec=StateCodec(settings.state_secret, tokens),
        allowed_scopes=settings.allowed_scopes,
    )
    app.state.client_registry = clients
    app.state.token_store = tokens
    app.state.user_directory = users
    app.state.identity_provider = identity_provider
    app.state.authorization_server = server
    return server


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        engine = None
        if getattr(app.state, "authorization_server", None) is None:
            engine = create_engine(settings)
            await init_db(engine)
            configure_services(app, settings, create_sessionmaker(engine))
            logger.info(f"{settings.service_name} started, issuer={settings.issuer}")
        yield
        if engine is not None:
            await engine.dispose()

    app = FastAPI(title=settings.service_name, lifespan=lifespan)
    app.state.settings = settings

    app.include_router(idp_router, prefix="/oauth", tags=["OAuth2"])
    app.include_router(well_known_router, tags=["OAuth2"])
    app.include_router(user_router, prefix="/auth", tags=["Users"])

    @app.exception_handler(OAuthError)
    async def oauth_error_handler(request: Request, exc: OAuthError):
        return JSONResponse(content=exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(SQLAlchemyError)
    async def database_error_handler(request: Request, exc: SQLAlchemyError):
        logger.exception(f"Database error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            content={"error": "server_error", "error_description": "Internal server error"},
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
