"""
Unit test conftest: a throwaway sqlite database, the services built on it, and an app client.
"""

from datetime import timedelta
from typing import Optional
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import update
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from api.config import Settings
from api.database import create_sessionmaker, init_db
from api.idp.errors import AuthenticationFailed
from api.idp.federation import IdentityProvider
from api.idp.schemas import OAuthToken
from api.idp.tokens import utcnow
from api.main import configure_services, create_app
from api.user.schemas import FederatedProfile

FAKE_IDP_AUTHORIZE_URL = "https://idp.test/authorize"
CLIENT_REDIRECT_URI = "https://client.example/callback"


class FakeIdentityProvider(IdentityProvider):
    """
    Stands in for Google: provider codes and ID tokens map to canned profiles.
    """

    def __init__(self):
        self.profiles = {}
        self.id_tokens = {}
        self.exchanged = []

    def build_authorization_url(self, state: str) -> str:
        return f"{FAKE_IDP_AUTHORIZE_URL}?{urlencode({'state': state})}"

    async def exchange_code(self, provider_code: str) -> FederatedProfile:
        self.exchanged.append(provider_code)
        profile = self.profiles.get(provider_code)
        if not profile:
            raise AuthenticationFailed()
        return profile

    async def verify_id_token(self, id_token, audiences=None) -> FederatedProfile:
        profile = self.id_tokens.get(id_token)
        if not profile:
            raise AuthenticationFailed()
        return profile


@pytest.fixture
def alice():
    return FederatedProfile(
        subject_id="google-sub-alice",
        email="alice@example.com",
        name="Alice",
        picture="https://example.com/alice.png",
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        base_url="http://test",
        google_client_id="google-web-client",
        google_client_secret="google-web-secret",
        state_secret="unit-test-state-secret-with-enough-entropy",
        allowed_scopes=["read:food", "write:food", "profile"],
    )


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_async_engine(settings.db_url, poolclass=NullPool)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return create_sessionmaker(engine)


@pytest.fixture
def expire_token(session_maker):
    """
    Move a stored token's expiry into the past, leaving its row in place.
    """

    async def _expire(token: str):
        async with session_maker() as session:
            await session.execute(
                update(OAuthToken)
                .where(OAuthToken.token_hash == OAuthToken.hash_token(token))
                .values(expires_at=utcnow() - timedelta(seconds=5))
            )
            await session.commit()

    return _expire


@pytest.fixture
def identity_provider():
    return FakeIdentityProvider()


@pytest.fixture
def app(settings, session_maker, identity_provider):
    app = create_app(settings)
    configure_services(app, settings, session_maker, identity_provider)
    return app


@pytest.fixture
def server(app):
    return app.state.authorization_server


@pytest.fixture
def client_registry(app):
    return app.state.client_registry


@pytest.fixture
def token_store(app):
    return app.state.token_store


@pytest.fixture
def user_directory(app):
    return app.state.user_directory


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def oauth_client(client_registry):
    """A registered client: (OAuthClient, plaintext secret)."""
    return await client_registry.create(
        name="Food Tracker",
        redirect_uris=[CLIENT_REDIRECT_URI],
        scopes=["read:food", "write:food", "profile"],
    )


@pytest.fixture
def run_authorization(client, identity_provider, alice):
    """
    Drive authorize -> identity provider -> callback through HTTP and return the client
    redirect URL that carries our authorization code.
    """

    async def _run(
        client_id: str,
        redirect_uri: str = CLIENT_REDIRECT_URI,
        scope: str = "read:food write:food",
        state: str = "xyz",
        profile: Optional[FederatedProfile] = None,
        provider_code: str = "google-code",
        **extra,
    ) -> str:
        params = {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scope,
            "state": state,
            **extra,
        }
        resp = await client.get("/oauth/authorize", params=params)
        assert resp.status_code == 302, resp.text
        provider_url = resp.headers["location"]
        assert provider_url.startswith(FAKE_IDP_AUTHORIZE_URL)
        blob = parse_qs(urlsplit(provider_url).query)["state"][0]

        identity_provider.profiles[provider_code] = profile or alice
        resp = await client.get(
            "/oauth/google-callback", params={"code": provider_code, "state": blob}
        )
        assert resp.status_code == 302, resp.text
        return resp.headers["location"]

    return _run
