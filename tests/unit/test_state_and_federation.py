"""Unit tests for the round-trip state codec and the Google identity adapter."""

import json
import time
from urllib.parse import parse_qs, urlsplit

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

from api.constants import JWKS_REFRESH_INTERVAL_SECONDS
from api.idp import federation
from api.idp.errors import AuthenticationFailed, InvalidState
from api.idp.federation import GoogleIdentityProvider
from api.idp.schemas import AuthorizationRequest
from api.idp.state import STATE_AUDIENCE, StateCodec

GOOGLE_CLIENT_ID = "google-web-client"
IOS_CLIENT_ID = "google-ios-client"


@pytest.fixture
def auth_request(oauth_client):
    client, _ = oauth_client
    return AuthorizationRequest(
        client_id=client.client_id,
        redirect_uri="https://client.example/callback",
        scope="read:food write:food",
        state="opaque-client-state",
        code_challenge="challenge",
        code_challenge_method="plain",
    )


@pytest.fixture
def codec(token_store):
    return StateCodec("unit-test-state-secret-with-enough-entropy", token_store)


class TestStateCodec:
    @pytest.mark.asyncio
    async def test_round_trip(self, codec, auth_request):
        blob = await codec.encode(auth_request)
        assert await codec.decode(blob) == auth_request

    @pytest.mark.asyncio
    async def test_replay_rejected(self, codec, auth_request):
        blob = await codec.encode(auth_request)
        await codec.decode(blob)
        with pytest.raises(InvalidState):
            await codec.decode(blob)

    @pytest.mark.asyncio
    async def test_tampered_state_rejected(self, codec, auth_request):
        blob = await codec.encode(auth_request)
        claims = jwt.decode(blob, options={"verify_signature": False})
        claims["req"]["redirect_uri"] = "https://evil.example/steal"
        forged = jwt.encode(claims, "not-the-state-secret-but-just-as-long", algorithm="HS256")
        with pytest.raises(InvalidState):
            await codec.decode(forged)

        header, payload, signature = blob.split(".")
        with pytest.raises(InvalidState):
            await codec.decode(f"{header}.{payload}.{signature[::-1]}")

    @pytest.mark.asyncio
    async def test_expired_state_rejected(self, token_store, auth_request):
        codec = StateCodec("unit-test-state-secret-with-enough-entropy", token_store, ttl=-60)
        blob = await codec.encode(auth_request)
        with pytest.raises(InvalidState):
            await codec.decode(blob)

    @pytest.mark.asyncio
    async def test_state_without_live_nonce_rejected(self, codec, auth_request):
        now = int(time.time())
        blob = jwt.encode(
            {
                "jti": "hsn_neverissued",
                "aud": STATE_AUDIENCE,
                "iat": now,
                "exp": now + 600,
                "req": auth_request.model_dump(),
            },
            "unit-test-state-secret-with-enough-entropy",
            algorithm="HS256",
        )
        with pytest.raises(InvalidState):
            await codec.decode(blob)

    @pytest.mark.parametrize("blob", [None, "", "garbage", "a.b.c"])
    @pytest.mark.asyncio
    async def test_malformed_state_rejected(self, codec, blob):
        with pytest.raises(InvalidState):
            await codec.decode(blob)

    def test_secret_required(self, token_store):
        with pytest.raises(ValueError):
            StateCodec("", token_store)


class StaticJWKS:
    """Replaces the cached JWKS loader."""

    def __init__(self, jwks):
        self.jwks = jwks
        self.calls = 0
        self.cleared = 0

    async def __call__(self, url):
        self.calls += 1
        return self.jwks

    def cache_clear(self):
        self.cleared += 1


@pytest.fixture
def signing_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def jwks(monkeypatch, signing_key):
    jwk = json.loads(RSAAlgorithm.to_jwk(signing_key.public_key()))
    jwk.update({"kid": "test-key", "alg": "RS256", "use": "sig"})
    loader = StaticJWKS({"keys": [jwk]})
    monkeypatch.setattr(federation, "_load_jwks", loader)
    monkeypatch.setattr(federation, "_jwks_refreshed_at", None)
    return loader


@pytest.fixture
def provider():
    return GoogleIdentityProvider(
        client_id=GOOGLE_CLIENT_ID,
        client_secret="google-web-secret",
        redirect_uri="http://test/oauth/google-callback",
        additional_audiences=[IOS_CLIENT_ID],
    )


@pytest.fixture
def make_id_token(signing_key):
    def _make(kid="test-key", key=None, **overrides):
        now = int(time.time())
        claims = {
            "iss": "https://accounts.google.com",
            "aud": GOOGLE_CLIENT_ID,
            "sub": "google-sub-alice",
            "email": "alice@example.com",
            "email_verified": True,
            "name": "Alice",
            "picture": "https://example.com/alice.png",
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        return jwt.encode(claims, key or signing_key, algorithm="RS256", headers={"kid": kid})

    return _make


class TestGoogleIdentityProvider:
    def test_build_authorization_url(self, provider):
        url = provider.build_authorization_url("state-blob")
        parts = urlsplit(url)
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == (
            "https://accounts.google.com/o/oauth2/v2/auth"
        )
        assert params["client_id"] == GOOGLE_CLIENT_ID
        assert params["redirect_uri"] == "http://test/oauth/google-callback"
        assert params["response_type"] == "code"
        assert params["scope"] == "openid email profile"
        assert params["prompt"] == "select_account"
        assert params["state"] == "state-blob"

    def test_audiences(self, provider):
        assert provider.audiences == [GOOGLE_CLIENT_ID, IOS_CLIENT_ID]

    @pytest.mark.asyncio
    async def test_verify_valid_token(self, provider, jwks, make_id_token):
        profile = await provider.verify_id_token(make_id_token())
        assert profile.subject_id == "google-sub-alice"
        assert profile.email == "alice@example.com"
        assert profile.name == "Alice"
        assert profile.picture == "https://example.com/alice.png"

    @pytest.mark.asyncio
    async def test_additional_audience_accepted(self, provider, jwks, make_id_token):
        profile = await provider.verify_id_token(make_id_token(aud=IOS_CLIENT_ID))
        assert profile.subject_id == "google-sub-alice"

    @pytest.mark.asyncio
    async def test_name_falls_back_to_email(self, provider, jwks, make_id_token):
        profile = await provider.verify_id_token(make_id_token(name=None))
        assert profile.name == "alice@example.com"

    @pytest.mark.parametrize(
        "overrides",
        [
            {"aud": "someone-elses-client"},
            {"iss": "https://evil.example"},
            {"exp": int(time.time()) - 3600, "iat": int(time.time()) - 7200},
            {"email": None},
            {"email_verified": False},
            {"sub": None},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_claims_rejected(self, provider, jwks, make_id_token, overrides):
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token(make_id_token(**overrides))

    @pytest.mark.asyncio
    async def test_wrong_signing_key_rejected(self, provider, jwks, make_id_token):
        other_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token(make_id_token(key=other_key))

    @pytest.mark.asyncio
    async def test_unknown_kid_refreshes_keys_once(self, provider, jwks, make_id_token):
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token(make_id_token(kid="rotated-away"))
        assert jwks.cleared == 1
        assert jwks.calls == 2

    @pytest.mark.asyncio
    async def test_unknown_kid_refresh_is_rate_limited(self, provider, jwks, make_id_token):
        for _ in range(3):
            with pytest.raises(AuthenticationFailed):
                await provider.verify_id_token(make_id_token(kid="rotated-away"))
        assert jwks.cleared == 1
        assert jwks.calls == 4

        federation._jwks_refreshed_at -= JWKS_REFRESH_INTERVAL_SECONDS + 1
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token(make_id_token(kid="rotated-away"))
        assert jwks.cleared == 2

        assert (await provider.verify_id_token(make_id_token())).email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_non_rs256_rejected(self, provider, jwks):
        token = jwt.encode({"sub": "x"}, "shared-secret-long-enough-for-hs256", algorithm="HS256")
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token(token)

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, provider, jwks):
        with pytest.raises(AuthenticationFailed):
            await provider.verify_id_token("not-a-jwt")

    @pytest.mark.asyncio
    async def test_exchange_code(self, monkeypatch, provider, jwks, make_id_token):
        async def fake_request_tokens(code):
            assert code == "google-code"
            return {"access_token": "ya29.x", "id_token": make_id_token()}

        monkeypatch.setattr(provider, "_request_tokens", fake_request_tokens)
        profile = await provider.exchange_code("google-code")
        assert profile.email == "alice@example.com"

    @pytest.mark.asyncio
    async def test_exchange_code_requires_web_client_audience(
        self, monkeypatch, provider, jwks, make_id_token
    ):
        async def fake_request_tokens(code):
            return {"id_token": make_id_token(aud=IOS_CLIENT_ID)}

        monkeypatch.setattr(provider, "_request_tokens", fake_request_tokens)
        with pytest.raises(AuthenticationFailed):
            await provider.exchange_code("google-code")

    @pytest.mark.asyncio
    async def test_exchange_code_without_id_token(self, monkeypatch, provider, jwks):
        async def fake_request_tokens(code):
            return {"access_token": "ya29.x"}

        monkeypatch.setattr(provider, "_request_tokens", fake_request_tokens)
        with pytest.raises(AuthenticationFailed):
            await provider.exchange_code("google-code")

    @pytest.mark.asyncio
    async def test_exchange_code_provider_error(self, monkeypatch, provider):
        async def fake_request_tokens(code):
            raise AuthenticationFailed()

        monkeypatch.setattr(provider, "_request_tokens", fake_request_tokens)
        with pytest.raises(AuthenticationFailed):
            await provider.exchange_code("google-code")
        with pytest.raises(AuthenticationFailed):
            await provider.exchange_code("")
