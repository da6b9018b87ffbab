"""Unit tests for the protocol engine, called directly rather than over HTTP."""

import pytest

from api.idp.errors import (
    InvalidClient,
    InvalidGrant,
    InvalidRedirectURI,
    InvalidRequest,
    InvalidState,
    UnauthorizedClient,
)
from api.idp.schemas import AuthorizationRequest, ClientRegistrationRequest, TokenRequest
from api.idp.service import append_query_params


@pytest.mark.parametrize(
    "url,params,expected",
    [
        ("https://a.example/cb", {"code": "c1"}, "https://a.example/cb?code=c1"),
        ("https://a.example/cb?x=1", {"code": "c1"}, "https://a.example/cb?x=1&code=c1"),
        (
            "https://a.example/cb?code=old&x=1",
            {"code": "c1", "state": "s p"},
            "https://a.example/cb?x=1&code=c1&state=s+p",
        ),
    ],
)
def test_append_query_params(url, params, expected):
    assert append_query_params(url, params) == expected


class TestAuthorizationServer:
    @pytest.mark.asyncio
    async def test_state_carries_normalized_request(self, server, oauth_client):
        app_client, _ = oauth_client
        url = await server.authorize(
            AuthorizationRequest(
                client_id=app_client.client_id,
                redirect_uri="https://client.example/callback",
                scope="read:food  read:food write:food",
                code_challenge="verifier",
            )
        )
        state = url.split("state=", 1)[1]
        request = await server.state_codec.decode(state)
        assert request.scope == "read:food write:food"
        assert request.code_challenge_method == "plain"

    @pytest.mark.asyncio
    async def test_callback_rejects_client_that_dropped_redirect_uri(
        self, server, oauth_client, identity_provider, alice, session_maker
    ):
        app_client, _ = oauth_client
        url = await server.authorize(
            AuthorizationRequest(
                client_id=app_client.client_id,
                redirect_uri="https://client.example/callback",
                scope="read:food",
            )
        )
        state = url.split("state=", 1)[1]

        from sqlalchemy import update

        from api.idp.schemas import OAuthClient

        async with session_maker() as session:
            await session.execute(
                update(OAuthClient)
                .where(OAuthClient.client_id == app_client.client_id)
                .values(redirect_uris=["https://client.example/new"])
            )
            await session.commit()

        identity_provider.profiles["google-code"] = alice
        with pytest.raises(InvalidRedirectURI):
            await server.handle_callback("google-code", state)
        assert identity_provider.exchanged == []

    @pytest.mark.asyncio
    async def test_callback_requires_state(self, server):
        with pytest.raises(InvalidState):
            await server.handle_callback("google-code", None)

    @pytest.mark.asyncio
    async def test_token_checks_credentials_before_grant(self, server, oauth_client):
        app_client, _ = oauth_client
        with pytest.raises(InvalidClient):
            await server.token(
                TokenRequest(
                    grant_type="authorization_code",
                    client_id=app_client.client_id,
                    client_secret="csc_wrong",
                    code="hac_whatever",
                )
            )

    @pytest.mark.asyncio
    async def test_token_unknown_code(self, server, oauth_client):
        app_client, secret = oauth_client
        with pytest.raises(InvalidGrant):
            await server.token(
                TokenRequest(
                    grant_type="authorization_code",
                    client_id=app_client.client_id,
                    client_secret=secret,
                    code="hac_whatever",
                )
            )

    @pytest.mark.asyncio
    async def test_token_requires_refresh_token(self, server, oauth_client):
        app_client, secret = oauth_client
        with pytest.raises(InvalidRequest):
            await server.token(
                TokenRequest(
                    grant_type="refresh_token",
                    client_id=app_client.client_id,
                    client_secret=secret,
                )
            )

    @pytest.mark.asyncio
    async def test_registered_grant_types_are_enforced(self, server, client_registry):
        registration = await server.register(
            ClientRegistrationRequest(
                redirect_uris=["https://client.example/callback"],
                grant_types=["refresh_token"],
            )
        )
        assert registration.grant_types == ["refresh_token"]
        with pytest.raises(UnauthorizedClient):
            await server.token(
                TokenRequest(
                    grant_type="authorization_code",
                    client_id=registration.client_id,
                    client_secret=registration.client_secret,
                    code="hac_whatever",
                )
            )

    @pytest.mark.asyncio
    async def test_register_falls_back_to_supported_grant_types(self, server):
        registration = await server.register(
            ClientRegistrationRequest(
                redirect_uris=["https://client.example/callback"],
                grant_types=["client_credentials"],
                client_name="   ",
            )
        )
        assert registration.grant_types == ["authorization_code", "refresh_token"]
        assert registration.client_name == "Dynamic Client"
