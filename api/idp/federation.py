"""
Identity federation adapter: the broker's side of the Google OpenID Connect handshake.
"""

import asyncio
import time
from typing import Iterable, List, Optional
from urllib.parse import urlencode

import aiohttp
import jwt
from async_lru import alru_cache
from loguru import logger

from api.constants import (
    GOOGLE_AUTH_URL,
    GOOGLE_ISSUERS,
    GOOGLE_JWKS_URL,
    GOOGLE_LOGIN_SCOPES,
    GOOGLE_TOKEN_URL,
    JWKS_REFRESH_INTERVAL_SECONDS,
)
from api.idp.errors import AuthenticationFailed
from api.user.schemas import FederatedProfile


@alru_cache(maxsize=4, ttl=3600)
async def _load_jwks(url: str) -> dict:
    """
    Fetch the provider's signing keys (cached, keys rotate roughly daily).
    """
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
        async with session.get(url) as resp:
            resp.raise_for_status()
            return await resp.json()


_jwks_refreshed_at: Optional[float] = None


def _may_refresh_jwks() -> bool:
    """
    Unknown key ids may force a refetch at most once per interval.
    """
    global _jwks_refreshed_at
    now = time.monotonic()
    if _jwks_refreshed_at is not None and now - _jwks_refreshed_at < JWKS_REFRESH_INTERVAL_SECONDS:
        return False
    _jwks_refreshed_at = now
    return True


class IdentityProvider:
    """
    Interface the authorization server depends on; tests substitute a fake.
    """

    def build_authorization_url(self, state: str) -> str:
        raise NotImplementedError

    async def exchange_code(self, provider_code: str) -> FederatedProfile:
        raise NotImplementedError

    async def verify_id_token(
        self, id_token: str, audiences: Optional[Iterable[str]] = None
    ) -> FederatedProfile:
        raise NotImplementedError


class GoogleIdentityProvider(IdentityProvider):
    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        additional_audiences: Optional[List[str]] = None,
        jwks_url: str = GOOGLE_JWKS_URL,
        timeout: float = 10.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.additional_audiences = list(additional_audiences or [])
        self.jwks_url = jwks_url
        self.timeout = timeout

    @property
    def audiences(self) -> List[str]:
        return [self.client_id, *self.additional_audiences]

    def build_authorization_url(self, state: str) -> str:
        """
        Google login URL; the callback is always our fixed redirect URI, never the client's.
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(GOOGLE_LOGIN_SCOPES),
            "access_type": "online",
            "prompt": "select_account",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def _request_tokens(self, provider_code: str) -> dict:
        async with aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout)
        ) as session:
            async with session.post(
                GOOGLE_TOKEN_URL,
                data={
                    "code": provider_code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            ) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    logger.warning(f"Google code exchange failed: {resp.status} {body[:200]}")
                    raise AuthenticationFailed()
                return await resp.json()

    async def exchange_code(self, provider_code: str) -> FederatedProfile:
        """
        Trade Google's one-time code for tokens and verify the returned ID token.
        """
        if not provider_code:
            raise AuthenticationFailed()
        try:
            tokens = await self._request_tokens(provider_code)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            logger.warning(f"Google code exchange error: {exc}")
            raise AuthenticationFailed()
        id_token = tokens.get("id_token") if isinstance(tokens, dict) else None
        if not id_token:
            logger.warning("Google token response did not include an id_token")
            raise AuthenticationFailed()
        return await self.verify_id_token(id_token, audiences=[self.client_id])

    async def _signing_key(self, kid: Optional[str]):
        for attempt in range(2):
            try:
                jwks = await _load_jwks(self.jwks_url)
                for key in jwt.PyJWKSet.from_dict(jwks).keys:
                    if key.key_id == kid:
                        return key.key
            except (aiohttp.ClientError, asyncio.TimeoutError, jwt.PyJWKSetError) as exc:
                logger.warning(f"Unable to load identity provider signing keys: {exc}")
            if attempt == 0:
                # Unknown kid: keys may have rotated since the cache was filled.
                if not _may_refresh_jwks():
                    break
                _load_jwks.cache_clear()
        return None

    async def verify_id_token(
        self, id_token: str, audiences: Optional[Iterable[str]] = None
    ) -> FederatedProfile:
        """
        Validate signature, audience, issuer and expiry before trusting any claim.
        """
        audiences = list(audiences or self.audiences)
        try:
            header = jwt.get_unverified_header(id_token)
        except jwt.InvalidTokenError:
            raise AuthenticationFailed()
        if header.get("alg") != "RS256":
            raise AuthenticationFailed()
        key = await self._signing_key(header.get("kid"))
        if key is None:
            raise AuthenticationFailed()
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=["RS256"],
                audience=audiences,
                options={"require": ["exp", "iat", "iss", "sub", "aud"]},
                leeway=30,
            )
        except jwt.InvalidTokenError as exc:
            logger.warning(f"Rejected identity token: {exc}")
            raise AuthenticationFailed()
        if claims.get("iss") not in GOOGLE_ISSUERS:
            logger.warning(f"Rejected identity token from unexpected issuer: {claims.get('iss')}")
            raise AuthenticationFailed()
        email = claims.get("email")
        if not email or claims.get("email_verified") is False:
            raise AuthenticationFailed()
        return FederatedProfile(
            subject_id=claims["sub"],
            email=email,
            name=claims.get("name") or email,
            picture=claims.get("picture"),
        )
