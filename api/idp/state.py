"""
Round-trip state for the authorize -> identity provider -> callback hop.

The original authorization request travels inside an HS256-signed JWT with a short expiry.
Its jti is a state nonce issued through the token store and consumed on the callback, so a
forged, expired or replayed state is rejected before any of its fields are trusted.
"""

import time
from typing import Optional

import jwt
from loguru import logger

from api.constants import OAUTH_STATE_EXPIRY_SECONDS
from api.idp.errors import InvalidState
from api.idp.schemas import AuthorizationRequest, TokenKind, parse_scope
from api.idp.tokens import TokenStore

STATE_ALGORITHM = "HS256"
STATE_AUDIENCE = "oauth-google-callback"


class StateCodec:
    def __init__(
        self,
        secret: str,
        token_store: TokenStore,
        ttl: int = OAUTH_STATE_EXPIRY_SECONDS,
    ):
        if not secret:
            raise ValueError("A state signing secret is required")
        self.secret = secret
        self.token_store = token_store
        self.ttl = ttl

    async def encode(self, request: AuthorizationRequest) -> str:
        nonce = await self.token_store.issue(
            user_id=None,
            client_id=request.client_id,
            scopes=parse_scope(request.scope),
            ttl=self.ttl,
            kind=TokenKind.STATE,
        )
        now = int(time.time())
        claims = {
            "jti": nonce,
            "aud": STATE_AUDIENCE,
            "iat": now,
            "exp": now + self.ttl,
            "req": request.model_dump(exclude_none=True),
        }
        return jwt.encode(claims, self.secret, algorithm=STATE_ALGORITHM)

    async def decode(self, blob: Optional[str]) -> AuthorizationRequest:
        """
        Verify and redeem a state blob; each blob can be redeemed once.
        """
        if not blob:
            raise InvalidState("Missing state")
        try:
            claims = jwt.decode(
                blob,
                self.secret,
                algorithms=[STATE_ALGORITHM],
                audience=STATE_AUDIENCE,
                options={"require": ["exp", "iat", "jti", "aud"]},
            )
            request = AuthorizationRequest.model_validate(claims["req"])
        except jwt.ExpiredSignatureError:
            raise InvalidState("Sign-in took too long. Please start again.")
        except (jwt.InvalidTokenError, KeyError, TypeError, ValueError) as exc:
            logger.warning(f"Rejected malformed or tampered OAuth state: {exc}")
            raise InvalidState("Invalid state")

        nonce = await self.token_store.consume(claims["jti"], TokenKind.STATE, request.client_id)
        if not nonce:
            logger.warning(f"Rejected replayed OAuth state for client_id={request.client_id}")
            raise InvalidState("This sign-in link has already been used. Please start again.")
        return request
