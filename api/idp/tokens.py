"""
Token store: codes, access/refresh tokens and state nonces.

Every single-use transition (code exchange, nonce consumption, refresh rotation) is one
conditional DELETE ... RETURNING, so concurrent callers racing on the same token cannot
both win, regardless of how many API instances are running.
"""

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.constants import ACCESS_TOKEN_EXPIRY_SECONDS, DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS
from api.database import generate_uuid, session_scope
from api.idp.schemas import OAuthToken, TokenInfo, TokenKind, TokenPair

_RETURNING = (
    OAuthToken.token_id,
    OAuthToken.kind,
    OAuthToken.user_id,
    OAuthToken.client_id,
    OAuthToken.scopes,
    OAuthToken.created_at,
    OAuthToken.expires_at,
    OAuthToken.refresh_token_id,
    OAuthToken.redirect_uri,
    OAuthToken.code_challenge,
    OAuthToken.code_challenge_method,
)


def utcnow() -> datetime:
    """Naive UTC, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def verify_code_verifier(
    code_verifier: Optional[str],
    code_challenge: str,
    code_challenge_method: Optional[str],
) -> bool:
    """
    RFC 7636 PKCE check; S256 is BASE64URL(SHA256(code_verifier)) without padding.
    """
    if not code_verifier:
        return False
    if code_challenge_method == "S256":
        digest = hashlib.sha256(code_verifier.encode("ascii", "ignore")).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    else:
        expected = code_verifier
    return secrets.compare_digest(expected.encode(), code_challenge.encode())


class TokenStore:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        access_ttl: int = ACCESS_TOKEN_EXPIRY_SECONDS,
        refresh_ttl: int = DEFAULT_REFRESH_TOKEN_LIFETIME_DAYS * 24 * 60 * 60,
    ):
        self.session_maker = session_maker
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _new_token(
        self,
        session: AsyncSession,
        kind: TokenKind,
        user_id: Optional[str],
        client_id: str,
        scopes: List[str],
        ttl: int,
        **extra,
    ) -> tuple[str, OAuthToken]:
        token = OAuthToken.generate_token(kind)
        now = utcnow()
        row = OAuthToken(
            token_id=generate_uuid(),
            token_hash=OAuthToken.hash_token(token),
            kind=kind.value,
            user_id=user_id,
            client_id=client_id,
            scopes=list(scopes),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            **extra,
        )
        session.add(row)
        return token, row

    def _new_pair(
        self, session: AsyncSession, user_id: str, client_id: str, scopes: List[str]
    ) -> TokenPair:
        refresh_token, refresh_row = self._new_token(
            session, TokenKind.REFRESH, user_id, client_id, scopes, self.refresh_ttl
        )
        access_token, _ = self._new_token(
            session,
            TokenKind.ACCESS,
            user_id,
            client_id,
            scopes,
            self.access_ttl,
            refresh_token_id=refresh_row.token_id,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self.access_ttl,
            scopes=list(scopes),
            user_id=user_id,
            client_id=client_id,
        )

    async def _take(
        self,
        session: AsyncSession,
        token: str,
        kind: TokenKind,
        client_id: Optional[str] = None,
    ) -> Optional[TokenInfo]:
        """
        Atomically delete an unexpired token of the given kind and return what it was.
        """
        query = delete(OAuthToken).where(
            OAuthToken.token_hash == OAuthToken.hash_token(token),
            OAuthToken.kind == kind.value,
            OAuthToken.expires_at > utcnow(),
        )
        if client_id is not None:
            query = query.where(OAuthToken.client_id == client_id)
        result = await session.execute(
            query.returning(*_RETURNING).execution_options(synchronize_session=False)
        )
        row = result.first()
        if not row:
            return None
        return TokenInfo.model_validate(dict(row._mapping))

    async def issue(
        self,
        user_id: Optional[str],
        client_id: str,
        scopes: List[str],
        ttl: int,
        kind: TokenKind,
        redirect_uri: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> str:
        """
        Issue a single token; the plaintext is only returned once the row has committed.
        """
        async with session_scope(self.session_maker) as session:
            token, _ = self._new_token(
                session,
                kind,
                user_id,
                client_id,
                scopes,
                ttl,
                redirect_uri=redirect_uri,
                code_challenge=code_challenge,
                code_challenge_method=code_challenge_method,
            )
        return token

    async def lookup(self, token: str, kind: Optional[TokenKind] = None) -> Optional[TokenInfo]:
        """
        Find a token; expired tokens are reported exactly like unknown ones.
        """
        if not token:
            return None
        query = select(OAuthToken).where(
            OAuthToken.token_hash == OAuthToken.hash_token(token),
            OAuthToken.expires_at > utcnow(),
        )
        if kind is not None:
            query = query.where(OAuthToken.kind == kind.value)
        async with self.session_maker() as session:
            row = (await session.execute(query)).scalar_one_or_none()
        return TokenInfo.model_validate(row) if row else None

    async def revoke(self, token: str, client_id: Optional[str] = None) -> bool:
        """
        Delete a token (idempotent). Revoking a refresh token also revokes the access
        tokens issued alongside it; revoking an access token leaves its refresh token alone.
        """
        if not token:
            return False
        async with session_scope(self.session_maker) as session:
            query = delete(OAuthToken).where(OAuthToken.token_hash == OAuthToken.hash_token(token))
            if client_id is not None:
                query = query.where(OAuthToken.client_id == client_id)
            result = await session.execute(
                query.returning(OAuthToken.token_id, OAuthToken.kind).execution_options(
                    synchronize_session=False
                )
            )
            row = result.first()
            if not row:
                return False
            if row.kind == TokenKind.REFRESH.value:
                await session.execute(
                    delete(OAuthToken)
                    .where(
                        OAuthToken.kind == TokenKind.ACCESS.value,
                        OAuthToken.refresh_token_id == row.token_id,
                    )
                    .execution_options(synchronize_session=False)
                )
        return True

    async def consume(
        self, token: str, kind: TokenKind, client_id: Optional[str] = None
    ) -> Optional[TokenInfo]:
        """
        Single-use redemption of any token kind.
        """
        if not token:
            return None
        async with session_scope(self.session_maker) as session:
            return await self._take(session, token, kind, client_id)

    async def exchange_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: Optional[str] = None,
        code_verifier: Optional[str] = None,
    ) -> Optional[TokenPair]:
        """
        Redeem an authorization code for an access/refresh pair, in one transaction.

        A code presented with the wrong redirect_uri or PKCE verifier is still burned.
        """
        if not code:
            return None
        async with session_scope(self.session_maker) as session:
            info = await self._take(session, code, TokenKind.CODE, client_id)
            if not info:
                return None
            if redirect_uri and info.redirect_uri and redirect_uri != info.redirect_uri:
                logger.warning(f"Authorization code redirect_uri mismatch for {client_id=}")
                return None
            if info.code_challenge and not verify_code_verifier(
                code_verifier, info.code_challenge, info.code_challenge_method
            ):
                logger.warning(f"Authorization code PKCE verification failed for {client_id=}")
                return None
            return self._new_pair(session, info.user_id, info.client_id, info.scopes)

    async def rotate_refresh(
        self, refresh_token: str, client_id: Optional[str] = None
    ) -> Optional[TokenPair]:
        """
        Invalidate a refresh token and issue a new pair bound to the same user/client/scopes.
        Of several concurrent rotations of the same token, at most one succeeds.
        """
        if not refresh_token:
            return None
        async with session_scope(self.session_maker) as session:
            info = await self._take(session, refresh_token, TokenKind.REFRESH, client_id)
            if not info:
                return None
            return self._new_pair(session, info.user_id, info.client_id, info.scopes)

    async def purge_expired(self) -> int:
        """
        Remove rows past their expiry (they are already treated as absent).
        """
        async with session_scope(self.session_maker) as session:
            result = await session.execute(
                delete(OAuthToken)
                .where(OAuthToken.expires_at <= utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
