"""
Client registry: durable store of OAuth clients.
"""

from typing import List, Optional, Tuple

from loguru import logger
from passlib.hash import argon2
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.constants import SUPPORTED_GRANT_TYPES
from api.database import session_scope
from api.idp.schemas import OAuthClient, validate_redirect_uri, validate_redirect_uris

# Verified against when the client id is unknown, so both failure paths cost one argon2 verify.
_DUMMY_SECRET_HASH = argon2.hash(OAuthClient.generate_client_secret())


class ClientRegistry:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, client_id: str) -> Optional[OAuthClient]:
        if not client_id:
            return None
        async with self.session_maker() as session:
            return (
                await session.execute(select(OAuthClient).where(OAuthClient.client_id == client_id))
            ).scalar_one_or_none()

    async def create(
        self,
        name: str,
        redirect_uris: List[str],
        scopes: List[str],
        grant_types: Optional[List[str]] = None,
        client_id: Optional[str] = None,
    ) -> Tuple[OAuthClient, str]:
        """
        Create a client with a generated secret; returns (client, plaintext secret).

        The plaintext secret is not stored and cannot be retrieved again.
        """
        validate_redirect_uris(redirect_uris)
        client_secret = OAuthClient.generate_client_secret()
        client = OAuthClient(
            client_id=client_id or OAuthClient.generate_client_id(),
            client_secret_hash=argon2.hash(client_secret),
            name=name,
            redirect_uris=list(redirect_uris),
            allowed_scopes=list(scopes),
            grant_types=list(grant_types or SUPPORTED_GRANT_TYPES),
        )
        async with session_scope(self.session_maker) as session:
            session.add(client)
        logger.info(f"Created OAuth client {client.client_id} ({name})")
        return client, client_secret

    async def authenticate(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> Optional[OAuthClient]:
        """
        Timing-safe client authentication; unknown client and wrong secret are indistinguishable.
        """
        client = await self.get(client_id) if client_id else None
        secret_hash = client.client_secret_hash if client else _DUMMY_SECRET_HASH
        try:
            valid = argon2.verify(client_secret or "", secret_hash)
        except (ValueError, TypeError):
            valid = False
        return client if client and valid else None

    async def verify_credentials(
        self, client_id: Optional[str], client_secret: Optional[str]
    ) -> bool:
        return await self.authenticate(client_id, client_secret) is not None

    async def add_redirect_uris(self, client_id: str, uris: List[str]) -> Optional[OAuthClient]:
        """
        Administrative: append redirect URIs to an existing client (skipping duplicates).
        """
        for uri in uris:
            validate_redirect_uri(uri)
        async with session_scope(self.session_maker) as session:
            client = (
                await session.execute(
                    select(OAuthClient)
                    .where(OAuthClient.client_id == client_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if not client:
                return None
            current = list(client.redirect_uris or [])
            for uri in uris:
                if uri not in current:
                    current.append(uri)
            client.redirect_uris = current
        return client
