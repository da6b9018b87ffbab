"""
User directory: maps a federated subject to a local user and its standing API key.
"""

import secrets
from typing import Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.database import session_scope
from api.user.schemas import FederatedProfile, User


class UserDirectory:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def get(self, user_id: str) -> Optional[User]:
        async with self.session_maker() as session:
            return (
                await session.execute(select(User).where(User.user_id == user_id))
            ).scalar_one_or_none()

    async def find_or_create(self, profile: FederatedProfile) -> User:
        """
        Idempotent upsert keyed by the federated subject id.

        Profile fields are refreshed on every federation; the user id and API key are not.
        Two concurrent first sign-ins race on the unique google_id constraint, and the loser
        re-reads the winner's row.
        """
        for _ in range(2):
            try:
                async with session_scope(self.session_maker) as session:
                    user = (
                        await session.execute(
                            select(User).where(User.google_id == profile.subject_id)
                        )
                    ).scalar_one_or_none()
                    if user:
                        user.email = profile.email
                        user.name = profile.name
                        user.picture_url = profile.picture
                        return user
                    user = User(
                        google_id=profile.subject_id,
                        email=profile.email,
                        name=profile.name,
                        picture_url=profile.picture,
                        api_key=User.generate_api_key(),
                    )
                    session.add(user)
                    await session.flush()
                    logger.info(f"Created user {user.user_id} for federated subject")
                    return user
            except IntegrityError:
                logger.warning("Concurrent first sign-in for the same subject, retrying lookup")
        raise RuntimeError("Unable to resolve user for federated subject")

    async def find_by_api_key(self, api_key: str) -> Optional[User]:
        if not api_key:
            return None
        async with self.session_maker() as session:
            user = (
                await session.execute(select(User).where(User.api_key == api_key))
            ).scalar_one_or_none()
        if user and secrets.compare_digest(user.api_key.encode(), api_key.encode()):
            return user
        return None

    async def refresh_api_key(self, user_id: str) -> Optional[str]:
        """
        Replace the user's API key; the previous key stops working immediately.
        """
        async with session_scope(self.session_maker) as session:
            user = (
                await session.execute(select(User).where(User.user_id == user_id))
            ).scalar_one_or_none()
            if not user:
                return None
            user.api_key = User.generate_api_key()
            return user.api_key
