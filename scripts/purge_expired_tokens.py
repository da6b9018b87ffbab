import asyncio
from loguru import logger
from api.config import settings
from api.database import create_engine, create_sessionmaker
from api.idp.tokens import TokenStore


async def purge_expired_tokens():
    engine = create_engine(settings)
    try:
        removed = await TokenStore(create_sessionmaker(engine)).purge_expired()
        logger.success(f"Purged {removed} expired codes, tokens and state nonces")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(purge_expired_tokens())
