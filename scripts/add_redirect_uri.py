import sys
import asyncio
from loguru import logger
from api.config import settings
from api.database import create_engine, create_sessionmaker
from api.idp.errors import InvalidRedirectURI
from api.idp.registry import ClientRegistry


async def add_redirect_uris(client_id: str, uris: list[str]) -> bool:
    engine = create_engine(settings)
    try:
        registry = ClientRegistry(create_sessionmaker(engine))
        try:
            client = await registry.add_redirect_uris(client_id, uris)
        except InvalidRedirectURI as exc:
            logger.error(f"Refusing to add redirect URIs: {exc.description}")
            return False
        if not client:
            logger.error(f"No client found with {client_id=}")
            return False
        logger.success(f"Redirect URIs for {client_id=}: {client.redirect_uris}")
        return True
    finally:
        await engine.dispose()


if __name__ == "__main__":
    if len(sys.argv) < 3:
        print(f"usage: {sys.argv[0]} <client_id> <redirect_uri> [<redirect_uri> ...]")
        sys.exit(2)
    sys.exit(0 if asyncio.run(add_redirect_uris(sys.argv[1], sys.argv[2:])) else 1)
