import sys
import asyncio
import argparse
from loguru import logger
from api.config import settings
from api.database import create_engine, create_sessionmaker, init_db
from api.idp.errors import InvalidRedirectURI
from api.idp.registry import ClientRegistry
from api.idp.schemas import parse_scope


async def create_client(
    name: str, redirect_uris: list[str], scope: str, client_id: str | None = None
) -> bool:
    engine = create_engine(settings)
    try:
        await init_db(engine)
        registry = ClientRegistry(create_sessionmaker(engine))
        if client_id and await registry.get(client_id):
            logger.warning(f"Client {client_id=} already exists, nothing to do")
            return True
        try:
            client, client_secret = await registry.create(
                name=name,
                redirect_uris=redirect_uris,
                scopes=parse_scope(scope) or settings.allowed_scopes,
                client_id=client_id,
            )
        except InvalidRedirectURI as exc:
            logger.error(f"Refusing to create client: {exc.description}")
            return False
        logger.success(f"Created client {client.client_id} ({name})")
        # Shown once; only the hash is stored.
        print(f"client_id={client.client_id}")
        print(f"client_secret={client_secret}")
        return True
    finally:
        await engine.dispose()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Provision a static OAuth client.")
    parser.add_argument("name")
    parser.add_argument("redirect_uris", nargs="+")
    parser.add_argument("--scope", default="", help="space separated, defaults to all allowed")
    parser.add_argument("--client-id", default=None)
    args = parser.parse_args()
    sys.exit(
        0
        if asyncio.run(create_client(args.name, args.redirect_uris, args.scope, args.client_id))
        else 1
    )
