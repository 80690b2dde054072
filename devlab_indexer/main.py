import asyncio
import sys

import structlog
import uvicorn
import uvloop

from devlab_indexer import config
from devlab_indexer.api import create_app
from devlab_indexer.broadcast import Broadcaster
from devlab_indexer.connector import ChainConnector
from devlab_indexer.db import Storage
from devlab_indexer.errors import PersistenceError, UpstreamConnectionError
from devlab_indexer.indexer import EventIngestor
from devlab_indexer.logging_setup import configure_logging
from devlab_indexer.registry import ContractRegistry
from devlab_indexer.replay import ReplaySessions

logger = structlog.get_logger()


async def resume_point(storage: Storage):
    if config.START_BLOCK is not None:
        return config.START_BLOCK
    last = await storage.get_latest_block()
    return None if last is None else last + 1


async def main():
    if not config.RPC_URL:
        raise SystemExit("Missing RPC_URL in .env")

    storage = await Storage(config.DB_PATH).open()
    connector = ChainConnector(config.RPC_URL)
    sessions = ReplaySessions(storage)
    try:
        await connector.connect()

        ingestor = EventIngestor(connector, ContractRegistry(), storage, Broadcaster())
        loaded = await ingestor.load_contracts(config.load_watchlist())
        start_block = await resume_point(storage)
        logger.info("Indexer ready", contracts=loaded, head=connector.head, start_block=start_block)

        app = create_app(ingestor, sessions=sessions)
        server = uvicorn.Server(uvicorn.Config(app, host=config.API_HOST, port=config.API_PORT, log_level=config.LOG_LEVEL))

        ingest = asyncio.create_task(ingestor.run(start_block))
        serve = asyncio.create_task(server.serve())
        done, _ = await asyncio.wait({ingest, serve}, return_when=asyncio.FIRST_COMPLETED)

        # whichever side finished first takes the other down with it
        server.should_exit = True
        ingest.cancel()
        await asyncio.gather(ingest, serve, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()
    finally:
        sessions.close_all()
        await connector.close()
        await storage.close()


def run():
    configure_logging(config.LOG_LEVEL)
    try:
        uvloop.run(main())
    except (UpstreamConnectionError, PersistenceError) as e:
        logger.error("Indexer stopped", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
