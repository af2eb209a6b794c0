"""Run the event indexer until SIGINT/SIGTERM.

Usage:
    python -m stake_event_indexer [--init-schema]
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal

from redis.asyncio import Redis

from stake_event_indexer.chain.client import ChainClient
from stake_event_indexer.config import Settings, get_settings
from stake_event_indexer.indexer import EventIndexer, IndexerStartError
from stake_event_indexer.projector.registry import ProjectorRegistry
from stake_event_indexer.storage.checkpoint import CheckpointStore
from stake_event_indexer.storage.database import DatabaseManager

logger = logging.getLogger("stake_event_indexer")


async def run(settings: Settings, *, init_schema: bool = False) -> int:
    redis: Redis | None = None
    if settings.redis.enabled and settings.redis.url:
        redis = Redis.from_url(settings.redis.url)

    db = DatabaseManager(settings.database.url)
    chain = ChainClient(
        settings.chain.rpc_url,
        ws_url=settings.chain.effective_ws_url,
        fallback_rpc_url=settings.chain.fallback_rpc_url,
        redis=redis,
        request_timeout_seconds=settings.indexer.request_timeout_seconds,
    )
    indexer = EventIndexer(
        chain,
        CheckpointStore(db.get_async_session),
        ProjectorRegistry.default(
            db.get_async_session,
            stake_contract_address=settings.chain.effective_stake_contract,
        ),
        watched_contracts=settings.chain.watched_contracts,
        settings=settings.indexer,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    try:
        if init_schema:
            await db.init_schema_async()
        await indexer.start()
        await stop_event.wait()
        return 0
    except IndexerStartError as e:
        logger.error("Indexer failed to start: %s", e)
        return 1
    finally:
        await indexer.stop()
        logger.info("Final status: %s", json.dumps(indexer.status().to_dict()))
        await chain.aclose()
        await db.dispose_async()
        if redis is not None:
            await redis.aclose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Stake contract event indexer")
    parser.add_argument(
        "--init-schema",
        action="store_true",
        help="create tables from the models before starting (development only)",
    )
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    logger.info("Starting with settings: %s", settings.redacted_summary())
    raise SystemExit(asyncio.run(run(settings, init_schema=args.init_schema)))


if __name__ == "__main__":
    main()
