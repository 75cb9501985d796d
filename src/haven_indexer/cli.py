"""Command line entry point: ``haven-indexer {backfill,realtime,serve}``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from dataclasses import dataclass

from pydantic import ValidationError
from redis.asyncio import Redis

from haven_indexer import __version__
from haven_indexer.chain.reader import ChainReader
from haven_indexer.chain.subscriptions import NewBlockSubscription
from haven_indexer.config import Settings, get_settings
from haven_indexer.indexer.backfill import BackfillIndexer
from haven_indexer.indexer.processor import TokenProcessor
from haven_indexer.indexer.realtime import RealtimeIndexer, TokenCallback
from haven_indexer.pricing.oracle import PriceOracle
from haven_indexer.storage.database import DatabaseManager
from haven_indexer.storage.notifications import TokenInsertListener

logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="haven-indexer", description="Haven token blockchain indexer")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument(
        "--log-level",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Override LOG_LEVEL",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    backfill = sub.add_parser("backfill", help="Scan token history into the database, then exit")
    backfill.add_argument(
        "--token",
        action="append",
        dest="tokens",
        default=None,
        help="Only backfill this token (contract or bonding address); repeatable",
    )
    backfill.add_argument("--token-delay", type=float, default=None, help="Seconds to pause between tokens")

    sub.add_parser("realtime", help="Follow new blocks and keep aggregates current")

    serve = sub.add_parser("serve", help="Serve the read API")
    serve.add_argument("--host", default=None, help="Bind address (default API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default API_PORT)")
    return ap


@dataclass
class Components:
    db: DatabaseManager
    reader: ChainReader
    oracle: PriceOracle
    processor: TokenProcessor
    redis: Redis | None = None

    async def aclose(self) -> None:
        await self.reader.aclose()
        await self.db.dispose_async()
        if self.redis is not None:
            await self.redis.aclose()


def build_components(settings: Settings) -> Components:
    redis = Redis.from_url(settings.redis.url) if settings.redis.url else None
    db = DatabaseManager(
        settings.database.url,
        pool_size=settings.database.pool_size,
        echo=settings.database.echo,
    )
    chain = settings.chain
    reader = ChainReader(
        chain.rpc_url,
        fallback_rpc_url=chain.fallback_rpc_url,
        redis=redis,
        logs_chunk_size_blocks=chain.logs_chunk_size_blocks,
        block_cache_size=chain.block_cache_size,
        request_timeout_seconds=chain.request_timeout_seconds,
        max_requests_per_second=chain.max_requests_per_second,
        max_retries=chain.max_retries,
    )
    oracle = PriceOracle.from_settings(reader, settings.price)
    processor = TokenProcessor(reader=reader, db=db, oracle=oracle, settings=settings.indexer)
    return Components(db=db, reader=reader, oracle=oracle, processor=processor, redis=redis)


async def run_backfill(settings: Settings, tokens: Sequence[str] | None = None) -> int:
    components = build_components(settings)
    try:
        indexer = BackfillIndexer(reader=components.reader, db=components.db, processor=components.processor)
        stats = await indexer.run(tokens)
    finally:
        await components.aclose()
    return 0 if stats.tokens_failed == 0 and stats.failed_batches == 0 else 1


async def run_realtime(settings: Settings) -> int:
    components = build_components(settings)
    ws_url = settings.chain.ws_url or ""
    subscription = NewBlockSubscription(ws_url)

    def listener_factory(callback: TokenCallback) -> TokenInsertListener:
        return TokenInsertListener(components.db.database_url, settings.indexer.token_channel, callback)

    indexer = RealtimeIndexer(
        reader=components.reader,
        db=components.db,
        processor=components.processor,
        block_source=subscription.blocks,
        listener_factory=listener_factory,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, indexer.request_stop)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            signal.signal(sig, lambda *_: indexer.request_stop())

    try:
        await indexer.run()
    finally:
        await components.aclose()
    return 0


def run_serve(settings: Settings, *, host: str | None = None, port: int | None = None) -> int:
    import uvicorn

    from haven_indexer.api.app import create_app

    app = create_app(settings)
    uvicorn.run(
        app,
        host=host or settings.api.host,
        port=port or settings.api.port,
        log_level=settings.log_level.lower(),
    )
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        settings = get_settings()
        if args.log_level:
            settings = settings.model_copy(update={"log_level": args.log_level})
        if args.command == "backfill" and args.token_delay is not None:
            settings = settings.model_copy(
                update={"indexer": settings.indexer.model_copy(update={"token_delay_seconds": args.token_delay})}
            )
        settings.validate_requirements(command=args.command)
    except (ValidationError, ValueError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error("Invalid configuration: %s", e)
        return EXIT_CONFIG_ERROR

    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting %s with %s", args.command, settings.redacted_summary())

    if args.command == "backfill":
        return asyncio.run(run_backfill(settings, args.tokens))
    if args.command == "realtime":
        return asyncio.run(run_realtime(settings))
    return run_serve(settings, host=args.host, port=args.port)


if __name__ == "__main__":
    sys.exit(main())
