from __future__ import annotations

import asyncio
import logging
import os
import signal
from datetime import datetime, timedelta, timezone

import aiohttp
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from dotenv import load_dotenv

from .birdeye import BirdeyeClient
from .config import Config, load_config
from .db import SqliteStore
from .delivery import RecommendationSender
from .discord import DiscordClient
from .logger import setup_logging
from .mentions import MentionResolver
from .performance import PerformanceResolver
from .scheduler import Pipeline
from .store import JsonFileStore, TokenStore
from .types import AppContext


def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)


async def open_store(config: Config, logger: logging.Logger) -> TokenStore:
    if config.store_backend == "sqlite":
        _ensure_parent_dir(config.sqlite_path)
        store = await SqliteStore.connect(config.sqlite_path, config.performance_refresh_sec)
        await store.init()
        if config.import_json_path:
            try:
                imported = await store.import_json_document(config.import_json_path)
                logger.info(
                    "json_import_done",
                    extra={"path": config.import_json_path, "imported": imported},
                )
            except (OSError, ValueError):
                logger.exception("json_import_failed", extra={"path": config.import_json_path})
        return store
    _ensure_parent_dir(config.data_path)
    return await JsonFileStore.open(config.data_path, config.performance_refresh_sec)


async def run(config: Config, logger: logging.Logger) -> None:
    store = await open_store(config, logger)
    session = aiohttp.ClientSession()

    discord = DiscordClient(session, config, logger)
    birdeye = BirdeyeClient(session, config, logger)
    app_ctx = AppContext(
        config=config,
        logger=logger,
        store=store,
        session=session,
        discord=discord,
        birdeye=birdeye,
        performance=PerformanceResolver(birdeye, logger),
        mentions=MentionResolver(discord, config.listing_bot_username, logger),
        sender=RecommendationSender(session, config, logger),
    )
    pipeline = Pipeline(app_ctx)
    await pipeline.load_status()

    loop = asyncio.get_running_loop()
    scheduler = AsyncIOScheduler(event_loop=loop, timezone=timezone.utc)
    now = datetime.now(timezone.utc)
    job_defaults = {"trigger": "interval", "max_instances": 1, "coalesce": True}
    scheduler.add_job(
        pipeline.ingest_job,
        seconds=config.ingest_interval_sec,
        next_run_time=now + timedelta(seconds=3),
        id="ingest",
        **job_defaults,
    )
    scheduler.add_job(
        pipeline.mention_job,
        seconds=config.mention_interval_sec,
        next_run_time=now + timedelta(seconds=15),
        id="mention_check",
        **job_defaults,
    )
    scheduler.add_job(
        pipeline.performance_job,
        seconds=config.performance_interval_sec,
        id="performance_refresh",
        **job_defaults,
    )
    scheduler.add_job(
        pipeline.delivery_job,
        seconds=config.delivery_interval_sec,
        id="delivery",
        **job_defaults,
    )
    scheduler.start()
    logger.info(
        "bot_ready",
        extra={
            "store_backend": config.store_backend,
            "channel_id": config.discord_channel_id,
            "listing_bot": config.listing_bot_username,
            "ingest_interval_sec": config.ingest_interval_sec,
            "mention_interval_sec": config.mention_interval_sec,
            "performance_interval_sec": config.performance_interval_sec,
            "delivery_interval_sec": config.delivery_interval_sec,
            "recommendations_sent": pipeline.status.recommendations_sent,
            "dry_run": config.dry_run,
        },
    )

    stop = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass
    try:
        await stop.wait()
    finally:
        scheduler.shutdown(wait=False)
        await session.close()
        await store.close()
        logger.info("bot_shutdown")


def main() -> None:
    load_dotenv()
    config = load_config()
    logger = setup_logging(config.log_level)
    try:
        asyncio.run(run(config, logger))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
