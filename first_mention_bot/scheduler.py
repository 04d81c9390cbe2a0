from __future__ import annotations

import asyncio
from enum import Enum
from typing import Awaitable, Callable

import aiohttp

from .birdeye import BirdeyeError, TokenNotFoundError
from .discord import DiscordError
from .parser import events_from_messages
from .performance import update_token_performance
from .types import AppContext, PipelineStatus, TokenRecord
from .utils import utc_now_iso
from .validation import build_recommendation, is_complete


class TokenState(str, Enum):
    DISCOVERED = "discovered"
    MENTION_PENDING = "mention_pending"
    MENTION_RESOLVED = "mention_resolved"
    PERFORMANCE_PENDING = "performance_pending"
    READY = "ready"
    SENT = "sent"


def derive_state(
    record: TokenRecord, sent: bool, queued: bool = False, refresh_due: bool = True
) -> TokenState:
    if sent:
        return TokenState.SENT
    if record.first_mention is None:
        return TokenState.MENTION_PENDING if queued else TokenState.DISCOVERED
    if record.performance is None:
        return TokenState.PERFORMANCE_PENDING if refresh_due else TokenState.MENTION_RESOLVED
    if is_complete(build_recommendation(record)):
        return TokenState.READY
    return TokenState.MENTION_RESOLVED


class Pipeline:
    def __init__(self, app_ctx: AppContext):
        self.ctx = app_ctx
        self.status = PipelineStatus()
        self._ingest_lock = asyncio.Lock()
        self._mention_lock = asyncio.Lock()
        self._performance_lock = asyncio.Lock()
        self._delivery_lock = asyncio.Lock()

    async def load_status(self) -> None:
        self.status.recommendations_sent = await self.ctx.store.count_sent()

    async def _run_exclusive(
        self, lock: asyncio.Lock, name: str, fn: Callable[[], Awaitable[None]]
    ) -> None:
        if lock.locked():
            self.ctx.logger.warning("job_overlap_skip", extra={"job": name})
            return
        async with lock:
            try:
                await fn()
            except Exception:
                self.ctx.logger.exception(f"{name}_error")

    async def ingest_job(self) -> None:
        await self._run_exclusive(self._ingest_lock, "ingest", self.ingest_once)

    async def mention_job(self) -> None:
        await self._run_exclusive(self._mention_lock, "mention_check", self.mention_once)

    async def performance_job(self) -> None:
        await self._run_exclusive(
            self._performance_lock, "performance_refresh", self.refresh_performance_batch
        )

    async def delivery_job(self) -> None:
        await self._run_exclusive(self._delivery_lock, "delivery", self.deliver_once)

    async def ingest_once(self) -> None:
        config = self.ctx.config
        store = self.ctx.store
        started_at = utc_now_iso()
        try:
            messages = await self.ctx.discord.fetch_channel_messages()
            events = events_from_messages(messages, config.listing_bot_username)
            fresh = [event for event in events if await store.is_new_or_updated(event)]
            changed = await store.save(fresh) if fresh else []
        except Exception as exc:
            self.status.last_run_at = started_at
            self.status.success = False
            self.status.new_messages_count = 0
            self.status.error = str(exc) or exc.__class__.__name__
            raise

        self.status.last_run_at = started_at
        self.status.success = True
        self.status.new_messages_count = len(changed)
        self.status.error = None
        if changed:
            self.ctx.logger.info(
                "ingest_complete",
                extra={"messages": len(messages), "events": len(events), "saved": len(changed)},
            )

    async def mention_once(self) -> None:
        store = self.ctx.store
        address = await store.next_mention_job()
        if address:
            try:
                await self.ctx.mentions.update_token_mention(store, address)
            except (DiscordError, aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                # Popped jobs are not re-queued on failure.
                self.ctx.logger.warning(
                    "mention_job_dropped", extra={"token": address, "error": str(exc)}
                )
        await self.initial_performance()

    async def initial_performance(self) -> None:
        store = self.ctx.store
        for record in await store.get_all_tokens():
            if record.performance is not None:
                continue
            if not await store.should_refresh_performance(record.token_address):
                continue
            await self._refresh_one(record.token_address)

    async def _refresh_one(self, address: str) -> bool:
        store = self.ctx.store
        try:
            await update_token_performance(store, self.ctx.performance, address)
        except TokenNotFoundError:
            self.ctx.logger.info("performance_token_unknown", extra={"token": address})
            await store.mark_performance_refreshed(address)
            return False
        except BirdeyeError as exc:
            self.ctx.logger.warning(
                "performance_fetch_failed",
                extra={"token": address, "status": exc.status, "error": str(exc)},
            )
            return False
        await store.mark_performance_refreshed(address)
        return True

    async def refresh_performance_batch(self) -> None:
        store = self.ctx.store
        tokens = await store.get_tokens_needing_performance_update()
        if not tokens:
            return
        addresses = [record.token_address for record in tokens]
        results = await self.ctx.performance.resolve_many(addresses)
        refreshed = 0
        for address, outcome in results.items():
            if isinstance(outcome, TokenNotFoundError):
                self.ctx.logger.info("performance_token_unknown", extra={"token": address})
                await store.mark_performance_refreshed(address)
                continue
            if isinstance(outcome, Exception):
                self.ctx.logger.warning(
                    "performance_fetch_failed", extra={"token": address, "error": str(outcome)}
                )
                continue
            await store.update_performance(address, outcome.to_dict())
            await store.mark_performance_refreshed(address)
            refreshed += 1
        self.ctx.logger.info(
            "performance_refresh_done", extra={"tokens": len(addresses), "refreshed": refreshed}
        )

    async def deliver_once(self) -> None:
        store = self.ctx.store
        for record in await store.get_unsent():
            address = record.token_address
            payload = build_recommendation(record)
            if not is_complete(payload):
                self.ctx.logger.debug(
                    "recommendation_withheld",
                    extra={"token": address, "state": derive_state(record, sent=False).value},
                )
                continue
            if await store.is_sent(address):
                continue
            if not await self.ctx.sender.send(payload):
                self.ctx.logger.info("recommendation_not_sent", extra={"token": address})
                continue
            await store.mark_sent(address)
            self.status.recommendations_sent += 1
