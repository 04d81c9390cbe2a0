from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional

from first_mention_bot.config import Config
from first_mention_bot.types import (
    NEW_LISTING,
    UPDATE,
    MentionEvent,
    PerformanceSnapshot,
    TokenStats,
    UserRef,
)

LOGGER = logging.getLogger("first_mention_bot.tests")

_BASE_CONFIG = Config(
    discord_token="discord-token",
    discord_guild_id="guild-1",
    discord_channel_id="channel-1",
    listing_bot_username="Rick",
    discord_timeout_sec=5,
    birdeye_api_key="birdeye-key",
    birdeye_timeout_sec=5,
    birdeye_retry_attempts=3,
    birdeye_retry_base_delay_sec=0.0,
    birdeye_max_rps=1000,
    birdeye_max_concurrency=4,
    agent_id="agent-1",
    recommendation_base_url="http://agent.test",
    delivery_timeout_sec=5,
    delivery_pause_sec=0.0,
    store_backend="json",
    data_path="tokens.json",
    sqlite_path="tokens.db",
    import_json_path="",
    log_level="DEBUG",
    dry_run=False,
    ingest_interval_sec=2,
    mention_interval_sec=15,
    performance_interval_sec=1800,
    delivery_interval_sec=360,
    performance_refresh_sec=1800,
)


def make_config(**overrides: Any) -> Config:
    return replace(_BASE_CONFIG, **overrides)


class FakeResponse:
    def __init__(self, status: int = 200, payload: Any = None, text: str = ""):
        self.status = status
        self.payload = payload
        self._text = text
        self.released = False

    async def json(self) -> Any:
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload

    async def text(self) -> str:
        return self._text

    def release(self) -> None:
        self.released = True


class FakeSession:
    """Answers requests from per-path queues; the last queued answer repeats."""

    def __init__(
        self,
        routes: Optional[Dict[str, List[Any]]] = None,
        handler: Optional[Callable[[str, str, Dict[str, Any]], Any]] = None,
    ):
        self.routes = {key: list(value) for key, value in (routes or {}).items()}
        self.handler = handler
        self.calls: List[tuple] = []

    def _answer(self, method: str, url: str, kwargs: Dict[str, Any]) -> Any:
        self.calls.append((method, url, kwargs))
        if self.handler is not None:
            result = self.handler(method, url, kwargs)
        else:
            result = None
            for key, queue in self.routes.items():
                if url.endswith(key):
                    result = queue.pop(0) if len(queue) > 1 else queue[0]
                    break
            if result is None:
                raise AssertionError(f"unexpected request {method} {url}")
        if isinstance(result, Exception):
            raise result
        return result

    async def get(self, url: str, **kwargs: Any) -> Any:
        return self._answer("GET", url, kwargs)

    async def post(self, url: str, **kwargs: Any) -> Any:
        return self._answer("POST", url, kwargs)

    def count(self, suffix: str) -> int:
        return sum(1 for _method, url, _kwargs in self.calls if url.endswith(suffix))


def make_event(
    address: str = "ADDR123",
    kind: str = UPDATE,
    stats: Optional[tuple] = ("100K", "20"),
    username: str = "alice",
    discord_id: str = "111",
    timestamp: str = "2024-05-01T10:00:00.000Z",
) -> MentionEvent:
    return MentionEvent(
        token_name="Name",
        ticker="TICK",
        chain="SOL",
        token_address=address,
        pump_link=f"https://pump.fun/{address}",
        update_kind=kind,
        stats=TokenStats(market_cap=stats[0], percentage=stats[1]) if stats else None,
        poster=UserRef(username=username, discord_id=discord_id, timestamp=timestamp),
        message_timestamp=timestamp,
    )


def make_listing(address: str = "ADDR123", **kwargs: Any) -> MentionEvent:
    return make_event(address=address, kind=NEW_LISTING, **kwargs)


def make_snapshot(address: str = "ADDR123", **overrides: Any) -> PerformanceSnapshot:
    values: Dict[str, Any] = dict(
        token_address=address,
        price_change_24h=12.5,
        volume_change_24h=40.0,
        trade_24h_change=8.0,
        liquidity=25000.0,
        liquidity_change_24h=0.0,
        holder_change_24h=3.0,
        rug_pull=False,
        is_scam=False,
        market_cap_change_24h=12.5,
        sustained_growth=True,
        rapid_dump=False,
        suspicious_volume=False,
        validation_trust=0.0,
        balance=0.0,
        initial_market_cap=100000.0,
        price=0.0001,
        volume_24h=50000.0,
        market_cap=100000.0,
        symbol="TICK",
    )
    values.update(overrides)
    return PerformanceSnapshot(**values)
