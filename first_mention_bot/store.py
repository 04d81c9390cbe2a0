from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from .types import (
    NEW_LISTING,
    MentionEvent,
    TokenQuery,
    TokenRecord,
    UpdateEntry,
    UserRef,
)
from .utils import coerce_ts, normalize_iso, parse_iso, to_float, utc_now_iso, utc_now_ts

PERFORMANCE_REFRESH_INTERVAL_SEC = 30 * 60


def is_new_or_updated_record(record: Optional[TokenRecord], event: MentionEvent) -> bool:
    if record is None:
        return True
    # A bare record created by a performance write still needs its identity.
    if record.name is None:
        return True
    if event.stats is None:
        return False
    last = record.latest_update
    if last is None:
        return True
    return (
        last.market_cap != event.stats.market_cap
        or last.percentage != event.stats.percentage
    )


def _update_entry(event: MentionEvent, now: str) -> Optional[UpdateEntry]:
    if event.stats is None:
        return None
    return UpdateEntry(
        timestamp=now,
        market_cap=event.stats.market_cap,
        percentage=event.stats.percentage,
        kind=event.update_kind or NEW_LISTING,
    )


def _scan_user(event: MentionEvent, now: str) -> UserRef:
    poster = event.poster or UserRef(username=None, discord_id=None)
    return UserRef(username=poster.username, discord_id=poster.discord_id, timestamp=now)


def build_record(event: MentionEvent, now: str) -> TokenRecord:
    scan = _scan_user(event, now)
    entry = _update_entry(event, now)
    return TokenRecord(
        token_address=event.token_address,
        name=event.token_name,
        ticker=event.ticker,
        chain=event.chain or "SOL",
        pump_link=event.pump_link,
        first_seen_at=now,
        msg_timestamp=event.message_timestamp,
        scan_recommendation=scan,
        updates=[entry] if entry else [],
        first_mention=scan if event.update_kind == NEW_LISTING else None,
    )


def fill_identity(record: TokenRecord, event: MentionEvent, now: str) -> None:
    """Adopt a listing event into a record that only had performance data."""
    scan = _scan_user(event, now)
    record.name = event.token_name
    record.ticker = event.ticker
    record.chain = event.chain or "SOL"
    record.pump_link = event.pump_link
    record.msg_timestamp = event.message_timestamp
    record.scan_recommendation = scan
    if record.first_mention is None and event.update_kind == NEW_LISTING:
        record.first_mention = scan
    if record.performance is not None and not record.performance.get("symbol"):
        record.performance["symbol"] = event.ticker
    append_update(record, event, now)


def append_update(record: TokenRecord, event: MentionEvent, now: str) -> bool:
    entry = _update_entry(event, now)
    if entry is None:
        return False
    record.updates.append(entry)
    return True


def sort_value(record: TokenRecord, sort_by: str) -> Any:
    if sort_by == "firstSeenAt":
        return normalize_iso(record.first_seen_at) or ""
    performance = record.performance or {}
    if sort_by == "marketCap":
        value = performance.get("marketCap")
        if value is None:
            value = performance.get("mcap")
    elif sort_by == "price":
        value = performance.get("price")
    elif sort_by == "volume":
        value = performance.get("volume24h")
    else:
        return 0
    return to_float(value) or 0.0


def apply_query(records: Iterable[TokenRecord], query: TokenQuery) -> List[TokenRecord]:
    results = list(records)
    if query.chain:
        results = [r for r in results if r.chain == query.chain]
    if query.address:
        results = [r for r in results if r.token_address == query.address]
    if query.ticker:
        results = [r for r in results if r.ticker == query.ticker]
    start = parse_iso(normalize_iso(query.start_time))
    if start is not None:
        results = [
            r for r in results
            if parse_iso(r.first_seen_at) is not None and parse_iso(r.first_seen_at) >= start
        ]
    end = parse_iso(normalize_iso(query.end_time))
    if end is not None:
        results = [
            r for r in results
            if parse_iso(r.first_seen_at) is not None and parse_iso(r.first_seen_at) <= end
        ]
    if query.sort_by:
        results.sort(key=lambda r: sort_value(r, query.sort_by), reverse=True)
    if query.limit and query.limit > 0:
        results = results[: query.limit]
    return results


def refresh_due(last_refreshed: Optional[int], now: int, interval_sec: int) -> bool:
    if last_refreshed is None:
        return True
    return last_refreshed < now - interval_sec


class TokenStore(ABC):
    """Durable token state: records, the mention-job queue, the throttle clock
    and the sent-set.

    Every mutation runs inside ``_transaction``: one writer at a time, and a
    failed write leaves the store as of its last successful commit. Backend
    errors propagate to the caller; nothing here retries.
    """

    refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC

    def __init__(self, refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC):
        self.refresh_interval_sec = refresh_interval_sec
        self._write_lock = asyncio.Lock()

    @abstractmethod
    async def get_by_address(self, address: str) -> Optional[TokenRecord]:
        ...

    @abstractmethod
    async def list_tokens(self, query: Optional[TokenQuery] = None) -> List[TokenRecord]:
        ...

    @abstractmethod
    async def get_tokens_by_user(self, discord_id: str) -> List[TokenRecord]:
        ...

    @abstractmethod
    async def pending_mention_jobs(self) -> List[str]:
        ...

    @abstractmethod
    async def last_performance_refresh(self, address: str) -> Optional[int]:
        ...

    @abstractmethod
    async def is_sent(self, address: str) -> bool:
        ...

    @abstractmethod
    async def count_sent(self) -> int:
        ...

    @abstractmethod
    async def get_unsent(self) -> List[TokenRecord]:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    # Uncommitted primitives; callers hold the write lock.

    @abstractmethod
    async def _put_record(self, record: TokenRecord) -> None:
        ...

    @abstractmethod
    async def _push_mention_job(self, address: str) -> bool:
        ...

    @abstractmethod
    async def _pop_mention_job(self) -> Optional[str]:
        ...

    @abstractmethod
    async def _set_refreshed(self, address: str, ts: int) -> None:
        ...

    @abstractmethod
    async def _set_sent(self, address: str, ts: int) -> None:
        ...

    async def _begin(self) -> None:
        return None

    @abstractmethod
    async def _commit(self) -> None:
        ...

    @abstractmethod
    async def _rollback(self) -> None:
        ...

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._write_lock:
            await self._begin()
            try:
                yield
            except BaseException:
                await self._rollback()
                raise

    async def get_all_tokens(self) -> List[TokenRecord]:
        return await self.list_tokens(TokenQuery())

    async def is_new_or_updated(self, event: MentionEvent) -> bool:
        record = await self.get_by_address(event.token_address)
        return is_new_or_updated_record(record, event)

    async def save(self, events: Iterable[MentionEvent]) -> List[str]:
        now = utc_now_iso()
        changed: List[str] = []
        async with self._transaction():
            for event in events:
                if not event.token_address:
                    continue
                record = await self.get_by_address(event.token_address)
                if not is_new_or_updated_record(record, event):
                    continue
                if record is None:
                    record = build_record(event, now)
                elif record.name is None:
                    fill_identity(record, event, now)
                elif not append_update(record, event, now):
                    continue
                await self._put_record(record)
                if event.update_kind != NEW_LISTING and record.first_mention is None:
                    await self._push_mention_job(record.token_address)
                changed.append(record.token_address)
            if changed:
                await self._commit()
        return changed

    async def set_first_mention(self, address: str, mention: UserRef) -> bool:
        async with self._transaction():
            record = await self.get_by_address(address)
            if record is None or record.first_mention is not None:
                return False
            record.first_mention = mention
            await self._put_record(record)
            await self._commit()
        return True

    async def update_performance(self, address: str, snapshot: Dict[str, Any]) -> TokenRecord:
        if not address or snapshot is None:
            raise ValueError("token address and performance snapshot are required")
        now = utc_now_iso()
        async with self._transaction():
            record = await self.get_by_address(address)
            if record is None:
                record = TokenRecord(token_address=address, first_seen_at=now)
            performance = dict(snapshot)
            if not performance.get("symbol"):
                performance["symbol"] = record.ticker
            record.performance = performance
            record.last_performance_update = now
            await self._put_record(record)
            await self._commit()
        return record

    async def enqueue_mention_job(self, address: str) -> bool:
        async with self._transaction():
            added = await self._push_mention_job(address)
            if added:
                await self._commit()
        return added

    async def next_mention_job(self) -> Optional[str]:
        async with self._transaction():
            address = await self._pop_mention_job()
            if address is not None:
                await self._commit()
        return address

    async def mark_performance_refreshed(self, address: str, now: Optional[int] = None) -> None:
        async with self._transaction():
            await self._set_refreshed(address, now if now is not None else utc_now_ts())
            await self._commit()

    async def mark_sent(self, address: str, now: Optional[int] = None) -> None:
        async with self._transaction():
            await self._set_sent(address, now if now is not None else utc_now_ts())
            await self._commit()

    async def should_refresh_performance(self, address: str, now: Optional[int] = None) -> bool:
        last = await self.last_performance_refresh(address)
        return refresh_due(last, now if now is not None else utc_now_ts(), self.refresh_interval_sec)

    async def get_tokens_needing_performance_update(
        self, now: Optional[int] = None
    ) -> List[TokenRecord]:
        now = now if now is not None else utc_now_ts()
        results = []
        for record in await self.get_all_tokens():
            if await self.should_refresh_performance(record.token_address, now):
                results.append(record)
        return results


class JsonFileStore(TokenStore):
    """Flat-document backend: the whole state lives in one JSON file."""

    def __init__(self, path: str, refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC):
        super().__init__(refresh_interval_sec)
        self.path = path
        self.data: Dict[str, Any] = self._empty()
        self._snapshot: Optional[Dict[str, Any]] = None

    @staticmethod
    def _empty() -> Dict[str, Any]:
        return {
            "lastUpdate": None,
            "tokens": {},
            "sentRecommendations": {},
            "lastPerformanceUpdates": {},
            "mentionJobs": [],
        }

    @classmethod
    async def open(
        cls, path: str, refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC
    ) -> "JsonFileStore":
        store = cls(path, refresh_interval_sec)
        store.load()
        return store

    def load(self) -> None:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                raw = json.load(fh)
        except FileNotFoundError:
            return
        data = self._empty()
        if isinstance(raw, dict):
            for key in data:
                if key in raw and raw[key] is not None:
                    data[key] = raw[key]
        self.data = data

    def _write(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tokens-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self.data, fh, indent=2, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def _begin(self) -> None:
        self._snapshot = copy.deepcopy(self.data)

    async def _commit(self) -> None:
        self.data["lastUpdate"] = utc_now_iso()
        self._write()
        self._snapshot = None

    async def _rollback(self) -> None:
        if self._snapshot is not None:
            self.data = self._snapshot
        self._snapshot = None

    async def _put_record(self, record: TokenRecord) -> None:
        self.data["tokens"][record.token_address] = record.to_dict()

    async def _push_mention_job(self, address: str) -> bool:
        jobs = self.data["mentionJobs"]
        if address in jobs:
            return False
        jobs.append(address)
        return True

    async def _pop_mention_job(self) -> Optional[str]:
        jobs = self.data["mentionJobs"]
        return jobs.pop(0) if jobs else None

    async def _set_refreshed(self, address: str, ts: int) -> None:
        self.data["lastPerformanceUpdates"][address] = ts

    async def _set_sent(self, address: str, ts: int) -> None:
        self.data["sentRecommendations"][address] = ts

    async def get_by_address(self, address: str) -> Optional[TokenRecord]:
        raw = self.data["tokens"].get(address)
        return TokenRecord.from_dict(raw) if raw else None

    async def list_tokens(self, query: Optional[TokenQuery] = None) -> List[TokenRecord]:
        records = [TokenRecord.from_dict(raw) for raw in self.data["tokens"].values()]
        return apply_query(records, query or TokenQuery())

    async def get_tokens_by_user(self, discord_id: str) -> List[TokenRecord]:
        return [
            record
            for record in await self.get_all_tokens()
            if record.scan_recommendation is not None
            and record.scan_recommendation.discord_id == discord_id
        ]

    async def pending_mention_jobs(self) -> List[str]:
        return list(self.data["mentionJobs"])

    async def last_performance_refresh(self, address: str) -> Optional[int]:
        return coerce_ts(self.data["lastPerformanceUpdates"].get(address))

    async def is_sent(self, address: str) -> bool:
        return bool(self.data["sentRecommendations"].get(address))

    async def count_sent(self) -> int:
        return len(self.data["sentRecommendations"])

    async def get_unsent(self) -> List[TokenRecord]:
        sent = self.data["sentRecommendations"]
        return [
            TokenRecord.from_dict(raw)
            for address, raw in self.data["tokens"].items()
            if not sent.get(address)
        ]

    async def close(self) -> None:
        return None
