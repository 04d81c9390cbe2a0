from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import aiosqlite

from .store import PERFORMANCE_REFRESH_INTERVAL_SEC, TokenStore
from .types import TokenQuery, TokenRecord
from .utils import coerce_ts, normalize_iso, utc_now_iso, utc_now_ts

SORT_COLUMNS = {
    "firstSeenAt": "first_seen_at",
    "marketCap": (
        "CAST(COALESCE(json_extract(doc, '$.performance.marketCap'), "
        "json_extract(doc, '$.performance.mcap'), 0) AS REAL)"
    ),
    "price": "CAST(COALESCE(json_extract(doc, '$.performance.price'), 0) AS REAL)",
    "volume": "CAST(COALESCE(json_extract(doc, '$.performance.volume24h'), 0) AS REAL)",
}


class SqliteStore(TokenStore):
    """Collection-style backend: one table per collection, token documents
    stored as JSON next to the indexed lookup columns."""

    def __init__(self, path: str, refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC):
        super().__init__(refresh_interval_sec)
        self.path = path
        self.conn: Optional[aiosqlite.Connection] = None

    @classmethod
    async def connect(
        cls, path: str, refresh_interval_sec: int = PERFORMANCE_REFRESH_INTERVAL_SEC
    ) -> "SqliteStore":
        db = cls(path, refresh_interval_sec)
        db.conn = await aiosqlite.connect(path)
        db.conn.row_factory = aiosqlite.Row
        await db.conn.execute("PRAGMA journal_mode=WAL")
        await db.conn.execute("PRAGMA synchronous=NORMAL")
        await db.conn.execute("PRAGMA busy_timeout=5000")
        return db

    async def init(self) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tokens (
                token_address TEXT PRIMARY KEY,
                chain TEXT,
                ticker TEXT,
                first_seen_at TEXT,
                scan_discord_id TEXT,
                doc TEXT NOT NULL
            )
            """
        )
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS sent_recommendations (
                token_address TEXT PRIMARY KEY,
                sent_at INTEGER NOT NULL
            )
            """
        )
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS performance_updates (
                token_address TEXT PRIMARY KEY,
                last_update INTEGER NOT NULL
            )
            """
        )
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mention_jobs (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                token_address TEXT NOT NULL UNIQUE
            )
            """
        )
        await self.conn.execute(
            """
            CREATE TABLE IF NOT EXISTS state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )
        await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tokens_chain ON tokens(chain)")
        await self.conn.execute("CREATE INDEX IF NOT EXISTS idx_tokens_ticker ON tokens(ticker)")
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tokens_first_seen ON tokens(first_seen_at)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_tokens_scan_user ON tokens(scan_discord_id)"
        )
        await self.conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_perf_last_update ON performance_updates(last_update)"
        )
        await self.conn.commit()

    async def close(self) -> None:
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def _put_record(self, record: TokenRecord) -> None:
        assert self.conn is not None
        scan_id = record.scan_recommendation.discord_id if record.scan_recommendation else None
        await self.conn.execute(
            """
            INSERT INTO tokens (token_address, chain, ticker, first_seen_at, scan_discord_id, doc)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(token_address) DO UPDATE SET
                chain = excluded.chain,
                ticker = excluded.ticker,
                first_seen_at = excluded.first_seen_at,
                scan_discord_id = excluded.scan_discord_id,
                doc = excluded.doc
            """,
            (
                record.token_address,
                record.chain,
                record.ticker,
                normalize_iso(record.first_seen_at),
                scan_id,
                json.dumps(record.to_dict(), ensure_ascii=False),
            ),
        )

    async def _commit(self) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO state (key, value)
            VALUES ('last_update', ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (utc_now_iso(),),
        )
        await self.conn.commit()

    async def _rollback(self) -> None:
        assert self.conn is not None
        await self.conn.rollback()

    async def _fetch_records(self, sql: str, params: tuple = ()) -> List[TokenRecord]:
        assert self.conn is not None
        cur = await self.conn.execute(sql, params)
        rows = await cur.fetchall()
        await cur.close()
        return [TokenRecord.from_dict(json.loads(row["doc"])) for row in rows]

    async def get_by_address(self, address: str) -> Optional[TokenRecord]:
        records = await self._fetch_records(
            "SELECT doc FROM tokens WHERE token_address = ?", (address,)
        )
        return records[0] if records else None

    async def list_tokens(self, query: Optional[TokenQuery] = None) -> List[TokenRecord]:
        query = query or TokenQuery()
        clauses: List[str] = []
        params: List[Any] = []
        if query.chain:
            clauses.append("chain = ?")
            params.append(query.chain)
        if query.address:
            clauses.append("token_address = ?")
            params.append(query.address)
        if query.ticker:
            clauses.append("ticker = ?")
            params.append(query.ticker)
        start = normalize_iso(query.start_time)
        if start:
            clauses.append("first_seen_at >= ?")
            params.append(start)
        end = normalize_iso(query.end_time)
        if end:
            clauses.append("first_seen_at <= ?")
            params.append(end)

        sql = "SELECT doc FROM tokens"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sort_column = SORT_COLUMNS.get(query.sort_by or "")
        if sort_column:
            sql += f" ORDER BY {sort_column} DESC, rowid ASC"
        else:
            sql += " ORDER BY rowid ASC"
        if query.limit and query.limit > 0:
            sql += " LIMIT ?"
            params.append(query.limit)
        return await self._fetch_records(sql, tuple(params))

    async def get_tokens_by_user(self, discord_id: str) -> List[TokenRecord]:
        return await self._fetch_records(
            "SELECT doc FROM tokens WHERE scan_discord_id = ? ORDER BY rowid ASC",
            (discord_id,),
        )

    async def _push_mention_job(self, address: str) -> bool:
        assert self.conn is not None
        cur = await self.conn.execute(
            "INSERT OR IGNORE INTO mention_jobs (token_address) VALUES (?)",
            (address,),
        )
        inserted = cur.rowcount == 1
        await cur.close()
        return inserted

    async def _pop_mention_job(self) -> Optional[str]:
        assert self.conn is not None
        cur = await self.conn.execute(
            "SELECT seq, token_address FROM mention_jobs ORDER BY seq ASC LIMIT 1"
        )
        row = await cur.fetchone()
        await cur.close()
        if row is None:
            return None
        await self.conn.execute("DELETE FROM mention_jobs WHERE seq = ?", (row["seq"],))
        return row["token_address"]

    async def pending_mention_jobs(self) -> List[str]:
        assert self.conn is not None
        cur = await self.conn.execute("SELECT token_address FROM mention_jobs ORDER BY seq ASC")
        rows = await cur.fetchall()
        await cur.close()
        return [row["token_address"] for row in rows]

    async def last_performance_refresh(self, address: str) -> Optional[int]:
        assert self.conn is not None
        cur = await self.conn.execute(
            "SELECT last_update FROM performance_updates WHERE token_address = ?",
            (address,),
        )
        row = await cur.fetchone()
        await cur.close()
        return row["last_update"] if row else None

    async def _set_refreshed(self, address: str, ts: int) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO performance_updates (token_address, last_update)
            VALUES (?, ?)
            ON CONFLICT(token_address) DO UPDATE SET last_update = excluded.last_update
            """,
            (address, ts),
        )

    async def _set_sent(self, address: str, ts: int) -> None:
        assert self.conn is not None
        await self.conn.execute(
            """
            INSERT INTO sent_recommendations (token_address, sent_at)
            VALUES (?, ?)
            ON CONFLICT(token_address) DO UPDATE SET sent_at = excluded.sent_at
            """,
            (address, ts),
        )

    async def is_sent(self, address: str) -> bool:
        assert self.conn is not None
        cur = await self.conn.execute(
            "SELECT 1 FROM sent_recommendations WHERE token_address = ?",
            (address,),
        )
        row = await cur.fetchone()
        await cur.close()
        return row is not None

    async def count_sent(self) -> int:
        assert self.conn is not None
        cur = await self.conn.execute("SELECT COUNT(*) as count FROM sent_recommendations")
        row = await cur.fetchone()
        await cur.close()
        return row["count"] if row else 0

    async def get_unsent(self) -> List[TokenRecord]:
        return await self._fetch_records(
            """
            SELECT doc FROM tokens
            WHERE token_address NOT IN (SELECT token_address FROM sent_recommendations)
            ORDER BY rowid ASC
            """
        )

    async def get_tokens_needing_performance_update(
        self, now: Optional[int] = None
    ) -> List[TokenRecord]:
        now = now if now is not None else utc_now_ts()
        return await self._fetch_records(
            """
            SELECT t.doc FROM tokens t
            LEFT JOIN performance_updates p ON p.token_address = t.token_address
            WHERE p.last_update IS NULL OR p.last_update < ?
            ORDER BY t.rowid ASC
            """,
            (now - self.refresh_interval_sec,),
        )

    async def get_state(self, key: str) -> Optional[str]:
        assert self.conn is not None
        cur = await self.conn.execute("SELECT value FROM state WHERE key = ?", (key,))
        row = await cur.fetchone()
        await cur.close()
        return row["value"] if row else None

    async def import_json_document(self, path: str) -> int:
        """Seed the tables from a flat-file document, keeping existing rows."""
        assert self.conn is not None
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data: Dict[str, Any] = json.load(fh)
        except FileNotFoundError:
            return 0
        async with self._transaction():
            imported = await self._insert_document(data)
            await self.conn.commit()
        return imported

    async def _insert_document(self, data: Dict[str, Any]) -> int:
        assert self.conn is not None
        tokens = data.get("tokens") or {}
        imported = 0
        for raw in tokens.values():
            if not isinstance(raw, dict) or not raw.get("tokenAddress"):
                continue
            record = TokenRecord.from_dict(raw)
            scan_id = record.scan_recommendation.discord_id if record.scan_recommendation else None
            cur = await self.conn.execute(
                """
                INSERT OR IGNORE INTO tokens
                    (token_address, chain, ticker, first_seen_at, scan_discord_id, doc)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.token_address,
                    record.chain,
                    record.ticker,
                    normalize_iso(record.first_seen_at),
                    scan_id,
                    json.dumps(record.to_dict(), ensure_ascii=False),
                ),
            )
            imported += max(cur.rowcount, 0)
            await cur.close()
        now = utc_now_ts()
        for address, value in (data.get("sentRecommendations") or {}).items():
            await self.conn.execute(
                "INSERT OR IGNORE INTO sent_recommendations (token_address, sent_at) VALUES (?, ?)",
                (address, coerce_ts(value) or now),
            )
        for address, value in (data.get("lastPerformanceUpdates") or {}).items():
            ts = coerce_ts(value)
            if ts is None:
                continue
            await self.conn.execute(
                "INSERT OR IGNORE INTO performance_updates (token_address, last_update) VALUES (?, ?)",
                (address, ts),
            )
        for address in data.get("mentionJobs") or []:
            await self.conn.execute(
                "INSERT OR IGNORE INTO mention_jobs (token_address) VALUES (?)",
                (address,),
            )
        return imported
