from __future__ import annotations
import logging
import sqlite3
from datetime import datetime
from typing import AsyncIterator, Iterable, List, Optional

import aiosqlite

from ..core.errors import SubscriptionLost, TransientFetchError, WriteRejected
from ..core.timeutil import ensure_utc, parse_ts
from ..domain.models import ControlSnapshot, ControlUpdate, Reading
from ..drivers.feed import ChangeFeed

logger = logging.getLogger(__name__)


class SQLiteDataSource:
    """SQLite-backed data source.

    Writes made through this object are published to in-process
    subscribers. Rows written by another process (a sensor logger sharing
    the file) are only picked up by fetches, i.e. by the poll loop.
    """

    def __init__(self, path: str, actuator_ids: Iterable[int] = (1, 2)) -> None:
        self._path = path
        self._actuator_ids = tuple(actuator_ids)
        self._feed = ChangeFeed()

    async def init(self) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS readings (
                    ts_utc TEXT PRIMARY KEY,
                    temperature REAL NOT NULL,
                    humidity REAL
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS actuator_state (
                    id INTEGER PRIMARY KEY,
                    state INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS mode (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    automatic INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT
                )
                """
            )
            for actuator_id in self._actuator_ids:
                await db.execute("INSERT OR IGNORE INTO actuator_state(id, state) VALUES (?, 0)", (actuator_id,))
            await db.execute("INSERT OR IGNORE INTO mode(id, automatic) VALUES (1, 1)")
            await db.commit()

    # --- ingest ---

    async def insert_reading(self, r: Reading) -> None:
        async with aiosqlite.connect(self._path) as db:
            await db.execute(
                "INSERT OR REPLACE INTO readings(ts_utc, temperature, humidity) VALUES (?,?,?)",
                (_ts(r.timestamp), float(r.temperature), r.humidity),
            )
            await db.commit()
        self._feed.publish("readings", r)

    # --- DataSource ---

    async def fetch_readings(self, since: Optional[datetime] = None, limit: Optional[int] = None) -> List[Reading]:
        sql = "SELECT ts_utc, temperature, humidity FROM readings"
        params: list = []
        if since is not None:
            sql += " WHERE ts_utc >= ?"
            params.append(_ts(since))
        sql += " ORDER BY ts_utc DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(sql, params)
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise TransientFetchError(f"sqlite readings fetch failed: {e}") from e

        out: list[Reading] = []
        for ts, temp, hum in rows:
            out.append(
                Reading(
                    timestamp=parse_ts(ts),
                    temperature=float(temp),
                    humidity=float(hum) if hum is not None else None,
                )
            )
        return list(reversed(out))

    async def fetch_latest_timestamp(self) -> Optional[datetime]:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("SELECT MAX(ts_utc) FROM readings")
                row = await cur.fetchone()
        except sqlite3.Error as e:
            raise TransientFetchError(f"sqlite latest timestamp failed: {e}") from e
        if row is None or row[0] is None:
            return None
        return parse_ts(row[0])

    async def fetch_control_state(self) -> ControlSnapshot:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute("SELECT id, state FROM actuator_state")
                relay_rows = await cur.fetchall()
                cur = await db.execute("SELECT automatic FROM mode WHERE id = 1")
                mode_row = await cur.fetchone()
        except sqlite3.Error as e:
            raise TransientFetchError(f"sqlite control state fetch failed: {e}") from e
        return ControlSnapshot(
            relays={int(i): bool(s) for i, s in relay_rows},
            automatic=bool(mode_row[0]) if mode_row else None,
        )

    async def subscribe_insert(self, table: str = "readings") -> AsyncIterator[Reading]:
        return self._feed.subscribe(table)

    async def subscribe_update(self, table: str) -> AsyncIterator[ControlUpdate]:
        if table not in ("actuator_state", "mode"):
            raise SubscriptionLost(f"No update feed for table {table!r}")
        return self._feed.subscribe(table)

    async def write_actuator_state(self, actuator_id: int, desired_state: bool) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                cur = await db.execute(
                    "UPDATE actuator_state SET state = ?, updated_at = datetime('now') WHERE id = ?",
                    (1 if desired_state else 0, actuator_id),
                )
                await db.commit()
                updated = cur.rowcount
        except sqlite3.Error as e:
            raise WriteRejected(f"relay {actuator_id}", str(e)) from e
        if updated == 0:
            raise WriteRejected(f"relay {actuator_id}", "no such row")
        self._feed.publish("actuator_state", ControlUpdate("actuator_state", actuator_id, "state", bool(desired_state)))

    async def write_mode(self, automatic: bool) -> None:
        try:
            async with aiosqlite.connect(self._path) as db:
                await db.execute(
                    "UPDATE mode SET automatic = ?, updated_at = datetime('now') WHERE id = 1",
                    (1 if automatic else 0,),
                )
                await db.commit()
        except sqlite3.Error as e:
            raise WriteRejected("mode", str(e)) from e
        self._feed.publish("mode", ControlUpdate("mode", 1, "automatic", bool(automatic)))

    async def close(self) -> None:
        self._feed.drop_all()


def _ts(ts: datetime) -> str:
    # Fixed-width UTC ISO strings sort lexically in time order
    return ensure_utc(ts).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")
