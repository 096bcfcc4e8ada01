"""SQLite event store: append-only record of every published event."""

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from eventrail.events.envelope import event_from_wire, event_to_wire
from eventrail.events.models import Event

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS event_store (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT    NOT NULL UNIQUE,
    type            TEXT    NOT NULL,
    source          TEXT    NOT NULL,
    occurred_at     REAL    NOT NULL,
    correlation_id  TEXT,
    envelope        TEXT    NOT NULL,
    stored_at       REAL    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_es_type_time ON event_store(type, occurred_at);
CREATE INDEX IF NOT EXISTS idx_es_time ON event_store(occurred_at);
CREATE INDEX IF NOT EXISTS idx_es_correlation ON event_store(correlation_id);

CREATE TABLE IF NOT EXISTS event_deliveries (
    event_id      TEXT NOT NULL,
    transport     TEXT NOT NULL,
    delivered_at  REAL NOT NULL,
    PRIMARY KEY (event_id, transport)
);
"""


def _epoch(value: datetime) -> float:
    """Naive datetimes are taken as UTC, matching how envelopes are built."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


@dataclass(frozen=True)
class EventQuery:
    """Store query filters. All optional; bounds are inclusive."""

    event_type: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None


class EventStore:
    """SQLite-backed event store. One connection per instance.

    store() is idempotent by event id so a retried publish never duplicates an event.
    """

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = db_path
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None

    async def _ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            if str(self._db_path) != ":memory:":
                Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(str(self._db_path))
            await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute(f"PRAGMA busy_timeout={self._busy_timeout}")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
            logger.debug("event store: schema ensured at %s", self._db_path)
        return self._conn

    async def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def store(self, event: Event) -> bool:
        """Append event. Returns False if an event with this id was already stored."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            """
            INSERT INTO event_store (id, type, source, occurred_at, correlation_id, envelope, stored_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (
                event.id,
                event.type,
                event.source,
                event.timestamp.timestamp(),
                event.metadata.correlation_id,
                json.dumps(event_to_wire(event), ensure_ascii=False),
                time.time(),
            ),
        )
        await conn.commit()
        inserted = (cursor.rowcount or 0) > 0
        if not inserted:
            logger.debug("event store: %s already stored, skipping", event.id)
        return inserted

    async def get(self, event_id: str) -> Event | None:
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "SELECT envelope FROM event_store WHERE id = ?", (event_id,)
        )
        row = await cursor.fetchone()
        return event_from_wire(json.loads(row[0])) if row else None

    async def query(self, filters: EventQuery | None = None) -> list[Event]:
        """Return matching events ordered by timestamp ascending (insertion order on ties)."""
        filters = filters or EventQuery()
        clauses: list[str] = []
        params: list[object] = []
        if filters.event_type is not None:
            clauses.append("type = ?")
            params.append(filters.event_type)
        if filters.start_time is not None:
            clauses.append("occurred_at >= ?")
            params.append(_epoch(filters.start_time))
        if filters.end_time is not None:
            clauses.append("occurred_at <= ?")
            params.append(_epoch(filters.end_time))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        conn = await self._ensure_conn()
        cursor = await conn.execute(
            f"SELECT envelope FROM event_store {where} ORDER BY occurred_at, seq",
            params,
        )
        rows = await cursor.fetchall()
        return [event_from_wire(json.loads(row[0])) for row in rows]

    async def count(self) -> int:
        conn = await self._ensure_conn()
        cursor = await conn.execute("SELECT COUNT(*) FROM event_store")
        row = await cursor.fetchone()
        return row[0] if row else 0

    async def delivered_transports(self, event_id: str) -> set[str]:
        """Transports that already accepted this event (used to skip them on a retried publish)."""
        conn = await self._ensure_conn()
        cursor = await conn.execute(
            "SELECT transport FROM event_deliveries WHERE event_id = ?", (event_id,)
        )
        rows = await cursor.fetchall()
        return {row[0] for row in rows}

    async def mark_delivered(self, event_id: str, transport: str) -> None:
        conn = await self._ensure_conn()
        await conn.execute(
            """
            INSERT INTO event_deliveries (event_id, transport, delivered_at)
            VALUES (?, ?, ?)
            ON CONFLICT(event_id, transport) DO NOTHING
            """,
            (event_id, transport, time.time()),
        )
        await conn.commit()
