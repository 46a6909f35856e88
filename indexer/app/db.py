import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg

from .models import CounterEvent

logger = logging.getLogger("store")

DDL = """
CREATE TABLE IF NOT EXISTS counter_events (
  id BIGSERIAL PRIMARY KEY,
  signature TEXT NOT NULL UNIQUE,
  block_time BIGINT NOT NULL,
  slot BIGINT NOT NULL,
  event_type TEXT NOT NULL, -- Initialized | Incremented | Decremented
  authority TEXT NOT NULL,
  old_count NUMERIC(20, 0),
  new_count NUMERIC(20, 0) NOT NULL,
  processed_at TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS counter_events_authority_time
  ON counter_events (authority, block_time DESC);

CREATE INDEX IF NOT EXISTS counter_events_time
  ON counter_events (block_time DESC);

CREATE TABLE IF NOT EXISTS event_audit (
  id BIGSERIAL PRIMARY KEY,
  signature TEXT NOT NULL,
  received_at TIMESTAMPTZ NOT NULL DEFAULT now(),
  status TEXT NOT NULL, -- processed | duplicate | unknown_instruction | state_missing | decode_failed | failed
  note TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS event_audit_skip_once
  ON event_audit (signature, status)
  WHERE status NOT IN ('processed', 'duplicate');

CREATE TABLE IF NOT EXISTS counters (
  id SMALLINT PRIMARY KEY DEFAULT 1,
  received BIGINT NOT NULL DEFAULT 0,
  unique_processed BIGINT NOT NULL DEFAULT 0,
  duplicate_dropped BIGINT NOT NULL DEFAULT 0,
  skipped BIGINT NOT NULL DEFAULT 0
);

INSERT INTO counters (id) VALUES (1)
ON CONFLICT (id) DO NOTHING;
"""

INSERT_EVENT = """
INSERT INTO counter_events (signature, block_time, slot, event_type, authority, old_count, new_count)
VALUES ($1, $2, $3, $4, $5, $6, $7)
ON CONFLICT (signature) DO NOTHING
RETURNING id;
"""

AUDIT = "INSERT INTO event_audit (signature, status, note) VALUES ($1, $2, $3);"

AUDIT_SKIP = """
INSERT INTO event_audit (signature, status, note)
VALUES ($1, $2, $3)
ON CONFLICT (signature, status) WHERE status NOT IN ('processed', 'duplicate') DO NOTHING
RETURNING id;
"""

INC_RECEIVED = "UPDATE counters SET received = received + $1 WHERE id = 1;"
INC_UNIQUE = "UPDATE counters SET unique_processed = unique_processed + $1 WHERE id = 1;"
INC_DUP = "UPDATE counters SET duplicate_dropped = duplicate_dropped + $1 WHERE id = 1;"
INC_SKIPPED = "UPDATE counters SET skipped = skipped + $1 WHERE id = 1;"

EVENT_COLUMNS = "signature, block_time, slot, event_type, authority, old_count, new_count, processed_at"

SELECT_RECENT = f"""
SELECT {EVENT_COLUMNS}
FROM counter_events
ORDER BY block_time DESC, slot DESC, id DESC
LIMIT $1;
"""

SELECT_BY_AUTHORITY = f"""
SELECT {EVENT_COLUMNS}
FROM counter_events
WHERE authority = $1
ORDER BY block_time DESC, slot DESC, id DESC
LIMIT $2;
"""

SELECT_LATEST = """
SELECT new_count
FROM counter_events
WHERE authority = $1
ORDER BY block_time DESC, slot DESC, id DESC
LIMIT 1;
"""

SELECT_EVENT_STATS = """
SELECT
  count(*) AS total_events,
  count(*) FILTER (WHERE event_type = 'Initialized') AS initialized,
  count(*) FILTER (WHERE event_type = 'Incremented') AS incremented,
  count(*) FILTER (WHERE event_type = 'Decremented') AS decremented,
  count(DISTINCT authority) AS unique_authorities,
  max(block_time) AS last_event_time
FROM counter_events;
"""

SELECT_COUNTERS = "SELECT received, unique_processed, duplicate_dropped, skipped FROM counters WHERE id = 1;"


def _num(v: Optional[int]) -> Optional[Decimal]:
    return None if v is None else Decimal(v)


def _row_to_dict(row: asyncpg.Record) -> Dict[str, Any]:
    d = dict(row)
    d["new_count"] = int(d["new_count"])
    if d["old_count"] is not None:
        d["old_count"] = int(d["old_count"])
    return d


class EventStore:
    """Append-only counter event log in PostgreSQL, deduplicated on signature."""

    def __init__(self, dsn: str, command_timeout: float = 5.0):
        self._dsn = dsn
        self._command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        self.pool = await asyncpg.create_pool(
            dsn=self._dsn, min_size=1, max_size=10, command_timeout=self._command_timeout
        )

    async def close(self) -> None:
        if self.pool:
            await self.pool.close()

    async def init_schema(self) -> None:
        assert self.pool
        async with self.pool.acquire() as conn:
            await conn.execute(DDL)

    async def append(self, event: CounterEvent) -> str:
        """
        Return: 'processed' | 'duplicate'

        A signature that is already stored is not an error; any other
        database failure propagates.
        """
        assert self.pool
        async with self.pool.acquire() as conn:
            async with conn.transaction(isolation="read_committed"):
                await conn.execute(INC_RECEIVED, 1)
                row = await conn.fetchrow(
                    INSERT_EVENT,
                    event.signature,
                    event.block_time,
                    event.slot,
                    event.event_type.value,
                    event.authority,
                    _num(event.old_count),
                    _num(event.new_count),
                )
                if row is not None:
                    await conn.execute(INC_UNIQUE, 1)
                    await conn.execute(AUDIT, event.signature, "processed", event.event_type.value)
                    return "processed"

                await conn.execute(INC_DUP, 1)
                await conn.execute(AUDIT, event.signature, "duplicate", "conflict on unique signature")
        logger.info("signature=%s already processed", event.signature)
        return "duplicate"

    async def record_skip(self, signature: str, status: str, note: Optional[str] = None) -> bool:
        """Count a skipped instruction once per (signature, status); redeliveries are ignored."""
        assert self.pool
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(AUDIT_SKIP, signature, status, note)
                if row is None:
                    return False
                await conn.execute(INC_SKIPPED, 1)
                return True

    async def query_recent(self, limit: int) -> List[Dict[str, Any]]:
        assert self.pool
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(SELECT_RECENT, limit)
        return [_row_to_dict(r) for r in rows]

    async def query_by_authority(self, authority: str, limit: int) -> List[Dict[str, Any]]:
        assert self.pool
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(SELECT_BY_AUTHORITY, authority, limit)
        return [_row_to_dict(r) for r in rows]

    async def latest_state_for(self, authority: str) -> Optional[int]:
        assert self.pool
        async with self.pool.acquire() as conn:
            value = await conn.fetchval(SELECT_LATEST, authority)
        return None if value is None else int(value)

    async def stats(self) -> Dict[str, Any]:
        assert self.pool
        async with self.pool.acquire() as conn:
            ev = await conn.fetchrow(SELECT_EVENT_STATS)
            ctr = await conn.fetchrow(SELECT_COUNTERS)
        return {
            "total_events": int(ev["total_events"]),
            "event_types": {
                "initialized": int(ev["initialized"]),
                "incremented": int(ev["incremented"]),
                "decremented": int(ev["decremented"]),
            },
            "unique_authorities": int(ev["unique_authorities"]),
            "last_event_time": ev["last_event_time"],
            "received": int(ctr["received"]),
            "unique_processed": int(ctr["unique_processed"]),
            "duplicate_dropped": int(ctr["duplicate_dropped"]),
            "skipped": int(ctr["skipped"]),
        }
