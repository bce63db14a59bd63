from __future__ import annotations
from typing import Optional, Tuple
import time

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncSession

from ...infra.sql import Database


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_GATE_KEYS = r"""
CREATE TABLE IF NOT EXISTS gate_keys (
  key         TEXT PRIMARY KEY,
  expires_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_GATE_HITS = r"""
CREATE TABLE IF NOT EXISTS gate_hits (
  key         TEXT PRIMARY KEY,
  count       INTEGER NOT NULL,
  expires_at  DOUBLE PRECISION NOT NULL
);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_GATE_KEYS))
    await exec_(text(SQL_CREATE_GATE_HITS))


class Gate:
    """Same contract as the Redis gate, on PostgreSQL upserts."""

    def __init__(self, *, db: Database) -> None:
        self.db = db

    async def check_and_set(self, key: str, ttl: float) -> bool:
        now = time.time()
        async with self.db.tx() as s:
            row = (await s.execute(text("""
              INSERT INTO gate_keys(key, expires_at)
              VALUES (:k, :exp)
              ON CONFLICT (key) DO UPDATE SET expires_at = EXCLUDED.expires_at
                WHERE gate_keys.expires_at < :now
              RETURNING key
            """), {"k": key, "exp": now + ttl, "now": now})).first()
        return row is not None

    async def release(self, key: str) -> None:
        async with self.db.tx() as s:
            await s.execute(text("DELETE FROM gate_keys WHERE key = :k"),
                            {"k": key})

    async def hit(
        self, key: str, limit: int, window: int,
        now: Optional[float] = None,
    ) -> Tuple[bool, int]:
        now = time.time() if now is None else now
        bucket = int(now // window)
        async with self.db.tx() as s:
            count = (await s.execute(text("""
              INSERT INTO gate_hits(key, count, expires_at)
              VALUES (:k, 1, :exp)
              ON CONFLICT (key) DO UPDATE SET count = gate_hits.count + 1
              RETURNING count
            """), {
                "k": f"{key}:{bucket}",
                "exp": float((bucket + 1) * window),
            })).scalar_one()
        retry_after = max(1, int((bucket + 1) * window - now))
        return int(count) <= limit, retry_after

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        async with self.db.tx() as s:
            a = await s.execute(
                text("DELETE FROM gate_keys WHERE expires_at < :now"),
                {"now": now})
            b = await s.execute(
                text("DELETE FROM gate_hits WHERE expires_at < :now"),
                {"now": now})
        return (a.rowcount or 0) + (b.rowcount or 0)
