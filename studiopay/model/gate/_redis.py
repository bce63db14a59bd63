from __future__ import annotations
from typing import Optional, Tuple
import time
import redis.asyncio as redis


# ---- keys
def k_once(key: str) -> str: return f"gate:once:{key}"
def k_hits(key: str, bucket: int) -> str: return f"gate:hits:{key}:{bucket}"


class Gate:
    """Shared TTL gate and fixed-window rate counter on Redis."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def check_and_set(self, key: str, ttl: float) -> bool:
        # True if we set the key now, False if someone holds it
        ok = await self.r.set(k_once(key), "1", nx=True,
                              ex=max(1, int(ttl)))
        return bool(ok)

    async def release(self, key: str) -> None:
        await self.r.delete(k_once(key))

    async def hit(
        self, key: str, limit: int, window: int,
        now: Optional[float] = None,
    ) -> Tuple[bool, int]:
        """Count one request in the current window.

        Returns (allowed, retry_after_seconds).
        """
        now = time.time() if now is None else now
        bucket = int(now // window)
        k = k_hits(key, bucket)
        pipe = self.r.pipeline(transaction=True)
        pipe.incr(k)
        pipe.expire(k, window + 1)
        count, _ = await pipe.execute()
        retry_after = max(1, int((bucket + 1) * window - now))
        return int(count) <= limit, retry_after

    async def purge_expired(self, now: Optional[float] = None) -> int:
        # redis expires keys on its own
        return 0
