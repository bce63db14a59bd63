from typing import Optional
import redis.asyncio as redis

from ... import config
from ...infra.sql import Database

BACKEND = config.GATE_BACKEND  # 'redis' | 'pg'

if BACKEND == "pg":
    from ._postgres import Gate as _Gate
else:
    from ._redis import Gate as _Gate


# Factory keeps server.py backend-agnostic:
def new_gate(*, r: Optional[redis.Redis] = None,
             db: Optional[Database] = None):
    if BACKEND == "pg":
        if db is None:
            raise RuntimeError("Gate(pg) requires db=Database")
        return _Gate(db=db)
    if r is None:
        raise RuntimeError("Gate(redis) requires r=redis.Redis")
    return _Gate(r)


Gate = _Gate
__all__ = ["Gate", "new_gate", "BACKEND"]
