# model/eventgate/__init__.py
from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
import redis.asyncio as redis

from ...infra.sql import Gated
from ._postgres import EventGate as PgEventGate
from ._redis import EventGate as RedisEventGate

BACKENDS = ("pg", "redis")


# Factory keeps server.py simple and constructor-agnostic:
def new_gate(backend: str, *,
             db: Optional[AsyncSession] = None,
             r: Optional[redis.Redis] = None,
             ttl_seconds: int = 24 * 3600,
             gated: Optional[Gated] = None):
    if backend == "pg":
        if db is None:
            raise RuntimeError("EventGate(pg) requires db=AsyncSession")
        if gated is None:
            raise RuntimeError("EventGate(pg) requires gated=Gated")
        return PgEventGate(db=db, gated=gated)
    if backend == "redis":
        if r is None:
            raise RuntimeError("EventGate(redis) requires r=redis.Redis")
        return RedisEventGate(r=r, ttl_seconds=ttl_seconds)
    raise RuntimeError(f"unknown event gate backend: {backend!r}")


__all__ = ["PgEventGate", "RedisEventGate", "new_gate", "BACKENDS"]
