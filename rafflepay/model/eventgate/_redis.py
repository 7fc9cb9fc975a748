from __future__ import annotations
from typing import Optional
import redis.asyncio as redis
from redis.exceptions import RedisError

from ...errors import StorageError


# ---- keys
def k_event(evt: str) -> str: return f"webhook-evt:{evt}"


class EventGate:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        try:
            ok = await self.r.set(k_event(evt_id), "1", nx=True, ex=self.ttl)
        except RedisError as exc:
            raise StorageError(
                f"eventgate.mark failed: {exc.__class__.__name__}"
            ) from exc
        return bool(ok)
