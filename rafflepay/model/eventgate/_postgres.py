from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...helpers import now_ts
from ...infra.sql import Gated, storage_errors


class EventGate:
    """Remembers gateway webhook event ids in the webhook_events table."""

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        """True the first time ``evt_id`` is seen, False on a replay."""
        if not evt_id:
            return True
        async with storage_errors("eventgate.mark"):
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      INSERT INTO webhook_events(key, created_at)
                      VALUES(:k, :ts)
                      ON CONFLICT (key) DO NOTHING
                    """), {"k": evt_id, "ts": now_ts()})
        return res.rowcount == 1
