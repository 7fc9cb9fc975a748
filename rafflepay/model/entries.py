# model/entries.py
"""
Raffle entries ("tickets").

Issuing N entries is one database transaction:
  1. bump the raffle's ticket counter by N (this also takes the raffle row's
     write lock, so concurrent issuers for the same raffle queue up here)
  2. check the raffle accepts entries and the user's cap
  3. insert N entries numbered from the reserved range

Any failure rolls the whole unit back, counter included.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CapExceeded, InvalidRequest, NotFound, RaffleClosed
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import Gated, storage_errors

logger = structlog.get_logger(__name__)

ACCEPTING_STATUSES = frozenset({"active"})

SOURCE_MANUAL_PURCHASE = "manual_purchase"
SOURCE_CARD_CHECKOUT = "card_checkout"
SOURCE_SUBSCRIPTION_GRANT = "subscription_grant"


@dataclass(frozen=True)
class RaffleInfo:
    id: str
    status: str
    per_user_cap: Optional[int]

    @property
    def accepts_entries(self) -> bool:
        return self.status in ACCEPTING_STATUSES


class RaffleLookup:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get(self, raffle_id: str) -> RaffleInfo:
        async with storage_errors("raffles.get"):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(text("""
                      SELECT id, status, max_entries_per_user
                      FROM raffles WHERE id = :id
                    """), {"id": raffle_id})).mappings().first()
        if row is None:
            raise NotFound("raffle not found")
        return RaffleInfo(
            id=row["id"],
            status=row["status"],
            per_user_cap=row["max_entries_per_user"],
        )


class EntryIssuer:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def issue(
        self,
        raffle_id: str,
        user_id: str,
        count: int,
        source: str,
        subscription_id: Optional[str] = None,
    ) -> List[str]:
        """
        Create ``count`` entries for ``user_id`` in ``raffle_id``, all or
        nothing. Returns the new entry ids in ticket-number order.
        """
        if isinstance(count, bool) or not isinstance(count, int) or count < 1:
            raise InvalidRequest("entry count must be an integer >= 1")

        ts = now_ts()
        entry_ids = [new_id() for _ in range(count)]
        async with storage_errors("entries.issue"):
            async with self.gated():
                async with self.db.begin():
                    bumped = await self.db.execute(text("""
                      UPDATE raffles SET entry_seq = entry_seq + :n
                      WHERE id = :rid
                    """), {"n": count, "rid": raffle_id})
                    if bumped.rowcount != 1:
                        raise NotFound("raffle not found")

                    raffle = (await self.db.execute(text("""
                      SELECT status, max_entries_per_user, entry_seq
                      FROM raffles WHERE id = :rid
                    """), {"rid": raffle_id})).mappings().one()

                    if raffle["status"] not in ACCEPTING_STATUSES:
                        raise RaffleClosed(
                            "raffle is not accepting entries "
                            f"(status: {raffle['status']})"
                        )

                    cap = raffle["max_entries_per_user"]
                    if cap is not None:
                        held = (await self.db.execute(text("""
                          SELECT COUNT(*) FROM raffle_entries
                          WHERE raffle_id = :rid AND user_id = :uid
                        """), {"rid": raffle_id, "uid": user_id})
                        ).scalar_one()
                        if int(held) + count > int(cap):
                            raise CapExceeded(
                                f"user holds {int(held)} of {int(cap)} "
                                f"allowed entries; cannot add {count}"
                            )

                    first = int(raffle["entry_seq"]) - count + 1
                    await self.db.execute(text("""
                      INSERT INTO raffle_entries(
                        id, raffle_id, user_id, ticket_number, source,
                        subscription_id, created_at
                      ) VALUES (
                        :id, :rid, :uid, :num, :source, :sub, :ts
                      )
                    """), [
                        {
                            "id": entry_id,
                            "rid": raffle_id,
                            "uid": user_id,
                            "num": first + offset,
                            "source": source,
                            "sub": subscription_id,
                            "ts": ts,
                        }
                        for offset, entry_id in enumerate(entry_ids)
                    ])

        logger.info("raffle entries issued", raffle_id=raffle_id,
                    user_id=user_id, count=count, source=source,
                    first_ticket=first)
        return entry_ids

    async def list_entries(
        self, raffle_id: str, user_id: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        sql = """
          SELECT id, raffle_id, user_id, ticket_number, source,
                 subscription_id, created_at
          FROM raffle_entries WHERE raffle_id = :rid
        """
        params: Dict[str, Any] = {"rid": raffle_id}
        if user_id is not None:
            sql += " AND user_id = :uid"
            params["uid"] = user_id
        sql += " ORDER BY ticket_number ASC"

        async with storage_errors("entries.list"):
            async with self.gated():
                async with self.db.begin():
                    rows = (await self.db.execute(text(sql), params)
                            ).mappings().all()
        return [
            {
                "id": r["id"],
                "raffle_id": r["raffle_id"],
                "user_id": r["user_id"],
                "ticket_number": int(r["ticket_number"]),
                "source": r["source"],
                "subscription_id": r["subscription_id"],
                "created_at": to_iso(r["created_at"]),
            }
            for r in rows
        ]
