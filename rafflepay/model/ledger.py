from __future__ import annotations
import json
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import Conflict, NotFound
from ..helpers import now_ts
from ..infra.sql import Gated, storage_errors
from .transaction import PaymentTransaction, TxStatus, can_transition

logger = structlog.get_logger(__name__)


SQL_SELECT_TX = """
  SELECT t.id, t.user_id, t.payment_method_id, t.purpose, t.amount,
         t.currency, t.raffle_id, t.subscription_id, t.gateway_intent_id,
         t.receipt_reference, t.idempotency_key, t.status, t.reviewed_by,
         t.reviewed_at, t.admin_comment, t.rejection_reason, t.metadata,
         t.created_at, t.updated_at, m.kind AS method_kind
  FROM payment_transactions AS t
  LEFT JOIN payment_methods AS m ON m.id = t.payment_method_id
"""

# columns a guarded update may touch besides status
_UPDATABLE = frozenset({
    "reviewed_by", "reviewed_at", "admin_comment", "rejection_reason",
    "metadata", "gateway_intent_id", "subscription_id",
})


def _tx_from_row(row: Mapping[str, Any]) -> PaymentTransaction:
    return PaymentTransaction.from_row(row, json.loads(row["metadata"] or "{}"))


class LedgerStore:
    """
    Durable access to payment_transactions.

    Status changes only go through ``compare_and_set_status``: the UPDATE is
    conditioned on the status the caller last saw, so of several concurrent
    writers at most one moves a row out of a given state.
    """

    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def insert(
        self,
        tx: PaymentTransaction,
        *,
        prelude: Optional[Callable[[AsyncSession], Awaitable[None]]] = None,
    ) -> PaymentTransaction:
        """
        ``prelude`` runs on the same session inside the insert's database
        transaction, for rows that must commit or roll back with this one.
        """
        if tx.status is not TxStatus.PENDING:
            raise ValueError("new transactions start in 'pending'")
        async with storage_errors("ledger.insert"):
            async with self.gated():
                async with self.db.begin():
                    if prelude is not None:
                        await prelude(self.db)
                    kind = (await self.db.execute(text("""
                      SELECT kind FROM payment_methods
                      WHERE id = :id AND active = :active
                    """), {"id": tx.payment_method_id, "active": True})
                    ).scalar_one_or_none()
                    if kind is None:
                        raise NotFound("payment method not found")
                    await self.db.execute(text("""
                      INSERT INTO payment_transactions(
                        id, user_id, payment_method_id, purpose, amount,
                        currency, raffle_id, subscription_id,
                        gateway_intent_id, receipt_reference, idempotency_key,
                        status, metadata, created_at, updated_at
                      ) VALUES (
                        :id, :user_id, :payment_method_id, :purpose, :amount,
                        :currency, :raffle_id, :subscription_id,
                        :gateway_intent_id, :receipt_reference,
                        :idempotency_key, :status, :metadata, :created_at,
                        :updated_at
                      )
                    """), {
                        "id": tx.id,
                        "user_id": tx.user_id,
                        "payment_method_id": tx.payment_method_id,
                        "purpose": tx.purpose.value,
                        "amount": str(tx.amount),
                        "currency": tx.currency,
                        "raffle_id": tx.raffle_id,
                        "subscription_id": tx.subscription_id,
                        "gateway_intent_id": tx.gateway_intent_id,
                        "receipt_reference": tx.receipt_reference,
                        "idempotency_key": tx.idempotency_key,
                        "status": tx.status.value,
                        "metadata": json.dumps(tx.metadata),
                        "created_at": tx.created_at,
                        "updated_at": tx.updated_at,
                    })
        logger.info("transaction created", transaction_id=tx.id,
                    purpose=tx.purpose.value, method_kind=kind)
        return await self.get(tx.id)

    async def get(self, transaction_id: str) -> PaymentTransaction:
        tx = await self._one(
            SQL_SELECT_TX + " WHERE t.id = :v", transaction_id, "ledger.get"
        )
        if tx is None:
            raise NotFound("transaction not found")
        return tx

    async def find_by_intent(
        self, intent_id: str
    ) -> Optional[PaymentTransaction]:
        return await self._one(
            SQL_SELECT_TX + " WHERE t.gateway_intent_id = :v", intent_id,
            "ledger.find_by_intent",
        )

    async def find_by_idempotency_key(
        self, key: str
    ) -> Optional[PaymentTransaction]:
        return await self._one(
            SQL_SELECT_TX + " WHERE t.idempotency_key = :v", key,
            "ledger.find_by_idempotency_key",
        )

    async def list_pending_for_review(
        self, limit: int = 100
    ) -> List[PaymentTransaction]:
        """Pending manual/QR transactions, oldest first."""
        async with storage_errors("ledger.list_pending"):
            async with self.gated():
                async with self.db.begin():
                    rows = (await self.db.execute(text(SQL_SELECT_TX + """
                      WHERE t.status = 'pending'
                        AND m.kind IN ('manual_transfer', 'qr_code')
                      ORDER BY t.created_at ASC
                      LIMIT :lim
                    """), {"lim": int(limit)})).mappings().all()
        return [_tx_from_row(r) for r in rows]

    async def compare_and_set_status(
        self,
        transaction_id: str,
        expected: TxStatus,
        new: TxStatus,
        fields: Optional[Mapping[str, Any]] = None,
    ) -> PaymentTransaction:
        """
        Move ``transaction_id`` from ``expected`` to ``new`` and write
        ``fields`` in the same statement. Raises ``Conflict`` if the stored
        status is no longer ``expected``.
        """
        expected, new = TxStatus(expected), TxStatus(new)
        if not can_transition(expected, new):
            raise ValueError(
                f"illegal transition {expected.value} -> {new.value}"
            )
        values = dict(fields or {})
        values["status"] = new.value
        await self._guarded_update(transaction_id, expected, values)
        logger.info("transaction status changed", transaction_id=transaction_id,
                    old=expected.value, new=new.value)
        return await self.get(transaction_id)

    async def update_fields(
        self,
        transaction_id: str,
        expected: TxStatus,
        fields: Mapping[str, Any],
    ) -> PaymentTransaction:
        """Write ``fields`` only while the status is still ``expected``."""
        await self._guarded_update(transaction_id, TxStatus(expected),
                                   dict(fields))
        return await self.get(transaction_id)

    # ---
    # internals
    # ---
    async def _one(
        self, sql: str, value: str, op: str
    ) -> Optional[PaymentTransaction]:
        async with storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    row = (await self.db.execute(
                        text(sql), {"v": value}
                    )).mappings().first()
        return _tx_from_row(row) if row else None

    async def _guarded_update(
        self, transaction_id: str, expected: TxStatus, values: Dict[str, Any]
    ) -> None:
        unknown = set(values) - _UPDATABLE - {"status"}
        if unknown:
            raise ValueError(f"cannot update columns: {sorted(unknown)}")

        params: Dict[str, Any] = {
            "id": transaction_id,
            "expected": expected.value,
            "updated_at": now_ts(),
        }
        sets = ["updated_at = :updated_at"]
        for name, value in values.items():
            if name == "metadata":
                value = json.dumps(value or {})
            sets.append(f"{name} = :{name}")
            params[name] = value

        current = None
        async with storage_errors("ledger.update"):
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text(
                        "UPDATE payment_transactions SET "
                        + ", ".join(sets)
                        + " WHERE id = :id AND status = :expected"
                    ), params)
                    if res.rowcount == 1:
                        return
                    current = (await self.db.execute(text(
                        "SELECT status FROM payment_transactions WHERE id = :id"
                    ), {"id": transaction_id})).scalar_one_or_none()

        if current is None:
            raise NotFound("transaction not found")
        logger.info("guarded update lost", transaction_id=transaction_id,
                    expected=expected.value, current=current)
        raise Conflict(
            "another reviewer already processed this transaction "
            f"(status: {current})"
        )
