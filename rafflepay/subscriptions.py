"""
Card-paid subscriptions.

``SubscriptionCheckout.create_intent`` opens a subscription purchase: an
``incomplete`` subscription, a pending card transaction that carries the
client's idempotency key, and a gateway payment intent created with that
same key. Repeating the call with the key hands back the same intent.

``SubscriptionFinalizer.finalize`` runs after the client confirmed the card
payment. It checks with the gateway that the intent really succeeded and
activates the subscription exactly once per idempotency key; the
``subscription_activations`` row is the proof of activation.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .confirm import gateway_failure
from .errors import (
    Conflict, FinalizationFailed, InvalidRequest, NotCompleted, NotFound,
    PaymentError, StorageError, TransientGatewayError,
)
from .gateway import GatewayAdapter, GatewayError
from .helpers import is_blank, new_id, now_ts
from .infra.sql import Gated, storage_errors
from .model.ledger import LedgerStore
from .model.transaction import (
    PaymentTransaction, Purpose, TxStatus, new_transaction,
)

logger = structlog.get_logger(__name__)

PERIOD_SECONDS = {
    "month": 30 * 24 * 3600,
    "year": 365 * 24 * 3600,
}


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    price: Decimal
    currency: str
    interval: str


@dataclass(frozen=True)
class SubscriptionRow:
    id: str
    user_id: str
    plan_id: str
    status: str
    gateway_intent_id: Optional[str]


@dataclass(frozen=True)
class IntentHandle:
    client_secret: str
    subscription_ref: str
    payment_intent_id: str
    transaction_id: str


class SubscriptionStore:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def _first(self, sql: str, params: Dict[str, Any], op: str):
        async with storage_errors(op):
            async with self.gated():
                async with self.db.begin():
                    return (await self.db.execute(text(sql), params)
                            ).mappings().first()

    async def plan(self, plan_id: str) -> Plan:
        row = await self._first("""
          SELECT id, name, price, currency, interval FROM plans
          WHERE id = :id AND active = :active
        """, {"id": plan_id, "active": True}, "plans.get")
        if row is None:
            raise NotFound("plan not found")
        return Plan(id=row["id"], name=row["name"],
                    price=Decimal(str(row["price"])),
                    currency=row["currency"], interval=row["interval"])

    async def card_method_id(self) -> str:
        row = await self._first("""
          SELECT id FROM payment_methods
          WHERE kind = 'card' AND active = :active
          ORDER BY id LIMIT 1
        """, {"active": True}, "payment_methods.card")
        if row is None:
            raise NotFound("no card payment method is configured")
        return row["id"]

    async def get(self, subscription_id: str) -> SubscriptionRow:
        row = await self._first("""
          SELECT id, user_id, plan_id, status, gateway_intent_id
          FROM subscriptions WHERE id = :id
        """, {"id": subscription_id}, "subscriptions.get")
        if row is None:
            raise NotFound("subscription not found")
        return SubscriptionRow(**dict(row))

    async def has_active(self, user_id: str) -> bool:
        row = await self._first("""
          SELECT id FROM subscriptions
          WHERE user_id = :uid AND status = 'active'
            AND (current_period_end IS NULL OR current_period_end > :now)
          LIMIT 1
        """, {"uid": user_id, "now": now_ts()}, "subscriptions.has_active")
        return row is not None

    def incomplete_row(self, subscription_id: str, user_id: str,
                       plan_id: str):
        """Writer for ``LedgerStore.insert(prelude=...)``."""

        async def _write(db: AsyncSession) -> None:
            await db.execute(text("""
              INSERT INTO subscriptions(
                id, user_id, plan_id, status, created_at
              ) VALUES (:id, :uid, :pid, 'incomplete', :ts)
            """), {"id": subscription_id, "uid": user_id, "pid": plan_id,
                   "ts": now_ts()})

        return _write

    async def cancel_incomplete(self, subscription_id: str) -> None:
        async with storage_errors("subscriptions.cancel"):
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(text("""
                      UPDATE subscriptions SET status = 'canceled'
                      WHERE id = :id AND status = 'incomplete'
                    """), {"id": subscription_id})

    async def set_intent(self, subscription_id: str, intent_id: str) -> None:
        async with storage_errors("subscriptions.set_intent"):
            async with self.gated():
                async with self.db.begin():
                    await self.db.execute(text("""
                      UPDATE subscriptions SET gateway_intent_id = :pi
                      WHERE id = :id
                    """), {"pi": intent_id, "id": subscription_id})

    async def activation(
        self, *, idempotency_key: Optional[str] = None,
        subscription_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if idempotency_key is not None:
            where, value = "idempotency_key = :v", idempotency_key
        else:
            where, value = "subscription_id = :v", subscription_id
        row = await self._first(
            "SELECT idempotency_key, subscription_id, payment_intent_id "
            f"FROM subscription_activations WHERE {where}",
            {"v": value}, "subscriptions.activation",
        )
        return dict(row) if row else None

    async def activate_once(
        self, *, idempotency_key: str, subscription_id: str,
        intent_id: str, period_seconds: int,
    ) -> bool:
        """
        Record the activation and flip the subscription to active in one
        transaction. False if this key or this subscription already has an
        activation record (nothing is written then).
        """
        ts = now_ts()
        async with storage_errors("subscriptions.activate"):
            async with self.gated():
                async with self.db.begin():
                    res = await self.db.execute(text("""
                      INSERT INTO subscription_activations(
                        idempotency_key, subscription_id, payment_intent_id,
                        created_at
                      ) VALUES (:k, :sid, :pi, :ts)
                      ON CONFLICT DO NOTHING
                    """), {"k": idempotency_key, "sid": subscription_id,
                           "pi": intent_id, "ts": ts})
                    if res.rowcount != 1:
                        return False
                    await self.db.execute(text("""
                      UPDATE subscriptions
                      SET status = 'active', gateway_intent_id = :pi,
                          current_period_start = :start,
                          current_period_end = :end, activated_at = :start
                      WHERE id = :sid
                    """), {"pi": intent_id, "start": ts,
                           "end": ts + period_seconds, "sid": subscription_id})
        return True


STILL_CREATING = (
    "a subscription request with this key is still being created, "
    "try again in a few seconds"
)


class SubscriptionCheckout:
    """
    A transient gateway error while opening the intent leaves the pending
    transaction in place with ``metadata["intent_error"]``; calling again
    with the same key retries the gateway with that key. A terminal error
    fails the transaction and cancels the incomplete subscription, and the
    key is spent.
    """

    def __init__(self, *, store: SubscriptionStore, ledger: LedgerStore,
                 gateway: GatewayAdapter) -> None:
        self.store = store
        self.ledger = ledger
        self.gateway = gateway

    async def create_intent(
        self, user_id: str, plan_ref: str, idempotency_key: str
    ) -> IntentHandle:
        if is_blank(idempotency_key):
            raise InvalidRequest("idempotencyKey is required")
        if is_blank(plan_ref):
            raise InvalidRequest("planRef is required")

        tracked = await self.ledger.find_by_idempotency_key(idempotency_key)
        if tracked is not None:
            return await self._resume(tracked, user_id)

        plan = await self.store.plan(plan_ref)
        if await self.store.has_active(user_id):
            raise Conflict("user already has an active subscription")
        method_id = await self.store.card_method_id()

        sub_id = new_id()
        tx = new_transaction(
            user_id=user_id,
            payment_method_id=method_id,
            purpose=Purpose.SUBSCRIPTION,
            amount=plan.price,
            currency=plan.currency,
            subscription_id=sub_id,
            idempotency_key=idempotency_key,
            metadata={
                "plan_id": plan.id,
                "plan_interval": plan.interval,
                "plan_price": str(plan.price),
            },
        )
        try:
            tx = await self.ledger.insert(
                tx, prelude=self.store.incomplete_row(sub_id, user_id, plan.id)
            )
        except StorageError as exc:
            # unique idempotency_key: a concurrent request got there first
            if await self.ledger.find_by_idempotency_key(idempotency_key):
                raise Conflict(STILL_CREATING) from exc
            raise

        return await self._open_intent(tx)

    async def _resume(
        self, tracked: PaymentTransaction, user_id: str
    ) -> IntentHandle:
        if tracked.user_id != user_id:
            raise Conflict("idempotency key belongs to another request")
        if tracked.gateway_intent_id:
            intent = await self._gateway(
                self.gateway.retrieve_intent(tracked.gateway_intent_id)
            )
            logger.info("payment intent reused", transaction_id=tracked.id,
                        intent_id=intent["id"])
            return IntentHandle(
                client_secret=intent["client_secret"],
                subscription_ref=tracked.subscription_id,
                payment_intent_id=intent["id"],
                transaction_id=tracked.id,
            )
        if tracked.status is TxStatus.FAILED:
            raise Conflict(
                "the payment request for this key failed; start again with "
                "a new idempotency key"
            )
        if tracked.status is TxStatus.PENDING and \
                "intent_error" in tracked.metadata:
            logger.info("retrying payment intent creation",
                        transaction_id=tracked.id)
            return await self._open_intent(tracked)
        raise Conflict(STILL_CREATING)

    async def _open_intent(self, tx: PaymentTransaction) -> IntentHandle:
        try:
            intent = await self.gateway.create_intent(
                tx.amount, tx.currency,
                idempotency_key=tx.idempotency_key,
                metadata={"transaction_id": tx.id,
                          "subscription_id": tx.subscription_id,
                          "plan_id": tx.metadata.get("plan_id", "")},
            )
        except GatewayError as exc:
            failure = gateway_failure(exc)
            note = f"Gateway error: {exc.message}"
            transient = isinstance(failure, TransientGatewayError)
            if transient:
                await self.ledger.update_fields(tx.id, TxStatus.PENDING, {
                    "admin_comment": note,
                    "metadata": tx.with_metadata(intent_error={
                        "kind": exc.kind,
                        "code": exc.code,
                        "message": exc.message,
                        "failed_at": now_ts(),
                    }),
                })
            else:
                await self.ledger.compare_and_set_status(
                    tx.id, TxStatus.PENDING, TxStatus.FAILED,
                    {"admin_comment": note},
                )
                await self.store.cancel_incomplete(tx.subscription_id)
            logger.warning("payment intent creation failed",
                           transaction_id=tx.id, kind=exc.kind,
                           code=exc.code, transient=transient)
            raise failure from exc

        await self.ledger.update_fields(tx.id, TxStatus.PENDING, {
            "gateway_intent_id": intent["id"],
            "admin_comment": None,
        })
        await self.store.set_intent(tx.subscription_id, intent["id"])
        logger.info("payment intent created", transaction_id=tx.id,
                    subscription_id=tx.subscription_id,
                    intent_id=intent["id"])
        return IntentHandle(
            client_secret=intent["client_secret"],
            subscription_ref=tx.subscription_id,
            payment_intent_id=intent["id"],
            transaction_id=tx.id,
        )

    async def _gateway(self, call):
        try:
            return await call
        except GatewayError as exc:
            raise gateway_failure(exc) from exc


class SubscriptionFinalizer:
    """
    No internal retries: a failure surfaces as ``FinalizationFailed`` and the
    client may call again with the same key. A subscription that does not
    belong to ``user_id`` is reported as ``NotFound``.
    """

    def __init__(self, *, store: SubscriptionStore, ledger: LedgerStore,
                 gateway: GatewayAdapter) -> None:
        self.store = store
        self.ledger = ledger
        self.gateway = gateway

    async def finalize(
        self,
        subscription_ref: str,
        payment_intent_id: Optional[str],
        plan_ref: str,
        idempotency_key: str,
        user_id: Optional[str] = None,
    ) -> str:
        try:
            return await self._finalize(subscription_ref, payment_intent_id,
                                        plan_ref, idempotency_key, user_id)
        except (FinalizationFailed, NotFound):
            raise
        except PaymentError as exc:
            logger.warning("subscription finalization failed",
                           subscription_id=subscription_ref, error=exc.code,
                           detail=exc.message)
            raise FinalizationFailed(exc.message) from exc
        except GatewayError as exc:
            logger.warning("subscription finalization failed",
                           subscription_id=subscription_ref,
                           error=exc.kind, detail=exc.message)
            raise FinalizationFailed(exc.message) from exc

    async def _finalize(
        self,
        subscription_ref: str,
        payment_intent_id: Optional[str],
        plan_ref: str,
        idempotency_key: str,
        user_id: Optional[str],
    ) -> str:
        if is_blank(idempotency_key):
            raise InvalidRequest("idempotencyKey is required")

        sub = await self.store.get(subscription_ref)
        if user_id is not None and sub.user_id != user_id:
            logger.warning("subscription finalize by non-owner",
                           subscription_id=sub.id, user_id=user_id)
            raise NotFound("subscription not found")

        done = await self.store.activation(idempotency_key=idempotency_key)
        if done is not None:
            return self._replayed(done, subscription_ref)

        if plan_ref and plan_ref != sub.plan_id:
            raise FinalizationFailed("plan does not match the subscription")
        intent_id = sub.gateway_intent_id
        if not intent_id:
            raise FinalizationFailed("subscription has no payment intent")
        if payment_intent_id and payment_intent_id != intent_id:
            raise FinalizationFailed(
                "payment intent does not belong to this subscription"
            )

        intent = await self.gateway.retrieve_intent(intent_id)
        if intent["status"] != "succeeded":
            raise NotCompleted(intent["status"])

        plan = await self.store.plan(sub.plan_id)
        activated = await self.store.activate_once(
            idempotency_key=idempotency_key,
            subscription_id=sub.id,
            intent_id=intent_id,
            period_seconds=PERIOD_SECONDS.get(plan.interval,
                                              PERIOD_SECONDS["month"]),
        )
        if not activated:
            done = (
                await self.store.activation(idempotency_key=idempotency_key)
                or await self.store.activation(subscription_id=sub.id)
            )
            if done is None:
                raise FinalizationFailed("activation record disappeared")
            return self._replayed(done, subscription_ref)

        logger.info("subscription activated", subscription_id=sub.id,
                    intent_id=intent_id)
        await self._complete_transaction(intent_id, sub.id)
        return sub.id

    def _replayed(self, done: Dict[str, Any], subscription_ref: str) -> str:
        if done["subscription_id"] != subscription_ref:
            raise FinalizationFailed(
                "idempotency key was already used for another subscription"
            )
        logger.info("subscription already activated",
                    subscription_id=subscription_ref)
        return done["subscription_id"]

    async def _complete_transaction(self, intent_id: str, sub_id: str) -> None:
        tx = await self.ledger.find_by_intent(intent_id)
        if tx is None or tx.status is not TxStatus.PENDING \
                or tx.subscription_id != sub_id:
            return
        try:
            await self.ledger.compare_and_set_status(
                tx.id, TxStatus.PENDING, TxStatus.COMPLETED, {
                    "metadata": tx.with_metadata(
                        gateway_status="succeeded",
                        activated_subscription_id=sub_id,
                    ),
                },
            )
        except Conflict:
            logger.info("transaction settled concurrently",
                        transaction_id=tx.id)
