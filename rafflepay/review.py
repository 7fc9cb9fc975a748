"""
Transaction review: approve / reject manual and QR payments, and settle card
payments reported by the gateway webhook.

Approval is two steps against the ledger with entry issuance in between:

  1. pending -> approved  (compare-and-set; loses cleanly to a concurrent
     reviewer with ``Conflict``)
  2. issue all requested entries in one atomic call
  3. approved -> completed

If step 2 fails the transaction goes back to pending with the failure noted
in ``admin_comment`` and in ``metadata["issuance_failure"]``, so it shows up
in the review queue again and can be told apart from a never-reviewed one.
"""

from __future__ import annotations

from typing import List, Optional

import structlog

from .errors import (
    AlreadyReviewed, InvalidMethodKind, IssuanceFailed, MissingReason,
    PaymentError,
)
from .helpers import is_blank, now_ts
from .model.entries import (
    EntryIssuer, SOURCE_CARD_CHECKOUT, SOURCE_MANUAL_PURCHASE,
)
from .model.ledger import LedgerStore
from .model.transaction import (
    MethodKind, PaymentTransaction, Purpose, REVIEWABLE_KINDS, TxStatus,
)

logger = structlog.get_logger(__name__)

REVIEWER_ROLES = frozenset({"admin", "staff"})


def can_review(role: Optional[str]) -> bool:
    return role in REVIEWER_ROLES


def _check_reviewable(tx: PaymentTransaction) -> None:
    if tx.method_kind not in REVIEWABLE_KINDS:
        raise InvalidMethodKind()
    if tx.status is not TxStatus.PENDING:
        raise AlreadyReviewed(tx.status.value)


class TransactionReviewer:
    def __init__(self, *, ledger: LedgerStore, issuer: EntryIssuer) -> None:
        self.ledger = ledger
        self.issuer = issuer

    async def approve(
        self,
        transaction_id: str,
        reviewer_id: str,
        comment: Optional[str] = None,
    ) -> List[str]:
        """Approve a pending manual/QR payment; returns created entry ids."""
        tx = await self.ledger.get(transaction_id)
        _check_reviewable(tx)

        tx = await self.ledger.compare_and_set_status(
            tx.id, TxStatus.PENDING, TxStatus.APPROVED, {
                "reviewed_by": reviewer_id,
                "reviewed_at": now_ts(),
                "admin_comment": comment or None,
            },
        )
        logger.info("transaction approved", transaction_id=tx.id,
                    reviewer_id=reviewer_id)

        # subscription purchases: approval is the whole effect on this path
        if not tx.raffle_id:
            return []

        count = tx.tickets_requested
        try:
            entry_ids = await self.issuer.issue(
                tx.raffle_id, tx.user_id, count, SOURCE_MANUAL_PURCHASE,
                subscription_id=tx.subscription_id,
            )
        except PaymentError as exc:
            revert_error = await self._revert_approval(tx, reviewer_id, exc)
            raise IssuanceFailed(exc, revert_error=revert_error) from exc

        await self.ledger.compare_and_set_status(
            tx.id, TxStatus.APPROVED, TxStatus.COMPLETED,
            {"metadata": tx.with_metadata(entry_ids=entry_ids)},
        )
        return entry_ids

    async def reject(
        self,
        transaction_id: str,
        reviewer_id: str,
        rejection_reason: Optional[str],
        comment: Optional[str] = None,
    ) -> PaymentTransaction:
        if is_blank(rejection_reason):
            raise MissingReason()

        tx = await self.ledger.get(transaction_id)
        _check_reviewable(tx)

        tx = await self.ledger.compare_and_set_status(
            tx.id, TxStatus.PENDING, TxStatus.REJECTED, {
                "reviewed_by": reviewer_id,
                "reviewed_at": now_ts(),
                "rejection_reason": rejection_reason.strip(),
                "admin_comment": comment or None,
            },
        )
        logger.info("transaction rejected", transaction_id=tx.id,
                    reviewer_id=reviewer_id)
        return tx

    async def _revert_approval(
        self, tx: PaymentTransaction, reviewer_id: str, exc: PaymentError
    ) -> Optional[PaymentError]:
        """Returns the error that kept the transaction approved, if any."""
        logger.warning("entry issuance failed, reverting approval",
                       transaction_id=tx.id, raffle_id=tx.raffle_id,
                       error=exc.code, detail=exc.message)
        failure = {
            "reviewer_id": reviewer_id,
            "failed_at": now_ts(),
            "code": exc.code,
            "message": exc.message,
        }
        try:
            await self.ledger.compare_and_set_status(
                tx.id, TxStatus.APPROVED, TxStatus.PENDING, {
                    "reviewed_by": None,
                    "reviewed_at": None,
                    "admin_comment": f"Ticket issuance failed: {exc.message}",
                    "metadata": tx.with_metadata(issuance_failure=failure),
                },
            )
        except PaymentError as revert_exc:
            logger.error("could not revert approval", transaction_id=tx.id,
                         exc_info=True)
            return revert_exc
        return None


class CardPaymentReconciler:
    """Applies gateway webhook outcomes to card-paid transactions."""

    def __init__(self, *, ledger: LedgerStore, issuer: EntryIssuer) -> None:
        self.ledger = ledger
        self.issuer = issuer

    async def _card_tx(self, intent_id: str) -> Optional[PaymentTransaction]:
        tx = await self.ledger.find_by_intent(intent_id)
        if tx is None:
            logger.warning("no transaction for payment intent",
                           intent_id=intent_id)
            return None
        if tx.method_kind is not MethodKind.CARD:
            raise InvalidMethodKind(
                "gateway events only apply to card transactions"
            )
        return tx

    async def payment_succeeded(
        self, intent_id: str, event_id: Optional[str] = None
    ) -> Optional[PaymentTransaction]:
        tx = await self._card_tx(intent_id)
        if tx is None:
            return None
        if tx.status is not TxStatus.PENDING:
            logger.info("transaction already settled", transaction_id=tx.id,
                        status=tx.status.value)
            return tx
        if tx.purpose is Purpose.SUBSCRIPTION:
            # activation (and completion) belongs to the subscription
            # finalizer
            return tx

        entry_ids: List[str] = []
        if tx.raffle_id:
            try:
                entry_ids = await self.issuer.issue(
                    tx.raffle_id, tx.user_id, tx.tickets_requested,
                    SOURCE_CARD_CHECKOUT, subscription_id=tx.subscription_id,
                )
            except PaymentError as exc:
                logger.warning("entry issuance failed for card payment",
                               transaction_id=tx.id, error=exc.code)
                await self.ledger.update_fields(tx.id, TxStatus.PENDING, {
                    "admin_comment": f"Ticket issuance failed: {exc.message}",
                    "metadata": tx.with_metadata(issuance_failure={
                        "failed_at": now_ts(),
                        "code": exc.code,
                        "message": exc.message,
                        "event_id": event_id,
                    }),
                })
                raise IssuanceFailed(exc) from exc

        return await self.ledger.compare_and_set_status(
            tx.id, TxStatus.PENDING, TxStatus.COMPLETED, {
                "metadata": tx.with_metadata(
                    entry_ids=entry_ids, gateway_event_id=event_id,
                    gateway_status="succeeded",
                ),
            },
        )

    async def payment_failed(
        self, intent_id: str, kind: str, event_id: Optional[str] = None
    ) -> Optional[PaymentTransaction]:
        tx = await self._card_tx(intent_id)
        if tx is None:
            return None
        if tx.status is not TxStatus.PENDING:
            return tx
        return await self.ledger.compare_and_set_status(
            tx.id, TxStatus.PENDING, TxStatus.FAILED, {
                "metadata": tx.with_metadata(
                    gateway_event_id=event_id, gateway_status=kind,
                ),
            },
        )
