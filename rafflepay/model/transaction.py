"""
PaymentTransaction domain record and its state machine.

Status flow::

    pending --review--> approved --entries issued--> completed
       |                   |
       |                   +--issuance failed--> pending (with a note)
       +--review--> rejected
       +--gateway--> completed | failed

``rejected``, ``completed`` and ``failed`` are final.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from ..errors import InvalidRequest
from ..helpers import new_id, now_ts, to_iso


class TxStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


class MethodKind(str, Enum):
    CARD = "card"
    MANUAL_TRANSFER = "manual_transfer"
    QR_CODE = "qr_code"


class Purpose(str, Enum):
    RAFFLE_TICKET = "raffle_ticket"
    SUBSCRIPTION = "subscription"
    OTHER = "other"


REVIEWABLE_KINDS = frozenset({MethodKind.MANUAL_TRANSFER, MethodKind.QR_CODE})
FINAL_STATUSES = frozenset(
    {TxStatus.REJECTED, TxStatus.COMPLETED, TxStatus.FAILED}
)

_TRANSITIONS = {
    TxStatus.PENDING: frozenset({
        TxStatus.APPROVED, TxStatus.REJECTED,
        TxStatus.COMPLETED, TxStatus.FAILED,
    }),
    TxStatus.APPROVED: frozenset({TxStatus.COMPLETED, TxStatus.PENDING}),
}


def can_transition(old: TxStatus, new: TxStatus) -> bool:
    return new in _TRANSITIONS.get(TxStatus(old), frozenset())


def coerce_tickets_requested(raw: Any) -> int:
    """
    ``tickets_requested`` arrives in user-supplied metadata. Anything that is
    not a finite number >= 1 counts as one ticket; fractions round down.
    """
    if raw is None or isinstance(raw, bool):
        return 1
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 1
    if not math.isfinite(value):
        return 1
    return max(1, math.floor(value))


def parse_amount(raw: Any) -> Decimal:
    try:
        amount = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise InvalidRequest(f"invalid amount: {raw!r}")
    if not amount.is_finite() or amount < 0:
        raise InvalidRequest("amount must be a non-negative number")
    return amount


@dataclass
class PaymentTransaction:
    id: str
    user_id: str
    payment_method_id: str
    purpose: Purpose
    amount: Decimal
    currency: str
    status: TxStatus = TxStatus.PENDING
    method_kind: Optional[MethodKind] = None
    raffle_id: Optional[str] = None
    subscription_id: Optional[str] = None
    gateway_intent_id: Optional[str] = None
    receipt_reference: Optional[str] = None
    idempotency_key: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[float] = None
    admin_comment: Optional[str] = None
    rejection_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def tickets_requested(self) -> int:
        return coerce_tickets_requested(self.metadata.get("tickets_requested"))

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def with_metadata(self, **patch: Any) -> Dict[str, Any]:
        merged = dict(self.metadata)
        merged.update(patch)
        return merged

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "payment_method_id": self.payment_method_id,
            "method_kind": self.method_kind.value if self.method_kind else None,
            "purpose": self.purpose.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status.value,
            "raffle_id": self.raffle_id,
            "subscription_id": self.subscription_id,
            "gateway_intent_id": self.gateway_intent_id,
            "receipt_reference": self.receipt_reference,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": to_iso(self.reviewed_at),
            "admin_comment": self.admin_comment,
            "rejection_reason": self.rejection_reason,
            "metadata": self.metadata,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any], metadata: Dict[str, Any]):
        kind = row.get("method_kind")
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            payment_method_id=row["payment_method_id"],
            purpose=Purpose(row["purpose"]),
            amount=Decimal(str(row["amount"])),
            currency=row["currency"],
            status=TxStatus(row["status"]),
            method_kind=MethodKind(kind) if kind else None,
            raffle_id=row["raffle_id"],
            subscription_id=row["subscription_id"],
            gateway_intent_id=row["gateway_intent_id"],
            receipt_reference=row["receipt_reference"],
            idempotency_key=row["idempotency_key"],
            reviewed_by=row["reviewed_by"],
            reviewed_at=row["reviewed_at"],
            admin_comment=row["admin_comment"],
            rejection_reason=row["rejection_reason"],
            metadata=metadata,
            created_at=float(row["created_at"]),
            updated_at=float(row["updated_at"]),
        )


def new_transaction(
    *,
    user_id: str,
    payment_method_id: str,
    purpose: Purpose | str,
    amount: Any,
    currency: str,
    raffle_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    gateway_intent_id: Optional[str] = None,
    receipt_reference: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> PaymentTransaction:
    """
    Build a pending transaction, validating what the purchase flow hands us.

    This is the one place where user metadata is accepted, so
    ``tickets_requested`` is normalised here and stored as a plain int.
    """
    try:
        purpose = Purpose(purpose)
    except ValueError:
        raise InvalidRequest(f"unknown transaction purpose: {purpose!r}")
    if not user_id:
        raise InvalidRequest("user_id is required")
    if not payment_method_id:
        raise InvalidRequest("payment_method_id is required")
    if purpose is Purpose.RAFFLE_TICKET and not raffle_id:
        raise InvalidRequest("raffle ticket purchases need a raffle_id")
    if purpose is Purpose.SUBSCRIPTION and not subscription_id:
        raise InvalidRequest("subscription purchases need a subscription_id")
    if purpose is Purpose.SUBSCRIPTION and raffle_id:
        raise InvalidRequest("subscription purchases cannot reference a raffle")

    meta = dict(metadata or {})
    if purpose is Purpose.RAFFLE_TICKET or "tickets_requested" in meta:
        meta["tickets_requested"] = coerce_tickets_requested(
            meta.get("tickets_requested")
        )

    ts = now_ts()
    return PaymentTransaction(
        id=new_id(),
        user_id=user_id,
        payment_method_id=payment_method_id,
        purpose=purpose,
        amount=parse_amount(amount),
        currency=(currency or "USD").upper(),
        raffle_id=raffle_id,
        subscription_id=subscription_id,
        gateway_intent_id=gateway_intent_id,
        receipt_reference=receipt_reference,
        idempotency_key=idempotency_key,
        metadata=meta,
        created_at=ts,
        updated_at=ts,
    )


__all__ = [
    "TxStatus", "MethodKind", "Purpose", "PaymentTransaction",
    "REVIEWABLE_KINDS", "FINAL_STATUSES", "can_transition",
    "coerce_tickets_requested", "parse_amount", "new_transaction",
]
