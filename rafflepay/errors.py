"""
Error taxonomy for the payment core.

Every error carries a stable ``code`` and a message that can be shown to a
reviewer as-is. The API layer maps them to HTTP responses through
``http_status``.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class PaymentError(Exception):
    code = "payment_error"
    http_status = 500
    default_message = "payment processing failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class NotFound(PaymentError):
    code = "not_found"
    http_status = 404
    default_message = "not found"


class Conflict(PaymentError):
    code = "conflict"
    http_status = 409
    default_message = (
        "another reviewer already processed this transaction"
    )


class InvalidMethodKind(PaymentError):
    code = "invalid_method_kind"
    http_status = 400
    default_message = (
        "this transaction is not a manual transfer or QR payment"
    )


class AlreadyReviewed(PaymentError):
    code = "already_reviewed"
    http_status = 409

    def __init__(self, status: str) -> None:
        self.status = status
        super().__init__(
            f"transaction was already processed (status: {status})"
        )


class MissingReason(PaymentError):
    code = "missing_reason"
    http_status = 400
    default_message = "a rejection reason is required"


class CapExceeded(PaymentError):
    code = "cap_exceeded"
    http_status = 409
    default_message = "per-user entry limit for this raffle reached"


class RaffleClosed(PaymentError):
    code = "raffle_closed"
    http_status = 409
    default_message = "raffle is not accepting entries"


class IssuanceFailed(PaymentError):
    code = "issuance_failed"
    http_status = 409

    def __init__(
        self, cause: PaymentError, revert_error: Optional[PaymentError] = None
    ) -> None:
        self.cause = cause
        self.revert_error = revert_error
        message = f"could not create raffle tickets: {cause.message}"
        if revert_error is not None:
            message += (
                "; the transaction is still approved and was not returned "
                f"to the review queue ({revert_error.message})"
            )
        super().__init__(message)

    @property
    def reverted(self) -> bool:
        return self.revert_error is None

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["cause"] = self.cause.code
        if self.revert_error is not None:
            out["revert_error"] = self.revert_error.code
        return out


class _GatewayFailure(PaymentError):
    def __init__(
        self,
        message: Optional[str] = None,
        *,
        kind: str = "",
        gateway_code: str = "",
        attempts: int = 1,
    ) -> None:
        self.kind = kind
        self.gateway_code = gateway_code
        self.attempts = attempts
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        out = super().to_dict()
        out["kind"] = self.kind
        out["gateway_code"] = self.gateway_code
        out["attempts"] = self.attempts
        return out


class TransientGatewayError(_GatewayFailure):
    code = "transient_gateway_error"
    http_status = 503
    default_message = (
        "the card gateway is temporarily unavailable, please try again"
    )


class TerminalGatewayError(_GatewayFailure):
    code = "terminal_gateway_error"
    http_status = 402
    default_message = "the card payment was refused"


class NotCompleted(PaymentError):
    code = "not_completed"
    http_status = 402

    def __init__(self, status: Optional[str]) -> None:
        self.status = status
        super().__init__(f"payment not completed (status: {status})")


class FinalizationFailed(PaymentError):
    code = "finalization_failed"
    http_status = 502
    default_message = "could not activate the subscription"


class StorageError(PaymentError):
    code = "io_error"
    http_status = 500
    default_message = "storage failure"


class Forbidden(PaymentError):
    code = "forbidden"
    http_status = 403
    default_message = "not allowed"


class InvalidRequest(PaymentError):
    code = "invalid_request"
    http_status = 400
    default_message = "invalid request"
