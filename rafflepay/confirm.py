"""
Card-payment confirmation with bounded retry.

``retry`` is the generic part: it runs an operation up to ``max_attempts``
times, sleeping ``backoff(attempt)`` between tries, and only for errors the
classifier calls retryable. ``GatewayConfirmationClient`` plugs the gateway's
error classes into it.

The confirm call is retried with the same client secret; the intent carries
its own idempotency key, so a retry after a lost response cannot charge twice.
Cancelling the calling task (e.g. the client went away) aborts the in-flight
call or the backoff sleep; nothing here writes to the ledger.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import structlog

from .errors import (
    NotCompleted, TerminalGatewayError, TransientGatewayError,
)
from .gateway import ConfirmResult, GatewayAdapter, GatewayError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_KINDS = frozenset({
    "api_connection_error",
    "idempotency_error",
    "rate_limit",
    "internal_error",
})
TRANSIENT_CODES = frozenset({"processing_error"})


def is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, GatewayError):
        return False
    return exc.kind in TRANSIENT_KINDS or exc.code in TRANSIENT_CODES


def linear_backoff(unit: float) -> Callable[[int], float]:
    """attempt 1 -> unit, attempt 2 -> 2*unit, ..."""
    return lambda attempt: attempt * unit


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    is_retryable: Callable[[BaseException], bool],
    max_attempts: int,
    backoff: Callable[[int], float],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= max_attempts:
                raise
            delay = backoff(attempt)
            logger.warning("retrying after transient error", attempt=attempt,
                           max_attempts=max_attempts, delay=delay,
                           error=str(exc))
            await sleep(delay)


def gateway_failure(
    exc: GatewayError, attempts: int = 1
) -> TransientGatewayError | TerminalGatewayError:
    cls = TransientGatewayError if is_transient(exc) else TerminalGatewayError
    return cls(exc.message, kind=exc.kind, gateway_code=exc.code,
               attempts=attempts)


def require_succeeded(result: ConfirmResult) -> ConfirmResult:
    """Only ``succeeded`` counts as paid; every other status is not."""
    status = result.get("status") if result else None
    if status != "succeeded":
        raise NotCompleted(status)
    return result


class GatewayConfirmationClient:
    def __init__(
        self,
        gateway: GatewayAdapter,
        *,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.max_attempts = max_attempts
        self.backoff = linear_backoff(backoff_seconds)
        self.sleep = sleep

    async def confirm(
        self,
        client_secret: str,
        payment_method: str,
        max_attempts: Optional[int] = None,
    ) -> ConfirmResult:
        """
        Returns the gateway result unchanged. The caller still has to check
        the status (see ``require_succeeded``).
        """
        attempts = 0

        async def _call() -> ConfirmResult:
            nonlocal attempts
            attempts += 1
            return await self.gateway.confirm(client_secret, payment_method)

        try:
            result = await retry(
                _call,
                is_retryable=is_transient,
                max_attempts=(self.max_attempts if max_attempts is None
                              else max_attempts),
                backoff=self.backoff,
                sleep=self.sleep,
            )
        except GatewayError as exc:
            logger.warning("payment confirmation failed", attempts=attempts,
                           kind=exc.kind, code=exc.code)
            raise gateway_failure(exc, attempts) from exc

        logger.info("payment confirmation returned", attempts=attempts,
                    intent_id=result.get("id"), status=result.get("status"))
        return result
