from __future__ import annotations
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, TypedDict
import base64
import hashlib
import hmac
import json
import uuid

import httpx
import structlog

from .errors import InvalidRequest

logger = structlog.get_logger(__name__)


class GatewayError(Exception):
    """
    Error reported by the card gateway. ``kind`` is the gateway's error type
    (e.g. ``card_error``, ``rate_limit``), ``code`` its finer-grained code.
    """

    def __init__(self, message: str, *, kind: str = "", code: str = "",
                 status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.code = code
        self.status = status


class IntentResult(TypedDict):
    id: str
    status: str
    client_secret: str


class ConfirmResult(TypedDict):
    id: str
    status: str


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def sign_payload(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# Gateway Adapter Interface
# ----------------------------
class GatewayAdapter(ABC):
    def __init__(self, *, webhook_secret: str) -> None:
        self.webhook_secret = webhook_secret

    @abstractmethod
    async def create_intent(
        self, amount: Decimal, currency: str, *, idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult: ...

    @abstractmethod
    async def retrieve_intent(self, intent_id: str) -> IntentResult: ...

    @abstractmethod
    async def confirm(
        self, client_secret: str, payment_method: str
    ) -> ConfirmResult: ...

    def verify_webhook(self, payload: bytes, headers: Dict[str, str]) -> dict:
        sig = headers.get("x-gateway-signature")
        expected = sign_payload(self.webhook_secret, payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise InvalidRequest("invalid webhook signature")
        try:
            return json.loads(payload.decode())
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidRequest("invalid webhook payload")

    # "succeeded" | "failed" | "canceled"
    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    # (payment_intent_id, event_id)
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_intent_id", ""),
                event.get("id")
        )


def intent_id_from_secret(client_secret: str) -> str:
    return client_secret.split("_secret_", 1)[0]


# ----------------------------
# Mock gateway (dev / tests)
# ----------------------------
class MockGateway(GatewayAdapter):
    """
    In-process gateway. Payment method handles drive the outcome:
    ``pm_card_declined`` is refused, ``pm_card_requires_action`` leaves the
    intent in ``requires_action``, anything else succeeds.
    """

    def __init__(self, *, webhook_secret: str = "supersecret") -> None:
        super().__init__(webhook_secret=webhook_secret)
        self.intents: Dict[str, Dict[str, Any]] = {}
        self._by_key: Dict[str, str] = {}

    async def create_intent(
        self, amount: Decimal, currency: str, *, idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        existing = self._by_key.get(idempotency_key)
        if existing is not None:
            return self._result(existing)
        intent_id = f"pi_mock_{uuid.uuid4().hex}"
        self.intents[intent_id] = {
            "id": intent_id,
            "status": "requires_confirmation",
            "client_secret": f"{intent_id}_secret_{uuid.uuid4().hex[:12]}",
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": dict(metadata or {}),
        }
        self._by_key[idempotency_key] = intent_id
        return self._result(intent_id)

    async def retrieve_intent(self, intent_id: str) -> IntentResult:
        if intent_id not in self.intents:
            raise GatewayError("no such payment intent",
                               kind="invalid_request_error",
                               code="resource_missing", status=404)
        return self._result(intent_id)

    async def confirm(
        self, client_secret: str, payment_method: str
    ) -> ConfirmResult:
        intent_id = intent_id_from_secret(client_secret)
        intent = self.intents.get(intent_id)
        if intent is None or intent["client_secret"] != client_secret:
            raise GatewayError("no such payment intent",
                               kind="invalid_request_error",
                               code="resource_missing", status=404)
        if payment_method == "pm_card_declined":
            raise GatewayError("Your card was declined.", kind="card_error",
                               code="card_declined", status=402)
        if payment_method == "pm_card_requires_action":
            intent["status"] = "requires_action"
        else:
            intent["status"] = "succeeded"
        return {"id": intent_id, "status": intent["status"]}

    def _result(self, intent_id: str) -> IntentResult:
        i = self.intents[intent_id]
        return {"id": i["id"], "status": i["status"],
                "client_secret": i["client_secret"]}


# ----------------------------
# HTTP gateway
# ----------------------------
class HttpGateway(GatewayAdapter):
    """
    REST card gateway (Stripe-shaped endpoints). The ``httpx.AsyncClient`` is
    owned by the app and passed in.
    """

    def __init__(self, *, http: httpx.AsyncClient, base_url: str,
                 api_key: str, webhook_secret: str) -> None:
        super().__init__(webhook_secret=webhook_secret)
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key

    async def create_intent(
        self, amount: Decimal, currency: str, *, idempotency_key: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> IntentResult:
        body = await self._request("POST", "/v1/payment_intents", json={
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": dict(metadata or {}),
        }, idempotency_key=idempotency_key)
        return _intent(body)

    async def retrieve_intent(self, intent_id: str) -> IntentResult:
        body = await self._request("GET", f"/v1/payment_intents/{intent_id}")
        return _intent(body)

    async def confirm(
        self, client_secret: str, payment_method: str
    ) -> ConfirmResult:
        intent_id = intent_id_from_secret(client_secret)
        body = await self._request(
            "POST", f"/v1/payment_intents/{intent_id}/confirm",
            json={"client_secret": client_secret,
                  "payment_method": payment_method},
        )
        return {"id": body.get("id", intent_id),
                "status": body.get("status", "")}

    async def _request(self, method: str, path: str, *,
                       json: Optional[dict] = None,
                       idempotency_key: Optional[str] = None) -> dict:
        headers = {"authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["idempotency-key"] = idempotency_key
        try:
            r = await self.http.request(
                method, f"{self.base_url}{path}", json=json, headers=headers
            )
        except httpx.TransportError as exc:
            raise GatewayError(str(exc) or exc.__class__.__name__,
                               kind="api_connection_error") from exc

        if r.status_code >= 400:
            err = _error_body(r)
            raise GatewayError(
                err.get("message") or f"gateway returned {r.status_code}",
                kind=err.get("type") or _kind_for_status(r.status_code),
                code=err.get("code") or "",
                status=r.status_code,
            )
        return r.json()


def _kind_for_status(status: int) -> str:
    if status == 429:
        return "rate_limit"
    if status == 409:
        return "idempotency_error"
    if status >= 500:
        return "internal_error"
    return "invalid_request_error"


def _error_body(r: httpx.Response) -> Dict[str, Any]:
    try:
        body = r.json()
    except ValueError:
        return {}
    err = body.get("error") if isinstance(body, dict) else None
    return err if isinstance(err, dict) else {}


def _intent(body: dict) -> IntentResult:
    return {
        "id": body["id"],
        "status": body.get("status", ""),
        "client_secret": body.get("client_secret", ""),
    }
