from __future__ import annotations
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
import structlog
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import ORJSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.middleware.sessions import SessionMiddleware

from .config import Settings, load_settings
from .confirm import GatewayConfirmationClient, require_succeeded
from .errors import (
    Forbidden, InvalidRequest, IssuanceFailed, NotFound, PaymentError,
)
from .gateway import GatewayAdapter, HttpGateway, MockGateway
from .identity import (
    Principal, SessionIdentity, check_admin_credentials, new_identity,
)
from .infra.logs import configure_logging
from .infra.sql import make_async_engine
from .infra.timings import Timings
from .model.entries import EntryIssuer, RaffleLookup
from .model.eventgate import new_gate
from .model.ledger import LedgerStore
from .model.orm import create_schema
from .model.transaction import new_transaction
from .review import CardPaymentReconciler, TransactionReviewer, can_review
from .subscriptions import (
    SubscriptionCheckout, SubscriptionFinalizer, SubscriptionStore,
)

logger = structlog.get_logger(__name__)


# ----------------------------
# Request bodies
# ----------------------------
class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class LoginIn(_Body):
    username: str
    password: str


class CreateTransactionIn(_Body):
    payment_method_id: str = Field(alias="paymentMethodId")
    purpose: str
    amount: Any
    currency: Optional[str] = None
    raffle_id: Optional[str] = Field(default=None, alias="raffleId")
    subscription_id: Optional[str] = Field(default=None,
                                           alias="subscriptionId")
    receipt_reference: Optional[str] = Field(default=None,
                                             alias="receiptReference")
    metadata: Optional[Dict[str, Any]] = None


class ApproveIn(_Body):
    transaction_id: str = Field(alias="transactionId")
    comment: Optional[str] = None


class RejectIn(_Body):
    transaction_id: str = Field(alias="transactionId")
    rejection_reason: Optional[str] = Field(default=None,
                                            alias="rejectionReason")
    comment: Optional[str] = None


class CreateIntentIn(_Body):
    plan_ref: str = Field(alias="planRef")
    idempotency_key: str = Field(alias="idempotencyKey")


class ConfirmIn(_Body):
    client_secret: str = Field(alias="clientSecret")
    payment_method: str = Field(alias="paymentMethod")


class FinalizeIn(_Body):
    subscription_ref: str = Field(alias="subscriptionRef")
    payment_intent_id: Optional[str] = Field(default=None,
                                             alias="paymentIntentId")
    plan_ref: str = Field(default="", alias="planRef")
    idempotency_key: str = Field(alias="idempotencyKey")


# ----------------------------
# Dependencies
# ----------------------------
async def get_db(request: Request) -> AsyncSession:
    async with request.app.state.sessions() as session:
        yield session


def get_timings(request: Request) -> Timings:
    return request.app.state.timings


def get_gateway(request: Request) -> GatewayAdapter:
    return request.app.state.gateway


def ledger(request: Request,
           db: AsyncSession = Depends(get_db)) -> LedgerStore:
    return LedgerStore(db=db, gated=request.app.state.gated)


def issuer(request: Request,
           db: AsyncSession = Depends(get_db)) -> EntryIssuer:
    return EntryIssuer(db=db, gated=request.app.state.gated)


def raffles(request: Request,
            db: AsyncSession = Depends(get_db)) -> RaffleLookup:
    return RaffleLookup(db=db, gated=request.app.state.gated)


def reviewer(ls: LedgerStore = Depends(ledger),
             ei: EntryIssuer = Depends(issuer)) -> TransactionReviewer:
    return TransactionReviewer(ledger=ls, issuer=ei)


def reconciler(ls: LedgerStore = Depends(ledger),
               ei: EntryIssuer = Depends(issuer)) -> CardPaymentReconciler:
    return CardPaymentReconciler(ledger=ls, issuer=ei)


def subscription_store(request: Request,
                       db: AsyncSession = Depends(get_db)
                       ) -> SubscriptionStore:
    return SubscriptionStore(db=db, gated=request.app.state.gated)


def checkout(ss: SubscriptionStore = Depends(subscription_store),
             ls: LedgerStore = Depends(ledger),
             gw: GatewayAdapter = Depends(get_gateway)
             ) -> SubscriptionCheckout:
    return SubscriptionCheckout(store=ss, ledger=ls, gateway=gw)


def finalizer(ss: SubscriptionStore = Depends(subscription_store),
              ls: LedgerStore = Depends(ledger),
              gw: GatewayAdapter = Depends(get_gateway)
              ) -> SubscriptionFinalizer:
    return SubscriptionFinalizer(store=ss, ledger=ls, gateway=gw)


def confirmation_client(request: Request) -> GatewayConfirmationClient:
    return request.app.state.confirmation


def event_gate(request: Request, db: AsyncSession = Depends(get_db)):
    st = request.app.state
    return new_gate(
        st.settings.eventgate_backend,
        db=db,
        r=getattr(st, "redis", None),
        ttl_seconds=st.settings.eventgate_ttl_seconds,
        gated=st.gated,
    )


def current_user(request: Request) -> Optional[Principal]:
    return request.app.state.identity(request)


def require_user(
    principal: Optional[Principal] = Depends(current_user),
) -> Principal:
    if principal is None:
        raise Forbidden("login required")
    return principal


def require_reviewer(
    principal: Principal = Depends(require_user),
) -> Principal:
    if not can_review(principal.role):
        raise Forbidden("reviewer role required")
    return principal


async def payment_error_handler(request: Request, exc: PaymentError):
    return ORJSONResponse(status_code=exc.http_status, content=exc.to_dict())


router = APIRouter()


# ----------------------------
# Auth
# ----------------------------
@router.post("/api/auth/login")
async def login(body: LoginIn, request: Request):
    st = request.app.state
    if not check_admin_credentials(body.username, body.password,
                                   st.settings.admin_username,
                                   st.settings.admin_password):
        logger.info("login failed", username=body.username.strip())
        return ORJSONResponse(status_code=401, content={
            "error": "invalid_credentials",
            "detail": "Invalid credentials.",
        })
    identity: SessionIdentity = st.identity
    principal = Principal(user_id=body.username.strip(), role="admin")
    identity.login(request, principal)
    return {"ok": True, "user_id": principal.user_id, "role": principal.role}


@router.post("/api/auth/logout")
async def logout(request: Request):
    request.app.state.identity.logout(request)
    return {"ok": True}


# ----------------------------
# Transactions
# ----------------------------
@router.post("/api/transactions")
async def create_transaction(
    body: CreateTransactionIn,
    request: Request,
    user: Principal = Depends(require_user),
    ls: LedgerStore = Depends(ledger),
    timings: Timings = Depends(get_timings),
):
    tx = new_transaction(
        user_id=user.user_id,
        payment_method_id=body.payment_method_id,
        purpose=body.purpose,
        amount=body.amount,
        currency=body.currency or request.app.state.settings.default_currency,
        raffle_id=body.raffle_id,
        subscription_id=body.subscription_id,
        receipt_reference=body.receipt_reference,
        metadata=body.metadata,
    )
    async with timings.timeit("ledger.insert"):
        tx = await ls.insert(tx)
    return tx.to_dict()


@router.get("/api/transactions/{transaction_id}")
async def get_transaction(
    transaction_id: str,
    user: Principal = Depends(require_user),
    ls: LedgerStore = Depends(ledger),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("ledger.get"):
        tx = await ls.get(transaction_id)
    # other users' transactions look like missing ones
    if tx.user_id != user.user_id and not can_review(user.role):
        raise NotFound("transaction not found")
    return tx.to_dict()


# ----------------------------
# Admin: review
# ----------------------------
@router.get("/api/admin/transactions/pending")
async def pending_transactions(
    limit: int = 100,
    _: Principal = Depends(require_reviewer),
    ls: LedgerStore = Depends(ledger),
    timings: Timings = Depends(get_timings),
):
    limit = max(1, min(limit, 500))
    async with timings.timeit("ledger.list_pending"):
        items = await ls.list_pending_for_review(limit)
    return {"items": [tx.to_dict() for tx in items], "limit": limit}


@router.get("/api/admin/transactions/{transaction_id}/review")
async def review_history(
    transaction_id: str,
    _: Principal = Depends(require_reviewer),
    ls: LedgerStore = Depends(ledger),
):
    tx = (await ls.get(transaction_id)).to_dict()
    return {
        "transaction_id": tx["id"],
        "status": tx["status"],
        "reviewed_by": tx["reviewed_by"],
        "reviewed_at": tx["reviewed_at"],
        "admin_comment": tx["admin_comment"],
        "rejection_reason": tx["rejection_reason"],
        "issuance_failure": tx["metadata"].get("issuance_failure"),
        "updated_at": tx["updated_at"],
    }


@router.post("/api/admin/approve-transaction")
async def approve_transaction(
    body: ApproveIn,
    user: Principal = Depends(require_reviewer),
    rv: TransactionReviewer = Depends(reviewer),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("review.approve"):
        entry_ids = await rv.approve(body.transaction_id, user.user_id,
                                     body.comment)
    return {"createdEntryIds": entry_ids}


@router.post("/api/admin/reject-transaction")
async def reject_transaction(
    body: RejectIn,
    user: Principal = Depends(require_reviewer),
    rv: TransactionReviewer = Depends(reviewer),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("review.reject"):
        await rv.reject(body.transaction_id, user.user_id,
                        body.rejection_reason, body.comment)
    return {"ok": True}


@router.get("/api/admin/timings")
async def admin_timings(
    _: Principal = Depends(require_reviewer),
    timings: Timings = Depends(get_timings),
):
    return {"items": timings.summary()}


# ----------------------------
# Raffle entries
# ----------------------------
@router.get("/api/raffles/{raffle_id}/entries")
async def raffle_entries(
    raffle_id: str,
    user: Principal = Depends(require_user),
    rl: RaffleLookup = Depends(raffles),
    ei: EntryIssuer = Depends(issuer),
):
    raffle = await rl.get(raffle_id)
    owner = None if can_review(user.role) else user.user_id
    items = await ei.list_entries(raffle.id, owner)
    return {"raffle_id": raffle.id, "status": raffle.status, "items": items}


# ----------------------------
# Card payments & subscriptions
# ----------------------------
@router.post("/api/payments/create-payment-intent")
async def create_payment_intent(
    body: CreateIntentIn,
    user: Principal = Depends(require_user),
    co: SubscriptionCheckout = Depends(checkout),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("gateway.create_intent"):
        handle = await co.create_intent(user.user_id, body.plan_ref,
                                        body.idempotency_key)
    return {
        "clientSecret": handle.client_secret,
        "subscriptionRef": handle.subscription_ref,
    }


@router.post("/api/payments/confirm")
async def confirm_payment(
    body: ConfirmIn,
    _: Principal = Depends(require_user),
    client: GatewayConfirmationClient = Depends(confirmation_client),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("gateway.confirm"):
        result = await client.confirm(body.client_secret, body.payment_method)
    result = require_succeeded(result)
    return {"id": result["id"], "status": result["status"]}


@router.post("/api/payments/finalize-subscription")
async def finalize_subscription(
    body: FinalizeIn,
    user: Principal = Depends(require_user),
    fin: SubscriptionFinalizer = Depends(finalizer),
    timings: Timings = Depends(get_timings),
):
    async with timings.timeit("subscription.finalize"):
        sub_id = await fin.finalize(body.subscription_ref,
                                    body.payment_intent_id, body.plan_ref,
                                    body.idempotency_key, user.user_id)
    return {"subscriptionId": sub_id}


# ----------------------------
# Webhook endpoint
# ----------------------------
@router.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    gw: GatewayAdapter = Depends(get_gateway),
    gate=Depends(event_gate),
    rc: CardPaymentReconciler = Depends(reconciler),
    timings: Timings = Depends(get_timings),
):
    payload = await request.body()
    event = gw.verify_webhook(payload, dict(request.headers))
    kind = gw.event_kind(event)  # succeeded | failed | canceled
    intent_id, event_id = gw.event_ids(event)
    if not intent_id:
        raise InvalidRequest("missing payment_intent_id")

    async with timings.timeit("eventgate.mark"):
        first = await gate.mark_event_seen(event_id)
    if not first:
        logger.info("duplicate webhook event", event_id=event_id)
        return {"ok": True, "idempotent": True}

    if kind == "succeeded":
        try:
            async with timings.timeit("webhook.succeeded"):
                tx = await rc.payment_succeeded(intent_id, event_id)
        except IssuanceFailed as exc:
            # acknowledged; the transaction stays pending with the note
            return {"ok": True, "status": "pending",
                    "error": exc.cause.code}
    elif kind in ("failed", "canceled"):
        async with timings.timeit("webhook.failed"):
            tx = await rc.payment_failed(intent_id, kind, event_id)
    else:
        logger.info("ignoring webhook event", kind=kind, event_id=event_id)
        return {"ok": True, "ignored": kind}

    return {"ok": True, "status": tx.status.value if tx else None}


# ---
# app factory
# ---
def _gateway_for(settings: Settings, app: FastAPI) -> GatewayAdapter:
    if settings.gateway_backend == "mock":
        return MockGateway(webhook_secret=settings.gateway_webhook_secret)
    if settings.gateway_backend == "http":
        if not settings.gateway_url:
            raise RuntimeError("GATEWAY_URL is required for the http gateway")
        app.state.http = httpx.AsyncClient(
            timeout=10.0,
            limits=httpx.Limits(max_connections=100,
                                max_keepalive_connections=20),
        )
        return HttpGateway(http=app.state.http,
                           base_url=settings.gateway_url,
                           api_key=settings.gateway_api_key,
                           webhook_secret=settings.gateway_webhook_secret)
    raise RuntimeError(
        f"unknown gateway backend: {settings.gateway_backend!r}"
    )


def create_app(settings: Optional[Settings] = None, *,
               gateway: Optional[GatewayAdapter] = None) -> FastAPI:
    """
    Build the API. Run with ``uvicorn --factory rafflepay.server:create_app``.
    """
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_json)

    app = FastAPI(
        title="RafflePay",
        default_response_class=ORJSONResponse,
    )
    app.add_middleware(SessionMiddleware, secret_key=settings.session_secret)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.include_router(router)

    engine, SessionAsync, _, gated = make_async_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
    st = app.state
    st.settings = settings
    st.engine = engine
    st.sessions = SessionAsync
    st.gated = gated
    st.timings = Timings()
    st.identity = new_identity(settings.identity_backend)
    st.http = None
    st.redis = None
    st.gateway = gateway or _gateway_for(settings, app)
    st.confirmation = GatewayConfirmationClient(
        st.gateway,
        max_attempts=settings.gateway_max_attempts,
        backoff_seconds=settings.gateway_backoff_seconds,
    )

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        logger.info("rafflepay starting up",
                    gateway=settings.gateway_backend,
                    eventgate=settings.eventgate_backend,
                    identity=settings.identity_backend)

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            await create_schema(conn)

    @app.on_event("startup")
    async def _redis_start():
        if settings.eventgate_backend == "redis":
            st.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=settings.redis_max_connections,
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("shutdown")
    async def _http_client_stop():
        if st.http is not None:
            await st.http.aclose()
            st.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        if st.redis is not None:
            await st.redis.aclose()
            st.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    return app
