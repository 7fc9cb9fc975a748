import json

from conftest import ADMIN, STAFF, USER, WEBHOOK_SECRET
from rafflepay.gateway import sign_payload
from rafflepay.model.ledger import LedgerStore
from rafflepay.model.transaction import TxStatus


async def create_tx(client, headers=USER, **overrides):
    body = {
        "paymentMethodId": "pm-bank",
        "purpose": "raffle_ticket",
        "amount": "20.00",
        "raffleId": "raffle-spring",
        "receiptReference": "TRX-0001",
        "metadata": {"tickets_requested": 2},
    }
    body.update(overrides)
    r = await client.post("/api/transactions", json=body, headers=headers)
    assert r.status_code == 200, r.text
    return r.json()


async def post_webhook(client, event, secret=WEBHOOK_SECRET):
    payload = json.dumps(event).encode()
    return await client.post("/payments/webhook", content=payload, headers={
        "x-gateway-signature": sign_payload(secret, payload),
        "content-type": "application/json",
    })


async def test_requires_identity(client):
    r = await client.post("/api/transactions", json={})
    assert r.status_code == 403
    assert r.json()["error"] == "forbidden"


async def test_create_and_get_transaction(client):
    tx = await create_tx(client)
    assert tx["status"] == "pending"
    assert tx["currency"] == "USD"
    assert tx["metadata"]["tickets_requested"] == 2
    assert tx["user_id"] == "user-1"

    r = await client.get(f"/api/transactions/{tx['id']}", headers=USER)
    assert r.json()["id"] == tx["id"]

    other = {"x-user-id": "user-2"}
    r = await client.get(f"/api/transactions/{tx['id']}", headers=other)
    assert r.status_code == 404


async def test_create_transaction_rejects_bad_input(client):
    r = await client.post("/api/transactions", headers=USER, json={
        "paymentMethodId": "pm-bank", "purpose": "raffle_ticket",
        "amount": "-1", "raffleId": "raffle-spring",
    })
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_request"

    r = await client.post("/api/transactions", headers=USER, json={
        "paymentMethodId": "pm-bank", "purpose": "subscription",
        "amount": "1", "raffleId": "raffle-spring", "subscriptionId": "s",
    })
    assert r.status_code == 400


async def test_review_requires_reviewer_role(client):
    tx = await create_tx(client)
    r = await client.post("/api/admin/approve-transaction", headers=USER,
                          json={"transactionId": tx["id"]})
    assert r.status_code == 403
    r = await client.get("/api/admin/transactions/pending", headers=USER)
    assert r.status_code == 403


async def test_approve_flow(client):
    tx = await create_tx(client)

    r = await client.get("/api/admin/transactions/pending", headers=STAFF)
    assert [t["id"] for t in r.json()["items"]] == [tx["id"]]

    r = await client.post("/api/admin/approve-transaction", headers=ADMIN,
                          json={"transactionId": tx["id"], "comment": "ok"})
    assert r.status_code == 200
    entry_ids = r.json()["createdEntryIds"]
    assert len(entry_ids) == 2

    r = await client.get(f"/api/admin/transactions/{tx['id']}/review",
                         headers=ADMIN)
    review = r.json()
    assert review["status"] == "completed"
    assert review["reviewed_by"] == "alice"
    assert review["admin_comment"] == "ok"

    r = await client.get("/api/raffles/raffle-spring/entries", headers=USER)
    assert [e["id"] for e in r.json()["items"]] == entry_ids

    r = await client.post("/api/admin/approve-transaction", headers=STAFF,
                          json={"transactionId": tx["id"]})
    assert r.status_code == 409
    assert r.json()["error"] == "already_reviewed"


async def test_approve_over_cap(client):
    tx = await create_tx(client, metadata={"tickets_requested": 11})
    r = await client.post("/api/admin/approve-transaction", headers=ADMIN,
                          json={"transactionId": tx["id"]})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "issuance_failed"
    assert body["cause"] == "cap_exceeded"

    r = await client.get(f"/api/admin/transactions/{tx['id']}/review",
                         headers=ADMIN)
    review = r.json()
    assert review["status"] == "pending"
    assert review["issuance_failure"]["code"] == "cap_exceeded"


async def test_reject_flow(client):
    tx = await create_tx(client, paymentMethodId="pm-qr")

    r = await client.post("/api/admin/reject-transaction", headers=ADMIN,
                          json={"transactionId": tx["id"],
                                "rejectionReason": ""})
    assert r.status_code == 400
    assert r.json()["error"] == "missing_reason"

    r = await client.post("/api/admin/reject-transaction", headers=ADMIN,
                          json={"transactionId": tx["id"],
                                "rejectionReason": "wrong amount"})
    assert r.json() == {"ok": True}

    r = await client.get(f"/api/transactions/{tx['id']}", headers=USER)
    assert r.json()["status"] == "rejected"
    assert r.json()["rejection_reason"] == "wrong amount"


async def test_card_transaction_not_reviewable(client):
    tx = await create_tx(client, paymentMethodId="pm-card")
    r = await client.post("/api/admin/approve-transaction", headers=ADMIN,
                          json={"transactionId": tx["id"]})
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_method_kind"


async def test_subscription_checkout(client):
    body = {"planRef": "plan-monthly", "idempotencyKey": "k-1"}
    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER, json=body)
    assert r.status_code == 200
    intent = r.json()

    r = await client.post("/api/payments/confirm", headers=USER, json={
        "clientSecret": intent["clientSecret"],
        "paymentMethod": "pm_card_visa",
    })
    assert r.json()["status"] == "succeeded"

    fin = {"subscriptionRef": intent["subscriptionRef"],
           "planRef": "plan-monthly", "idempotencyKey": "k-1"}
    first = await client.post("/api/payments/finalize-subscription",
                              headers=USER, json=fin)
    second = await client.post("/api/payments/finalize-subscription",
                               headers=USER, json=fin)
    assert first.json() == second.json()
    assert first.json() == {"subscriptionId": intent["subscriptionRef"]}

    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER,
                          json={"planRef": "plan-yearly",
                                "idempotencyKey": "k-2"})
    assert r.status_code == 409


async def test_confirm_declined(client):
    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER,
                          json={"planRef": "plan-monthly",
                                "idempotencyKey": "k-1"})
    r = await client.post("/api/payments/confirm", headers=USER, json={
        "clientSecret": r.json()["clientSecret"],
        "paymentMethod": "pm_card_declined",
    })
    assert r.status_code == 402
    assert r.json()["error"] == "terminal_gateway_error"
    assert r.json()["attempts"] == 1


async def test_confirm_requires_action(client):
    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER,
                          json={"planRef": "plan-monthly",
                                "idempotencyKey": "k-1"})
    r = await client.post("/api/payments/confirm", headers=USER, json={
        "clientSecret": r.json()["clientSecret"],
        "paymentMethod": "pm_card_requires_action",
    })
    assert r.status_code == 402
    assert r.json()["error"] == "not_completed"


async def test_finalize_before_payment(client):
    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER,
                          json={"planRef": "plan-monthly",
                                "idempotencyKey": "k-1"})
    r = await client.post("/api/payments/finalize-subscription",
                          headers=USER, json={
                              "subscriptionRef": r.json()["subscriptionRef"],
                              "planRef": "plan-monthly",
                              "idempotencyKey": "k-1",
                          })
    assert r.status_code == 502
    assert r.json()["error"] == "finalization_failed"


async def test_finalize_requires_owner_and_own_intent(client, app):
    other = {"x-user-id": "user-2"}
    r = await client.post("/api/payments/create-payment-intent",
                          headers=USER,
                          json={"planRef": "plan-monthly",
                                "idempotencyKey": "k-1"})
    paid = r.json()
    await client.post("/api/payments/confirm", headers=USER, json={
        "clientSecret": paid["clientSecret"],
        "paymentMethod": "pm_card_visa",
    })
    r = await client.post("/api/payments/create-payment-intent",
                          headers=other,
                          json={"planRef": "plan-monthly",
                                "idempotencyKey": "k-2"})
    unpaid = r.json()
    async with app.state.sessions() as s:
        paid_tx = await LedgerStore(
            db=s, gated=app.state.gated
        ).find_by_idempotency_key("k-1")

    r = await client.post("/api/payments/finalize-subscription",
                          headers=other, json={
                              "subscriptionRef": paid["subscriptionRef"],
                              "planRef": "plan-monthly",
                              "idempotencyKey": "k-2",
                          })
    assert r.status_code == 404
    assert r.json()["error"] == "not_found"

    r = await client.post("/api/payments/finalize-subscription",
                          headers=other, json={
                              "subscriptionRef": unpaid["subscriptionRef"],
                              "paymentIntentId": paid_tx.gateway_intent_id,
                              "planRef": "plan-monthly",
                              "idempotencyKey": "k-2",
                          })
    assert r.status_code == 502
    assert r.json()["error"] == "finalization_failed"

    r = await client.get(f"/api/transactions/{paid_tx.id}", headers=USER)
    assert r.json()["status"] == "pending"


async def card_ticket_tx(client, app, intent_id, tickets=1):
    tx = await create_tx(client, paymentMethodId="pm-card",
                         metadata={"tickets_requested": tickets})
    async with app.state.sessions() as s:
        await LedgerStore(db=s, gated=app.state.gated).update_fields(
            tx["id"], TxStatus.PENDING, {"gateway_intent_id": intent_id},
        )
    return tx


async def test_webhook_completes_card_ticket(client, app):
    tx = await card_ticket_tx(client, app, "pi_w1", tickets=3)
    event = {"id": "evt_1", "type": "payment_intent.succeeded",
             "payment_intent_id": "pi_w1"}

    r = await post_webhook(client, event)
    assert r.json() == {"ok": True, "status": "completed"}

    r = await post_webhook(client, event)
    assert r.json() == {"ok": True, "idempotent": True}

    r = await client.get("/api/raffles/raffle-spring/entries", headers=USER)
    items = r.json()["items"]
    assert len(items) == 3
    assert {e["source"] for e in items} == {"card_checkout"}

    r = await client.get(f"/api/transactions/{tx['id']}", headers=USER)
    assert r.json()["status"] == "completed"


async def test_webhook_failed_payment(client, app):
    tx = await card_ticket_tx(client, app, "pi_w2")
    r = await post_webhook(client, {"id": "evt_2",
                                    "type": "payment_intent.failed",
                                    "payment_intent_id": "pi_w2"})
    assert r.json()["status"] == "failed"
    r = await client.get(f"/api/transactions/{tx['id']}", headers=USER)
    assert r.json()["status"] == "failed"


async def test_webhook_issuance_failure_keeps_pending(client, app):
    tx = await card_ticket_tx(client, app, "pi_w3", tickets=11)
    r = await post_webhook(client, {"id": "evt_3",
                                    "type": "payment_intent.succeeded",
                                    "payment_intent_id": "pi_w3"})
    assert r.json() == {"ok": True, "status": "pending",
                        "error": "cap_exceeded"}
    r = await client.get(f"/api/transactions/{tx['id']}", headers=USER)
    body = r.json()
    assert body["status"] == "pending"
    assert body["admin_comment"].startswith("Ticket issuance failed:")


async def test_webhook_bad_signature(client):
    event = {"id": "evt_x", "type": "x.succeeded", "payment_intent_id": "pi"}
    r = await post_webhook(client, event, secret="wrong-secret")
    assert r.status_code == 400


async def test_login_logout(app, client):
    r = await client.post("/api/auth/login",
                          json={"username": "admin", "password": "nope"})
    assert r.status_code == 401

    r = await client.post("/api/auth/login",
                          json={"username": "admin",
                                "password": "supasecret"})
    assert r.json()["role"] == "admin"

    # the cookie session now carries the principal
    r = await client.get("/api/admin/transactions/pending")
    assert r.status_code == 200

    await client.post("/api/auth/logout")
    r = await client.get("/api/admin/transactions/pending")
    assert r.status_code == 403


async def test_timings(client):
    await create_tx(client)
    r = await client.get("/api/admin/timings", headers=ADMIN)
    kinds = {t["kind"]: t for t in r.json()["items"]}
    assert kinds["ledger.insert"]["n"] == 1
