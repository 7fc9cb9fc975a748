import asyncio

import pytest
from sqlalchemy import text

from rafflepay.errors import (
    AlreadyReviewed, CapExceeded, Conflict, InvalidMethodKind, IssuanceFailed,
    MissingReason, NotFound, RaffleClosed, StorageError,
)
from rafflepay.model.entries import SOURCE_MANUAL_PURCHASE
from rafflepay.model.transaction import TxStatus
from rafflepay.review import can_review


def test_can_review():
    assert can_review("admin")
    assert can_review("staff")
    assert not can_review("user")
    assert not can_review(None)


async def test_approve_issues_requested_tickets(reviewer, issuer, ledger,
                                                make_tx):
    # raffle-spring: cap 10, user holds nothing
    tx = await make_tx(metadata={"tickets_requested": 2})

    entry_ids = await reviewer.approve(tx.id, "reviewer-1", "looks good")

    assert len(entry_ids) == 2
    tx = await ledger.get(tx.id)
    assert tx.status is TxStatus.COMPLETED
    assert tx.reviewed_by == "reviewer-1"
    assert tx.reviewed_at is not None
    assert tx.admin_comment == "looks good"
    assert tx.metadata["entry_ids"] == entry_ids
    entries = await issuer.list_entries("raffle-spring", "user-1")
    assert [e["id"] for e in entries] == entry_ids


async def test_approve_over_cap_reverts(reviewer, issuer, ledger, make_tx):
    await issuer.issue("raffle-spring", "user-1", 9, SOURCE_MANUAL_PURCHASE)
    tx = await make_tx(metadata={"tickets_requested": 2})

    with pytest.raises(IssuanceFailed) as ei:
        await reviewer.approve(tx.id, "reviewer-1")
    assert isinstance(ei.value.cause, CapExceeded)

    tx = await ledger.get(tx.id)
    assert tx.status is TxStatus.PENDING
    assert tx.reviewed_by is None
    assert tx.reviewed_at is None
    assert tx.admin_comment.startswith("Ticket issuance failed:")
    failure = tx.metadata["issuance_failure"]
    assert failure["code"] == "cap_exceeded"
    assert failure["reviewer_id"] == "reviewer-1"
    assert len(await issuer.list_entries("raffle-spring", "user-1")) == 9

    # back in the review queue
    assert tx.id in [t.id for t in await ledger.list_pending_for_review()]


async def test_approve_closed_raffle_reverts(reviewer, ledger, make_tx):
    tx = await make_tx(raffle_id="raffle-closed")
    with pytest.raises(IssuanceFailed) as ei:
        await reviewer.approve(tx.id, "reviewer-1")
    assert ei.value.reverted
    assert isinstance(ei.value.cause, RaffleClosed)
    assert (await ledger.get(tx.id)).status is TxStatus.PENDING


async def test_approve_revert_failure_is_reported(reviewer, ledger, make_tx,
                                                  monkeypatch):
    tx = await make_tx(raffle_id="raffle-closed")
    cas = reviewer.ledger.compare_and_set_status

    async def no_revert(transaction_id, expected, new, fields=None):
        if new is TxStatus.PENDING:
            raise StorageError("database is locked")
        return await cas(transaction_id, expected, new, fields)

    monkeypatch.setattr(reviewer.ledger, "compare_and_set_status", no_revert)
    with pytest.raises(IssuanceFailed) as ei:
        await reviewer.approve(tx.id, "reviewer-1")

    err = ei.value
    assert isinstance(err.cause, RaffleClosed)
    assert not err.reverted
    assert "still approved" in err.message
    assert err.to_dict()["revert_error"] == "io_error"
    assert (await ledger.get(tx.id)).status is TxStatus.APPROVED


async def test_approve_subscription_purpose(session, reviewer, ledger,
                                            make_tx):
    async with session.begin():
        await session.execute(text("""
          INSERT INTO subscriptions(id, user_id, plan_id, status, created_at)
          VALUES ('sub-1', 'user-1', 'plan-monthly', 'incomplete', 0)
        """))
    tx = await make_tx(purpose="subscription", raffle_id=None,
                       subscription_id="sub-1")

    assert await reviewer.approve(tx.id, "reviewer-1") == []
    assert (await ledger.get(tx.id)).status is TxStatus.APPROVED


async def test_second_approve_already_reviewed(reviewer, make_tx):
    tx = await make_tx()
    await reviewer.approve(tx.id, "reviewer-1")
    with pytest.raises(AlreadyReviewed) as ei:
        await reviewer.approve(tx.id, "reviewer-2")
    assert ei.value.status == "completed"
    with pytest.raises(AlreadyReviewed):
        await reviewer.reject(tx.id, "reviewer-2", "duplicate")


async def test_concurrent_approve_one_wins(database, make_tx):
    tx = await make_tx(metadata={"tickets_requested": 3})

    async def approve(reviewer_id):
        async with database.sessions() as s:
            return await database.reviewer(s).approve(tx.id, reviewer_id)

    results = await asyncio.gather(approve("reviewer-1"),
                                   approve("reviewer-2"),
                                   return_exceptions=True)
    won = [r for r in results if isinstance(r, list)]
    lost = [r for r in results if isinstance(r, (Conflict, AlreadyReviewed))]
    assert len(won) == 1 and len(lost) == 1
    assert len(won[0]) == 3

    async with database.sessions() as s:
        entries = await database.issuer(s).list_entries("raffle-spring")
    assert len(entries) == 3


async def test_card_transaction_cannot_be_reviewed(reviewer, ledger, make_tx):
    tx = await make_tx(payment_method_id="pm-card")
    with pytest.raises(InvalidMethodKind):
        await reviewer.approve(tx.id, "reviewer-1")
    with pytest.raises(InvalidMethodKind):
        await reviewer.reject(tx.id, "reviewer-1", "no")
    assert (await ledger.get(tx.id)).status is TxStatus.PENDING


async def test_approve_missing(reviewer):
    with pytest.raises(NotFound):
        await reviewer.approve("nope", "reviewer-1")


@pytest.mark.parametrize("reason", ["", "   ", None])
async def test_reject_requires_reason(reviewer, ledger, make_tx, reason):
    tx = await make_tx(payment_method_id="pm-qr")
    with pytest.raises(MissingReason):
        await reviewer.reject(tx.id, "reviewer-1", reason)
    assert (await ledger.get(tx.id)).status is TxStatus.PENDING


async def test_reject(reviewer, issuer, make_tx):
    tx = await make_tx(payment_method_id="pm-qr")
    tx = await reviewer.reject(tx.id, "reviewer-1", "  receipt unreadable ",
                               "asked user to resend")
    assert tx.status is TxStatus.REJECTED
    assert tx.rejection_reason == "receipt unreadable"
    assert tx.admin_comment == "asked user to resend"
    assert tx.reviewed_by == "reviewer-1"
    assert await issuer.list_entries("raffle-spring") == []

    with pytest.raises(AlreadyReviewed):
        await reviewer.reject(tx.id, "reviewer-1", "again")
