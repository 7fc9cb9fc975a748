import asyncio

import pytest

from rafflepay.errors import CapExceeded, InvalidRequest, NotFound, RaffleClosed
from rafflepay.model.entries import (
    RaffleLookup, SOURCE_MANUAL_PURCHASE,
)


async def test_issue_numbers_tickets(issuer):
    first = await issuer.issue("raffle-spring", "user-1", 2,
                               SOURCE_MANUAL_PURCHASE)
    second = await issuer.issue("raffle-spring", "user-2", 1,
                                SOURCE_MANUAL_PURCHASE)
    assert len(first) == 2 and len(second) == 1

    entries = await issuer.list_entries("raffle-spring")
    assert [e["ticket_number"] for e in entries] == [1, 2, 3]
    assert [e["id"] for e in entries] == first + second
    assert {e["source"] for e in entries} == {SOURCE_MANUAL_PURCHASE}

    mine = await issuer.list_entries("raffle-spring", "user-2")
    assert [e["id"] for e in mine] == second


async def test_cap_is_all_or_nothing(issuer):
    await issuer.issue("raffle-spring", "user-1", 9, SOURCE_MANUAL_PURCHASE)
    with pytest.raises(CapExceeded):
        await issuer.issue("raffle-spring", "user-1", 2,
                           SOURCE_MANUAL_PURCHASE)
    assert len(await issuer.list_entries("raffle-spring", "user-1")) == 9

    # counter was rolled back with the failed attempt
    [last] = await issuer.issue("raffle-spring", "user-1", 1,
                                SOURCE_MANUAL_PURCHASE)
    entries = await issuer.list_entries("raffle-spring", "user-1")
    assert entries[-1]["id"] == last
    assert entries[-1]["ticket_number"] == 10


async def test_unlimited_raffle(issuer):
    ids = await issuer.issue("raffle-open", "user-1", 25,
                             SOURCE_MANUAL_PURCHASE)
    assert len(ids) == 25


async def test_closed_raffle(issuer):
    with pytest.raises(RaffleClosed):
        await issuer.issue("raffle-closed", "user-1", 1,
                           SOURCE_MANUAL_PURCHASE)
    assert await issuer.list_entries("raffle-closed") == []


async def test_missing_raffle(issuer):
    with pytest.raises(NotFound):
        await issuer.issue("raffle-nope", "user-1", 1, SOURCE_MANUAL_PURCHASE)


@pytest.mark.parametrize("count", [0, -1, 1.5, True])
async def test_bad_count(issuer, count):
    with pytest.raises(InvalidRequest):
        await issuer.issue("raffle-spring", "user-1", count,
                           SOURCE_MANUAL_PURCHASE)


async def test_concurrent_issuance_respects_cap(database):
    async def one():
        async with database.sessions() as s:
            return await database.issuer(s).issue(
                "raffle-spring", "user-1", 4, SOURCE_MANUAL_PURCHASE,
            )

    results = await asyncio.gather(one(), one(), one(),
                                   return_exceptions=True)
    ok = [r for r in results if isinstance(r, list)]
    failed = [r for r in results if isinstance(r, CapExceeded)]
    assert len(ok) == 2 and len(failed) == 1

    async with database.sessions() as s:
        entries = await database.issuer(s).list_entries("raffle-spring")
    assert len(entries) == 8
    assert sorted(e["ticket_number"] for e in entries) == list(range(1, 9))


async def test_raffle_lookup(database, session):
    lookup = RaffleLookup(db=session, gated=database.gated)
    spring = await lookup.get("raffle-spring")
    assert spring.accepts_entries and spring.per_user_cap == 10
    closed = await lookup.get("raffle-closed")
    assert not closed.accepts_entries
    assert (await lookup.get("raffle-open")).per_user_cap is None
    with pytest.raises(NotFound):
        await lookup.get("raffle-nope")
