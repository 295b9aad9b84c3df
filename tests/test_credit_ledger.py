"""
Credit Ledger tests: atomic debit, refunds, premium, concurrent reservations.
"""

import asyncio

import pytest
from sqlalchemy import select

from app.db import async_session_maker, CreditTransaction, CreditEntryType
from app.errors import InsufficientCredits, NotFound
from app.services.credit_ledger import CreditLedger, ReservationState


@pytest.fixture
def ledger():
    return CreditLedger()


async def _entries(user_id):
    async with async_session_maker() as db:
        result = await db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_reserve_debits_and_records(ledger, make_user):
    user = await make_user(credits=5)

    reservation = await ledger.check_and_reserve(user.id, 1, reference="exec-1")

    assert reservation.amount == 1
    assert reservation.state is ReservationState.RESERVED
    assert await ledger.get_balance(user.id) == 4
    entries = await _entries(user.id)
    assert [(e.entry_type, e.delta, e.reference) for e in entries] == [
        (CreditEntryType.RESERVE.value, -1, "exec-1"),
    ]


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_balance(ledger, make_user):
    user = await make_user(credits=0)

    with pytest.raises(InsufficientCredits) as exc_info:
        await ledger.check_and_reserve(user.id, 1)

    assert exc_info.value.status_code == 402
    assert exc_info.value.context == {"balance": 0, "cost": 1}
    assert await ledger.get_balance(user.id) == 0
    assert await _entries(user.id) == []


@pytest.mark.asyncio
async def test_refund_restores_once(ledger, make_user):
    user = await make_user(credits=2)
    reservation = await ledger.check_and_reserve(user.id, 1)

    assert await ledger.refund(reservation) is True
    assert await ledger.refund(reservation) is False

    assert reservation.state is ReservationState.REFUNDED
    assert await ledger.get_balance(user.id) == 2


@pytest.mark.asyncio
async def test_committed_reservation_cannot_be_refunded(ledger, make_user):
    user = await make_user(credits=2)
    reservation = await ledger.check_and_reserve(user.id, 1)

    await ledger.commit(reservation)
    refunded = await ledger.refund(reservation)

    assert refunded is False
    assert reservation.state is ReservationState.COMMITTED
    assert await ledger.get_balance(user.id) == 1


@pytest.mark.asyncio
async def test_premium_user_is_not_debited(ledger, make_user):
    user = await make_user(credits=0, is_premium=True)

    reservation = await ledger.check_and_reserve(user.id, 1)

    assert reservation.premium is True
    assert reservation.amount == 0
    assert await ledger.get_status(user.id) == (0, True)
    # Refunding a zero reservation never mints credit
    await ledger.refund(reservation)
    assert await ledger.get_balance(user.id) == 0


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(ledger, make_user):
    user = await make_user(credits=3)

    results = await asyncio.gather(
        *[ledger.check_and_reserve(user.id, 1, reference=f"turn-{i}") for i in range(10)],
        return_exceptions=True,
    )

    granted = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientCredits)]
    assert len(granted) == 3
    assert len(rejected) == 7
    assert await ledger.get_balance(user.id) == 0


@pytest.mark.asyncio
async def test_grant_and_premium_are_audited(ledger, make_user):
    user = await make_user(credits=0)

    await ledger.grant_credits(user.id, 10, reference="evt_1:bonus")
    await ledger.set_premium(user.id, True, reference="evt_1")

    assert await ledger.get_status(user.id) == (10, True)
    assert await ledger.has_reference("evt_1")
    assert not await ledger.has_reference("evt_2")
    entry_types = {e.entry_type for e in await _entries(user.id)}
    assert entry_types == {CreditEntryType.GRANT.value, CreditEntryType.PREMIUM.value}


@pytest.mark.asyncio
async def test_unknown_user(ledger):
    with pytest.raises(NotFound):
        await ledger.check_and_reserve("no-such-user", 1)
    with pytest.raises(NotFound):
        await ledger.get_balance("no-such-user")
