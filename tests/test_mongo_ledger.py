"""MongoLedgerStore against a real MongoDB; skipped when none is reachable."""

import asyncio
from decimal import Decimal

import pytest

from aidispatch.core.exceptions import InsufficientCreditsError, LedgerWriteConflict
from aidispatch.ledger.entries import LedgerEntry
from aidispatch.ledger.mongo import MongoLedgerStore
from aidispatch.services.ledger import CreditLedger

USER = "mongo-user-1"


@pytest.fixture
def mongo_store(mongo) -> MongoLedgerStore:
    return MongoLedgerStore()


async def test_round_trip_keeps_decimal_precision(mongo_store):
    ledger = CreditLedger(store=mongo_store)
    await ledger.credit(USER, Decimal("10"), "purchase", idempotency_key="purchase:pi_m1")
    usage = await ledger.reserve_and_charge(USER, Decimal("1.5"), provider="anthropic-claude")
    stored = await mongo_store.get(usage.id)
    assert stored.amount == Decimal("-1.50")
    assert stored.balance_after == Decimal("8.50")
    assert await ledger.get_balance(USER) == Decimal("8.50")
    assert (await mongo_store.find_by_idempotency_key(USER, "purchase:pi_m1")).type == "purchase"
    assert await mongo_store.count(USER, "usage") == 1


async def test_duplicate_seq_is_a_conflict(mongo_store):
    first = LedgerEntry(user_id=USER, seq=1, type="bonus", amount=Decimal("1"), balance_before=Decimal("0"), balance_after=Decimal("1"))
    await mongo_store.append(first)
    stale = LedgerEntry(user_id=USER, seq=1, type="bonus", amount=Decimal("2"), balance_before=Decimal("0"), balance_after=Decimal("2"))
    with pytest.raises(LedgerWriteConflict):
        await mongo_store.append(stale)


async def test_refund_applies_once(mongo_store):
    ledger = CreditLedger(store=mongo_store)
    await ledger.credit(USER, Decimal("3"), "purchase")
    usage = await ledger.reserve_and_charge(USER, Decimal("2"))
    await ledger.refund(usage.id)
    assert await ledger.get_balance(USER) == Decimal("3.00")
    assert [r.type for r in await mongo_store.history(USER)] == ["refund", "usage", "purchase"]


async def test_concurrent_charges_never_overdraw(mongo_store):
    ledger = CreditLedger(store=mongo_store, conflict_retries=30)
    await ledger.credit(USER, Decimal("4"), "purchase")
    results = await asyncio.gather(
        *[ledger.reserve_and_charge(USER, Decimal("1")) for _ in range(8)],
        return_exceptions=True,
    )
    assert sum(isinstance(r, LedgerEntry) for r in results) == 4
    assert all(isinstance(r, (LedgerEntry, InsufficientCreditsError)) for r in results)
    assert await ledger.get_balance(USER) == Decimal("0.00")
    assert await ledger.verify_chain(USER) == []
