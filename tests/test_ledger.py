import asyncio
from decimal import Decimal

import pytest
from pydantic import ValidationError

from aidispatch.core.exceptions import InsufficientCreditsError, LedgerWriteConflict, RefundTargetInvalidError
from aidispatch.ledger.entries import LedgerEntry, to_credits
from aidispatch.services.ledger import CreditLedger

USER = "user-1"


async def _assert_chain_sound(ledger: CreditLedger, user_id: str = USER) -> None:
    assert await ledger.verify_chain(user_id) == []
    rows = await ledger.store.entries(user_id)
    for row in rows:
        assert row.balance_after == row.balance_before + row.amount
        assert row.balance_after >= 0
    # every row was built on a distinct tail
    assert [r.seq for r in rows] == list(range(1, len(rows) + 1))


async def test_balance_is_zero_without_rows(ledger):
    assert await ledger.get_balance(USER) == Decimal("0")
    assert await ledger.has_credits(USER, Decimal("0.01")) is False


async def test_balance_is_latest_balance_after(ledger):
    await ledger.credit(USER, Decimal("10"), "purchase")
    await ledger.reserve_and_charge(USER, Decimal("2"), provider="openai-gpt5", model="gpt-5")
    await ledger.credit(USER, Decimal("1.5"), "bonus")
    assert await ledger.get_balance(USER) == Decimal("9.50")
    tail = await ledger.store.tail(USER)
    assert tail.seq == 3
    assert tail.balance_after == Decimal("9.50")
    await _assert_chain_sound(ledger)


async def test_charge_writes_usage_row(ledger):
    await ledger.credit(USER, Decimal("3"), "purchase")
    entry = await ledger.reserve_and_charge(
        USER, Decimal("1.5"), provider="anthropic-claude", model="claude-3-5-sonnet-20241022", tokens_used=120
    )
    assert entry.type == "usage"
    assert entry.amount == Decimal("-1.50")
    assert entry.balance_before == Decimal("3.00")
    assert entry.balance_after == Decimal("1.50")
    assert entry.ai_provider == "anthropic-claude"
    assert entry.tokens_used == 120
    assert entry.metadata["cost_per_usage"] == "1.50"
    assert entry.is_credit_deduction


async def test_insufficient_credits_writes_nothing(ledger):
    await ledger.credit(USER, Decimal("1"), "bonus")
    with pytest.raises(InsufficientCreditsError) as exc:
        await ledger.reserve_and_charge(USER, Decimal("2"))
    assert exc.value.required == Decimal("2.00")
    assert exc.value.available == Decimal("1.00")
    assert exc.value.details["shortfall"] == "1.00"
    assert len(await ledger.store.entries(USER)) == 1


async def test_charge_must_be_positive(ledger):
    with pytest.raises(ValueError):
        await ledger.reserve_and_charge(USER, Decimal("0"))


@pytest.mark.parametrize("type_", ["purchase", "bonus", "refund"])
async def test_credit_rejects_non_positive_amounts(ledger, type_):
    with pytest.raises(ValueError):
        await ledger.credit(USER, Decimal("-1"), type_)
    with pytest.raises(ValueError):
        await ledger.credit(USER, Decimal("0"), type_)


async def test_credit_rejects_usage_type(ledger):
    with pytest.raises(ValueError):
        await ledger.credit(USER, Decimal("1"), "usage")


async def test_adjustment_either_sign_but_never_negative_balance(ledger):
    await ledger.credit(USER, Decimal("5"), "purchase")
    await ledger.credit(USER, Decimal("-2"), "adjustment", description="correction")
    assert await ledger.get_balance(USER) == Decimal("3.00")
    with pytest.raises(InsufficientCreditsError):
        await ledger.credit(USER, Decimal("-4"), "adjustment")
    assert await ledger.get_balance(USER) == Decimal("3.00")
    await _assert_chain_sound(ledger)


async def test_idempotency_key_applies_once(ledger):
    first = await ledger.credit(USER, Decimal("25"), "purchase", idempotency_key="purchase:pi_1")
    again = await ledger.credit(USER, Decimal("25"), "purchase", idempotency_key="purchase:pi_1")
    assert again.id == first.id
    assert await ledger.get_balance(USER) == Decimal("25.00")


async def test_refund_reverses_usage_once(ledger):
    await ledger.credit(USER, Decimal("3"), "purchase")
    usage = await ledger.reserve_and_charge(USER, Decimal("2"), provider="openai-gpt5")
    refund = await ledger.refund(usage.id, reason="provider_failed")
    assert refund.type == "refund"
    assert refund.amount == Decimal("2.00")
    assert refund.refund_of == usage.id
    assert refund.metadata["reason"] == "provider_failed"
    assert await ledger.get_balance(USER) == Decimal("3.00")

    with pytest.raises(RefundTargetInvalidError):
        await ledger.refund(usage.id)
    assert await ledger.get_balance(USER) == Decimal("3.00")
    await _assert_chain_sound(ledger)


async def test_refund_rejects_non_usage_rows(ledger):
    purchase = await ledger.credit(USER, Decimal("3"), "purchase")
    with pytest.raises(RefundTargetInvalidError):
        await ledger.refund(purchase.id)


async def test_refund_unknown_transaction(ledger):
    with pytest.raises(RefundTargetInvalidError) as exc:
        await ledger.refund("does-not-exist")
    assert exc.value.code == "REFUND_TARGET_INVALID"


async def test_demo_credits_granted_once(ledger):
    first = await ledger.grant_demo_credits(USER)
    second = await ledger.grant_demo_credits(USER)
    assert first.type == "bonus"
    assert second.id == first.id
    assert await ledger.get_balance(USER) == Decimal("5.00")


async def test_concurrent_charges_with_exactly_one_unit(ledger):
    await ledger.credit(USER, Decimal("2"), "purchase")
    results = await asyncio.gather(
        ledger.reserve_and_charge(USER, Decimal("2")),
        ledger.reserve_and_charge(USER, Decimal("2")),
        return_exceptions=True,
    )
    successes = [r for r in results if isinstance(r, LedgerEntry)]
    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert await ledger.get_balance(USER) == Decimal("0.00")
    await _assert_chain_sound(ledger)


async def test_many_concurrent_charges_never_overdraw(ledger):
    await ledger.credit(USER, Decimal("10"), "purchase")
    results = await asyncio.gather(
        *[ledger.reserve_and_charge(USER, Decimal("1.5")) for _ in range(12)],
        return_exceptions=True,
    )
    successes = [r for r in results if isinstance(r, LedgerEntry)]
    assert all(isinstance(r, (LedgerEntry, InsufficientCreditsError)) for r in results)
    assert len(successes) == 6
    assert await ledger.get_balance(USER) == Decimal("1.00")
    await _assert_chain_sound(ledger)


async def test_users_do_not_share_a_chain(ledger):
    await asyncio.gather(
        ledger.credit("a", Decimal("1"), "bonus"),
        ledger.credit("b", Decimal("2"), "bonus"),
    )
    assert await ledger.get_balance("a") == Decimal("1.00")
    assert await ledger.get_balance("b") == Decimal("2.00")
    assert (await ledger.store.tail("a")).seq == 1
    assert (await ledger.store.tail("b")).seq == 1


async def test_store_refuses_stale_tail(store):
    first = LedgerEntry(user_id=USER, seq=1, type="bonus", amount=Decimal("1"), balance_before=Decimal("0"), balance_after=Decimal("1"))
    await store.append(first)
    stale = LedgerEntry(user_id=USER, seq=1, type="bonus", amount=Decimal("2"), balance_before=Decimal("0"), balance_after=Decimal("2"))
    with pytest.raises(LedgerWriteConflict):
        await store.append(stale)


async def test_conflict_retries_exhausted_surface_conflict(store):
    class AlwaysConflicting(type(store)):
        async def append(self, entry):
            raise LedgerWriteConflict(entry.user_id, entry.seq)

    ledger = CreditLedger(store=AlwaysConflicting(), conflict_retries=2)
    with pytest.raises(LedgerWriteConflict):
        await ledger.credit(USER, Decimal("1"), "bonus")


def test_entry_rejects_inconsistent_snapshot():
    with pytest.raises(ValidationError):
        LedgerEntry(user_id=USER, seq=1, type="bonus", amount=Decimal("1"), balance_before=Decimal("0"), balance_after=Decimal("2"))
    with pytest.raises(ValidationError):
        LedgerEntry(user_id=USER, seq=1, type="usage", amount=Decimal("-1"), balance_before=Decimal("0"), balance_after=Decimal("-1"))


def test_entry_views():
    purchase = LedgerEntry(
        user_id=USER,
        seq=1,
        type="purchase",
        amount=Decimal("25.00"),
        balance_before=Decimal("0"),
        balance_after=Decimal("25.00"),
        metadata={"price": "9.99"},
    )
    assert purchase.formatted_amount == "+25.00"
    assert purchase.type_display == "Credit Purchase"
    assert purchase.provider_display == "N/A"
    assert purchase.is_credit_addition
    assert purchase.cost_per_credit == Decimal("0.3996")

    usage = LedgerEntry(
        user_id=USER,
        seq=2,
        type="usage",
        amount=Decimal("-2.00"),
        balance_before=Decimal("25.00"),
        balance_after=Decimal("23.00"),
        ai_provider="openai-gpt5",
    )
    assert usage.formatted_amount == "-2.00"
    assert usage.provider_display == "OpenAI GPT-5"
    assert usage.cost_per_credit is None
    assert usage.to_public()["amount"] == "-2.00"


def test_to_credits_rounds_half_up():
    assert to_credits(1.005) == Decimal("1.01")
    assert to_credits("2") == Decimal("2.00")


async def test_status_breakdown_excludes_refunded_usage(ledger):
    await ledger.credit(USER, Decimal("10"), "purchase", metadata={"price": "9.99"})
    await ledger.grant_demo_credits(USER)
    a = await ledger.reserve_and_charge(USER, Decimal("2"), provider="openai-gpt5")
    await ledger.reserve_and_charge(USER, Decimal("1.5"), provider="anthropic-claude")
    await ledger.refund(a.id)

    status = await ledger.status(USER)
    assert status["balance"] == "13.50"
    assert status["total_purchased"] == "10.00"
    assert status["total_bonus"] == "5.00"
    assert status["total_used"] == "1.50"
    assert status["usage_stats"]["total_uses"] == 1
    assert status["usage_stats"]["provider_breakdown"] == {"anthropic-claude": {"uses": 1, "credits": "1.50"}}
    assert len(status["recent_transactions"]) == 5
    assert status["recent_transactions"][0]["type"] == "refund"


async def test_history_newest_first_with_type_filter(ledger):
    await ledger.credit(USER, Decimal("5"), "purchase")
    await ledger.reserve_and_charge(USER, Decimal("1"))
    await ledger.reserve_and_charge(USER, Decimal("1"))
    rows = await ledger.history(USER, limit=10)
    assert [r.seq for r in rows] == [3, 2, 1]
    usage = await ledger.history(USER, types=("usage",))
    assert [r.seq for r in usage] == [3, 2]
    assert [r.seq for r in await ledger.history(USER, limit=1, offset=1)] == [2]
    assert await ledger.monthly_usage_count(USER) == 2
