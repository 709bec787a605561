"""Credit ledger: O(1) balance lookup and atomic read-then-append per user."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from functools import lru_cache
from typing import Any, Callable

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt, stop_after_delay, wait_random

from aidispatch.core.config import get_settings
from aidispatch.core.exceptions import InsufficientCreditsError, LedgerWriteConflict, RefundTargetInvalidError
from aidispatch.core.logging import get_logger
from aidispatch.ledger.base import LedgerStore, get_ledger_store
from aidispatch.ledger.entries import ZERO, LedgerEntry, TransactionType, to_credits

log = get_logger(__name__)

CREDIT_TYPES = ("purchase", "bonus", "refund", "adjustment")
DEMO_CREDITS_KEY = "demo_credits"


def _next_entry(tail: LedgerEntry | None, user_id: str, amount: Decimal, type: TransactionType, **fields: Any) -> LedgerEntry:
    before = tail.balance_after if tail else ZERO
    return LedgerEntry(
        user_id=user_id,
        seq=tail.seq + 1 if tail else 1,
        type=type,
        amount=amount,
        balance_before=before,
        balance_after=before + amount,
        **fields,
    )


def _return_existing(entry: LedgerEntry) -> LedgerEntry:
    return entry


class CreditLedger:
    """Append-only credit ledger on top of a LedgerStore.

    Every write reads the user's tail, validates against the balance it
    carries, and appends the next ``seq``. If another writer got there first
    the store raises ``LedgerWriteConflict`` and the whole read-validate-append
    step is retried against the new tail, so a charge can never be validated
    against a stale balance.
    """

    def __init__(self, store: LedgerStore | None = None, conflict_retries: int | None = None) -> None:
        self.store = store or get_ledger_store()
        self.conflict_retries = conflict_retries or get_settings().ledger_conflict_retries

    async def get_balance(self, user_id: str) -> Decimal:
        """Return balance_after of the latest row (0 if the user has no rows)."""
        tail = await self.store.tail(user_id)
        return tail.balance_after if tail else ZERO

    async def has_credits(self, user_id: str, cost: Decimal) -> bool:
        return await self.get_balance(user_id) >= to_credits(cost)

    async def _append(
        self,
        user_id: str,
        build: Callable[[LedgerEntry | None], LedgerEntry],
        idempotency_key: str | None = None,
        on_duplicate: Callable[[LedgerEntry], LedgerEntry] = _return_existing,
        retry_window: float | None = None,
    ) -> LedgerEntry:
        def _log_conflict(state: RetryCallState) -> None:
            log.warning("ledger_conflict_retry", user_id=user_id, attempt=state.attempt_number)

        # a retry window keeps retrying for that many seconds instead of a fixed attempt count
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(LedgerWriteConflict),
            stop=stop_after_delay(retry_window) if retry_window else stop_after_attempt(self.conflict_retries),
            wait=wait_random(0, 0.05),
            before_sleep=_log_conflict,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if idempotency_key:
                    existing = await self.store.find_by_idempotency_key(user_id, idempotency_key)
                    if existing:
                        return on_duplicate(existing)
                tail = await self.store.tail(user_id)
                return await self.store.append(build(tail))
        raise AssertionError("unreachable")

    async def reserve_and_charge(
        self,
        user_id: str,
        cost: Decimal,
        *,
        provider: str | None = None,
        model: str | None = None,
        tokens_used: int | None = None,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        retry_window: float | None = None,
    ) -> LedgerEntry:
        """Write a usage row for ``cost`` or raise InsufficientCreditsError without writing.

        ``retry_window`` bounds write-conflict retries by time rather than by
        ``conflict_retries`` attempts.
        """
        cost = to_credits(cost)
        if cost <= 0:
            raise ValueError("Charge amount must be positive")

        def build(tail: LedgerEntry | None) -> LedgerEntry:
            balance = tail.balance_after if tail else ZERO
            if balance < cost:
                raise InsufficientCreditsError(cost, balance)
            return _next_entry(
                tail,
                user_id,
                -cost,
                "usage",
                description=description or "AI usage",
                metadata={"cost_per_usage": str(cost), **(metadata or {})},
                ai_provider=provider,
                ai_model=model,
                tokens_used=tokens_used,
            )

        entry = await self._append(user_id, build, retry_window=retry_window)
        log.info("credits_charged", user_id=user_id, transaction_id=entry.id, cost=str(cost), balance_after=str(entry.balance_after))
        return entry

    async def credit(
        self,
        user_id: str,
        amount: Decimal,
        type: TransactionType,
        *,
        description: str = "",
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
        payment_reference: str | None = None,
        payment_method: str | None = None,
        payment_status: str | None = None,
    ) -> LedgerEntry:
        """Append a purchase, bonus, refund or adjustment row.

        Purchase, bonus and refund amounts must be positive; adjustments may
        carry either sign but can never take the balance below zero. With an
        ``idempotency_key`` a repeated call returns the row written first.
        """
        if type not in CREDIT_TYPES:
            raise ValueError(f"Invalid credit type: {type}")
        amount = to_credits(amount)
        if type != "adjustment" and amount <= 0:
            raise ValueError(f"{type} amount must be positive")
        if type == "adjustment" and amount == 0:
            raise ValueError("adjustment amount must be non-zero")

        def build(tail: LedgerEntry | None) -> LedgerEntry:
            balance = tail.balance_after if tail else ZERO
            if balance + amount < 0:
                raise InsufficientCreditsError(-amount, balance)
            return _next_entry(
                tail,
                user_id,
                amount,
                type,
                description=description,
                metadata=metadata or {},
                idempotency_key=idempotency_key,
                payment_reference=payment_reference,
                payment_method=payment_method,
                payment_status=payment_status,
            )

        entry = await self._append(user_id, build, idempotency_key=idempotency_key)
        log.info("credits_added", user_id=user_id, transaction_id=entry.id, type=type, amount=str(entry.amount))
        return entry

    async def refund(
        self,
        transaction_id: str,
        reason: str | None = None,
        retry_window: float | None = None,
    ) -> LedgerEntry:
        """Reverse a usage row exactly once."""
        original = await self.store.get(transaction_id)
        if original is None:
            raise RefundTargetInvalidError(f"Transaction {transaction_id} not found", transaction_id)
        if original.type != "usage":
            raise RefundTargetInvalidError(
                f"Only usage transactions can be refunded, got {original.type}", transaction_id
            )

        def already_refunded(existing: LedgerEntry) -> LedgerEntry:
            raise RefundTargetInvalidError(
                f"Transaction {transaction_id} already refunded by {existing.id}", transaction_id
            )

        def build(tail: LedgerEntry | None) -> LedgerEntry:
            return _next_entry(
                tail,
                original.user_id,
                -original.amount,
                "refund",
                description=f"Refund: {original.description}" if original.description else "Refund",
                metadata={"refund_of": original.id, **({"reason": reason} if reason else {})},
                idempotency_key=f"refund:{original.id}",
            )

        entry = await self._append(
            original.user_id,
            build,
            idempotency_key=f"refund:{original.id}",
            on_duplicate=already_refunded,
            retry_window=retry_window,
        )
        log.info("credits_refunded", user_id=original.user_id, transaction_id=entry.id, refund_of=original.id, amount=str(entry.amount))
        return entry

    async def grant_demo_credits(self, user_id: str) -> LedgerEntry | None:
        """One-time bonus at account creation; safe to call again."""
        amount = get_settings().demo_credits
        if amount <= 0:
            return None
        return await self.credit(
            user_id,
            amount,
            "bonus",
            description="Demo credits",
            idempotency_key=DEMO_CREDITS_KEY,
        )

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        types: tuple[TransactionType, ...] | None = None,
    ) -> list[LedgerEntry]:
        return await self.store.history(user_id, limit=limit, offset=offset, types=types)

    async def monthly_usage_count(self, user_id: str) -> int:
        since = datetime.now(timezone.utc) - timedelta(days=30)
        return await self.store.count(user_id, "usage", since=since)

    async def status(self, user_id: str) -> dict[str, Any]:
        """Balance, totals, recent rows and per-provider usage breakdown."""
        rows = await self.store.entries(user_id)
        refunded = {r.refund_of for r in rows if r.type == "refund" and r.refund_of}
        total_purchased = sum((r.amount for r in rows if r.type == "purchase"), ZERO)
        total_bonus = sum((r.amount for r in rows if r.type == "bonus"), ZERO)
        breakdown: dict[str, dict[str, Any]] = {}
        total_used = ZERO
        total_uses = 0
        for r in rows:
            if r.type != "usage" or r.id in refunded:
                continue
            total_uses += 1
            total_used += -r.amount
            key = r.ai_provider or "unknown"
            item = breakdown.setdefault(key, {"uses": 0, "credits": ZERO})
            item["uses"] += 1
            item["credits"] += -r.amount
        return {
            "balance": str(rows[-1].balance_after if rows else ZERO),
            "total_purchased": str(total_purchased),
            "total_bonus": str(total_bonus),
            "total_used": str(total_used),
            "recent_transactions": [r.to_public() for r in reversed(rows[-5:])],
            "usage_stats": {
                "total_uses": total_uses,
                "total_credits_used": str(total_used),
                "provider_breakdown": {k: {"uses": v["uses"], "credits": str(v["credits"])} for k, v in breakdown.items()},
            },
        }

    async def verify_chain(self, user_id: str) -> list[str]:
        """Return a description of every integrity violation in the user's chain (empty when sound)."""
        problems: list[str] = []
        previous: LedgerEntry | None = None
        for row in await self.store.entries(user_id):
            expected_seq = previous.seq + 1 if previous else 1
            if row.seq != expected_seq:
                problems.append(f"{row.id}: seq {row.seq}, expected {expected_seq}")
            expected_before = previous.balance_after if previous else ZERO
            if row.balance_before != expected_before:
                problems.append(f"{row.id}: balance_before {row.balance_before}, expected {expected_before}")
            if row.balance_before + row.amount != row.balance_after:
                problems.append(f"{row.id}: balance_after does not equal balance_before + amount")
            if row.balance_after < 0:
                problems.append(f"{row.id}: negative balance {row.balance_after}")
            previous = row
        return problems


@lru_cache
def get_credit_ledger() -> CreditLedger:
    return CreditLedger()
