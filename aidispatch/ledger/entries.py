"""Credit ledger rows.

A ``LedgerEntry`` is immutable once built and carries its own balance
snapshot, so the current balance of a user is always the ``balance_after`` of
their highest-``seq`` row. ``seq`` is per user and gapless; stores refuse a
second row with the same ``(user_id, seq)``.
"""

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Literal

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, model_validator

TransactionType = Literal["purchase", "usage", "refund", "bonus", "adjustment"]
TRANSACTION_TYPES = ("purchase", "usage", "refund", "bonus", "adjustment")

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

_TYPE_DISPLAY = {
    "purchase": "Credit Purchase",
    "usage": "AI Usage",
    "refund": "Refund",
    "bonus": "Bonus Credits",
    "adjustment": "Balance Adjustment",
}


def to_credits(value: Decimal | float | int | str) -> Decimal:
    """Quantize to two decimal places; floats go through str to avoid binary noise."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def new_transaction_id() -> str:
    return str(ObjectId())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_transaction_id)
    user_id: str
    seq: int = Field(ge=1)
    type: TransactionType
    amount: Decimal
    balance_before: Decimal
    balance_after: Decimal
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    # usage rows only
    ai_provider: str | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    # purchase rows from payment capture only
    payment_reference: str | None = None
    payment_method: str | None = None
    payment_status: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)

    @model_validator(mode="after")
    def _check_balance_snapshot(self) -> "LedgerEntry":
        if self.balance_before + self.amount != self.balance_after:
            raise ValueError(
                f"balance_after {self.balance_after} != balance_before {self.balance_before} + amount {self.amount}"
            )
        if self.balance_after < 0:
            raise ValueError(f"balance_after {self.balance_after} is negative")
        return self

    @property
    def formatted_amount(self) -> str:
        sign = "+" if self.amount >= 0 else ""
        return f"{sign}{self.amount:.2f}"

    @property
    def type_display(self) -> str:
        return _TYPE_DISPLAY.get(self.type, self.type.capitalize())

    @property
    def provider_display(self) -> str:
        if not self.ai_provider:
            return "N/A"
        from aidispatch.providers.registry import get_registry
        return get_registry().display_name(self.ai_provider)

    @property
    def is_credit_addition(self) -> bool:
        return self.type in ("purchase", "bonus", "refund") and self.amount > 0

    @property
    def is_credit_deduction(self) -> bool:
        return self.type == "usage" and self.amount < 0

    @property
    def refund_of(self) -> str | None:
        return self.metadata.get("refund_of")

    @property
    def cost_per_credit(self) -> Decimal | None:
        """Price paid per credit, only for purchase rows that recorded a ``price``."""
        if self.type != "purchase" or "price" not in self.metadata or not self.amount:
            return None
        return (Decimal(str(self.metadata["price"])) / self.amount).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    def to_public(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "type_display": self.type_display,
            "amount": str(self.amount),
            "formatted_amount": self.formatted_amount,
            "balance_before": str(self.balance_before),
            "balance_after": str(self.balance_after),
            "description": self.description,
            "ai_provider": self.ai_provider,
            "provider_display": self.provider_display,
            "ai_model": self.ai_model,
            "tokens_used": self.tokens_used,
            "payment_reference": self.payment_reference,
            "payment_status": self.payment_status,
            "created_at": self.created_at.isoformat(),
        }
