from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from beanie import Document, PydanticObjectId
from bson import Decimal128
from pydantic import Field, field_validator
from pymongo import ASCENDING, DESCENDING, IndexModel

from aidispatch.ledger.entries import LedgerEntry


class CreditTransaction(Document):
    """Stored form of a LedgerEntry. Never updated after insert."""

    user_id: str
    seq: int
    type: str  # purchase, usage, refund, bonus, adjustment
    amount: Decimal  # positive = credit, negative = debit
    balance_before: Decimal
    balance_after: Decimal
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    ai_provider: str | None = None
    ai_model: str | None = None
    tokens_used: int | None = None
    payment_reference: str | None = None
    payment_method: str | None = None
    payment_status: str | None = None
    idempotency_key: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("amount", "balance_before", "balance_after", mode="before")
    @classmethod
    def _from_decimal128(cls, v: Any) -> Any:
        return v.to_decimal() if isinstance(v, Decimal128) else v

    class Settings:
        name = "credit_transactions"
        indexes = [
            # one row per position in a user's chain: concurrent appends on the same tail collide here
            IndexModel([("user_id", ASCENDING), ("seq", DESCENDING)], unique=True, name="user_seq_unique"),
            IndexModel(
                [("user_id", ASCENDING), ("idempotency_key", ASCENDING)],
                unique=True,
                partialFilterExpression={"idempotency_key": {"$type": "string"}},
                name="user_idempotency_unique",
            ),
            IndexModel([("user_id", ASCENDING), ("type", ASCENDING), ("created_at", DESCENDING)]),
        ]

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "CreditTransaction":
        return cls(id=PydanticObjectId(entry.id), **entry.model_dump(exclude={"id"}))

    def to_entry(self) -> LedgerEntry:
        data = self.model_dump(exclude={"id", "revision_id"})
        created_at = data["created_at"]
        if created_at.tzinfo is None:
            # Mongo hands datetimes back naive (UTC)
            data["created_at"] = created_at.replace(tzinfo=timezone.utc)
        return LedgerEntry(id=str(self.id), **data)
