from abc import ABC, abstractmethod
from datetime import datetime
from functools import lru_cache

from aidispatch.core.config import get_settings
from aidispatch.ledger.entries import LedgerEntry, TransactionType


class LedgerStore(ABC):
    """Append-only storage for ledger rows, scoped by user.

    ``append`` is a compare-and-append on the user's tail: it must raise
    ``LedgerWriteConflict`` when a row with the same ``(user_id, seq)`` or the
    same ``(user_id, idempotency_key)`` already exists. Rows are never updated
    or deleted.
    """

    @abstractmethod
    async def tail(self, user_id: str) -> LedgerEntry | None:
        """Latest row for the user, or None."""
        ...

    @abstractmethod
    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        """Write a new row; raise LedgerWriteConflict if the tail moved."""
        ...

    @abstractmethod
    async def get(self, transaction_id: str) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        types: tuple[TransactionType, ...] | None = None,
    ) -> list[LedgerEntry]:
        """Rows newest first."""
        ...

    @abstractmethod
    async def entries(self, user_id: str) -> list[LedgerEntry]:
        """All rows in seq order (audit and reporting, never the balance path)."""
        ...

    @abstractmethod
    async def count(self, user_id: str, type: TransactionType, since: datetime | None = None) -> int:
        ...


def create_ledger_store(backend: str) -> LedgerStore:
    if backend == "memory":
        from aidispatch.ledger.memory import MemoryLedgerStore
        return MemoryLedgerStore()
    if backend == "mongo":
        from aidispatch.ledger.mongo import MongoLedgerStore
        return MongoLedgerStore()
    raise ValueError(f"Unknown ledger backend: {backend}")


@lru_cache
def get_ledger_store() -> LedgerStore:
    return create_ledger_store(get_settings().ledger_backend)
