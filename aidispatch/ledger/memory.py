"""In-process ledger store for development and tests.

Reads do not take the per-user lock, so concurrent writers can observe the
same tail and race exactly like they would against MongoDB; the lock only
guards the compare-and-append step.
"""

import asyncio
from collections import defaultdict
from datetime import datetime

from aidispatch.core.exceptions import LedgerWriteConflict
from aidispatch.ledger.base import LedgerStore
from aidispatch.ledger.entries import LedgerEntry, TransactionType


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._rows: dict[str, list[LedgerEntry]] = defaultdict(list)
        self._by_id: dict[str, LedgerEntry] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def tail(self, user_id: str) -> LedgerEntry | None:
        # yield like a network read would
        await asyncio.sleep(0)
        rows = self._rows.get(user_id)
        return rows[-1] if rows else None

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        async with self._locks[entry.user_id]:
            rows = self._rows[entry.user_id]
            expected_seq = rows[-1].seq + 1 if rows else 1
            if entry.seq != expected_seq:
                raise LedgerWriteConflict(entry.user_id, entry.seq)
            if entry.idempotency_key and any(r.idempotency_key == entry.idempotency_key for r in rows):
                raise LedgerWriteConflict(entry.user_id, entry.seq)
            rows.append(entry)
            self._by_id[entry.id] = entry
        return entry

    async def get(self, transaction_id: str) -> LedgerEntry | None:
        return self._by_id.get(transaction_id)

    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerEntry | None:
        for row in self._rows.get(user_id, []):
            if row.idempotency_key == key:
                return row
        return None

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        types: tuple[TransactionType, ...] | None = None,
    ) -> list[LedgerEntry]:
        rows = [r for r in reversed(self._rows.get(user_id, [])) if types is None or r.type in types]
        return rows[offset:offset + limit]

    async def entries(self, user_id: str) -> list[LedgerEntry]:
        return list(self._rows.get(user_id, []))

    async def count(self, user_id: str, type: TransactionType, since: datetime | None = None) -> int:
        return sum(
            1
            for r in self._rows.get(user_id, [])
            if r.type == type and (since is None or r.created_at >= since)
        )
