from datetime import datetime

from beanie import PydanticObjectId
from beanie.operators import In
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from aidispatch.core.exceptions import LedgerWriteConflict
from aidispatch.ledger.base import LedgerStore
from aidispatch.ledger.entries import LedgerEntry, TransactionType
from aidispatch.models.credit_transaction import CreditTransaction


class MongoLedgerStore(LedgerStore):
    """Ledger rows in the credit_transactions collection.

    The unique (user_id, seq) index is the per-user serialization point: two
    writers that read the same tail both try to insert seq N+1 and exactly one
    insert succeeds. Different users never contend.
    """

    async def tail(self, user_id: str) -> LedgerEntry | None:
        doc = await CreditTransaction.find(
            CreditTransaction.user_id == user_id,
        ).sort(-CreditTransaction.seq).first_or_none()
        return doc.to_entry() if doc else None

    async def append(self, entry: LedgerEntry) -> LedgerEntry:
        try:
            await CreditTransaction.from_entry(entry).insert()
        except DuplicateKeyError as e:
            raise LedgerWriteConflict(entry.user_id, entry.seq) from e
        return entry

    async def get(self, transaction_id: str) -> LedgerEntry | None:
        if not ObjectId.is_valid(transaction_id):
            return None
        doc = await CreditTransaction.get(PydanticObjectId(transaction_id))
        return doc.to_entry() if doc else None

    async def find_by_idempotency_key(self, user_id: str, key: str) -> LedgerEntry | None:
        doc = await CreditTransaction.find_one(
            CreditTransaction.user_id == user_id,
            CreditTransaction.idempotency_key == key,
        )
        return doc.to_entry() if doc else None

    async def history(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        types: tuple[TransactionType, ...] | None = None,
    ) -> list[LedgerEntry]:
        query = CreditTransaction.find(CreditTransaction.user_id == user_id)
        if types:
            query = query.find(In(CreditTransaction.type, list(types)))
        docs = await query.sort(-CreditTransaction.seq).skip(offset).limit(limit).to_list()
        return [d.to_entry() for d in docs]

    async def entries(self, user_id: str) -> list[LedgerEntry]:
        docs = await CreditTransaction.find(
            CreditTransaction.user_id == user_id,
        ).sort(+CreditTransaction.seq).to_list()
        return [d.to_entry() for d in docs]

    async def count(self, user_id: str, type: TransactionType, since: datetime | None = None) -> int:
        query = CreditTransaction.find(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type == type,
        )
        if since is not None:
            query = query.find(CreditTransaction.created_at >= since)
        return await query.count()
