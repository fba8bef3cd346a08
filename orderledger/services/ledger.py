"""
Transaction ledger: typed access to ledger rows on top of the resilient store.

Every mutation of an existing row goes through `save_changes`, which checks the
row invariants on the state the write would produce, bumps the version and
refuses to apply when another writer got there first. Count-cache entries that
a write can affect are invalidated by tag right after it commits.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Set

from pymongo.errors import DuplicateKeyError

from orderledger.core.cache import TaggedTTLCache, count_cache
from orderledger.core.exceptions import DuplicateOrderError
from orderledger.models import TERMINAL_STATUSES, TRANSACTIONS, Transaction, utc_now
from orderledger.services.store import ResilientStore

logger = logging.getLogger(__name__)


def creation_tags(transaction: Transaction) -> Set[str]:
    tags = {
        f"status:{transaction.status}",
        "status:any",
        f"type:{transaction.order_type}",
        "type:any",
    }
    for account in (transaction.positive_account, transaction.negative_account):
        if account:
            tags.add(f"account:{account}")
    if transaction.is_sent_callback_notification is not None:
        tags.add("notify")
    return tags


def change_tags(before: Transaction, after: Transaction) -> Set[str]:
    tags = set()
    if before.status != after.status:
        tags.update({f"status:{before.status}", f"status:{after.status}"})
    if before.is_sent_callback_notification != after.is_sent_callback_notification:
        tags.add("notify")
    return tags


class TransactionLedger:
    """Reads and version-checked writes of ledger rows"""

    def __init__(self, store: ResilientStore, cache: TaggedTTLCache = count_cache):
        self.store = store
        self.cache = cache

    async def insert(self, transaction: Transaction) -> Transaction:
        """
        Store a new ledger row.

        Raises:
            DuplicateOrderError: If the odrId is already taken
            LedgerInvariantError: If the row is inconsistent
        """
        transaction.check_invariants()
        try:
            await self.store.insert(TRANSACTIONS, transaction.to_document(), tag=f"create:{transaction.order_id}")
        except DuplicateKeyError:
            logger.info(f"Duplicate order id rejected: {transaction.order_id}")
            raise DuplicateOrderError(transaction.order_id)

        self.invalidate(creation_tags(transaction))
        return transaction

    async def get_by_order_id(self, order_id: str, tag: str = "lookup") -> Transaction:
        """Fetch by caller-visible order id, retrying while the row is not visible yet."""
        document = await self.store.read_one(TRANSACTIONS, {"odrId": order_id}, tag=f"{tag}:{order_id}")
        return Transaction.from_document(document)

    async def get_by_id(self, record_id: str, tag: str = "lookup") -> Transaction:
        document = await self.store.read_one(TRANSACTIONS, {"_id": record_id}, tag=f"{tag}:{record_id}")
        return Transaction.from_document(document)

    async def find_by_order_id(self, order_id: str) -> Optional[Transaction]:
        document = await self.store.read_one(
            TRANSACTIONS, {"odrId": order_id}, tag=f"exists:{order_id}", required=False
        )
        return Transaction.from_document(document) if document else None

    async def save_changes(self, current: Transaction, changes: Dict[str, Any], tag: str) -> Transaction:
        """
        Write field changes to a row read at `current.version`.

        Args:
            current: The row as last read
            changes: Stored-name field updates, e.g. {"paidAmount": 100}
            tag: Label for retry logs

        Returns:
            The row after the write

        Raises:
            LedgerInvariantError: The resulting row would be inconsistent (nothing is written)
            VersionConflictError: The row changed since `current` was read
        """
        current.with_changes(changes).check_invariants()

        mutation = {
            "$set": {**changes, "updatedAt": utc_now()},
            "$inc": {"version": 1},
        }
        document = await self.store.write(
            TRANSACTIONS,
            current.id,
            mutation,
            tag=f"{tag}:{current.order_id}",
            expected_version=current.version,
        )
        updated = Transaction.from_document(document)

        self.invalidate(change_tags(current, updated))
        return updated

    async def list_pending_notifications(self, limit: int = 100) -> List[Transaction]:
        """Rows whose terminal-state callback is awaiting delivery, oldest first."""
        documents = await self.store.read(
            TRANSACTIONS,
            {"isSentCallbackNotification": False},
            tag="notifications:pending",
            sort=[("updatedAt", 1), ("_id", 1)],
            limit=limit,
        )
        return [Transaction.from_document(doc) for doc in documents]

    async def mark_notifications(self, order_ids: Iterable[str], sent: bool) -> int:
        """Set the callback flag on terminal rows; returns how many rows changed."""
        ids = list(order_ids)
        updated = await self.store.write_many(
            TRANSACTIONS,
            {
                "odrId": {"$in": ids},
                "isSentCallbackNotification": {"$ne": sent},
                "odrStatus": {"$in": [status.value for status in TERMINAL_STATUSES]},
            },
            {
                "$set": {"isSentCallbackNotification": sent, "updatedAt": utc_now()},
                "$inc": {"version": 1},
            },
            tag="notifications:mark",
        )
        if updated:
            self.invalidate({"notify"})
        logger.info(f"Marked {updated}/{len(ids)} notifications as sent={sent}")
        return updated

    def invalidate(self, tags: Set[str]) -> None:
        if tags:
            self.cache.invalidate(tags)
