"""
Collaborators consumed by the ledger engine: account balances, expiry jobs
and the journal of accepted settlement reports.

Balances are only ever changed with atomic $inc updates, so concurrent
completions on the same account never overwrite each other.
"""

import logging
from datetime import datetime, timedelta

from pymongo.errors import DuplicateKeyError

from orderledger.core.exceptions import StoreError
from orderledger.core.monitoring import error_monitor
from orderledger.models import ACCOUNTS, EXPIRY_JOBS, SETTLEMENTS, Account, ExpiryJob, SettlementRecord, utc_now
from orderledger.services.store import ResilientStore

logger = logging.getLogger(__name__)


class AccountLedger:
    """
    Balance mutations for settlement accounts.

    currentBalance is money actually held; availableBalance additionally
    excludes amounts reserved for pending withdrawals.
    """

    def __init__(self, store: ResilientStore):
        self.store = store

    async def _adjust(self, account_id: str, current: int, available: int, tag: str) -> Account:
        increments = {}
        if current:
            increments["currentBalance"] = current
        if available:
            increments["availableBalance"] = available

        document = await self.store.write(
            ACCOUNTS,
            account_id,
            {"$inc": increments, "$set": {"updatedAt": utc_now()}},
            tag=f"{tag}:{account_id}",
        )
        account = Account.from_document(document)
        logger.info(
            f"Account {account_id} {tag}: current={account.current_balance}, "
            f"available={account.available_balance}"
        )
        return account

    async def get_account(self, account_id: str) -> Account:
        document = await self.store.read_one(ACCOUNTS, {"_id": account_id}, tag=f"account:{account_id}")
        return Account.from_document(document)

    async def credit_balance(self, account_id: str, amount: int) -> Account:
        """Settled deposit: money arrives and is immediately available."""
        return await self._adjust(account_id, amount, amount, "credit")

    async def debit_balance(self, account_id: str, amount: int) -> Account:
        """Money leaves the account outright, without a prior reservation."""
        return await self._adjust(account_id, -amount, -amount, "debit")

    async def reserve_balance(self, account_id: str, amount: int) -> Account:
        return await self._adjust(account_id, 0, -amount, "reserve")

    async def release_reserved(self, account_id: str, amount: int) -> Account:
        return await self._adjust(account_id, 0, amount, "release")


class ExpiryScheduler:
    """Registers processing deposits with the expiry job collection"""

    def __init__(self, store: ResilientStore, payment_window_seconds: int = 900):
        self.store = store
        self.payment_window_seconds = payment_window_seconds

    async def schedule(self, record_id: str, order_id: str, created_at: datetime) -> ExpiryJob:
        """
        Upsert the expiry job for a record.

        Re-entry into processing reschedules from the original creation time,
        matching the sweep's own cutoff.
        """
        job = ExpiryJob(
            record_id=record_id,
            order_id=order_id,
            created_at=created_at,
            scheduled_for=created_at + timedelta(seconds=self.payment_window_seconds),
        )
        await self.store.write(
            EXPIRY_JOBS,
            record_id,
            {"$set": job.model_dump(by_alias=True, exclude={"record_id"})},
            tag=f"expiry_schedule:{order_id}",
            upsert=True,
        )
        logger.debug(f"Expiry job for {order_id} scheduled at {job.scheduled_for.isoformat()}")
        return job


class SettlementJournal:
    """
    Claims portal reports by (portal, reference) before they are applied.

    The key is the document _id, so two deliveries of the same report race on
    one unique index and exactly one of them wins the claim.
    """

    def __init__(self, store: ResilientStore):
        self.store = store

    async def claim(self, portal: str, reference: str, order_id: str, amount: int) -> bool:
        """Record a report; False when the same (portal, reference) was already claimed."""
        record = SettlementRecord(
            key=SettlementRecord.key_for(portal, reference),
            portal=portal,
            reference=reference,
            order_id=order_id,
            amount=amount,
        )
        try:
            await self.store.insert(SETTLEMENTS, record.model_dump(by_alias=True), tag=f"settlement_claim:{portal}")
        except DuplicateKeyError:
            logger.info(f"Settlement {reference} from {portal} already claimed, skipping")
            return False
        return True

    async def release(self, portal: str, reference: str) -> None:
        """Drop a claim whose application failed, so the portal's retry can apply it."""
        key = SettlementRecord.key_for(portal, reference)
        try:
            await self.store.delete(SETTLEMENTS, key, tag=f"settlement_release:{portal}")
        except StoreError as e:
            error_monitor.log_error(e, {"operation": "settlement_release", "settlement": key})
