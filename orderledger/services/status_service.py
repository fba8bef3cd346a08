"""
Status transition controller: the order state machine and its side effects.

    processing -> pending | completed | failed | canceled
    pending    -> processing | completed | failed | canceled
    completed, failed, canceled are terminal

Status writes are version-checked; a lost race re-reads the row and decides
again. Balance, expiry and notification effects run after the ledger write
commits and never roll it back.
"""

import logging
from typing import Awaitable, Dict, Tuple

from orderledger.core.exceptions import (
    InvalidTransition,
    NoOpTransition,
    PaymentValidationError,
    VersionConflictError,
)
from orderledger.core.monitoring import error_monitor, monitor_errors
from orderledger.models import OrderStatus, OrderType, Transaction
from orderledger.services.collaborators import AccountLedger, ExpiryScheduler
from orderledger.services.ledger import TransactionLedger

logger = logging.getLogger(__name__)

MAX_CONFLICT_ROUNDS = 3

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    OrderStatus.PROCESSING.value: (
        OrderStatus.PENDING.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.FAILED.value,
        OrderStatus.CANCELED.value,
    ),
    OrderStatus.PENDING.value: (
        OrderStatus.PROCESSING.value,
        OrderStatus.COMPLETED.value,
        OrderStatus.FAILED.value,
        OrderStatus.CANCELED.value,
    ),
    OrderStatus.COMPLETED.value: (),
    OrderStatus.FAILED.value: (),
    OrderStatus.CANCELED.value: (),
}


def transition_changes(current: Transaction, target: str) -> Dict[str, object]:
    """Fields written together with a move to `target`."""
    changes: Dict[str, object] = {"odrStatus": target}

    if target == OrderStatus.COMPLETED:
        # Manual completion settles the order in full
        changes["paidAmount"] = current.amount
        changes["unPaidAmount"] = 0

    if target in (OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELED):
        changes["isSentCallbackNotification"] = False

    return changes


class StatusTransitionController:
    """Applies legal status moves to ledger rows"""

    def __init__(
        self,
        ledger: TransactionLedger,
        accounts: AccountLedger,
        scheduler: ExpiryScheduler,
    ):
        self.ledger = ledger
        self.accounts = accounts
        self.scheduler = scheduler

    @monitor_errors("status_transition")
    async def transition(self, record_id: str, target, reason: str = "manual") -> Transaction:
        """
        Move a ledger row to a new status.

        Args:
            record_id: Internal record id
            target: Target OrderStatus (or its string value)
            reason: Who asked, for logs ("manual", "expiry", ...)

        Returns:
            The row after the write

        Raises:
            NoOpTransition: The row already has the target status (carries the row)
            InvalidTransition: The move is not allowed from the current status
            VersionConflictError: The row kept changing under us
        """
        try:
            target = OrderStatus(target).value
        except ValueError:
            raise PaymentValidationError(f"Unknown status '{target}'", "status", target)

        for attempt in range(1, MAX_CONFLICT_ROUNDS + 1):
            current = await self.ledger.get_by_id(record_id, tag="transition")

            if current.status == target:
                raise NoOpTransition(record_id, target, current)

            if target not in ALLOWED_TRANSITIONS[current.status]:
                raise InvalidTransition(record_id, current.status, target)

            try:
                updated = await self.ledger.save_changes(
                    current, transition_changes(current, target), tag=f"transition_{target}"
                )
            except VersionConflictError:
                if attempt == MAX_CONFLICT_ROUNDS:
                    raise
                logger.info(f"Version conflict moving {current.order_id} to {target}, re-reading")
                continue

            logger.info(f"Order {updated.order_id}: {current.status} -> {target} ({reason})")
            await self.run_side_effects(current, updated)
            return updated

    async def run_side_effects(self, previous: Transaction, updated: Transaction) -> None:
        """Best-effort effects of a committed status change; failures are only logged."""
        if (
            updated.is_terminal
            and previous.status == OrderStatus.PENDING
            and updated.order_type == OrderType.WITHDRAW
            and updated.negative_account
        ):
            await self._best_effort(
                "release_reserved",
                updated,
                self.accounts.release_reserved(updated.negative_account, updated.amount),
            )

        if updated.status == OrderStatus.COMPLETED and updated.positive_account:
            await self._best_effort(
                "credit_balance",
                updated,
                self.accounts.credit_balance(updated.positive_account, updated.amount),
            )

        elif updated.status == OrderStatus.PROCESSING and updated.order_type == OrderType.DEPOSIT:
            await self._best_effort(
                "schedule_expiry",
                updated,
                self.scheduler.schedule(updated.id, updated.order_id, updated.created_at),
            )

    async def _best_effort(self, effect: str, record: Transaction, action: Awaitable) -> None:
        try:
            await action
        except Exception as e:
            error_monitor.log_error(e, {
                "operation": effect,
                "order_id": record.order_id,
                "status": record.status,
            })
