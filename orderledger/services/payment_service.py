"""
Payment application engine.

Applies confirmed settlement amounts to orders. Safe under at-least-once
delivery: a portal report seen before is skipped, a report for an order that
is already fully paid changes nothing, and the ledger write is version-checked so two reports racing on the same
order are applied one after the other instead of one overwriting the other.
"""

import logging

from orderledger.core.exceptions import (
    PaymentValidationError,
    TerminalStateConflict,
    VersionConflictError,
)
from orderledger.core.monitoring import monitor_errors
from orderledger.models import OrderStatus, OrderType, Transaction, utc_now
from orderledger.schemas.responses import PaymentResult, SettlementResult
from orderledger.schemas.transaction import SettlementPayload
from orderledger.services.collaborators import SettlementJournal
from orderledger.services.ledger import TransactionLedger
from orderledger.services.status_service import MAX_CONFLICT_ROUNDS, StatusTransitionController
from orderledger.services.validators import get_validator

logger = logging.getLogger(__name__)

EXPECTED_DIRECTION = {
    OrderType.DEPOSIT.value: "credit",
    OrderType.WITHDRAW.value: "debit",
}


class PaymentService:
    """Service layer for applying settlement confirmations"""

    def __init__(
        self,
        ledger: TransactionLedger,
        controller: StatusTransitionController,
        journal: SettlementJournal,
    ):
        self.ledger = ledger
        self.controller = controller
        self.journal = journal

    @monitor_errors("apply_payment")
    async def apply_payment(self, order_id: str, settled_amount: int) -> PaymentResult:
        """
        Add a settled amount to an order and complete it once fully paid.

        Args:
            order_id: Caller-visible order id
            settled_amount: Amount the portal confirmed

        Returns:
            PaymentResult; `applied` is False for idempotent no-ops

        Raises:
            PaymentValidationError: If the amount is not positive
            TerminalStateConflict: If the order failed or was canceled
            NotFoundError: If the order never became visible
            VersionConflictError: If the row kept changing on every attempt
        """
        if not isinstance(settled_amount, int) or isinstance(settled_amount, bool) or settled_amount <= 0:
            raise PaymentValidationError("Settled amount must be a positive integer", "amount", settled_amount)

        for attempt in range(1, MAX_CONFLICT_ROUNDS + 1):
            current = await self.ledger.get_by_order_id(order_id, tag="apply_payment")

            if current.status in (OrderStatus.FAILED, OrderStatus.CANCELED):
                raise TerminalStateConflict(order_id, current.status)

            if current.is_fully_paid:
                logger.info(f"Order {order_id} already fully paid, ignoring settlement of {settled_amount}")
                return PaymentResult(
                    success=True,
                    message="Order was already fully paid",
                    applied=False,
                    already_complete=True,
                    completed=current.status == OrderStatus.COMPLETED,
                    transaction=current,
                )

            if current.status == OrderStatus.COMPLETED:
                return PaymentResult(
                    success=True,
                    message="Order was already completed",
                    applied=False,
                    completed=True,
                    transaction=current,
                )

            changes = self._payment_changes(current, settled_amount)
            is_complete = changes.get("odrStatus") == OrderStatus.COMPLETED.value

            try:
                updated = await self.ledger.save_changes(current, changes, tag="apply_payment")
            except VersionConflictError:
                if attempt == MAX_CONFLICT_ROUNDS:
                    raise
                logger.info(f"Version conflict applying payment to {order_id}, re-reading")
                continue

            if is_complete:
                await self.controller.run_side_effects(current, updated)

            logger.info(
                f"Applied {settled_amount} to {order_id}: paid={updated.paid_amount}/{updated.amount}, "
                f"status={updated.status}"
            )
            return PaymentResult(
                success=True,
                message="Order completed" if is_complete else "Partial payment recorded",
                applied=True,
                completed=is_complete,
                transaction=updated,
            )

    @staticmethod
    def _payment_changes(current: Transaction, settled_amount: int) -> dict:
        new_paid = current.paid_amount + settled_amount
        is_complete = new_paid >= current.amount

        changes = {
            "paidAmount": min(new_paid, current.amount),
            "unPaidAmount": max(0, current.amount - new_paid),
            "lastPaymentDate": utc_now(),
        }
        if new_paid > current.amount:
            changes["overpaidAmount"] = current.overpaid_amount + (new_paid - current.amount)
            logger.warning(f"Order {current.order_id} overpaid by {new_paid - current.amount}")

        if is_complete:
            changes["odrStatus"] = OrderStatus.COMPLETED.value
            changes["isSentCallbackNotification"] = False

        return changes

    @monitor_errors("process_settlement")
    async def process_settlement(self, portal: str, payload: SettlementPayload) -> SettlementResult:
        """
        Validate a portal report and apply it.

        Each (portal, reference) is applied at most once. A repeated delivery
        returns a result with `duplicate` set and leaves the ledger untouched.
        If applying fails the claim is dropped again so the retry can land.

        Raises:
            NotFoundError: Unknown portal, or the order never became visible
            PaymentValidationError: The validator rejected the report, or its
                direction does not match the order type
        """
        validator = get_validator(portal)
        confirmation = await validator(payload)

        current = await self.ledger.get_by_order_id(confirmation.order_id, tag=f"settlement_{portal}")
        expected = EXPECTED_DIRECTION[current.order_type]
        if confirmation.direction != expected:
            raise PaymentValidationError(
                f"A {current.order_type} order can only be settled by a {expected}",
                "direction",
                confirmation.direction,
            )

        claimed = await self.journal.claim(
            portal, confirmation.reference, confirmation.order_id, confirmation.amount
        )
        if not claimed:
            return SettlementResult(
                success=True,
                message="Settlement was already processed",
                applied=False,
                duplicate=True,
                already_complete=current.is_fully_paid,
                completed=current.status == OrderStatus.COMPLETED,
                transaction=current,
                portal=portal,
                reference=confirmation.reference,
            )

        try:
            result = await self.apply_payment(confirmation.order_id, confirmation.amount)
        except Exception:
            await self.journal.release(portal, confirmation.reference)
            raise

        logger.info(f"Settlement {confirmation.reference} from {portal} handled for {confirmation.order_id}")

        return SettlementResult(
            **result.model_dump(exclude={"transaction"}),
            transaction=result.transaction,
            portal=portal,
            reference=confirmation.reference,
        )
