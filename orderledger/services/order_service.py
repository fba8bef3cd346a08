"""
Order creation and lookup.

Deposits start in processing and get an expiry job; withdrawals start in
pending with their amount reserved on the source account.
"""

import logging
import secrets
from datetime import datetime

from orderledger.core.exceptions import DuplicateOrderError
from orderledger.core.monitoring import error_monitor, monitor_errors
from orderledger.models import OrderStatus, OrderType, Transaction, utc_now
from orderledger.schemas.transaction import CreateOrderRequest
from orderledger.services.collaborators import AccountLedger, ExpiryScheduler
from orderledger.services.ledger import TransactionLedger

logger = logging.getLogger(__name__)

ORDER_ID_PREFIX = {
    OrderType.DEPOSIT.value: "DP",
    OrderType.WITHDRAW.value: "WD",
}


def generate_order_id(order_type: str, now: datetime = None) -> str:
    """DP/WD prefix, UTC timestamp to the second and a random suffix."""
    now = now or utc_now()
    return f"{ORDER_ID_PREFIX[order_type]}{now.strftime('%Y%m%d%H%M%S')}{secrets.token_hex(3).upper()}"


class OrderService:
    """Creates ledger rows and runs their creation side effects"""

    def __init__(self, ledger: TransactionLedger, accounts: AccountLedger, scheduler: ExpiryScheduler):
        self.ledger = ledger
        self.accounts = accounts
        self.scheduler = scheduler

    @monitor_errors("create_order")
    async def create_order(self, request: CreateOrderRequest) -> Transaction:
        """
        Create a new order.

        Args:
            request: Validated creation request

        Returns:
            The stored ledger row

        Raises:
            DuplicateOrderError: If the odrId already exists
        """
        order_type = OrderType(request.order_type).value
        is_deposit = order_type == OrderType.DEPOSIT.value
        now = utc_now()

        transaction = Transaction(
            order_id=request.order_id or generate_order_id(order_type, now),
            merchant_order_id=request.merchant_order_id,
            order_type=order_type,
            status=OrderStatus.PROCESSING if is_deposit else OrderStatus.PENDING,
            amount=request.amount,
            paid_amount=0,
            unpaid_amount=request.amount,
            positive_account=request.positive_account,
            negative_account=request.negative_account,
            bank_id=request.bank_id,
            bank_code=request.bank_code,
            bank_receive_number=request.bank_receive_number,
            bank_receive_owner_name=request.bank_receive_owner_name,
            qr_code=request.qr_code,
            url_callback=request.url_callback,
            url_success=request.url_success,
            url_failed=request.url_failed,
            url_canceled=request.url_canceled,
            created_at=now,
            updated_at=now,
        )

        if request.order_id and await self.ledger.find_by_order_id(request.order_id):
            raise DuplicateOrderError(request.order_id)

        stored = await self.ledger.insert(transaction)
        logger.info(f"Created {order_type} order {stored.order_id} for {stored.amount} ({stored.status})")

        try:
            if is_deposit:
                await self.scheduler.schedule(stored.id, stored.order_id, stored.created_at)
            elif stored.negative_account:
                await self.accounts.reserve_balance(stored.negative_account, stored.amount)
        except Exception as e:
            error_monitor.log_error(e, {"operation": "order_creation_effects", "order_id": stored.order_id})

        return stored

    async def get_order(self, order_id: str) -> Transaction:
        return await self.ledger.get_by_order_id(order_id, tag="get_order")
