"""
Order routes: creation, lookup and manual status changes.
"""

from fastapi import APIRouter, Depends
from orderledger.core.exceptions import NoOpTransition
from orderledger.dependencies import LedgerServices, get_services
from orderledger.schemas.responses import OrderResponse, TransitionResult
from orderledger.schemas.transaction import CreateOrderRequest, TransitionRequest
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", status_code=201)
async def create_order(
    request: CreateOrderRequest,
    services: LedgerServices = Depends(get_services),
) -> OrderResponse:
    transaction = await services.orders.create_order(request)
    return OrderResponse(
        success=True,
        message="Order created",
        status="created",
        transaction=transaction,
    )


@router.get("/{order_id}")
async def get_order(order_id: str, services: LedgerServices = Depends(get_services)) -> OrderResponse:
    """Raises NotFoundError (404) through the exception handler when absent."""
    transaction = await services.orders.get_order(order_id)
    return OrderResponse(
        success=True,
        message="Order found",
        status="found",
        transaction=transaction,
    )


@router.post("/{record_id}/status")
async def change_status(
    record_id: str,
    request: TransitionRequest,
    services: LedgerServices = Depends(get_services),
) -> TransitionResult:
    """
    Manual status change by staff.

    Asking for the status the order already has is reported as success with
    `changed: false`.
    """
    try:
        transaction = await services.transitions.transition(record_id, request.status, reason="manual")
    except NoOpTransition as e:
        return TransitionResult(success=True, message=e.message, changed=False, transaction=e.record)

    return TransitionResult(
        success=True,
        message=f"Order moved to {transaction.status}",
        changed=True,
        transaction=transaction,
    )
