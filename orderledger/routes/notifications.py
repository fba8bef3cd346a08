"""
Notification dispatcher interface.

The ledger only flags terminal orders as awaiting callback delivery; the
dispatcher polls the pending list, delivers, then acknowledges.
"""

from fastapi import APIRouter, Depends, Query
from orderledger.dependencies import LedgerServices, get_services
from orderledger.schemas.responses import (
    CountResponse,
    MarkNotificationsResponse,
    NotificationListResponse,
)
from orderledger.schemas.transaction import MarkNotificationsRequest, TransactionFilters
from orderledger.security import verify_internal_secret

router = APIRouter(dependencies=[Depends(verify_internal_secret)])


@router.get("/pending")
async def pending_notifications(
    limit: int = Query(100, ge=1, le=1000),
    services: LedgerServices = Depends(get_services),
) -> NotificationListResponse:
    transactions = await services.ledger.list_pending_notifications(limit)
    return NotificationListResponse(
        success=True,
        message=f"{len(transactions)} notifications awaiting delivery",
        count=len(transactions),
        transactions=transactions,
    )


@router.get("/pending/count")
async def pending_notification_count(services: LedgerServices = Depends(get_services)) -> CountResponse:
    count = await services.enumeration.count_matching(TransactionFilters(callback_sent="false"))
    return CountResponse(success=True, message=f"{count} notifications awaiting delivery", count=count)


@router.post("/mark")
async def mark_notifications(
    request: MarkNotificationsRequest,
    services: LedgerServices = Depends(get_services),
) -> MarkNotificationsResponse:
    updated = await services.ledger.mark_notifications(request.order_ids, request.sent)
    return MarkNotificationsResponse(
        success=True,
        message=f"Updated {updated} of {len(request.order_ids)} orders",
        updated=updated,
    )
