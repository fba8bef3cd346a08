"""
Dashboard and export routes over filtered ledger rows.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from orderledger.dependencies import LedgerServices, get_services
from orderledger.schemas.responses import CountResponse, StatsResponse
from orderledger.schemas.transaction import TransactionFilters
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


def transaction_filters(
    status: str = Query("all"),
    type: str = Query("all"),
    order_ids: Optional[str] = Query(None, description="Comma, semicolon or newline separated"),
    merchant_order_ids: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    amount_min: Optional[int] = Query(None),
    amount_max: Optional[int] = Query(None),
    account: Optional[str] = Query(None),
    callback_sent: str = Query("all"),
) -> TransactionFilters:
    try:
        return TransactionFilters(
            status=status,
            type=type,
            order_ids=order_ids,
            merchant_order_ids=merchant_order_ids,
            date_from=date_from,
            date_to=date_to,
            amount_min=amount_min,
            amount_max=amount_max,
            account=account,
            callback_sent=callback_sent,
        )
    except ValidationError as e:
        raise RequestValidationError(e.errors(include_url=False, include_context=False))


@router.get("/count")
async def count_transactions(
    filters: TransactionFilters = Depends(transaction_filters),
    services: LedgerServices = Depends(get_services),
) -> CountResponse:
    count = await services.enumeration.count_matching(filters)
    return CountResponse(success=True, message=f"{count} matching transactions", count=count)


@router.get("/stats")
async def transaction_stats(
    filters: TransactionFilters = Depends(transaction_filters),
    services: LedgerServices = Depends(get_services),
) -> StatsResponse:
    by_status = await services.enumeration.status_breakdown(filters)
    total = sum(by_status.values())
    return StatsResponse(success=True, message="Statistics computed", total=total, by_status=by_status)


@router.get("/export")
async def export_transactions(
    filters: TransactionFilters = Depends(transaction_filters),
    services: LedgerServices = Depends(get_services),
):
    """
    Export matching rows as NDJSON, newest first.

    The export is materialized before the response starts so a memory-ceiling
    abort is still reported as a proper 507.
    """
    report = await services.enumeration.export_report(filters)

    def lines():
        for row in report.rows:
            yield row.model_dump_json(by_alias=True) + "\n"

    return StreamingResponse(
        lines(),
        media_type="application/x-ndjson",
        headers={
            "Content-Disposition": f'attachment; filename="{report.filename}"',
            "X-Export-Mode": report.mode,
            "X-Export-Count": str(report.count),
            "X-Export-Errors": str(len(report.errors)),
        },
    )
