"""
Settlement routes: signed portal webhooks and staff re-validation.

Both end in the payment engine; the webhook goes through the portal's
validator first.
"""

from fastapi import APIRouter, Depends
from orderledger.dependencies import LedgerServices, get_services
from orderledger.schemas.responses import PaymentResult, SettlementResult
from orderledger.schemas.transaction import ApplyPaymentRequest, SettlementPayload
from orderledger.security import verify_hmac_signature, verify_internal_secret
import logging

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/payment/{portal}", dependencies=[Depends(verify_hmac_signature)])
async def settlement_webhook(
    portal: str,
    payload: SettlementPayload,
    services: LedgerServices = Depends(get_services),
) -> SettlementResult:
    """Apply a settlement reported by a registered portal."""
    return await services.payments.process_settlement(portal, payload)


@router.post("/payments/apply", dependencies=[Depends(verify_internal_secret)])
async def apply_payment(
    request: ApplyPaymentRequest,
    services: LedgerServices = Depends(get_services),
) -> PaymentResult:
    """
    Staff re-validation: apply an amount confirmed out of band.

    Repeating the call for an order that is already fully paid is a no-op.
    """
    result = await services.payments.apply_payment(request.order_id, request.amount)
    logger.info(f"Manual payment of {request.amount} for {request.order_id}: applied={result.applied}")
    return result
