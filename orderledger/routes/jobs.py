"""
Internal job triggers for external schedulers.
"""

from fastapi import APIRouter, Depends
from orderledger.dependencies import LedgerServices, get_services
from orderledger.schemas.responses import SweepReport
from orderledger.security import verify_internal_secret

router = APIRouter(dependencies=[Depends(verify_internal_secret)])


@router.post("/process-expired")
async def process_expired(services: LedgerServices = Depends(get_services)) -> SweepReport:
    """Run one expiry sweep now."""
    return await services.sweep.run_once()
