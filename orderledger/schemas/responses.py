"""
Pydantic response models for service layer.

Provides clean separation between service logic and HTTP concerns.
Service layer returns these models, FastAPI handles JSON serialization.
Embedded transactions serialize with their stored camelCase names.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from orderledger.models import Transaction


class ServiceResult(BaseModel):
    """Generic base class for all service responses."""

    success: bool = Field(..., description="Whether the operation was successful")
    message: str = Field(..., description="Human-readable result message")


class OrderResponse(ServiceResult):
    """Response model for order creation and lookup."""

    status: str = Field(..., description="'created' or 'found'")
    transaction: Transaction


class PaymentResult(ServiceResult):
    """Outcome of applying a settlement amount to an order."""

    applied: bool = Field(..., description="Whether the ledger row was written")
    already_complete: bool = Field(False, description="The order was fully paid before this call")
    completed: bool = Field(False, description="The order is completed after this call")
    transaction: Optional[Transaction] = None


class SettlementResult(PaymentResult):
    """Payment result for a settlement-portal webhook."""

    portal: str
    reference: str
    duplicate: bool = Field(False, description="This portal report was already processed")


class TransitionResult(ServiceResult):
    """Outcome of a status transition."""

    changed: bool = Field(..., description="False when the record was already in the target status")
    transaction: Transaction


class CountResponse(ServiceResult):
    """Response model for filtered counts."""

    count: int


class StatsResponse(ServiceResult):
    """Per-status breakdown for dashboards."""

    total: int
    by_status: Dict[str, int]


class SweepReport(ServiceResult):
    """Result of one expiry sweep run; for operational visibility only."""

    processed: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    order_ids: List[str] = Field(default_factory=list)
    cutoff: Optional[datetime] = None


class NotificationListResponse(ServiceResult):
    """Terminal orders whose callback has not been delivered yet."""

    count: int
    transactions: List[Transaction]


class MarkNotificationsResponse(ServiceResult):
    """Acknowledgement of a dispatcher batch."""

    updated: int
