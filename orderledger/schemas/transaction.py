"""
Pydantic schemas for validating inbound ledger requests.

Wire names follow the stored camelCase field names (odrId, odrType, ...) but
snake_case is accepted as well. Business rules the engine itself enforces
(positive settled amounts, legal transitions) are not duplicated here.
"""

import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from orderledger.models import OrderStatus, OrderType

ORDER_ID_PATTERN = r"^[a-zA-Z0-9_-]+$"
ID_LIST_SEPARATORS = re.compile(r"[,;\n\r\t ]+")
MAX_ID_LIST_LENGTH = 1000


class CreateOrderRequest(BaseModel):
    """Order creation request; odrId is generated when omitted."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: Optional[str] = Field(
        None,
        alias="odrId",
        min_length=1,
        max_length=100,
        pattern=ORDER_ID_PATTERN,
        description="Caller-visible order id",
    )
    merchant_order_id: Optional[str] = Field(None, alias="merchantOrdId", max_length=100)
    order_type: OrderType = Field(..., alias="odrType")
    amount: int = Field(..., gt=0, le=10_000_000_000, description="Expected settlement amount")

    positive_account: Optional[str] = Field(None, alias="positiveAccount", max_length=100)
    negative_account: Optional[str] = Field(None, alias="negativeAccount", max_length=100)

    bank_id: Optional[str] = Field(None, alias="bankId", max_length=100)
    bank_code: Optional[str] = Field(None, alias="bankCode", max_length=50)
    bank_receive_number: Optional[str] = Field(None, alias="bankReceiveNumber", max_length=50)
    bank_receive_owner_name: Optional[str] = Field(None, alias="bankReceiveOwnerName", max_length=200)
    qr_code: Optional[str] = Field(None, alias="qrCode", max_length=4000)

    url_callback: Optional[str] = Field(None, alias="urlCallBack", max_length=2000)
    url_success: Optional[str] = Field(None, alias="urlSuccess", max_length=2000)
    url_failed: Optional[str] = Field(None, alias="urlFailed", max_length=2000)
    url_canceled: Optional[str] = Field(None, alias="urlCanceled", max_length=2000)

    @model_validator(mode="after")
    def accounts_match_type(self):
        """Deposits credit a positive account; withdrawals draw from a negative account."""
        if self.order_type == OrderType.DEPOSIT:
            if not self.positive_account:
                raise ValueError("Deposit orders require positiveAccount")
            if self.negative_account:
                raise ValueError("Deposit orders cannot carry negativeAccount")
        else:
            if not self.negative_account:
                raise ValueError("Withdraw orders require negativeAccount")
            if self.qr_code:
                raise ValueError("qrCode is only valid for deposit orders")
        return self


class ApplyPaymentRequest(BaseModel):
    """Staff re-validation: apply a confirmed settlement amount to an order."""

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(..., alias="odrId", min_length=1, max_length=100, pattern=ORDER_ID_PATTERN)
    amount: int = Field(..., description="Settled amount reported by the portal")


class SettlementPayload(BaseModel):
    """Body of a signed settlement-portal webhook."""

    order_id: str = Field(..., min_length=1, max_length=100, pattern=ORDER_ID_PATTERN)
    amount: int = Field(..., gt=0, description="Settled amount")
    direction: Literal["credit", "debit"] = Field(..., description="credit for deposits, debit for withdrawals")
    reference: str = Field(..., min_length=1, max_length=100, description="Portal-side payment id")
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if v is not None:
            v = re.sub(r'[<>"\';&]', "", v)
            if len(v.strip()) == 0:
                return None
        return v


class TransitionRequest(BaseModel):
    """Manual status change requested by staff."""

    status: OrderStatus


class MarkNotificationsRequest(BaseModel):
    """Acknowledgement from the notification dispatcher."""

    order_ids: List[str] = Field(..., min_length=1, max_length=MAX_ID_LIST_LENGTH)
    sent: bool = True


def split_id_list(value: Any) -> List[str]:
    """Accept a list or a comma/semicolon/newline separated string of ids."""
    if value is None:
        return []
    if isinstance(value, str):
        items = ID_LIST_SEPARATORS.split(value)
    else:
        items = [str(item) for item in value]

    seen = []
    for item in items:
        item = item.strip()
        if item and item not in seen:
            seen.append(item)
    return seen


class TransactionFilters(BaseModel):
    """
    Filter set shared by counting, export, statistics and notification views.

    Date bounds are whole UTC days and both are inclusive.
    """

    model_config = ConfigDict(populate_by_name=True)

    status: str = Field("all", description="'all' or an order status")
    order_type: str = Field("all", alias="type", description="'all', 'deposit' or 'withdraw'")
    order_ids: List[str] = Field(default_factory=list)
    merchant_order_ids: List[str] = Field(default_factory=list)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    amount_min: Optional[int] = Field(None, ge=0)
    amount_max: Optional[int] = Field(None, ge=0)
    account: Optional[str] = None
    callback_sent: Literal["all", "true", "false"] = "all"

    @field_validator("status")
    @classmethod
    def validate_status(cls, v):
        v = (v or "all").strip().lower()
        if v != "all" and v not in [s.value for s in OrderStatus]:
            raise ValueError(f"Unknown status '{v}'")
        return v

    @field_validator("order_type")
    @classmethod
    def validate_type(cls, v):
        v = (v or "all").strip().lower()
        if v != "all" and v not in [t.value for t in OrderType]:
            raise ValueError(f"Unknown order type '{v}'")
        return v

    @field_validator("order_ids", "merchant_order_ids", mode="before")
    @classmethod
    def parse_id_list(cls, v):
        ids = split_id_list(v)
        if len(ids) > MAX_ID_LIST_LENGTH:
            raise ValueError(f"At most {MAX_ID_LIST_LENGTH} ids per filter")
        return ids

    @model_validator(mode="after")
    def check_ranges(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        if self.amount_min is not None and self.amount_max is not None and self.amount_min > self.amount_max:
            raise ValueError("amount_min must not exceed amount_max")
        return self

    def build_query(self) -> Dict[str, Any]:
        """Translate the filter set into a MongoDB filter document."""
        query: Dict[str, Any] = {}

        if self.status != "all":
            query["odrStatus"] = self.status
        if self.order_type != "all":
            query["odrType"] = self.order_type
        if self.order_ids:
            query["odrId"] = {"$in": list(self.order_ids)}
        if self.merchant_order_ids:
            query["merchantOrdId"] = {"$in": list(self.merchant_order_ids)}

        created: Dict[str, Any] = {}
        if self.date_from:
            created["$gte"] = datetime.combine(self.date_from, time.min, tzinfo=timezone.utc)
        if self.date_to:
            created["$lt"] = datetime.combine(self.date_to + timedelta(days=1), time.min, tzinfo=timezone.utc)
        if created:
            query["createdAt"] = created

        amount: Dict[str, Any] = {}
        if self.amount_min is not None:
            amount["$gte"] = self.amount_min
        if self.amount_max is not None:
            amount["$lte"] = self.amount_max
        if amount:
            query["amount"] = amount

        if self.account:
            query["$or"] = [{"positiveAccount": self.account}, {"negativeAccount": self.account}]

        if self.callback_sent != "all":
            query["isSentCallbackNotification"] = self.callback_sent == "true"

        return query

    def cache_key(self) -> str:
        return "count:" + self.model_dump_json()

    def cache_tags(self) -> List[str]:
        """Tags a cached count for this filter set is stored under."""
        tags = [
            f"status:{'any' if self.status == 'all' else self.status}",
            f"type:{'any' if self.order_type == 'all' else self.order_type}",
        ]
        if self.account:
            tags.append(f"account:{self.account}")
        if self.callback_sent != "all":
            tags.append("notify")
        return tags
