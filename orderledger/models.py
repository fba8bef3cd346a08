import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from orderledger.core.exceptions import LedgerInvariantError


TRANSACTIONS = "transactions"
ACCOUNTS = "accounts"
EXPIRY_JOBS = "expiry_jobs"
SETTLEMENTS = "settlements"


class OrderType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


TERMINAL_STATUSES = (OrderStatus.COMPLETED, OrderStatus.FAILED, OrderStatus.CANCELED)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_record_id() -> str:
    return uuid.uuid4().hex


class Transaction(BaseModel):
    """One ledger row: a deposit or withdrawal order as stored in MongoDB"""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: str = Field(default_factory=new_record_id, alias="_id")
    order_id: str = Field(..., alias="odrId")
    merchant_order_id: Optional[str] = Field(None, alias="merchantOrdId")
    order_type: OrderType = Field(..., alias="odrType")
    status: OrderStatus = Field(..., alias="odrStatus")

    amount: int = Field(..., gt=0)
    paid_amount: int = Field(0, alias="paidAmount")
    unpaid_amount: int = Field(0, alias="unPaidAmount")
    # Settled money beyond amount; paidAmount itself is capped at amount
    overpaid_amount: int = Field(0, alias="overpaidAmount")

    positive_account: Optional[str] = Field(None, alias="positiveAccount")
    negative_account: Optional[str] = Field(None, alias="negativeAccount")

    bank_id: Optional[str] = Field(None, alias="bankId")
    bank_code: Optional[str] = Field(None, alias="bankCode")
    bank_receive_number: Optional[str] = Field(None, alias="bankReceiveNumber")
    bank_receive_owner_name: Optional[str] = Field(None, alias="bankReceiveOwnerName")
    qr_code: Optional[str] = Field(None, alias="qrCode")

    url_callback: Optional[str] = Field(None, alias="urlCallBack")
    url_success: Optional[str] = Field(None, alias="urlSuccess")
    url_failed: Optional[str] = Field(None, alias="urlFailed")
    url_canceled: Optional[str] = Field(None, alias="urlCanceled")

    # None = never eligible, False = awaiting delivery, True = delivered
    is_sent_callback_notification: Optional[bool] = Field(None, alias="isSentCallbackNotification")

    last_payment_date: Optional[datetime] = Field(None, alias="lastPaymentDate")
    created_at: datetime = Field(default_factory=utc_now, alias="createdAt")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_fully_paid(self) -> bool:
        return self.paid_amount >= self.amount

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Transaction":
        return cls.model_validate(document)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    def with_changes(self, changes: Dict[str, Any]) -> "Transaction":
        """Return a copy with stored-field changes (camelCase keys) applied."""
        document = self.to_document()
        document.update(changes)
        return Transaction.from_document(document)

    def check_invariants(self) -> None:
        """
        Raise LedgerInvariantError if the row is internally inconsistent.

        Called on the state a write would produce, before it is sent.
        """
        if self.unpaid_amount < 0:
            raise LedgerInvariantError("unPaidAmount cannot be negative", self.order_id)

        if self.paid_amount + self.unpaid_amount != self.amount:
            raise LedgerInvariantError(
                f"paidAmount ({self.paid_amount}) + unPaidAmount ({self.unpaid_amount}) "
                f"does not match amount ({self.amount})",
                self.order_id,
            )

        completed = self.status == OrderStatus.COMPLETED
        if completed != self.is_fully_paid:
            raise LedgerInvariantError(
                f"Status {self.status} inconsistent with paidAmount {self.paid_amount}/{self.amount}",
                self.order_id,
            )


class Account(BaseModel):
    """Balance holder credited or debited when ledger rows settle"""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=new_record_id, alias="_id")
    name: str = ""
    current_balance: int = Field(0, alias="currentBalance")
    available_balance: int = Field(0, alias="availableBalance")
    updated_at: datetime = Field(default_factory=utc_now, alias="updatedAt")

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "Account":
        return cls.model_validate(document)


class ExpiryJob(BaseModel):
    """Monitoring record of when a processing deposit falls out of its payment window"""

    model_config = ConfigDict(populate_by_name=True)

    record_id: str = Field(..., alias="_id")
    order_id: str = Field(..., alias="odrId")
    created_at: datetime = Field(..., alias="createdAt")
    scheduled_for: datetime = Field(..., alias="scheduledFor")


class SettlementRecord(BaseModel):
    """A portal report that has been accepted for application, keyed by (portal, reference)"""

    model_config = ConfigDict(populate_by_name=True)

    key: str = Field(..., alias="_id")
    portal: str
    reference: str
    order_id: str = Field(..., alias="odrId")
    amount: int
    received_at: datetime = Field(default_factory=utc_now, alias="receivedAt")

    @staticmethod
    def key_for(portal: str, reference: str) -> str:
        return f"{portal}:{reference}"
