from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field


PaymentStatus = Literal["pending", "paid", "expired", "error"]
LogLevel = Literal["info", "warning", "error"]

PAYMENT_STATUSES: tuple[str, ...] = ("pending", "paid", "expired", "error")


class TrackedPayment(BaseModel):
    """
    A QRIS payment we issued and are waiting on.

    Times are storefront-local wall-clock times (the storefront renders deadlines without a zone).
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    amount: int
    label: str = ""
    status: PaymentStatus = "pending"
    created_at: datetime = Field(default_factory=datetime.now)
    expires_at: Optional[datetime] = None
    order_ref: Optional[str] = None
    paid_at: Optional[datetime] = None
    qr_payload: Optional[str] = Field(default=None, repr=False)


class LogEntry(BaseModel):
    id: int
    action: str
    message: str
    level: LogLevel = "info"
    created_at: datetime


@dataclass(frozen=True)
class DecodedQr:
    raw: str
    amount: Optional[Decimal] = None
    merchant_name: Optional[str] = None
    merchant_city: Optional[str] = None
    transaction_ref: Optional[str] = None


@dataclass(frozen=True)
class PendingExternalOrder:
    amount: int
    deadline: Optional[datetime] = None
    # The payment-list view has no order number; the amount is the only handle we get.
    order_ref: str = ""

    def __post_init__(self) -> None:
        if not self.order_ref:
            object.__setattr__(self, "order_ref", f"PENDING-{self.amount}")


@dataclass(frozen=True)
class ProcessedExternalOrder:
    amount: int
    status_label: str = "Diproses"


@dataclass(frozen=True)
class PaidTransition:
    payment_id: str
    amount: int
    paid_at: datetime


@dataclass
class ReconcileResult:
    checked: int = 0
    updated: int = 0
    paid: list[PaidTransition] = field(default_factory=list)

    @property
    def paid_ids(self) -> list[str]:
        return [t.payment_id for t in self.paid]
