from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class CreateBountyRequest(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    amount: int = Field(default=0, ge=0)
    is_honor_only: bool = False


class CancelBountyRequest(BaseModel):
    reason: str = ""
    # Any number; the range is checked by the refund service so the error carries its own code.
    refund_percentage: Decimal | None = None


class CancellationRequest(BaseModel):
    reason: str = ""


class BountyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    amount: int
    status: str
    poster_id: str
    worker_id: str | None
    payment_hold_ref: str | None
    is_honor_only: bool
    cancellation_reason: str | None
    cancellation_requested_by: str | None
    created_at: datetime
    updated_at: datetime


class WalletTransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    bounty_id: str
    user_id: str
    type: str
    amount: int
    external_ref: str | None
    status: str
    created_at: datetime
    updated_at: datetime


class PaymentStatusOut(BaseModel):
    bounty_id: str
    bounty_status: str
    payment_hold_ref: str | None
    is_honor_only: bool
    transactions: list[WalletTransactionOut]
