from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

ESCROW_HOLD = "ESCROW_HOLD"
COMPLETION_RELEASE = "COMPLETION_RELEASE"
REFUND = "REFUND"


class EscrowHoldPayload(BaseModel):
    event_type: Literal["ESCROW_HOLD"] = "ESCROW_HOLD"
    bounty_id: str
    poster_id: str
    worker_id: str
    amount: int = Field(gt=0)
    escrow_transaction_id: str


class CompletionReleasePayload(BaseModel):
    event_type: Literal["COMPLETION_RELEASE"] = "COMPLETION_RELEASE"
    bounty_id: str
    poster_id: str
    worker_id: str
    payout_amount: int = Field(ge=0)
    platform_fee: int = Field(ge=0)
    release_transaction_id: str
    fee_transaction_id: str | None = None


class WorkerShare(BaseModel):
    """Part of a partial refund that goes to the worker instead of back to the poster."""

    payout_amount: int = Field(gt=0)
    platform_fee: int = Field(ge=0)
    release_transaction_id: str
    fee_transaction_id: str | None = None


class RefundPayload(BaseModel):
    event_type: Literal["REFUND"] = "REFUND"
    bounty_id: str
    poster_id: str
    worker_id: str | None = None
    hold_ref: str
    refund_amount: int = Field(ge=0)
    refund_percentage: Decimal = Field(ge=0, le=100)
    refund_transaction_id: str
    reason: str | None = None
    worker_share: WorkerShare | None = None


OutboxPayload = Annotated[
    EscrowHoldPayload | CompletionReleasePayload | RefundPayload,
    Field(discriminator="event_type"),
]

payload_adapter = TypeAdapter(OutboxPayload)


def parse_payload(raw: dict) -> EscrowHoldPayload | CompletionReleasePayload | RefundPayload:
    return payload_adapter.validate_python(raw)


def derive_idempotency_key(event_type: str, bounty_id: str, transaction_id: str) -> str:
    """Deterministic per gateway call: a replay after a crash reuses the same key."""
    return f"{event_type}:{bounty_id}:{transaction_id}"
