from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from escrow_engine.api.deps import get_actor, http_error
from escrow_engine.bounties import state_machine as sm
from escrow_engine.core.db import get_db
from escrow_engine.core.errors import EscrowError, NotBountyParticipant
from escrow_engine.gateway.base import PaymentGateway
from escrow_engine.gateway.registry import get_gateway
from escrow_engine.integrations.notifications import Notifier, get_notifier
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit
from escrow_engine.models.tables import Bounty
from escrow_engine.payments.escrow import accept_bounty
from escrow_engine.payments.refund import cancel_bounty, reject_cancellation, request_cancellation
from escrow_engine.payments.release import complete_bounty
from escrow_engine.schemas.bounties import (
    BountyOut,
    CancelBountyRequest,
    CancellationRequest,
    CreateBountyRequest,
    PaymentStatusOut,
    WalletTransactionOut,
)
from escrow_engine.util.ids import new_uuid
from escrow_engine.util.time import now_utc

router = APIRouter()


def _load(db: Session, bounty_id: str) -> Bounty:
    try:
        return store.get_bounty(db, bounty_id)
    except EscrowError as e:
        raise http_error(e) from e


@router.post("", status_code=201, response_model=BountyOut)
def create_bounty(req: CreateBountyRequest, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> Bounty:
    now = now_utc()
    bounty = Bounty(
        id=new_uuid(),
        title=req.title,
        amount=req.amount,
        status=sm.OPEN,
        poster_id=actor,
        worker_id=None,
        payment_hold_ref=None,
        is_honor_only=req.is_honor_only,
        created_at=now,
        updated_at=now,
    )
    db.add(bounty)
    audit(
        db,
        user_id=actor,
        bounty_id=bounty.id,
        event_type="BOUNTY_CREATED",
        severity="INFO",
        message=f"amount={req.amount} honor_only={req.is_honor_only}",
    )
    db.commit()
    db.refresh(bounty)
    return bounty


@router.get("/{bounty_id}", response_model=BountyOut)
def get_bounty(bounty_id: str, db: Session = Depends(get_db)) -> Bounty:
    return _load(db, bounty_id)


@router.post("/{bounty_id}/accept")
def accept(
    bounty_id: str,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> dict:
    try:
        res = accept_bounty(db, bounty_id=bounty_id, worker_id=actor, gateway=gateway)
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e
    return {
        "id": res.bounty_id,
        "status": res.status,
        "escrow_transaction_id": res.escrow_transaction_id,
        "outbox_event_id": res.outbox_event_id,
    }


@router.post("/{bounty_id}/complete")
def complete(bounty_id: str, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> dict:
    try:
        res = complete_bounty(db, bounty_id=bounty_id, completed_by=actor)
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e
    return {
        "id": res.bounty_id,
        "status": res.status,
        "release_transaction_id": res.release_transaction_id,
        "payout_amount": res.payout_amount,
        "platform_fee": res.platform_fee,
        "already_processed": res.already_processed,
    }


@router.post("/{bounty_id}/cancel")
def cancel(
    bounty_id: str,
    req: CancelBountyRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
) -> dict:
    try:
        res = cancel_bounty(
            db,
            bounty_id=bounty_id,
            cancelled_by=actor,
            reason=req.reason or None,
            refund_percentage=req.refund_percentage,
        )
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e
    return {
        "id": res.bounty_id,
        "refund_id": res.refund_id,
        "amount": res.amount,
        "refund_percentage": res.refund_percentage,
        "worker_payout": res.worker_payout,
        "status": res.status,
    }


@router.post("/{bounty_id}/cancellation-request", response_model=BountyOut)
def ask_cancellation(
    bounty_id: str,
    req: CancellationRequest,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> Bounty:
    try:
        return request_cancellation(
            db, bounty_id=bounty_id, requested_by=actor, reason=req.reason or None, notifier=notifier
        )
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e


@router.post("/{bounty_id}/cancellation-request/reject", response_model=BountyOut)
def refuse_cancellation(
    bounty_id: str,
    actor: str = Depends(get_actor),
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
) -> Bounty:
    try:
        return reject_cancellation(db, bounty_id=bounty_id, responded_by=actor, notifier=notifier)
    except EscrowError as e:
        db.rollback()
        raise http_error(e) from e


@router.get("/{bounty_id}/payment-status", response_model=PaymentStatusOut)
def payment_status(bounty_id: str, actor: str = Depends(get_actor), db: Session = Depends(get_db)) -> PaymentStatusOut:
    bounty = _load(db, bounty_id)
    txs = store.transactions_for_bounty(db, bounty.id)
    # A cancelled bounty has no worker any more; its ledger rows still name them.
    allowed = {bounty.poster_id, bounty.worker_id} | {tx.user_id for tx in txs}
    if actor not in allowed:
        raise http_error(NotBountyParticipant("Only bounty participants can view payments"))

    return PaymentStatusOut(
        bounty_id=bounty.id,
        bounty_status=bounty.status,
        payment_hold_ref=bounty.payment_hold_ref,
        is_honor_only=bounty.is_honor_only,
        transactions=[WalletTransactionOut.model_validate(tx) for tx in txs],
    )
