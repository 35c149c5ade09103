from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_engine.bounties import state_machine as sm
from escrow_engine.core.config import settings
from escrow_engine.core.errors import (
    AlreadyAccepted,
    InvalidAmount,
    PayoutCapabilityError,
    SelfAcceptance,
)
from escrow_engine.gateway.base import GatewayError, PaymentGateway
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit
from escrow_engine.outbox.service import enqueue_event, new_event_id
from escrow_engine.schemas.outbox_events import EscrowHoldPayload

log = logging.getLogger("payments.escrow")


@dataclass(frozen=True)
class AcceptResult:
    bounty_id: str
    status: str
    escrow_transaction_id: str | None
    outbox_event_id: str | None


def accept_bounty(db: Session, *, bounty_id: str, worker_id: str, gateway: PaymentGateway) -> AcceptResult:
    """Attach a worker and queue the escrow hold.

    Everything that can reject the request runs before the first write. The
    status flip is a compare-and-set so two workers racing for the same bounty
    cannot both win.
    """

    bounty = store.get_bounty(db, bounty_id)

    if bounty.status != sm.OPEN:
        raise AlreadyAccepted(f"Bounty is {bounty.status}")
    if worker_id == bounty.poster_id:
        raise SelfAcceptance("Posters cannot accept their own bounty")
    sm.assert_transition(bounty.status, sm.IN_PROGRESS)

    if not bounty.is_honor_only:
        if bounty.amount < settings.MIN_CHARGE_AMOUNT:
            raise InvalidAmount(f"Amount {bounty.amount} is below the minimum of {settings.MIN_CHARGE_AMOUNT}")
        try:
            capability = gateway.get_account_capability(worker_id)
        except GatewayError as e:
            raise PayoutCapabilityError(f"Could not verify payout account: {e}") from e
        if not capability.payout_enabled:
            raise PayoutCapabilityError("Worker has no payout-enabled account")

    if not store.compare_and_set_bounty_status(
        db, bounty_id, expected=sm.OPEN, new=sm.IN_PROGRESS, worker_id=worker_id
    ):
        db.rollback()
        raise AlreadyAccepted("Bounty was accepted by another request")

    if bounty.is_honor_only:
        audit(
            db,
            user_id=worker_id,
            bounty_id=bounty_id,
            event_type="BOUNTY_ACCEPTED",
            severity="INFO",
            message="honor-only bounty accepted",
        )
        db.commit()
        return AcceptResult(bounty_id=bounty_id, status=sm.IN_PROGRESS, escrow_transaction_id=None, outbox_event_id=None)

    event_id = new_event_id()
    tx = store.add_transaction(
        db,
        bounty_id=bounty_id,
        user_id=bounty.poster_id,
        tx_type=store.TX_ESCROW,
        amount=bounty.amount,
        outbox_event_id=event_id,
    )
    enqueue_event(
        db,
        event_id=event_id,
        payload=EscrowHoldPayload(
            bounty_id=bounty_id,
            poster_id=bounty.poster_id,
            worker_id=worker_id,
            amount=bounty.amount,
            escrow_transaction_id=tx.id,
        ),
    )
    audit(
        db,
        user_id=worker_id,
        bounty_id=bounty_id,
        event_type="BOUNTY_ACCEPTED",
        severity="INFO",
        message=f"escrow queued amount={bounty.amount}",
        context={"transaction_id": tx.id, "event_id": event_id},
    )

    try:
        db.commit()
    except IntegrityError as e:
        # A live escrow row for this bounty already exists.
        db.rollback()
        raise AlreadyAccepted("Escrow already exists for this bounty") from e

    log.info("Bounty %s accepted by %s; escrow %s queued", bounty_id, worker_id, tx.id)
    return AcceptResult(bounty_id=bounty_id, status=sm.IN_PROGRESS, escrow_transaction_id=tx.id, outbox_event_id=event_id)
