from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_engine.bounties import state_machine as sm
from escrow_engine.core.config import settings
from escrow_engine.core.errors import (
    AlreadyCompleted,
    AlreadyRefunded,
    InvalidRefundPercentage,
    InvalidStatusTransition,
    NoHoldFound,
    NotBountyParticipant,
    RefundInProgress,
    ReleaseInProgress,
)
from escrow_engine.integrations.notifications import (
    CANCELLATION_REJECTED,
    CANCELLATION_REQUESTED,
    Notifier,
    send_notification,
)
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit
from escrow_engine.models.tables import Bounty
from escrow_engine.outbox.service import enqueue_event, new_event_id
from escrow_engine.payments.fees import percentage_of, split_platform_fee
from escrow_engine.schemas.outbox_events import RefundPayload, WorkerShare

log = logging.getLogger("payments.refund")

FULL_REFUND = Decimal(100)

CANCELLABLE = frozenset({sm.OPEN, sm.IN_PROGRESS, sm.CANCELLATION_REQUESTED})


@dataclass(frozen=True)
class RefundResult:
    bounty_id: str
    status: str
    refund_id: str | None
    amount: int
    refund_percentage: Decimal
    outbox_event_id: str | None = None
    worker_payout: int = 0


def _participants(bounty: Bounty) -> set[str]:
    return {x for x in (bounty.poster_id, bounty.worker_id) if x}


def _check_actor(bounty: Bounty, actor_id: str) -> None:
    if bounty.status == sm.OPEN:
        if actor_id != bounty.poster_id:
            raise NotBountyParticipant("Only the poster can cancel an open bounty")
        return
    if actor_id not in _participants(bounty):
        raise NotBountyParticipant("Only the poster or the assigned worker can cancel this bounty")


def cancel_bounty(
    db: Session,
    *,
    bounty_id: str,
    cancelled_by: str,
    reason: str | None = None,
    refund_percentage: Decimal | int | None = None,
) -> RefundResult:
    """Cancel a bounty and return the held funds to the poster.

    An open bounty never had a hold: it is cancelled on the spot with a 100%
    refund recorded as settled. A bounty in progress refunds
    `refund_percentage` (default 100) of the hold through the outbox; the
    rest, if any, is paid to the worker minus the platform fee.
    """

    bounty = store.get_bounty(db, bounty_id, for_update=True)

    if bounty.status == sm.COMPLETED:
        raise AlreadyCompleted("A completed bounty cannot be refunded")
    existing = store.find_live_transaction(db, bounty_id, store.TX_REFUND)
    if bounty.status == sm.CANCELLED:
        raise AlreadyRefunded("Bounty is already cancelled")
    if bounty.status not in CANCELLABLE:
        raise InvalidStatusTransition(f"Bounty is {bounty.status}")

    _check_actor(bounty, cancelled_by)

    if existing is not None:
        if existing.status == store.TX_COMPLETED:
            raise AlreadyRefunded("Bounty has already been refunded")
        raise RefundInProgress("A refund for this bounty is already being processed")

    # A queued or settled payout means the bounty is being completed.
    if store.find_live_transaction(db, bounty_id, store.TX_RELEASE) is not None:
        raise AlreadyCompleted("Bounty completion is already in progress")

    if refund_percentage is not None and not 0 <= refund_percentage <= 100:
        raise InvalidRefundPercentage("refund_percentage must be between 0 and 100")

    sm.assert_transition(bounty.status, sm.CANCELLED)
    bounty.cancellation_reason = reason

    if bounty.is_honor_only:
        sm.transition(bounty, sm.CANCELLED)
        bounty.worker_id = None
        _audit_cancel(db, bounty, cancelled_by, "honor-only bounty cancelled")
        db.commit()
        return RefundResult(
            bounty_id=bounty_id, status=sm.CANCELLED, refund_id=None, amount=0, refund_percentage=FULL_REFUND
        )

    if bounty.status == sm.OPEN:
        return _cancel_open(db, bounty, cancelled_by)
    return _queue_refund(
        db, bounty, cancelled_by, reason, FULL_REFUND if refund_percentage is None else Decimal(str(refund_percentage))
    )


def _cancel_open(db: Session, bounty: Bounty, cancelled_by: str) -> RefundResult:
    # Nothing was ever held at the gateway, so the refund settles immediately.
    tx = store.add_transaction(
        db,
        bounty_id=bounty.id,
        user_id=bounty.poster_id,
        tx_type=store.TX_REFUND,
        amount=bounty.amount,
        status=store.TX_COMPLETED,
    )
    sm.transition(bounty, sm.CANCELLED)
    _audit_cancel(db, bounty, cancelled_by, f"open bounty cancelled refund={bounty.amount}", transaction_id=tx.id)
    _commit_or_conflict(db)
    log.info("Bounty %s cancelled before acceptance; refund %s settled", bounty.id, tx.id)
    return RefundResult(
        bounty_id=bounty.id, status=sm.CANCELLED, refund_id=tx.id, amount=bounty.amount, refund_percentage=FULL_REFUND
    )


def _queue_refund(
    db: Session, bounty: Bounty, cancelled_by: str, reason: str | None, percentage: Decimal
) -> RefundResult:
    if not bounty.payment_hold_ref:
        raise NoHoldFound("No settled payment hold for this bounty")

    refund_amount = percentage_of(bounty.amount, percentage)
    remainder = bounty.amount - refund_amount

    event_id = new_event_id()
    refund_tx = store.add_transaction(
        db,
        bounty_id=bounty.id,
        user_id=bounty.poster_id,
        tx_type=store.TX_REFUND,
        amount=refund_amount,
        outbox_event_id=event_id,
    )

    worker_share = None
    if remainder > 0 and bounty.worker_id:
        split = split_platform_fee(remainder, settings.PLATFORM_FEE_RATE)
        if split.payout > 0:
            release_tx = store.add_transaction(
                db,
                bounty_id=bounty.id,
                user_id=bounty.worker_id,
                tx_type=store.TX_RELEASE,
                amount=split.payout,
                outbox_event_id=event_id,
            )
            fee_tx = store.add_transaction(
                db,
                bounty_id=bounty.id,
                user_id=bounty.poster_id,
                tx_type=store.TX_PLATFORM_FEE,
                amount=split.platform_fee,
                outbox_event_id=event_id,
            )
            worker_share = WorkerShare(
                payout_amount=split.payout,
                platform_fee=split.platform_fee,
                release_transaction_id=release_tx.id,
                fee_transaction_id=fee_tx.id,
            )

    enqueue_event(
        db,
        event_id=event_id,
        payload=RefundPayload(
            bounty_id=bounty.id,
            poster_id=bounty.poster_id,
            worker_id=bounty.worker_id,
            hold_ref=bounty.payment_hold_ref,
            refund_amount=refund_amount,
            refund_percentage=percentage,
            refund_transaction_id=refund_tx.id,
            reason=reason,
            worker_share=worker_share,
        ),
    )
    _audit_cancel(
        db,
        bounty,
        cancelled_by,
        f"refund queued amount={refund_amount} pct={percentage}",
        transaction_id=refund_tx.id,
        event_id=event_id,
    )
    _commit_or_conflict(db)

    log.info("Refund queued for bounty %s: amount=%s pct=%s event=%s", bounty.id, refund_amount, percentage, event_id)
    return RefundResult(
        bounty_id=bounty.id,
        status=bounty.status,
        refund_id=refund_tx.id,
        amount=refund_amount,
        refund_percentage=percentage,
        outbox_event_id=event_id,
        worker_payout=worker_share.payout_amount if worker_share else 0,
    )


def _commit_or_conflict(db: Session) -> None:
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise RefundInProgress("A refund for this bounty is already being processed") from e


def _audit_cancel(db: Session, bounty: Bounty, actor_id: str, message: str, **context) -> None:
    audit(
        db,
        user_id=actor_id,
        bounty_id=bounty.id,
        event_type="BOUNTY_CANCEL_REQUESTED",
        severity="INFO",
        message=message,
        context=context,
    )


def request_cancellation(
    db: Session, *, bounty_id: str, requested_by: str, reason: str | None, notifier: Notifier
) -> Bounty:
    """in_progress -> cancellation_requested, pending the other side's answer."""

    bounty = store.get_bounty(db, bounty_id, for_update=True)
    if requested_by not in _participants(bounty):
        raise NotBountyParticipant("Only the poster or the assigned worker can request cancellation")
    # Money already on its way out cannot be argued back.
    if store.find_live_transaction(db, bounty_id, store.TX_RELEASE) is not None:
        raise ReleaseInProgress("Bounty payout is already queued or settled")
    if store.find_live_transaction(db, bounty_id, store.TX_REFUND) is not None:
        raise RefundInProgress("A refund for this bounty is already being processed")

    sm.transition(bounty, sm.CANCELLATION_REQUESTED)
    bounty.cancellation_requested_by = requested_by
    bounty.cancellation_reason = reason
    audit(
        db,
        user_id=requested_by,
        bounty_id=bounty_id,
        event_type="CANCELLATION_REQUESTED",
        severity="INFO",
        message=reason or "",
    )
    db.commit()

    counterparty = bounty.worker_id if requested_by == bounty.poster_id else bounty.poster_id
    send_notification(notifier, counterparty, CANCELLATION_REQUESTED, {"bounty_id": bounty_id, "reason": reason})
    return bounty


def reject_cancellation(db: Session, *, bounty_id: str, responded_by: str, notifier: Notifier) -> Bounty:
    """cancellation_requested -> in_progress; only the side that did not ask may refuse."""

    bounty = store.get_bounty(db, bounty_id, for_update=True)
    if bounty.status != sm.CANCELLATION_REQUESTED:
        raise InvalidStatusTransition(f"Bounty is {bounty.status}, no cancellation to reject")
    if responded_by not in _participants(bounty) or responded_by == bounty.cancellation_requested_by:
        raise NotBountyParticipant("Only the other participant can reject the cancellation request")

    requester = bounty.cancellation_requested_by
    sm.transition(bounty, sm.IN_PROGRESS)
    bounty.cancellation_requested_by = None
    bounty.cancellation_reason = None
    audit(
        db,
        user_id=responded_by,
        bounty_id=bounty_id,
        event_type="CANCELLATION_REJECTED",
        severity="INFO",
        message="cancellation request rejected",
    )
    db.commit()

    send_notification(notifier, requester, CANCELLATION_REJECTED, {"bounty_id": bounty_id})
    return bounty
