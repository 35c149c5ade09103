from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from escrow_engine.bounties import state_machine as sm
from escrow_engine.core.config import settings
from escrow_engine.core.errors import (
    InvalidStatusTransition,
    NoEscrowFound,
    NotAssignedWorker,
    ReleaseAlreadyProcessed,
    ReleaseInProgress,
)
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit
from escrow_engine.models.tables import WalletTransaction
from escrow_engine.outbox.service import enqueue_event, new_event_id
from escrow_engine.payments.fees import split_platform_fee
from escrow_engine.schemas.outbox_events import CompletionReleasePayload

log = logging.getLogger("payments.release")


@dataclass(frozen=True)
class CompletionResult:
    bounty_id: str
    status: str
    release_transaction_id: str | None
    fee_transaction_id: str | None
    payout_amount: int
    platform_fee: int
    outbox_event_id: str | None
    already_processed: bool = False


def _existing_result(db: Session, bounty_id: str, bounty_status: str, release: WalletTransaction) -> CompletionResult:
    fee = store.find_live_transaction(db, bounty_id, store.TX_PLATFORM_FEE)
    return CompletionResult(
        bounty_id=bounty_id,
        status=bounty_status,
        release_transaction_id=release.id,
        fee_transaction_id=fee.id if fee else None,
        payout_amount=release.amount,
        platform_fee=fee.amount if fee else 0,
        outbox_event_id=release.outbox_event_id,
        already_processed=True,
    )


def complete_bounty(db: Session, *, bounty_id: str, completed_by: str) -> CompletionResult:
    """Queue the payout of a finished bounty to its worker.

    Only the assigned worker may trigger the release. A repeated call after the
    payout settled returns the settled result without touching the gateway; a
    call while one is still queued is a conflict.
    """

    bounty = store.get_bounty(db, bounty_id, for_update=True)

    if not bounty.worker_id or completed_by != bounty.worker_id:
        raise NotAssignedWorker("Only the assigned worker can complete this bounty")

    # A partial refund also writes a release row; that one is not a completion.
    if store.find_live_transaction(db, bounty_id, store.TX_REFUND) is not None:
        raise InvalidStatusTransition("Bounty is cancelled or being cancelled")

    existing = store.find_live_transaction(db, bounty_id, store.TX_RELEASE)
    if existing is not None:
        if existing.status == store.TX_COMPLETED:
            return _existing_result(db, bounty_id, bounty.status, existing)
        raise ReleaseInProgress("A release for this bounty is already being processed")

    # Only in_progress may move to completed.
    sm.assert_transition(bounty.status, sm.COMPLETED)

    if bounty.is_honor_only:
        sm.transition(bounty, sm.COMPLETED)
        audit(
            db,
            user_id=completed_by,
            bounty_id=bounty_id,
            event_type="BOUNTY_COMPLETED",
            severity="INFO",
            message="honor-only bounty completed",
        )
        db.commit()
        return CompletionResult(
            bounty_id=bounty_id,
            status=sm.COMPLETED,
            release_transaction_id=None,
            fee_transaction_id=None,
            payout_amount=0,
            platform_fee=0,
            outbox_event_id=None,
        )

    escrow = store.find_live_transaction(db, bounty_id, store.TX_ESCROW)
    if escrow is None or escrow.status != store.TX_COMPLETED:
        raise NoEscrowFound("No settled escrow hold for this bounty")

    split = split_platform_fee(escrow.amount, settings.PLATFORM_FEE_RATE)

    event_id = new_event_id()
    release_tx = store.add_transaction(
        db,
        bounty_id=bounty_id,
        user_id=bounty.worker_id,
        tx_type=store.TX_RELEASE,
        amount=split.payout,
        outbox_event_id=event_id,
    )
    fee_tx = store.add_transaction(
        db,
        bounty_id=bounty_id,
        user_id=bounty.poster_id,
        tx_type=store.TX_PLATFORM_FEE,
        amount=split.platform_fee,
        outbox_event_id=event_id,
    )
    enqueue_event(
        db,
        event_id=event_id,
        payload=CompletionReleasePayload(
            bounty_id=bounty_id,
            poster_id=bounty.poster_id,
            worker_id=bounty.worker_id,
            payout_amount=split.payout,
            platform_fee=split.platform_fee,
            release_transaction_id=release_tx.id,
            fee_transaction_id=fee_tx.id,
        ),
    )
    audit(
        db,
        user_id=completed_by,
        bounty_id=bounty_id,
        event_type="COMPLETION_REQUESTED",
        severity="INFO",
        message=f"release queued payout={split.payout} fee={split.platform_fee}",
        context={"release_transaction_id": release_tx.id, "fee_transaction_id": fee_tx.id, "event_id": event_id},
    )

    try:
        db.commit()
    except IntegrityError as e:
        # Lost the race on the (bounty, type) unique index: report the winner.
        db.rollback()
        winner = store.find_live_transaction(db, bounty_id, store.TX_RELEASE)
        if winner is not None and winner.status == store.TX_COMPLETED:
            raise ReleaseAlreadyProcessed("Release already processed for this bounty") from e
        raise ReleaseInProgress("A release for this bounty is already being processed") from e

    log.info(
        "Release queued for bounty %s: payout=%s fee=%s event=%s", bounty_id, split.payout, split.platform_fee, event_id
    )
    return CompletionResult(
        bounty_id=bounty_id,
        status=bounty.status,
        release_transaction_id=release_tx.id,
        fee_transaction_id=fee_tx.id,
        payout_amount=split.payout,
        platform_fee=split.platform_fee,
        outbox_event_id=event_id,
    )
