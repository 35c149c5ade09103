"""Gateway side effects for each outbox event type.

A handler runs with its event already claimed. It raises GatewayError to let
the relay decide between retry and terminal failure; anything else is fatal.
Wallet rows that already settled are skipped, so a replay after a crash only
repeats the calls that never completed (and those reuse their idempotency key).
"""

from __future__ import annotations

import logging
from typing import Callable

from sqlalchemy.orm import Session

from escrow_engine.bounties import state_machine as sm
from escrow_engine.gateway.base import PaymentGateway
from escrow_engine.integrations.notifications import (
    BOUNTY_COMPLETED,
    ESCROW_HELD,
    PAYMENT_FAILED,
    PAYMENT_FAILED_MESSAGE,
    PAYOUT_SENT,
    REFUND_ISSUED,
    Notifier,
    send_notification,
)
from escrow_engine.ledger import store
from escrow_engine.ledger.audit import audit, raise_operator_alert
from escrow_engine.models.tables import Bounty, OutboxEvent, WalletTransaction
from escrow_engine.schemas.outbox_events import (
    COMPLETION_RELEASE,
    ESCROW_HOLD,
    REFUND,
    CompletionReleasePayload,
    EscrowHoldPayload,
    RefundPayload,
    derive_idempotency_key,
)

log = logging.getLogger("outbox.handlers")


class UnknownEventType(Exception):
    pass


def _row(db: Session, tx_id: str) -> WalletTransaction:
    tx = db.get(WalletTransaction, tx_id)
    if tx is None:
        raise LookupError(f"wallet transaction {tx_id} referenced by outbox payload does not exist")
    return tx


def handle_escrow_hold(
    db: Session, *, event: OutboxEvent, payload: EscrowHoldPayload, gateway: PaymentGateway, notifier: Notifier
) -> None:
    tx = _row(db, payload.escrow_transaction_id)
    if tx.status != store.TX_COMPLETED:
        hold_ref = gateway.create_hold(
            amount=payload.amount,
            idempotency_key=derive_idempotency_key(ESCROW_HOLD, payload.bounty_id, tx.id),
        )
        store.settle_transaction(tx, status=store.TX_COMPLETED, external_ref=hold_ref)

    bounty = store.get_bounty(db, payload.bounty_id, for_update=True)
    bounty.payment_hold_ref = tx.external_ref
    bounty.updated_at = tx.updated_at
    db.commit()

    log.info("Escrow held for bounty %s: %s", payload.bounty_id, tx.external_ref)
    body = {"bounty_id": payload.bounty_id, "amount": payload.amount}
    send_notification(notifier, payload.poster_id, ESCROW_HELD, body)
    send_notification(notifier, payload.worker_id, ESCROW_HELD, body)


def handle_completion_release(
    db: Session,
    *,
    event: OutboxEvent,
    payload: CompletionReleasePayload,
    gateway: PaymentGateway,
    notifier: Notifier,
) -> None:
    release = _row(db, payload.release_transaction_id)
    if release.status != store.TX_COMPLETED:
        ref = gateway.transfer(
            destination_account=payload.worker_id,
            amount=payload.payout_amount,
            idempotency_key=derive_idempotency_key(COMPLETION_RELEASE, payload.bounty_id, release.id),
        )
        store.settle_transaction(release, status=store.TX_COMPLETED, external_ref=ref)
        if payload.fee_transaction_id:
            # The fee stays with the platform out of the same hold.
            store.settle_transaction(_row(db, payload.fee_transaction_id), status=store.TX_COMPLETED, external_ref=ref)
        # Money has moved: the ledger must say so whatever happens to the bounty below.
        db.commit()

    bounty = store.get_bounty(db, payload.bounty_id, for_update=True)
    if bounty.status == sm.CANCELLATION_REQUESTED:
        # The payout went out first, so it wins over the open request.
        sm.transition(bounty, sm.IN_PROGRESS)
        bounty.cancellation_requested_by = None
        bounty.cancellation_reason = None
    if bounty.status != sm.COMPLETED:
        sm.transition(bounty, sm.COMPLETED)
    audit(
        db,
        user_id=payload.worker_id,
        bounty_id=payload.bounty_id,
        event_type="BOUNTY_COMPLETED",
        severity="INFO",
        message=f"payout={payload.payout_amount} fee={payload.platform_fee}",
        context={"event_id": event.id, "transfer_ref": release.external_ref},
    )
    db.commit()

    log.info("Payout sent for bounty %s: %s", payload.bounty_id, release.external_ref)
    send_notification(
        notifier, payload.worker_id, PAYOUT_SENT, {"bounty_id": payload.bounty_id, "amount": payload.payout_amount}
    )
    send_notification(notifier, payload.poster_id, BOUNTY_COMPLETED, {"bounty_id": payload.bounty_id})


def handle_refund(
    db: Session, *, event: OutboxEvent, payload: RefundPayload, gateway: PaymentGateway, notifier: Notifier
) -> None:
    refund_tx = _row(db, payload.refund_transaction_id)
    if refund_tx.status != store.TX_COMPLETED:
        ref = None
        if payload.refund_amount > 0:
            ref = gateway.refund(
                hold_ref=payload.hold_ref,
                amount=payload.refund_amount,
                idempotency_key=derive_idempotency_key(REFUND, payload.bounty_id, refund_tx.id),
            )
        store.settle_transaction(refund_tx, status=store.TX_COMPLETED, external_ref=ref)
        db.commit()

    share = payload.worker_share
    if share is not None and payload.worker_id:
        release = _row(db, share.release_transaction_id)
        if release.status != store.TX_COMPLETED:
            ref = gateway.transfer(
                destination_account=payload.worker_id,
                amount=share.payout_amount,
                idempotency_key=derive_idempotency_key(REFUND, payload.bounty_id, release.id),
            )
            store.settle_transaction(release, status=store.TX_COMPLETED, external_ref=ref)
            if share.fee_transaction_id:
                store.settle_transaction(_row(db, share.fee_transaction_id), status=store.TX_COMPLETED, external_ref=ref)
            db.commit()

    bounty = store.get_bounty(db, payload.bounty_id, for_update=True)
    if bounty.status != sm.CANCELLED:
        sm.transition(bounty, sm.CANCELLED)
        bounty.worker_id = None
    audit(
        db,
        user_id=None,
        bounty_id=payload.bounty_id,
        event_type="BOUNTY_CANCELLED",
        severity="INFO",
        message=f"refund={payload.refund_amount} pct={payload.refund_percentage}",
        context={"event_id": event.id, "refund_ref": refund_tx.external_ref},
    )
    db.commit()

    log.info("Refund issued for bounty %s: %s", payload.bounty_id, refund_tx.external_ref)
    send_notification(
        notifier, payload.poster_id, REFUND_ISSUED, {"bounty_id": payload.bounty_id, "amount": payload.refund_amount}
    )
    if share is not None:
        send_notification(
            notifier, payload.worker_id, PAYOUT_SENT, {"bounty_id": payload.bounty_id, "amount": share.payout_amount}
        )


HANDLERS: dict[str, Callable[..., None]] = {
    ESCROW_HOLD: handle_escrow_hold,
    COMPLETION_RELEASE: handle_completion_release,
    REFUND: handle_refund,
}


def dispatch(db: Session, *, event: OutboxEvent, payload, gateway: PaymentGateway, notifier: Notifier) -> None:
    handler = HANDLERS.get(event.event_type)
    if handler is None:
        raise UnknownEventType(f"no handler for outbox event type {event.event_type!r}")
    handler(db, event=event, payload=payload, gateway=gateway, notifier=notifier)


def compensate_failed_event(db: Session, *, event: OutboxEvent, error: str, notifier: Notifier) -> list[str]:
    """Put the world back in a safe state after an event failed for good.

    Works from the event row and its wallet rows rather than the payload, so a
    payload that no longer parses is still compensated. Commits.
    """

    failed_ids = []
    for tx in store.transactions_for_event(db, event.id):
        if tx.status == store.TX_PENDING:
            store.settle_transaction(tx, status=store.TX_FAILED)
            failed_ids.append(tx.id)

    bounty = db.get(Bounty, event.bounty_id, with_for_update=True)
    poster_id = bounty.poster_id if bounty else None
    worker_id = bounty.worker_id if bounty else None

    if event.event_type == ESCROW_HOLD and bounty is not None:
        # No money is held: give the bounty back to the market.
        expected_worker = (event.payload or {}).get("worker_id")
        reopenable = bounty.status in (sm.IN_PROGRESS, sm.CANCELLATION_REQUESTED)
        if reopenable and (expected_worker is None or bounty.worker_id == expected_worker):
            sm.transition(bounty, sm.OPEN)
            bounty.worker_id = None
            bounty.payment_hold_ref = None
            bounty.cancellation_requested_by = None
            bounty.cancellation_reason = None

    raise_operator_alert(
        db,
        bounty_id=event.bounty_id,
        message=f"{event.event_type} failed permanently: {error}",
        context={"event_id": event.id, "failed_transaction_ids": failed_ids, "retry_count": event.retry_count},
    )
    db.commit()

    body = {"bounty_id": event.bounty_id, "event_type": event.event_type, "message": PAYMENT_FAILED_MESSAGE}
    send_notification(notifier, poster_id, PAYMENT_FAILED, body)
    send_notification(notifier, worker_id, PAYMENT_FAILED, body)
    return failed_ids
