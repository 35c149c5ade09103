from __future__ import annotations

from datetime import timedelta

import pytest

from tests.utils_escrow import POSTER, WORKER, alerts, events, held_bounty, make_bounty, rows


def _accepted(db, gateway, amount=10000):
    from escrow_engine.payments.escrow import accept_bounty

    bounty_id = make_bounty(db, amount=amount)
    accept_bounty(db, bounty_id=bounty_id, worker_id=WORKER, gateway=gateway)
    return bounty_id


def _naive(dt):
    return dt.replace(tzinfo=None)


def test_happy_path_hold_then_payout(db, gateway, notifier):
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.release import complete_bounty

    bounty_id = _accepted(db, gateway)
    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert stats["claimed"] == 1
    assert stats["completed"] == 1

    b = db.get(Bounty, bounty_id)
    escrow = rows(db, bounty_id)["escrow"]
    assert escrow.status == "completed"
    assert b.payment_hold_ref == escrow.external_ref
    assert b.payment_hold_ref.startswith("hold_")
    (hold_event,) = events(db, bounty_id)
    assert hold_event.status == "completed"
    assert hold_event.processed_at is not None
    assert "payment.escrow_held" in notifier.events_for(WORKER)

    complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER)
    relay_outbox_events(db, gateway=gateway, notifier=notifier)

    assert db.get(Bounty, bounty_id).status == "completed"
    live = rows(db, bounty_id)
    assert live["release"].status == "completed"
    assert live["platform_fee"].status == "completed"
    (transfer,) = [params for op, params in gateway.executed if op == "transfer"]
    assert transfer["destination_account"] == WORKER
    assert transfer["amount"] == 9500
    assert transfer["idempotency_key"] == f"COMPLETION_RELEASE:{bounty_id}:{live['release'].id}"
    assert "payment.payout_sent" in notifier.events_for(WORKER)
    assert "bounty.completed" in notifier.events_for(POSTER)


def test_transient_failures_then_recovery(db, gateway, notifier):
    from escrow_engine.gateway.base import TransientGatewayError
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.util.time import now_utc

    bounty_id = _accepted(db, gateway)
    gateway.fail_next("create_hold", TransientGatewayError("gateway timeout", code="timeout"), times=2)

    t0 = now_utc()
    assert relay_outbox_events(db, gateway=gateway, notifier=notifier, now=t0)["retried"] == 1
    (event,) = events(db, bounty_id)
    assert event.status == "pending"
    assert event.retry_count == 1
    assert _naive(event.next_attempt_at) == _naive(t0 + timedelta(seconds=2))
    assert "gateway timeout" in event.last_error

    # Backoff not elapsed: nothing is picked up.
    assert relay_outbox_events(db, gateway=gateway, notifier=notifier, now=t0 + timedelta(seconds=1))["claimed"] == 0

    t1 = t0 + timedelta(seconds=3)
    assert relay_outbox_events(db, gateway=gateway, notifier=notifier, now=t1)["retried"] == 1
    db.refresh(event)
    assert event.retry_count == 2
    assert _naive(event.next_attempt_at) == _naive(t1 + timedelta(seconds=4))

    assert relay_outbox_events(db, gateway=gateway, notifier=notifier, now=t1 + timedelta(seconds=5))["completed"] == 1
    db.refresh(event)
    assert event.status == "completed"
    assert event.retry_count == 2
    assert gateway.executed_count("create_hold") == 1
    assert db.get(Bounty, bounty_id).payment_hold_ref is not None
    assert alerts(db, bounty_id) == []


def test_retries_exhausted_reopens_bounty(db, gateway, notifier):
    from escrow_engine.gateway.base import TransientGatewayError
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.util.time import now_utc

    bounty_id = _accepted(db, gateway)
    gateway.fail_next("create_hold", TransientGatewayError("503"), times=4)

    t = now_utc()
    outcomes = []
    for _ in range(4):
        stats = relay_outbox_events(db, gateway=gateway, notifier=notifier, now=t)
        outcomes.append("failed" if stats["failed"] else "retried")
        t += timedelta(seconds=60)
    assert outcomes == ["retried", "retried", "retried", "failed"]

    (event,) = events(db, bounty_id)
    assert event.status == "failed"
    assert event.retry_count == 4

    b = db.get(Bounty, bounty_id)
    assert b.status == "open"
    assert b.worker_id is None
    assert "escrow" not in rows(db, bounty_id)
    assert len(alerts(db, bounty_id)) == 1
    assert "payment.failed" in notifier.events_for(POSTER)
    assert "payment.failed" in notifier.events_for(WORKER)


def test_permanent_failure_is_terminal_at_once(db, gateway, notifier):
    from escrow_engine.gateway.base import PermanentGatewayError
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.escrow import accept_bounty

    bounty_id = _accepted(db, gateway)
    gateway.fail_next("create_hold", PermanentGatewayError("Your card was declined", code="card_declined"))

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert stats["failed"] == 1

    (event,) = events(db, bounty_id)
    assert event.status == "failed"
    assert event.retry_count == 0
    assert "card_declined" in event.last_error
    assert db.get(Bounty, bounty_id).status == "open"

    # The failed row no longer blocks a fresh acceptance.
    accept_bounty(db, bounty_id=bounty_id, worker_id="worker-2", gateway=gateway)
    relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert rows(db, bounty_id)["escrow"].status == "completed"


def test_failed_hold_reopens_bounty_with_pending_cancellation(db, gateway, notifier):
    from escrow_engine.gateway.base import PermanentGatewayError
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.refund import request_cancellation

    bounty_id = _accepted(db, gateway)
    request_cancellation(db, bounty_id=bounty_id, requested_by=POSTER, reason="found someone else", notifier=notifier)
    gateway.fail_next("create_hold", PermanentGatewayError("Your card was declined", code="card_declined"))

    assert relay_outbox_events(db, gateway=gateway, notifier=notifier)["failed"] == 1

    b = db.get(Bounty, bounty_id)
    assert b.status == "open"
    assert b.worker_id is None
    assert b.payment_hold_ref is None
    assert b.cancellation_requested_by is None
    assert "payment.failed" in notifier.events_for(WORKER)


def test_cancellation_request_cannot_stop_queued_payout(db, gateway, notifier):
    from escrow_engine.core.errors import ReleaseInProgress
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.refund import request_cancellation
    from escrow_engine.payments.release import complete_bounty

    bounty_id = held_bounty(db, gateway, notifier)
    complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER)

    with pytest.raises(ReleaseInProgress):
        request_cancellation(db, bounty_id=bounty_id, requested_by=POSTER, reason="too slow", notifier=notifier)
    db.rollback()
    assert db.get(Bounty, bounty_id).status == "in_progress"

    assert relay_outbox_events(db, gateway=gateway, notifier=notifier)["completed"] == 1
    again = complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER)
    assert again.already_processed is True
    relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert gateway.executed_count("transfer") == 1


def test_payout_settles_even_if_cancellation_was_requested_meanwhile(db, gateway, notifier):
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.release import complete_bounty

    bounty_id = held_bounty(db, gateway, notifier)
    res = complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER)

    # A request that got in between the payout being queued and being sent.
    b = db.get(Bounty, bounty_id)
    b.status = "cancellation_requested"
    b.cancellation_requested_by = POSTER
    db.commit()

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert stats["completed"] == 1
    assert stats["failed"] == 0

    live = rows(db, bounty_id)
    assert live["release"].id == res.release_transaction_id
    assert live["release"].status == "completed"
    assert live["platform_fee"].status == "completed"
    b = db.get(Bounty, bounty_id)
    assert b.status == "completed"
    assert b.cancellation_requested_by is None
    assert alerts(db, bounty_id) == []

    # A second completion call must not move money again.
    assert complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER).already_processed is True
    relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert gateway.executed_count("transfer") == 1


def test_failed_payout_keeps_bounty_in_progress(db, gateway, notifier):
    from escrow_engine.gateway.base import GatewayValidationError
    from escrow_engine.models.tables import Bounty, WalletTransaction
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.payments.release import complete_bounty

    bounty_id = held_bounty(db, gateway, notifier)
    res = complete_bounty(db, bounty_id=bounty_id, completed_by=WORKER)
    gateway.fail_next("transfer", GatewayValidationError("unknown destination", code="resource_missing"))

    assert relay_outbox_events(db, gateway=gateway, notifier=notifier)["failed"] == 1

    assert db.get(Bounty, bounty_id).status == "in_progress"
    assert db.get(WalletTransaction, res.release_transaction_id).status == "failed"
    assert db.get(WalletTransaction, res.fee_transaction_id).status == "failed"
    # The escrow hold is untouched.
    assert rows(db, bounty_id)["escrow"].status == "completed"
    assert len(alerts(db, bounty_id)) == 1


def test_replay_after_lost_commit_reuses_idempotency_key(db, gateway, notifier):
    from escrow_engine.ledger import store
    from escrow_engine.models.tables import OutboxEvent
    from escrow_engine.outbox.relay import relay_outbox_events

    bounty_id = _accepted(db, gateway)
    relay_outbox_events(db, gateway=gateway, notifier=notifier)
    escrow = rows(db, bounty_id)["escrow"]
    first_ref = escrow.external_ref

    # Pretend the process died after the gateway call, before anything was recorded.
    (event,) = events(db, bounty_id)
    event.status = store.EVENT_PENDING
    escrow.status = store.TX_PENDING
    escrow.external_ref = None
    db.commit()

    relay_outbox_events(db, gateway=gateway, notifier=notifier)

    assert db.get(OutboxEvent, event.id).status == "completed"
    assert rows(db, bounty_id)["escrow"].external_ref == first_ref
    assert gateway.executed_count("create_hold") == 1
    keys = {params["idempotency_key"] for op, params in gateway.calls if op == "create_hold"}
    assert keys == {f"ESCROW_HOLD:{bounty_id}:{escrow.id}"}


def test_lost_claim_is_skipped(db, gateway, notifier, monkeypatch):
    from escrow_engine.ledger import store
    from escrow_engine.outbox.relay import relay_outbox_events

    bounty_id = _accepted(db, gateway)
    monkeypatch.setattr(store, "claim_event", lambda db, event_id, *, now: False)

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert stats["skipped"] == 1
    assert stats["claimed"] == 0
    assert gateway.executed == []
    assert events(db, bounty_id)[0].status == "pending"


def test_stale_claim_is_reclaimed(db, gateway, notifier):
    from escrow_engine.ledger import store
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.util.time import now_utc

    bounty_id = _accepted(db, gateway)
    now = now_utc()
    (event,) = events(db, bounty_id)
    event.status = store.EVENT_PROCESSING
    event.claimed_at = now - timedelta(seconds=600)
    db.commit()

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier, now=now)
    assert stats["reclaimed"] == 1
    assert stats["completed"] == 1
    assert rows(db, bounty_id)["escrow"].status == "completed"


def test_recent_claim_is_left_alone(db, gateway, notifier):
    from escrow_engine.ledger import store
    from escrow_engine.outbox.relay import relay_outbox_events
    from escrow_engine.util.time import now_utc

    bounty_id = _accepted(db, gateway)
    now = now_utc()
    (event,) = events(db, bounty_id)
    event.status = store.EVENT_PROCESSING
    event.claimed_at = now - timedelta(seconds=10)
    db.commit()

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier, now=now)
    assert stats["reclaimed"] == 0
    assert stats["claimed"] == 0
    assert gateway.executed == []


def test_malformed_payload_fails_without_retry(db, gateway, notifier):
    from escrow_engine.models.tables import Bounty
    from escrow_engine.outbox.relay import relay_outbox_events

    bounty_id = _accepted(db, gateway)
    (event,) = events(db, bounty_id)
    event.payload = {"event_type": "ESCROW_HOLD", "bounty_id": bounty_id}
    db.commit()

    stats = relay_outbox_events(db, gateway=gateway, notifier=notifier)
    assert stats["failed"] == 1

    db.refresh(event)
    assert event.status == "failed"
    assert event.last_error.startswith("fatal:")
    assert gateway.executed == []
    assert db.get(Bounty, bounty_id).status == "open"
    assert "escrow" not in rows(db, bounty_id)
    assert len(alerts(db, bounty_id)) == 1


def test_notification_failure_does_not_fail_payment(db, gateway):
    from escrow_engine.outbox.relay import relay_outbox_events

    class BrokenNotifier:
        def notify(self, user_id, event_type, payload):
            raise RuntimeError("smtp down")

    bounty_id = _accepted(db, gateway)
    stats = relay_outbox_events(db, gateway=gateway, notifier=BrokenNotifier())
    assert stats["completed"] == 1
    assert rows(db, bounty_id)["escrow"].status == "completed"


def test_relay_task_runs_against_configured_gateway(db, monkeypatch, gateway, notifier):
    from escrow_engine.tasks import relay_tasks

    bounty_id = _accepted(db, gateway)
    monkeypatch.setattr(relay_tasks, "get_gateway", lambda: gateway)
    monkeypatch.setattr(relay_tasks, "get_notifier", lambda: notifier)

    out = relay_tasks.relay_outbox(limit=10)
    assert out["ok"] is True
    assert out["completed"] == 1
    db.expire_all()
    assert rows(db, bounty_id)["escrow"].status == "completed"
