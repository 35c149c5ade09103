from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from tests.utils_escrow import POSTER, WORKER


@pytest.fixture
def client(db, gateway):
    from escrow_engine.gateway.registry import get_gateway
    from escrow_engine.integrations.notifications import LoggingNotifier, get_notifier
    from escrow_engine.main import app

    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: LoggingNotifier()
    yield TestClient(app)
    app.dependency_overrides.clear()


def _relay(gateway):
    from escrow_engine.core.db import SessionLocal
    from escrow_engine.integrations.notifications import LoggingNotifier
    from escrow_engine.outbox.relay import relay_outbox_events

    with SessionLocal() as s:
        return relay_outbox_events(s, gateway=gateway, notifier=LoggingNotifier())


def _create(client, amount=10000, **extra):
    r = client.post("/bounties", json={"title": "Write docs", "amount": amount, **extra}, headers={"X-User-Id": POSTER})
    assert r.status_code == 201, r.text
    return r.json()


def test_create_and_get_bounty(client):
    created = _create(client)
    assert created["status"] == "open"
    assert created["poster_id"] == POSTER
    assert created["worker_id"] is None

    r = client.get(f"/bounties/{created['id']}")
    assert r.status_code == 200
    assert r.json()["amount"] == 10000

    assert client.get("/bounties/nope").status_code == 404


def test_actor_header_required(client):
    r = client.post("/bounties", json={"title": "x", "amount": 100})
    assert r.status_code == 400


def test_full_lifecycle_over_http(client, gateway):
    bounty_id = _create(client)["id"]

    r = client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "in_progress"

    _relay(gateway)

    r = client.post(f"/bounties/{bounty_id}/complete", headers={"X-User-Id": WORKER})
    assert r.status_code == 200, r.text
    assert r.json()["payout_amount"] == 9500
    assert r.json()["platform_fee"] == 500

    r = client.post(f"/bounties/{bounty_id}/complete", headers={"X-User-Id": WORKER})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "RELEASE_IN_PROGRESS"

    _relay(gateway)

    r = client.get(f"/bounties/{bounty_id}/payment-status", headers={"X-User-Id": POSTER})
    assert r.status_code == 200
    body = r.json()
    assert body["bounty_status"] == "completed"
    assert body["payment_hold_ref"].startswith("hold_")
    by_type = {tx["type"]: tx for tx in body["transactions"]}
    assert by_type["escrow"]["amount"] == 10000
    assert by_type["release"]["amount"] == 9500
    assert by_type["platform_fee"]["amount"] == 500
    assert all(tx["status"] == "completed" for tx in body["transactions"])


def test_accept_errors_map_to_status_codes(client):
    bounty_id = _create(client)["id"]

    r = client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": POSTER})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "SELF_ACCEPTANCE"

    small = _create(client, amount=10)["id"]
    r = client.post(f"/bounties/{small}/accept", headers={"X-User-Id": WORKER})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_AMOUNT"

    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    r = client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": "worker-2"})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ALREADY_ACCEPTED"


def test_complete_by_non_worker_is_forbidden(client, gateway):
    bounty_id = _create(client)["id"]
    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    _relay(gateway)

    r = client.post(f"/bounties/{bounty_id}/complete", headers={"X-User-Id": POSTER})
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "NOT_ASSIGNED_WORKER"


def test_cancel_open_bounty(client):
    bounty_id = _create(client)["id"]
    r = client.post(f"/bounties/{bounty_id}/cancel", json={"reason": "duplicate"}, headers={"X-User-Id": POSTER})
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "cancelled"
    assert body["amount"] == 10000
    assert body["refund_id"]

    r = client.post(f"/bounties/{bounty_id}/cancel", json={}, headers={"X-User-Id": POSTER})
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "ALREADY_REFUNDED"


def test_cancel_with_bad_percentage(client, gateway):
    bounty_id = _create(client)["id"]
    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    _relay(gateway)

    r = client.post(
        f"/bounties/{bounty_id}/cancel", json={"refund_percentage": 120}, headers={"X-User-Id": POSTER}
    )
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INVALID_REFUND_PERCENTAGE"

    r = client.post(f"/bounties/{bounty_id}/cancel", json={"refund_percentage": 25}, headers={"X-User-Id": POSTER})
    assert r.status_code == 200
    assert r.json()["amount"] == 2500


def test_cancellation_request_endpoints(client, gateway):
    bounty_id = _create(client)["id"]
    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    _relay(gateway)

    r = client.post(
        f"/bounties/{bounty_id}/cancellation-request", json={"reason": "stuck"}, headers={"X-User-Id": WORKER}
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "cancellation_requested"

    r = client.post(f"/bounties/{bounty_id}/cancellation-request/reject", headers={"X-User-Id": "stranger"})
    assert r.status_code == 403

    r = client.post(f"/bounties/{bounty_id}/cancellation-request/reject", headers={"X-User-Id": POSTER})
    assert r.status_code == 200
    assert r.json()["status"] == "in_progress"


def test_payment_status_is_for_participants_only(client):
    bounty_id = _create(client)["id"]
    r = client.get(f"/bounties/{bounty_id}/payment-status", headers={"X-User-Id": "stranger"})
    assert r.status_code == 403
    assert r.json()["detail"]["code"] == "NOT_BOUNTY_PARTICIPANT"


def test_health_reports_database(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["deps"]["database"] is True


def test_fractional_refund_percentage_over_http(client, gateway):
    bounty_id = _create(client)["id"]
    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    _relay(gateway)

    r = client.post(f"/bounties/{bounty_id}/cancel", json={"refund_percentage": 50.5}, headers={"X-User-Id": POSTER})
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == 5050
    assert r.json()["refund_percentage"] == 50.5


def test_former_worker_still_sees_payments_after_cancel(client, gateway):
    bounty_id = _create(client)["id"]
    client.post(f"/bounties/{bounty_id}/accept", headers={"X-User-Id": WORKER})
    _relay(gateway)
    client.post(f"/bounties/{bounty_id}/cancel", json={"refund_percentage": 50}, headers={"X-User-Id": POSTER})
    _relay(gateway)

    bounty = client.get(f"/bounties/{bounty_id}").json()
    assert bounty["status"] == "cancelled"
    assert bounty["worker_id"] is None

    r = client.get(f"/bounties/{bounty_id}/payment-status", headers={"X-User-Id": WORKER})
    assert r.status_code == 200
    by_type = {tx["type"]: tx for tx in r.json()["transactions"]}
    assert by_type["release"]["user_id"] == WORKER
    assert by_type["refund"]["amount"] == 5000
