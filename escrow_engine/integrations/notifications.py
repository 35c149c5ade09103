from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx

from escrow_engine.core.config import settings

log = logging.getLogger("notifications")

# Event names sent to the dispatcher.
ESCROW_HELD = "payment.escrow_held"
ESCROW_FAILED = "payment.escrow_failed"
PAYOUT_SENT = "payment.payout_sent"
BOUNTY_COMPLETED = "bounty.completed"
REFUND_ISSUED = "payment.refund_issued"
PAYMENT_FAILED = "payment.failed"
CANCELLATION_REQUESTED = "bounty.cancellation_requested"
CANCELLATION_REJECTED = "bounty.cancellation_rejected"

PAYMENT_FAILED_MESSAGE = "Your payment could not be processed. Support has been notified."


class Notifier(Protocol):
    def notify(self, user_id: str, event_type: str, payload: dict) -> None: ...


@dataclass(frozen=True)
class LoggingNotifier:
    """STUB dispatcher: records the notification in the log only."""

    def notify(self, user_id: str, event_type: str, payload: dict) -> None:
        log.info("notify user=%s event=%s payload=%s", user_id, event_type, payload)


@dataclass(frozen=True)
class WebhookNotifier:
    url: str
    timeout_s: float = 5.0

    def notify(self, user_id: str, event_type: str, payload: dict) -> None:
        with httpx.Client(timeout=self.timeout_s) as client:
            r = client.post(self.url, json={"user_id": user_id, "event_type": event_type, "payload": payload})
        r.raise_for_status()


def send_notification(notifier: Notifier, user_id: str | None, event_type: str, payload: dict) -> bool:
    """Fire-and-forget: a delivery failure is logged and never reaches the payment path."""

    if not user_id:
        return False
    try:
        notifier.notify(user_id, event_type, payload)
        return True
    except Exception as e:
        log.warning("Notification %s to user=%s failed: %s", event_type, user_id, str(e))
        return False


@lru_cache(maxsize=1)
def get_notifier() -> Notifier:
    if settings.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(url=settings.NOTIFY_WEBHOOK_URL)
    return LoggingNotifier()
