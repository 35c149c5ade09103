from __future__ import annotations

from escrow_engine.core.errors import InvalidStatusTransition
from escrow_engine.models.tables import Bounty
from escrow_engine.util.time import now_utc

OPEN = "open"
IN_PROGRESS = "in_progress"
CANCELLATION_REQUESTED = "cancellation_requested"
COMPLETED = "completed"
CANCELLED = "cancelled"
ARCHIVED = "archived"

STATUSES = frozenset({OPEN, IN_PROGRESS, CANCELLATION_REQUESTED, COMPLETED, CANCELLED, ARCHIVED})

# -> open from a later status only happens when the escrow hold fails for good.
TRANSITIONS: dict[str, frozenset[str]] = {
    OPEN: frozenset({IN_PROGRESS, CANCELLED, ARCHIVED}),
    IN_PROGRESS: frozenset({COMPLETED, CANCELLED, CANCELLATION_REQUESTED, OPEN, ARCHIVED}),
    CANCELLATION_REQUESTED: frozenset({IN_PROGRESS, CANCELLED, OPEN, ARCHIVED}),
    COMPLETED: frozenset({ARCHIVED}),
    CANCELLED: frozenset({ARCHIVED}),
    ARCHIVED: frozenset(),
}


def can_transition(current: str, new: str) -> bool:
    return new in TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, new: str) -> None:
    if not can_transition(current, new):
        raise InvalidStatusTransition(f"Illegal bounty transition {current} -> {new}")


def transition(bounty: Bounty, new: str) -> None:
    """Validate and apply a status change on a loaded bounty (caller commits)."""

    assert_transition(bounty.status, new)
    bounty.status = new
    bounty.updated_at = now_utc()
