from __future__ import annotations


class EscrowError(Exception):
    """Synchronous rejection of a payment operation.

    Raised before anything is committed; `code` is the machine-readable name
    clients switch on, `status_code` is what the REST layer answers with.
    """

    code: str = "ESCROW_ERROR"
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.code
        super().__init__(self.message)


class BountyNotFound(EscrowError):
    code = "BOUNTY_NOT_FOUND"
    status_code = 404


class InvalidStatusTransition(EscrowError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = 409


class NotBountyParticipant(EscrowError):
    code = "NOT_BOUNTY_PARTICIPANT"
    status_code = 403


# Escrow
class AlreadyAccepted(EscrowError):
    code = "ALREADY_ACCEPTED"
    status_code = 409


class SelfAcceptance(EscrowError):
    code = "SELF_ACCEPTANCE"
    status_code = 400


class PayoutCapabilityError(EscrowError):
    code = "PAYOUT_CAPABILITY_ERROR"
    status_code = 409


class InvalidAmount(EscrowError):
    code = "INVALID_AMOUNT"
    status_code = 400


# Release
class NotAssignedWorker(EscrowError):
    code = "NOT_ASSIGNED_WORKER"
    status_code = 403


class NoEscrowFound(EscrowError):
    code = "NO_ESCROW_FOUND"
    status_code = 409


class ReleaseAlreadyProcessed(EscrowError):
    code = "RELEASE_ALREADY_PROCESSED"
    status_code = 409


class ReleaseInProgress(EscrowError):
    code = "RELEASE_IN_PROGRESS"
    status_code = 409


# Refund
class AlreadyCompleted(EscrowError):
    code = "ALREADY_COMPLETED"
    status_code = 409


class AlreadyRefunded(EscrowError):
    code = "ALREADY_REFUNDED"
    status_code = 409


class RefundInProgress(EscrowError):
    code = "REFUND_IN_PROGRESS"
    status_code = 409


class InvalidRefundPercentage(EscrowError):
    code = "INVALID_REFUND_PERCENTAGE"
    status_code = 400


class NoHoldFound(EscrowError):
    code = "NO_HOLD_FOUND"
    status_code = 409


# Outbox administration
class OutboxEventNotFound(EscrowError):
    code = "OUTBOX_EVENT_NOT_FOUND"
    status_code = 404


class OutboxRequeueConflict(EscrowError):
    code = "OUTBOX_REQUEUE_CONFLICT"
    status_code = 409
