"""Typed errors raised by the order workflow.

Each error carries a stable machine ``code`` and the HTTP status the API
layer answers with.  Guards raise these before anything is mutated, so a
caught ``OrderflowError`` always means the order is unchanged.
"""

from __future__ import annotations

from http import HTTPStatus


class OrderflowError(Exception):
    """Base class for every workflow error surfaced to callers."""

    code: str = "error"
    status_code: HTTPStatus = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class NotFoundError(OrderflowError):
    """An order, package, catalog item, or user does not exist."""

    code = "not_found"
    status_code = HTTPStatus.NOT_FOUND


class NotFoundOrUnauthorizedError(NotFoundError):
    """The record is missing or the actor is not a party to it.

    Both cases share one error so callers cannot tell whether the order exists.
    """

    code = "not_found_or_unauthorized"


class UnauthenticatedError(OrderflowError):
    """The request carries no usable caller identity."""

    code = "unauthenticated"
    status_code = HTTPStatus.UNAUTHORIZED


class InvalidRequestError(OrderflowError):
    """The request body could not be decoded."""

    code = "invalid_json"


class ForbiddenError(OrderflowError):
    """The actor's role does not allow the operation."""

    code = "forbidden"
    status_code = HTTPStatus.FORBIDDEN


class InvalidTransitionError(OrderflowError):
    """The requested status change is not allowed from the current status."""

    code = "invalid_transition"


class AlreadyTerminalError(OrderflowError):
    code = "already_terminal"


class DisputeInProgressError(OrderflowError):
    code = "dispute_in_progress"


class DisputeAlreadyOpenError(OrderflowError):
    code = "dispute_already_open"


class NotInDisputedStateError(OrderflowError):
    code = "not_in_disputed_state"


class RevisionLimitExceededError(OrderflowError):
    code = "revision_limit_exceeded"


class InvalidOutcomeError(OrderflowError):
    code = "invalid_outcome"


class InvalidFulfillerError(OrderflowError):
    code = "invalid_fulfiller"


class NotAvailableError(OrderflowError):
    """The package is inactive, or the order cannot be paid for yet."""

    code = "not_available"


class MessagingClosedError(OrderflowError):
    code = "messaging_closed"


class NoFulfillerAvailableError(OrderflowError):
    """No admin exists to handle an unassigned custom request."""

    code = "no_fulfiller_available"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class PaymentsUnavailableError(OrderflowError):
    code = "payments_unavailable"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class PaymentVerificationError(OrderflowError):
    """A payment webhook failed signature or payload checks."""

    code = "invalid_payment_event"


class ConcurrentModificationError(OrderflowError):
    """The order changed between load and save."""

    code = "conflict"
    status_code = HTTPStatus.CONFLICT
