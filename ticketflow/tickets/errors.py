from __future__ import annotations


class TicketEngineError(RuntimeError):
    """Base error for ticket engine issues."""

    retryable = False


class PermissionDeniedError(TicketEngineError):
    """Raised when the caller lacks the permission or relationship required by an action."""


class InvalidTransitionError(TicketEngineError):
    """Raised when the current status does not permit the requested action."""


class ConflictError(TicketEngineError):
    """Raised when a concurrent mutation changed the ticket first."""

    retryable = True

    def __init__(self, ticket_id: str, *, expected_version: int, actual_version: int | None = None) -> None:
        super().__init__(f"Ticket {ticket_id} changed concurrently (expected version {expected_version})")
        self.ticket_id = ticket_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class NotFoundError(TicketEngineError):
    """Raised when a referenced entity does not exist."""


class TicketNotFoundError(NotFoundError):
    """Raised when an operation targets a non-existent ticket."""


class SLARuleNotFoundError(NotFoundError):
    """Raised when an SLA rule could not be located."""


class ValidationFailedError(TicketEngineError):
    """Raised when an input value is missing or invalid."""

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason
