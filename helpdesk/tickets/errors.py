"""Error taxonomy raised by the ticket mutation engine.

Every error carries a machine readable ``code``, the HTTP ``status_code`` the
API layer should answer with and, for validation problems, the offending
``field``.
"""

from __future__ import annotations


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, code: str | None = None, field: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.field = field


class TicketValidationError(TicketServiceError):
    """Raised when a request carries a missing or malformed field."""

    code = "VALIDATION_ERROR"
    status_code = 400


class StaleUpdateError(TicketServiceError):
    """Raised when the presented version no longer matches the stored one."""

    code = "STALE_UPDATE"
    status_code = 409

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "Ticket has been modified by another user. Please refresh and try again.")


class TicketAuthorizationError(TicketServiceError):
    """Raised when the actor has no standing for the requested change."""

    code = "FORBIDDEN"
    status_code = 403


class InvalidAssigneeError(TicketAuthorizationError):
    """Raised when the assignment target is not an active agent or admin."""

    code = "INVALID_ASSIGNEE"
    status_code = 400

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "Can only assign to agents or admins", field="assigned_to")


class TicketNotFoundError(TicketServiceError):
    """Raised when an operation targets a non-existent ticket."""

    code = "TICKET_NOT_FOUND"
    status_code = 404

    def __init__(self, ticket_id: str) -> None:
        super().__init__(f"Ticket {ticket_id} not found")
        self.ticket_id = ticket_id


class InvalidTicketTransitionError(TicketServiceError):
    """Raised when a configured transition table rejects a status change."""

    code = "INVALID_TRANSITION"
    status_code = 409
