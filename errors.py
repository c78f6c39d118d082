"""Typed failures raised by the queue core.

Each class carries the HTTP status the web layer answers with, so the
FastAPI app needs a single exception handler for the whole family.
"""

from __future__ import annotations

from typing import Optional


class ClinicQueueError(Exception):
    status_code = 500
    error = "queue_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class DuplicateActiveTicket(ClinicQueueError):
    status_code = 409
    error = "duplicate_active_ticket"

    def __init__(self, ticket_number: str) -> None:
        super().__init__(f"You already have an active ticket: {ticket_number}")
        self.ticket_number = ticket_number


class TicketNotFound(ClinicQueueError):
    status_code = 404
    error = "ticket_not_found"

    def __init__(self, ticket_number: str) -> None:
        super().__init__(f"Ticket {ticket_number} not found")
        self.ticket_number = ticket_number


class InvalidTransition(ClinicQueueError):
    status_code = 409
    error = "invalid_transition"

    def __init__(self, ticket_number: str, current: Optional[str], target: str) -> None:
        super().__init__(
            f"Cannot move ticket {ticket_number} from {current} to {target}"
        )
        self.ticket_number = ticket_number
        self.current = current
        self.target = target


class InvalidSettingsUpdate(ClinicQueueError):
    status_code = 400
    error = "invalid_settings_update"


class AllocationFailure(ClinicQueueError):
    status_code = 503
    error = "allocation_failure"


class StoreUnavailable(ClinicQueueError):
    status_code = 503
    error = "store_unavailable"
