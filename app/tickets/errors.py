from __future__ import annotations


class TicketDeskError(RuntimeError):
    """Base error for ticket and message operations."""


class ValidationError(TicketDeskError):
    """Raised when the caller supplied malformed input."""


class AuthorizationError(TicketDeskError):
    """Raised when the requester may not perform the operation."""


class NotFoundError(TicketDeskError):
    """Raised when an operation targets a ticket that does not exist."""


class StoreUnavailable(TicketDeskError):
    """Raised when the durable store cannot be reached.

    Unlike the other errors this one may go away on its own, so callers are
    free to retry with backoff. The services never retry internally.
    """
