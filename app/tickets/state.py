from __future__ import annotations

from enum import Enum

from .errors import ValidationError


class TicketStatus(str, Enum):
    """Supported states for a ticket's lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class TicketStateMachine:
    """Ticket lifecycle rules.

    Operators pick freely between the three statuses: every status is reachable
    from every other one in a single step, and ``completed`` can be reopened.
    The only failure is a value that is not a status at all.
    """

    @classmethod
    def initial_state(cls) -> TicketStatus:
        return TicketStatus.PENDING

    @classmethod
    def coerce(cls, value: TicketStatus | str) -> TicketStatus:
        if isinstance(value, TicketStatus):
            return value
        try:
            return TicketStatus(str(value).strip().lower())
        except ValueError as exc:
            allowed = ", ".join(status.value for status in TicketStatus)
            raise ValidationError(f"Unknown ticket status {value!r}; expected one of: {allowed}") from exc

    @classmethod
    def assert_transition(cls, current: TicketStatus, new: TicketStatus | str) -> TicketStatus:
        """Return the target status; any move from ``current`` is allowed."""

        return cls.coerce(new)
