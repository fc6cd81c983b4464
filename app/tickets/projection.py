"""In-memory read models fed by store mutations and the realtime channel."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Iterable, Mapping, Sequence

from .models import Ticket, TicketMessage
from .state import TicketStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TicketActivity:
    """Live counters kept next to each projected ticket."""

    message_count: int = 0
    last_message_at: datetime | None = None


@dataclass(slots=True)
class DashboardView:
    """Tickets grouped by status, as shown on the operator dashboard."""

    groups: dict[TicketStatus, list[Ticket]] = field(default_factory=dict)

    @property
    def counts(self) -> dict[TicketStatus, int]:
        return {status: len(tickets) for status, tickets in self.groups.items()}

    @property
    def total(self) -> int:
        return sum(len(tickets) for tickets in self.groups.values())


def _newest_first(tickets: Iterable[Ticket]) -> list[Ticket]:
    return sorted(tickets, key=lambda ticket: (ticket.created_at, ticket.id), reverse=True)


class TicketProjection:
    """Single in-memory copy of every ticket.

    Only ``TicketService`` and the realtime channel write to it; presentation
    code reads snapshots, which are copies and never alias projection state.
    """

    def __init__(self) -> None:
        self._tickets: dict[int, Ticket] = {}
        self._activity: dict[int, TicketActivity] = {}

    def hydrate(
        self,
        tickets: Iterable[Ticket],
        *,
        activity: Mapping[int, TicketActivity] | None = None,
    ) -> None:
        """Replace the contents with ``tickets`` and their stored message activity."""

        stored = activity or {}
        self._tickets = {ticket.id: replace(ticket) for ticket in tickets}
        self._activity = {
            ticket_id: replace(stored[ticket_id]) if ticket_id in stored else TicketActivity()
            for ticket_id in self._tickets
        }
        logger.info("Ticket projection hydrated with %d tickets", len(self._tickets))

    def apply_upsert(self, ticket: Ticket) -> None:
        self._tickets[ticket.id] = replace(ticket)
        self._activity.setdefault(ticket.id, TicketActivity())

    def apply_update(self, ticket: Ticket) -> bool:
        """Refresh a ticket that is still projected; deleted tickets stay deleted."""

        if ticket.id not in self._tickets:
            return False
        self._tickets[ticket.id] = replace(ticket)
        return True

    def apply_delete(self, ticket_id: int) -> None:
        self._tickets.pop(ticket_id, None)
        self._activity.pop(ticket_id, None)

    def apply_clear(self) -> None:
        self._tickets.clear()
        self._activity.clear()

    def record_message(self, message: TicketMessage) -> None:
        # deliveries for a ticket deleted in the meantime are ignored
        activity = self._activity.get(message.ticket_id)
        if activity is None:
            return
        activity.message_count += 1
        if activity.last_message_at is None or message.created_at > activity.last_message_at:
            activity.last_message_at = message.created_at

    def get(self, ticket_id: int) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    def activity(self, ticket_id: int) -> TicketActivity | None:
        activity = self._activity.get(ticket_id)
        return None if activity is None else replace(activity)

    def all_tickets(self) -> list[Ticket]:
        return [replace(ticket) for ticket in _newest_first(self._tickets.values())]

    def tickets_for_owner(self, owner_id: str) -> list[Ticket]:
        owned = (ticket for ticket in self._tickets.values() if ticket.owner_id == owner_id)
        return [replace(ticket) for ticket in _newest_first(owned)]

    def grouped_by_status(self) -> DashboardView:
        view = DashboardView(groups={status: [] for status in TicketStatus})
        for ticket in self.all_tickets():
            view.groups[ticket.status].append(ticket)
        return view

    def search(self, term: str) -> list[Ticket]:
        """Match ``term`` against title, type, owner name or ticket id."""

        needle = term.strip().lower()
        if not needle:
            return self.all_tickets()
        return [
            ticket
            for ticket in self.all_tickets()
            if needle in ticket.title.lower()
            or needle in str(ticket.id)
            or needle in ticket.type.value
            or (ticket.owner_display_name and needle in ticket.owner_display_name.lower())
        ]

    def __len__(self) -> int:
        return len(self._tickets)


class ConversationView:
    """Client side view of one ticket's thread.

    History and live deliveries may overlap (a message can arrive live while
    history is still loading, and senders see their own message come back
    through the channel), so messages are keyed by id.
    """

    def __init__(self, ticket_id: int) -> None:
        self.ticket_id = ticket_id
        self._messages: dict[int, TicketMessage] = {}

    def load(self, history: Sequence[TicketMessage]) -> list[TicketMessage]:
        """Merge ``history`` and return the messages that were not known yet."""

        return [message for message in history if self.receive(message)]

    def receive(self, message: TicketMessage) -> bool:
        """Add a delivered message; returns ``False`` for duplicates."""

        if message.ticket_id != self.ticket_id:
            raise ValueError(f"Message {message.id} does not belong to ticket {self.ticket_id}")
        if message.id in self._messages:
            return False
        self._messages[message.id] = message
        return True

    @property
    def messages(self) -> list[TicketMessage]:
        return [self._messages[key] for key in sorted(self._messages)]

    def __len__(self) -> int:
        return len(self._messages)
