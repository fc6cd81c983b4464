from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opentelemetry import trace

from app.identity import Identity, PrivilegePolicy

from .errors import AuthorizationError, NotFoundError, ValidationError
from .locks import TicketLocks
from .models import Ticket, TicketDraft, TicketScope, TicketType
from .projection import DashboardView, TicketActivity, TicketProjection
from .repository import TicketRepository
from .state import TicketStateMachine, TicketStatus

if TYPE_CHECKING:
    from app.realtime import RealtimeChannel, Subscription

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def require_identity(requester: Identity | None, action: str) -> Identity:
    if requester is None:
        raise AuthorizationError(f"Sign in to {action}")
    return requester


def require_privileged(policy: PrivilegePolicy, requester: Identity | None, action: str) -> Identity:
    if requester is None or not policy.is_privileged(requester):
        who = requester.id if requester is not None else "anonymous"
        logger.warning("Denied %s for non-trader identity %s", action, who)
        raise AuthorizationError(f"Only traders may {action}")
    return requester


def ensure_visible(policy: PrivilegePolicy, ticket: Ticket | None, requester: Identity, ticket_id: int) -> Ticket:
    """Return ``ticket`` if ``requester`` may see it.

    Tickets owned by someone else are reported as missing so ids cannot be guessed.
    """

    if ticket is not None and (policy.is_privileged(requester) or (
        ticket.owner_id is not None and ticket.owner_id == requester.id
    )):
        return ticket
    raise NotFoundError(f"Ticket {ticket_id} not found")


def _clean_text(value: str | None, field_name: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field_name} must not be empty")
    return cleaned


class TicketService:
    """Ticket lifecycle: creation, listing, status changes and deletion."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        policy: PrivilegePolicy,
        channel: RealtimeChannel,
        projection: TicketProjection | None = None,
        state_machine: type[TicketStateMachine] = TicketStateMachine,
        locks: TicketLocks | None = None,
    ) -> None:
        self._repository = repository
        self._policy = policy
        self._channel = channel
        self._projection = projection or TicketProjection()
        self._state_machine = state_machine
        self._locks = locks or TicketLocks()

    @property
    def projection(self) -> TicketProjection:
        return self._projection

    @property
    def locks(self) -> TicketLocks:
        return self._locks

    async def ensure_schema(self) -> None:
        await self._repository.ensure_schema()

    async def load_projection(self) -> None:
        with tracer.start_as_current_span("tickets.load_projection"):
            tickets = await self._repository.list_tickets()
            stored = await self._repository.message_activity()
        activity = {
            ticket_id: TicketActivity(message_count=count, last_message_at=last_at)
            for ticket_id, (count, last_at) in stored.items()
        }
        self._projection.hydrate(tickets, activity=activity)

    def track_activity(self) -> Subscription:
        """Keep per-ticket message counters current from the realtime channel."""

        return self._channel.subscribe_all(self._projection.record_message)

    def activity(self, ticket_id: int) -> TicketActivity:
        return self._projection.activity(ticket_id) or TicketActivity()

    async def create_ticket(self, draft: TicketDraft, requester: Identity | None) -> Ticket:
        owner = require_identity(requester, "open a ticket")
        title = _clean_text(draft.title, "title")
        message = _clean_text(draft.message, "message")
        ticket_type = TicketType.coerce(draft.type)
        item_description = (draft.item_description or "").strip() or None

        async with self._locks.registry:
            with tracer.start_as_current_span("tickets.create") as span:
                ticket = await self._repository.create_ticket(
                    title=title,
                    type=ticket_type,
                    status=self._state_machine.initial_state(),
                    message=message,
                    item_description=item_description,
                    owner_id=owner.id,
                    owner_display_name=owner.display_name,
                )
                span.set_attribute("ticket.id", ticket.id)
            self._projection.apply_upsert(ticket)

        logger.info("Ticket %s (%s) opened by %s", ticket.id, ticket.type.value, owner.id)
        return ticket

    async def list_tickets(self, scope: TicketScope, requester: Identity | None) -> list[Ticket]:
        """Read from the projection; newest first."""

        caller = require_identity(requester, "list tickets")
        if scope.is_all:
            require_privileged(self._policy, caller, "list every ticket")
            return self._projection.all_tickets()

        if scope.owner_id != caller.id:
            require_privileged(self._policy, caller, "list another user's tickets")
        return self._projection.tickets_for_owner(scope.owner_id)

    async def get_ticket(self, ticket_id: int, requester: Identity | None) -> Ticket:
        caller = require_identity(requester, "view a ticket")
        ticket = await self._repository.get_ticket(ticket_id)
        return ensure_visible(self._policy, ticket, caller, ticket_id)

    async def update_status(
        self, ticket_id: int, new_status: TicketStatus | str, requester: Identity | None
    ) -> Ticket:
        actor = require_privileged(self._policy, requester, "change ticket status")
        target = self._state_machine.coerce(new_status)

        async with self._locks.for_ticket(ticket_id):
            with tracer.start_as_current_span("tickets.update_status") as span:
                span.set_attribute("ticket.id", ticket_id)
                span.set_attribute("ticket.status", target.value)
                current = await self._repository.get_ticket(ticket_id)
                if current is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")
                self._state_machine.assert_transition(current.status, target)

                updated = await self._repository.update_ticket_status(ticket_id, target)
                if updated is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")

            # a full reset may have cleared the projection while the store was busy
            self._projection.apply_update(updated)

        logger.info(
            "Ticket %s status %s -> %s by %s", ticket_id, current.status.value, target.value, actor.id
        )
        return updated

    async def delete_ticket(self, ticket_id: int, requester: Identity | None) -> None:
        actor = require_privileged(self._policy, requester, "delete tickets")
        async with self._locks.for_ticket(ticket_id):
            with tracer.start_as_current_span("tickets.delete") as span:
                span.set_attribute("ticket.id", ticket_id)
                deleted = await self._repository.delete_ticket(ticket_id)
            if not deleted:
                raise NotFoundError(f"Ticket {ticket_id} not found")

            self._channel.close_ticket(ticket_id)
            self._projection.apply_delete(ticket_id)
        logger.info("Ticket %s deleted by %s", ticket_id, actor.id)

    async def delete_all_tickets(self, requester: Identity | None) -> int:
        actor = require_privileged(self._policy, requester, "delete every ticket")
        async with self._locks.registry:
            with tracer.start_as_current_span("tickets.delete_all") as span:
                removed = await self._repository.delete_all_tickets()
                span.set_attribute("tickets.deleted", removed)

            for ticket in self._projection.all_tickets():
                self._channel.close_ticket(ticket.id)
            self._projection.apply_clear()
        logger.warning("All tickets (%d) deleted by %s", removed, actor.id)
        return removed

    def search_tickets(self, term: str, requester: Identity | None) -> list[Ticket]:
        require_privileged(self._policy, requester, "search tickets")
        return self._projection.search(term)

    def dashboard(self, requester: Identity | None) -> DashboardView:
        require_privileged(self._policy, requester, "open the dashboard")
        return self._projection.grouped_by_status()
