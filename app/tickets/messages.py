from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from opentelemetry import trace

from app.identity import Identity, PrivilegePolicy

from .errors import AuthorizationError, NotFoundError, ValidationError
from .locks import TicketLocks
from .models import MessageSender, TicketMessage
from .repository import TicketRepository
from .service import ensure_visible, require_identity

if TYPE_CHECKING:
    from app.realtime import RealtimeChannel

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class MessageService:
    """Append to and read ticket conversations, publishing every new message."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        policy: PrivilegePolicy,
        channel: RealtimeChannel,
        locks: TicketLocks | None = None,
    ) -> None:
        self._repository = repository
        self._policy = policy
        self._channel = channel
        self._locks = locks or TicketLocks()

    def sender_for(self, requester: Identity) -> MessageSender:
        return MessageSender.TRADER if self._policy.is_privileged(requester) else MessageSender.USER

    async def append_message(
        self,
        ticket_id: int,
        *,
        content: str,
        requester: Identity | None,
        sender: MessageSender | str | None = None,
    ) -> TicketMessage:
        author = require_identity(requester, "send messages")
        role = self.sender_for(author)
        if sender is not None:
            try:
                claimed = MessageSender(sender)
            except ValueError as exc:
                raise ValidationError(f"Unknown message sender {sender!r}") from exc
            if claimed != role:
                logger.warning("Identity %s tried to post as %s", author.id, claimed.value)
                raise AuthorizationError(f"Identity may only post as {role.value}")

        text = (content or "").strip()
        if not text:
            raise ValidationError("content must not be empty")

        # publish inside the ticket lock so delivery order matches commit order
        async with self._locks.for_ticket(ticket_id):
            with tracer.start_as_current_span("messages.append") as span:
                span.set_attribute("ticket.id", ticket_id)
                ticket = await self._repository.get_ticket(ticket_id)
                ensure_visible(self._policy, ticket, author, ticket_id)
                message = await self._repository.add_message(ticket_id, sender=role, content=text)
                if message is None:
                    raise NotFoundError(f"Ticket {ticket_id} not found")
                span.set_attribute("message.id", message.id)

            recipients = self._channel.publish(ticket_id, message)
        logger.debug("Message %s on ticket %s delivered to %d subscribers", message.id, ticket_id, recipients)
        return message

    async def list_messages(self, ticket_id: int, requester: Identity | None) -> list[TicketMessage]:
        reader = require_identity(requester, "read messages")
        with tracer.start_as_current_span("messages.list") as span:
            span.set_attribute("ticket.id", ticket_id)
            ticket = await self._repository.get_ticket(ticket_id)
            ensure_visible(self._policy, ticket, reader, ticket_id)
            return await self._repository.list_messages(ticket_id)
