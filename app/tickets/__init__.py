"""Ticket and conversation domain models and services."""

from .errors import AuthorizationError, NotFoundError, StoreUnavailable, TicketDeskError, ValidationError
from .models import MessageSender, Ticket, TicketDraft, TicketMessage, TicketScope, TicketType
from .state import TicketStateMachine, TicketStatus
from .locks import TicketLocks
from .projection import ConversationView, DashboardView, TicketActivity, TicketProjection
from .repository import InMemoryTicketRepository, PostgresTicketRepository, TicketRepository
from .service import TicketService
from .messages import MessageService

__all__ = [
    "AuthorizationError",
    "ConversationView",
    "DashboardView",
    "InMemoryTicketRepository",
    "MessageSender",
    "MessageService",
    "NotFoundError",
    "PostgresTicketRepository",
    "StoreUnavailable",
    "TicketActivity",
    "Ticket",
    "TicketDeskError",
    "TicketDraft",
    "TicketLocks",
    "TicketMessage",
    "TicketProjection",
    "TicketRepository",
    "TicketScope",
    "TicketService",
    "TicketStateMachine",
    "TicketStatus",
    "TicketType",
    "ValidationError",
]
