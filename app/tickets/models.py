from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .errors import ValidationError
from .state import TicketStatus


class TicketType(str, Enum):
    """Kind of request a ticket describes."""

    PURCHASE = "purchase"
    SALE = "sale"
    TRADE = "trade"
    SUPPORT = "support"
    OTHER = "other"

    @classmethod
    def coerce(cls, value: "TicketType | str") -> "TicketType":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise ValidationError(f"Unknown ticket type {value!r}") from exc


class MessageSender(str, Enum):
    """Party that wrote a message."""

    USER = "user"
    TRADER = "trader"


@dataclass(slots=True)
class Ticket:
    """Support ticket opened by a user."""

    id: int
    title: str
    type: TicketType
    status: TicketStatus
    message: str
    item_description: str | None
    owner_id: str | None
    owner_display_name: str | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class TicketMessage:
    """Immutable conversation entry belonging to a single ticket."""

    id: int
    ticket_id: int
    sender: MessageSender
    content: str
    created_at: datetime


@dataclass(slots=True)
class TicketDraft:
    """Input accepted by ``TicketService.create_ticket``."""

    title: str
    message: str
    type: TicketType | str = TicketType.SUPPORT
    item_description: str | None = None


@dataclass(frozen=True, slots=True)
class TicketScope:
    """Selects which tickets ``list_tickets`` returns."""

    owner_id: str | None = None

    @classmethod
    def owner(cls, owner_id: str) -> "TicketScope":
        return cls(owner_id=owner_id)

    @classmethod
    def all(cls) -> "TicketScope":
        return cls(owner_id=None)

    @property
    def is_all(self) -> bool:
        return self.owner_id is None
