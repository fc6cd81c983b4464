from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Mapping, Protocol, Sequence

import asyncpg

from .errors import StoreUnavailable
from .models import MessageSender, Ticket, TicketMessage, TicketType
from .state import TicketStatus

logger = logging.getLogger(__name__)

_UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
)


class TicketRepository(Protocol):
    """Data access contract shared by the PostgreSQL and in-memory stores."""

    async def ensure_schema(self) -> None: ...

    async def ping(self) -> bool: ...

    async def create_ticket(
        self,
        *,
        title: str,
        type: TicketType,
        status: TicketStatus,
        message: str,
        item_description: str | None,
        owner_id: str | None,
        owner_display_name: str | None,
    ) -> Ticket: ...

    async def get_ticket(self, ticket_id: int) -> Ticket | None: ...

    async def list_tickets(self, *, owner_id: str | None = None) -> list[Ticket]: ...

    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> Ticket | None: ...

    async def delete_ticket(self, ticket_id: int) -> bool: ...

    async def delete_all_tickets(self) -> int: ...

    async def add_message(
        self, ticket_id: int, *, sender: MessageSender, content: str
    ) -> TicketMessage | None: ...

    async def list_messages(self, ticket_id: int) -> list[TicketMessage]: ...

    async def message_activity(self) -> dict[int, tuple[int, datetime]]: ...


async def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> asyncpg.Pool:
    """Open an asyncpg pool, reporting connection failures as ``StoreUnavailable``."""

    try:
        return await asyncpg.create_pool(dsn=dsn, min_size=min_size, max_size=max_size)
    except _UNAVAILABLE_ERRORS as exc:
        raise StoreUnavailable("Could not connect to the ticket store") from exc


class PostgresTicketRepository:
    """Persistence helper wrapping the `tickets` and `ticket_messages` tables."""

    _CREATE_TICKETS_SQL = """
    CREATE TABLE IF NOT EXISTS tickets (
        id BIGSERIAL PRIMARY KEY,
        title TEXT NOT NULL,
        type TEXT NOT NULL,
        status TEXT NOT NULL CHECK (status IN ('pending', 'in-progress', 'completed')),
        message TEXT NOT NULL,
        item_description TEXT NULL,
        owner_id TEXT NULL,
        owner_display_name TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT CURRENT_TIMESTAMP
    )
    """

    _CREATE_TICKETS_OWNER_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS tickets_owner_id_idx ON tickets (owner_id)
    """

    _CREATE_MESSAGES_SQL = """
    CREATE TABLE IF NOT EXISTS ticket_messages (
        id BIGSERIAL PRIMARY KEY,
        ticket_id BIGINT NOT NULL REFERENCES tickets(id) ON DELETE CASCADE,
        sender TEXT NOT NULL CHECK (sender IN ('user', 'trader')),
        content TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """

    _CREATE_MESSAGES_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS ticket_messages_ticket_idx ON ticket_messages (ticket_id, created_at, id)
    """

    _INSERT_TICKET_SQL = """
    INSERT INTO tickets (title, type, status, message, item_description, owner_id, owner_display_name)
    VALUES ($1, $2, $3, $4, $5, $6, $7)
    RETURNING id, title, type, status, message, item_description, owner_id, owner_display_name, created_at
    """

    _SELECT_TICKET_SQL = """
    SELECT id, title, type, status, message, item_description, owner_id, owner_display_name, created_at
    FROM tickets
    WHERE id = $1
    """

    _LIST_TICKETS_SQL = """
    SELECT id, title, type, status, message, item_description, owner_id, owner_display_name, created_at
    FROM tickets
    ORDER BY created_at DESC, id DESC
    """

    _LIST_TICKETS_BY_OWNER_SQL = """
    SELECT id, title, type, status, message, item_description, owner_id, owner_display_name, created_at
    FROM tickets
    WHERE owner_id = $1
    ORDER BY created_at DESC, id DESC
    """

    _UPDATE_STATUS_SQL = """
    UPDATE tickets
    SET status = $2
    WHERE id = $1
    RETURNING id, title, type, status, message, item_description, owner_id, owner_display_name, created_at
    """

    _DELETE_TICKET_SQL = """
    DELETE FROM tickets WHERE id = $1 RETURNING id
    """

    _DELETE_ALL_TICKETS_SQL = """
    WITH deleted AS (DELETE FROM tickets RETURNING id)
    SELECT count(*) FROM deleted
    """

    _LOCK_TICKET_SQL = """
    SELECT id FROM tickets WHERE id = $1 FOR UPDATE
    """

    # The ticket row lock serialises appends, so created_at follows commit order.
    _INSERT_MESSAGE_SQL = """
    INSERT INTO ticket_messages (ticket_id, sender, content, created_at)
    SELECT $1, $2, $3, GREATEST(clock_timestamp(), COALESCE(MAX(created_at), '-infinity'::timestamptz))
    FROM ticket_messages
    WHERE ticket_id = $1
    RETURNING id, ticket_id, sender, content, created_at
    """

    _SELECT_MESSAGES_SQL = """
    SELECT id, ticket_id, sender, content, created_at
    FROM ticket_messages
    WHERE ticket_id = $1
    ORDER BY created_at ASC, id ASC
    """

    _MESSAGE_ACTIVITY_SQL = """
    SELECT ticket_id, count(*) AS message_count, max(created_at) AS last_message_at
    FROM ticket_messages
    GROUP BY ticket_id
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        try:
            async with self._pool.acquire() as connection:
                yield connection
        except _UNAVAILABLE_ERRORS as exc:
            logger.error("Ticket store unavailable: %s", exc)
            raise StoreUnavailable("Ticket store is unavailable") from exc
        except asyncpg.exceptions.PostgresError as exc:
            logger.exception("Ticket store rejected a statement")
            raise StoreUnavailable(f"Ticket store error: {exc.__class__.__name__}") from exc

    async def ensure_schema(self) -> None:
        async with self._connection() as connection:
            await connection.execute(self._CREATE_TICKETS_SQL)
            await connection.execute(self._CREATE_TICKETS_OWNER_INDEX_SQL)
            await connection.execute(self._CREATE_MESSAGES_SQL)
            await connection.execute(self._CREATE_MESSAGES_INDEX_SQL)

    async def ping(self) -> bool:
        async with self._connection() as connection:
            await connection.execute("SELECT 1")
        return True

    async def create_ticket(
        self,
        *,
        title: str,
        type: TicketType,
        status: TicketStatus,
        message: str,
        item_description: str | None,
        owner_id: str | None,
        owner_display_name: str | None,
    ) -> Ticket:
        async with self._connection() as connection:
            row = await connection.fetchrow(
                self._INSERT_TICKET_SQL,
                title,
                type.value,
                status.value,
                message,
                item_description,
                owner_id,
                owner_display_name,
            )
        if row is None:
            raise StoreUnavailable("Ticket insert returned no row")
        return self._row_to_ticket(row)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._SELECT_TICKET_SQL, ticket_id)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def list_tickets(self, *, owner_id: str | None = None) -> list[Ticket]:
        async with self._connection() as connection:
            if owner_id is None:
                rows = await connection.fetch(self._LIST_TICKETS_SQL)
            else:
                rows = await connection.fetch(self._LIST_TICKETS_BY_OWNER_SQL, owner_id)
        return [self._row_to_ticket(row) for row in rows]

    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> Ticket | None:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._UPDATE_STATUS_SQL, ticket_id, status.value)
        if row is None:
            return None
        return self._row_to_ticket(row)

    async def delete_ticket(self, ticket_id: int) -> bool:
        async with self._connection() as connection:
            row = await connection.fetchrow(self._DELETE_TICKET_SQL, ticket_id)
        return row is not None

    async def delete_all_tickets(self) -> int:
        async with self._connection() as connection:
            deleted = await connection.fetchval(self._DELETE_ALL_TICKETS_SQL)
        return int(deleted or 0)

    async def add_message(
        self, ticket_id: int, *, sender: MessageSender, content: str
    ) -> TicketMessage | None:
        async with self._connection() as connection:
            async with connection.transaction():
                locked = await connection.fetchrow(self._LOCK_TICKET_SQL, ticket_id)
                if locked is None:
                    return None
                row = await connection.fetchrow(self._INSERT_MESSAGE_SQL, ticket_id, sender.value, content)
        if row is None:
            raise StoreUnavailable("Message insert returned no row")
        return self._row_to_message(row)

    async def list_messages(self, ticket_id: int) -> list[TicketMessage]:
        async with self._connection() as connection:
            rows = await connection.fetch(self._SELECT_MESSAGES_SQL, ticket_id)
        return [self._row_to_message(row) for row in rows]

    async def message_activity(self) -> dict[int, tuple[int, datetime]]:
        async with self._connection() as connection:
            rows = await connection.fetch(self._MESSAGE_ACTIVITY_SQL)
        return {
            int(row["ticket_id"]): (int(row["message_count"]), _ensure_datetime(row["last_message_at"]))
            for row in rows
        }

    @staticmethod
    def _row_to_ticket(row: Mapping[str, Any]) -> Ticket:
        return Ticket(
            id=int(row["id"]),
            title=str(row["title"]),
            type=TicketType(str(row["type"])),
            status=TicketStatus(str(row["status"])),
            message=str(row["message"]),
            item_description=row["item_description"],
            owner_id=row["owner_id"],
            owner_display_name=row["owner_display_name"],
            created_at=_ensure_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_message(row: Mapping[str, Any]) -> TicketMessage:
        return TicketMessage(
            id=int(row["id"]),
            ticket_id=int(row["ticket_id"]),
            sender=MessageSender(str(row["sender"])),
            content=str(row["content"]),
            created_at=_ensure_datetime(row["created_at"]),
        )


class InMemoryTicketRepository:
    """Process-local store used for development and tests.

    Returned tickets are copies; mutating them never changes stored state.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utcnow
        self._tickets: dict[int, Ticket] = {}
        self._messages: dict[int, list[TicketMessage]] = {}
        self._ticket_ids = itertools.count(1)
        self._message_ids = itertools.count(1)

    async def ensure_schema(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def create_ticket(
        self,
        *,
        title: str,
        type: TicketType,
        status: TicketStatus,
        message: str,
        item_description: str | None,
        owner_id: str | None,
        owner_display_name: str | None,
    ) -> Ticket:
        ticket = Ticket(
            id=next(self._ticket_ids),
            title=title,
            type=type,
            status=status,
            message=message,
            item_description=item_description,
            owner_id=owner_id,
            owner_display_name=owner_display_name,
            created_at=self._clock(),
        )
        self._tickets[ticket.id] = ticket
        self._messages[ticket.id] = []
        return replace(ticket)

    async def get_ticket(self, ticket_id: int) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        return None if ticket is None else replace(ticket)

    async def list_tickets(self, *, owner_id: str | None = None) -> list[Ticket]:
        tickets: Sequence[Ticket] = [
            ticket for ticket in self._tickets.values() if owner_id is None or ticket.owner_id == owner_id
        ]
        ordered = sorted(tickets, key=lambda ticket: (ticket.created_at, ticket.id), reverse=True)
        return [replace(ticket) for ticket in ordered]

    async def update_ticket_status(self, ticket_id: int, status: TicketStatus) -> Ticket | None:
        ticket = self._tickets.get(ticket_id)
        if ticket is None:
            return None
        ticket.status = status
        return replace(ticket)

    async def delete_ticket(self, ticket_id: int) -> bool:
        if self._tickets.pop(ticket_id, None) is None:
            return False
        self._messages.pop(ticket_id, None)
        return True

    async def delete_all_tickets(self) -> int:
        count = len(self._tickets)
        self._tickets.clear()
        self._messages.clear()
        return count

    async def add_message(
        self, ticket_id: int, *, sender: MessageSender, content: str
    ) -> TicketMessage | None:
        if ticket_id not in self._tickets:
            return None
        thread = self._messages.setdefault(ticket_id, [])
        created_at = self._clock()
        if thread and thread[-1].created_at > created_at:
            created_at = thread[-1].created_at
        message = TicketMessage(
            id=next(self._message_ids),
            ticket_id=ticket_id,
            sender=sender,
            content=content,
            created_at=created_at,
        )
        thread.append(message)
        return message

    async def list_messages(self, ticket_id: int) -> list[TicketMessage]:
        return list(self._messages.get(ticket_id, ()))

    async def message_activity(self) -> dict[int, tuple[int, datetime]]:
        return {
            ticket_id: (len(thread), thread[-1].created_at)
            for ticket_id, thread in self._messages.items()
            if thread
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ensure_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.fromisoformat(str(value))
