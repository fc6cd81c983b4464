import pytest
import pytest_asyncio

from app.identity import Identity, PrivilegePolicy, SessionTokenCodec
from app.realtime import RealtimeChannel
from app.tickets.messages import MessageService
from app.tickets.repository import InMemoryTicketRepository
from app.tickets.service import TicketService

TRADER_ID = "76561198012345678"


@pytest.fixture
def user() -> Identity:
    return Identity(id="76561198000000001", display_name="alice")


@pytest.fixture
def other_user() -> Identity:
    return Identity(id="76561198000000002", display_name="bob")


@pytest.fixture
def trader() -> Identity:
    return Identity(id=TRADER_ID, display_name="desk")


@pytest.fixture
def policy() -> PrivilegePolicy:
    return PrivilegePolicy([TRADER_ID])


@pytest.fixture
def codec() -> SessionTokenCodec:
    return SessionTokenCodec("test-secret", issuer="ticket-desk-tests")


@pytest.fixture
def repository() -> InMemoryTicketRepository:
    return InMemoryTicketRepository()


@pytest_asyncio.fixture
async def channel():
    channel = RealtimeChannel(callback_timeout=1.0)
    try:
        yield channel
    finally:
        await channel.close()


@pytest.fixture
def ticket_service(repository, policy, channel) -> TicketService:
    return TicketService(repository, policy=policy, channel=channel)


@pytest.fixture
def message_service(repository, policy, channel, ticket_service) -> MessageService:
    return MessageService(repository, policy=policy, channel=channel, locks=ticket_service.locks)

