import asyncio

import pytest

from app.tickets.errors import AuthorizationError, NotFoundError, ValidationError
from app.tickets.models import MessageSender, TicketDraft, TicketScope, TicketType
from app.tickets.service import TicketService
from app.tickets.state import TicketStatus


def _draft(title: str = "Need help with trade", **overrides) -> TicketDraft:
    values = {"title": title, "message": "My trade offer is stuck", "type": "trade"}
    values.update(overrides)
    return TicketDraft(**values)


@pytest.mark.asyncio
async def test_create_ticket_starts_pending_and_records_owner(ticket_service, user):
    ticket = await ticket_service.create_ticket(_draft(item_description="  AK-47 | Redline "), user)

    assert ticket.status == TicketStatus.PENDING
    assert ticket.type == TicketType.TRADE
    assert ticket.owner_id == user.id
    assert ticket.owner_display_name == user.display_name
    assert ticket.item_description == "AK-47 | Redline"
    assert ticket_service.projection.get(ticket.id) == ticket


@pytest.mark.asyncio
async def test_create_ticket_requires_identity(ticket_service, repository):
    with pytest.raises(AuthorizationError):
        await ticket_service.create_ticket(_draft(), None)

    assert await repository.list_tickets() == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [{"title": "   "}, {"message": ""}, {"type": "refund"}],
)
async def test_create_ticket_validates_input(ticket_service, repository, user, overrides):
    with pytest.raises(ValidationError):
        await ticket_service.create_ticket(_draft(**overrides), user)

    assert await repository.list_tickets() == []


@pytest.mark.asyncio
async def test_user_lists_only_own_tickets_newest_first(ticket_service, user, other_user):
    first = await ticket_service.create_ticket(_draft("first"), user)
    await ticket_service.create_ticket(_draft("someone else"), other_user)
    second = await ticket_service.create_ticket(_draft("second"), user)

    mine = await ticket_service.list_tickets(TicketScope.owner(user.id), user)

    assert [ticket.id for ticket in mine] == [second.id, first.id]


@pytest.mark.asyncio
async def test_listing_all_tickets_is_trader_only(ticket_service, user, other_user, trader):
    await ticket_service.create_ticket(_draft("a"), user)
    await ticket_service.create_ticket(_draft("b"), other_user)

    with pytest.raises(AuthorizationError):
        await ticket_service.list_tickets(TicketScope.all(), user)
    with pytest.raises(AuthorizationError):
        await ticket_service.list_tickets(TicketScope.owner(other_user.id), user)

    everything = await ticket_service.list_tickets(TicketScope.all(), trader)
    assert len(everything) == 2


@pytest.mark.asyncio
async def test_other_users_ticket_is_reported_missing(ticket_service, user, other_user, trader):
    ticket = await ticket_service.create_ticket(_draft(), user)

    with pytest.raises(NotFoundError):
        await ticket_service.get_ticket(ticket.id, other_user)

    assert (await ticket_service.get_ticket(ticket.id, user)).id == ticket.id
    assert (await ticket_service.get_ticket(ticket.id, trader)).id == ticket.id


@pytest.mark.asyncio
async def test_trader_updates_status_freely(ticket_service, user, trader):
    ticket = await ticket_service.create_ticket(_draft(), user)

    completed = await ticket_service.update_status(ticket.id, "completed", trader)
    reopened = await ticket_service.update_status(ticket.id, TicketStatus.IN_PROGRESS, trader)

    assert completed.status == TicketStatus.COMPLETED
    assert reopened.status == TicketStatus.IN_PROGRESS
    assert ticket_service.projection.get(ticket.id).status == TicketStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_non_trader_cannot_change_status(ticket_service, repository, user):
    ticket = await ticket_service.create_ticket(_draft(), user)

    with pytest.raises(AuthorizationError):
        await ticket_service.update_status(ticket.id, "completed", user)
    with pytest.raises(AuthorizationError):
        await ticket_service.update_status(ticket.id, "completed", None)

    stored = await repository.get_ticket(ticket.id)
    assert stored.status == TicketStatus.PENDING


@pytest.mark.asyncio
async def test_update_status_rejects_unknown_status_and_missing_ticket(ticket_service, user, trader):
    ticket = await ticket_service.create_ticket(_draft(), user)

    with pytest.raises(ValidationError):
        await ticket_service.update_status(ticket.id, "closed", trader)
    with pytest.raises(NotFoundError):
        await ticket_service.update_status(ticket.id + 100, "completed", trader)


@pytest.mark.asyncio
async def test_delete_ticket_cascades_to_messages(
    ticket_service, message_service, repository, channel, user, trader
):
    ticket = await ticket_service.create_ticket(_draft(), user)
    await message_service.append_message(ticket.id, content="hello", requester=user)
    subscription = channel.subscribe(ticket.id, lambda message: None)

    await ticket_service.delete_ticket(ticket.id, trader)

    assert await repository.get_ticket(ticket.id) is None
    assert await repository.list_messages(ticket.id) == []
    assert subscription.active is False
    assert ticket_service.projection.get(ticket.id) is None
    with pytest.raises(NotFoundError):
        await message_service.list_messages(ticket.id, trader)


@pytest.mark.asyncio
async def test_delete_ticket_requires_trader_and_existing_ticket(ticket_service, repository, user, trader):
    ticket = await ticket_service.create_ticket(_draft(), user)

    with pytest.raises(AuthorizationError):
        await ticket_service.delete_ticket(ticket.id, user)
    assert await repository.get_ticket(ticket.id) is not None

    await ticket_service.delete_ticket(ticket.id, trader)
    with pytest.raises(NotFoundError):
        await ticket_service.delete_ticket(ticket.id, trader)


@pytest.mark.asyncio
async def test_delete_all_tickets(ticket_service, message_service, repository, user, other_user, trader):
    first = await ticket_service.create_ticket(_draft("a"), user)
    await ticket_service.create_ticket(_draft("b"), other_user)
    await message_service.append_message(first.id, content="ping", requester=user)

    with pytest.raises(AuthorizationError):
        await ticket_service.delete_all_tickets(user)

    removed = await ticket_service.delete_all_tickets(trader)

    assert removed == 2
    assert await repository.list_tickets() == []
    assert await repository.list_messages(first.id) == []
    assert len(ticket_service.projection) == 0
    assert await ticket_service.delete_all_tickets(trader) == 0


@pytest.mark.asyncio
async def test_search_and_dashboard_are_trader_views(ticket_service, user, other_user, trader):
    knife = await ticket_service.create_ticket(_draft("Karambit purchase", type="purchase"), user)
    gloves = await ticket_service.create_ticket(_draft("Gloves swap"), other_user)
    await ticket_service.update_status(gloves.id, "completed", trader)

    assert [ticket.id for ticket in ticket_service.search_tickets("karambit", trader)] == [knife.id]
    assert [ticket.id for ticket in ticket_service.search_tickets("bob", trader)] == [gloves.id]
    with pytest.raises(AuthorizationError):
        ticket_service.search_tickets("karambit", user)

    dashboard = ticket_service.dashboard(trader)
    assert dashboard.counts == {
        TicketStatus.PENDING: 1,
        TicketStatus.IN_PROGRESS: 0,
        TicketStatus.COMPLETED: 1,
    }
    assert dashboard.total == 2
    with pytest.raises(AuthorizationError):
        ticket_service.dashboard(user)


@pytest.mark.asyncio
async def test_load_projection_restores_tickets_and_activity(
    ticket_service, message_service, repository, policy, channel, user, trader
):
    ticket = await ticket_service.create_ticket(_draft(), user)
    quiet = await ticket_service.create_ticket(_draft("quiet"), user)
    await message_service.append_message(ticket.id, content="hi", requester=user)
    last = await message_service.append_message(ticket.id, content="on it", requester=trader)

    restarted = TicketService(repository, policy=policy, channel=channel)
    await restarted.load_projection()

    assert restarted.projection.get(ticket.id) == ticket
    assert restarted.activity(ticket.id).message_count == 2
    assert restarted.activity(ticket.id).last_message_at == last.created_at
    assert restarted.activity(quiet.id).message_count == 0
    assert [item.id for item in await restarted.list_tickets(TicketScope.owner(user.id), user)] == [
        quiet.id,
        ticket.id,
    ]


@pytest.mark.asyncio
async def test_track_activity_counts_live_messages(ticket_service, message_service, user):
    ticket = await ticket_service.create_ticket(_draft(), user)
    observer = ticket_service.track_activity()

    first = await message_service.append_message(ticket.id, content="one", requester=user)
    second = await message_service.append_message(ticket.id, content="two", requester=user)
    await observer.drain()

    activity = ticket_service.activity(ticket.id)
    assert activity.message_count == 2
    assert activity.last_message_at == max(first.created_at, second.created_at)
    assert ticket_service.activity(ticket.id + 100).message_count == 0


@pytest.mark.asyncio
async def test_support_conversation_end_to_end(ticket_service, message_service, channel, user, trader):
    ticket = await ticket_service.create_ticket(
        _draft("Skin not delivered", type="purchase", message="Paid but nothing arrived"),
        user,
    )
    queue = await ticket_service.list_tickets(TicketScope.all(), trader)
    assert [item.id for item in queue] == [ticket.id]

    seen_by_user: list[str] = []
    seen_by_trader: list[str] = []
    user_view = channel.subscribe(ticket.id, lambda message: seen_by_user.append(message.content))
    trader_view = channel.subscribe(ticket.id, lambda message: seen_by_trader.append(message.content))

    await ticket_service.update_status(ticket.id, "in-progress", trader)
    reply = await message_service.append_message(
        ticket.id, content="Checking the trade log now", requester=trader
    )
    follow_up = await message_service.append_message(ticket.id, content="Thanks!", requester=user)
    await asyncio.gather(user_view.drain(), trader_view.drain())

    assert reply.sender == MessageSender.TRADER
    assert follow_up.sender == MessageSender.USER
    assert seen_by_user == ["Checking the trade log now", "Thanks!"]
    assert seen_by_trader == seen_by_user

    history = await message_service.list_messages(ticket.id, user)
    assert [message.id for message in history] == [reply.id, follow_up.id]

    done = await ticket_service.update_status(ticket.id, "completed", trader)
    assert done.status == TicketStatus.COMPLETED
    await ticket_service.delete_ticket(ticket.id, trader)
    assert user_view.active is False
    with pytest.raises(NotFoundError):
        await message_service.append_message(ticket.id, content="hello?", requester=user)
