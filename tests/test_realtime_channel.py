import asyncio
import logging
from datetime import datetime, timezone

import pytest

from app.realtime import RealtimeChannel
from app.tickets.models import MessageSender, TicketMessage


def _message(message_id: int, *, ticket_id: int = 1) -> TicketMessage:
    return TicketMessage(
        id=message_id,
        ticket_id=ticket_id,
        sender=MessageSender.USER,
        content=f"message {message_id}",
        created_at=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_publish_delivers_in_append_order(channel):
    received: list[int] = []
    subscription = channel.subscribe(1, lambda message: received.append(message.id))

    for message_id in range(1, 6):
        channel.publish(1, _message(message_id))
    await subscription.drain()

    assert received == [1, 2, 3, 4, 5]


@pytest.mark.asyncio
async def test_every_subscriber_of_a_ticket_receives_the_message(channel):
    user_view: list[int] = []
    trader_view: list[int] = []
    first = channel.subscribe(1, lambda message: user_view.append(message.id))
    second = channel.subscribe(1, lambda message: trader_view.append(message.id))
    elsewhere = channel.subscribe(2, lambda message: pytest.fail("wrong ticket"))

    assert channel.publish(1, _message(7)) == 2
    await first.drain()
    await second.drain()
    await elsewhere.drain()

    assert user_view == [7]
    assert trader_view == [7]


@pytest.mark.asyncio
async def test_late_subscriber_gets_no_replay(channel):
    channel.publish(1, _message(1))
    received: list[int] = []
    subscription = channel.subscribe(1, lambda message: received.append(message.id))

    channel.publish(1, _message(2))
    await subscription.drain()

    assert received == [2]


@pytest.mark.asyncio
async def test_async_callbacks_are_awaited_in_order(channel):
    received: list[int] = []

    async def on_message(message: TicketMessage) -> None:
        # later messages finish faster; order must still hold
        await asyncio.sleep(0.01 * (4 - message.id))
        received.append(message.id)

    subscription = channel.subscribe(1, on_message)
    for message_id in (1, 2, 3):
        channel.publish(1, _message(message_id))
    await subscription.drain()

    assert received == [1, 2, 3]


@pytest.mark.asyncio
async def test_unsubscribe_stops_further_deliveries(channel):
    received: list[int] = []
    subscription = channel.subscribe(1, lambda message: received.append(message.id))
    other = channel.subscribe(1, lambda message: None)

    channel.publish(1, _message(1))
    await subscription.drain()
    subscription.unsubscribe()
    channel.publish(1, _message(2))
    await other.drain()

    assert received == [1]
    assert channel.subscriber_count(1) == 1


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent(channel):
    subscription = channel.subscribe(1, lambda message: None)
    keeper = channel.subscribe(1, lambda message: None)

    subscription.unsubscribe()
    subscription.unsubscribe()

    assert subscription.active is False
    assert channel.subscriber_count(1) == 1
    keeper.unsubscribe()
    subscription.unsubscribe()
    assert channel.subscriber_count(1) == 0


@pytest.mark.asyncio
async def test_unsubscribe_mid_delivery_lets_running_callback_finish(channel):
    events: list[tuple[str, int]] = []
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(message: TicketMessage) -> None:
        events.append(("start", message.id))
        started.set()
        await release.wait()
        events.append(("end", message.id))

    subscription = channel.subscribe(1, slow)
    channel.publish(1, _message(1))
    channel.publish(1, _message(2))
    await started.wait()

    subscription.unsubscribe()
    release.set()
    await subscription.wait_closed()

    assert events == [("start", 1), ("end", 1)]


@pytest.mark.asyncio
async def test_failing_subscriber_is_isolated(channel, caplog):
    caplog.set_level(logging.ERROR, logger="app.realtime.channel")
    calls: list[int] = []
    received: list[int] = []

    def broken(message: TicketMessage) -> None:
        calls.append(message.id)
        raise RuntimeError("view crashed")

    failing = channel.subscribe(1, broken)
    healthy = channel.subscribe(1, lambda message: received.append(message.id))

    channel.publish(1, _message(1))
    channel.publish(1, _message(2))
    await failing.drain()
    await healthy.drain()

    assert received == [1, 2]
    assert calls == [1, 2]
    assert "view crashed" in caplog.text


@pytest.mark.asyncio
async def test_slow_subscriber_times_out_and_delivery_continues(caplog):
    caplog.set_level(logging.WARNING, logger="app.realtime.channel")
    channel = RealtimeChannel(callback_timeout=0.05)
    received: list[int] = []

    async def stuck_on_first(message: TicketMessage) -> None:
        if message.id == 1:
            await asyncio.sleep(10)
        received.append(message.id)

    subscription = channel.subscribe(1, stuck_on_first)
    channel.publish(1, _message(1))
    channel.publish(1, _message(2))
    await asyncio.wait_for(subscription.drain(), timeout=2)
    await channel.close()

    assert received == [2]
    assert "timed out" in caplog.text


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_subscribers(channel):
    release = asyncio.Event()

    async def blocked(message: TicketMessage) -> None:
        await release.wait()

    channel.subscribe(1, blocked)
    # returns immediately even though the callback never completes yet
    assert channel.publish(1, _message(1)) == 1
    release.set()


@pytest.mark.asyncio
async def test_subscribe_all_observes_every_ticket(channel):
    seen: list[tuple[int, int]] = []
    observer = channel.subscribe_all(lambda message: seen.append((message.ticket_id, message.id)))

    channel.publish(1, _message(1, ticket_id=1))
    channel.publish(2, _message(2, ticket_id=2))
    await observer.drain()

    assert seen == [(1, 1), (2, 2)]
    assert channel.subscriber_count(1) == 0


@pytest.mark.asyncio
async def test_close_ticket_drops_its_subscribers(channel):
    received: list[int] = []
    subscription = channel.subscribe(5, lambda message: received.append(message.id))

    channel.close_ticket(5)
    channel.publish(5, _message(1, ticket_id=5))

    assert subscription.active is False
    assert channel.subscriber_count(5) == 0
    assert received == []


@pytest.mark.asyncio
async def test_publish_rejects_message_for_another_ticket(channel):
    with pytest.raises(ValueError):
        channel.publish(1, _message(1, ticket_id=2))


@pytest.mark.asyncio
async def test_subscription_context_manager_unsubscribes(channel):
    with channel.subscribe(1, lambda message: None) as subscription:
        assert channel.subscriber_count(1) == 1
    assert subscription.active is False
    assert channel.subscriber_count(1) == 0
