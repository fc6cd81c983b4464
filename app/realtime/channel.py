"""In-process publish/subscribe channel for live ticket conversations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from app.tickets.models import TicketMessage

logger = logging.getLogger(__name__)

MessageCallback = Callable[[TicketMessage], Union[Awaitable[None], None]]

_STOP = object()


class Subscription:
    """Registration of one callback on a ticket (or on every ticket).

    Deliveries are queued per subscription and handed to the callback one at a
    time, in publish order, by a dedicated task. The publisher never waits for
    a callback to finish.
    """

    def __init__(
        self,
        channel: "RealtimeChannel",
        ticket_id: int | None,
        callback: MessageCallback,
        *,
        timeout: float | None,
    ) -> None:
        self._channel = channel
        self._ticket_id = ticket_id
        self._callback = callback
        self._timeout = timeout
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._active = True

    @property
    def ticket_id(self) -> int | None:
        return self._ticket_id

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        """Stop deliveries. Safe to call any number of times.

        A callback that is already running is allowed to finish; queued
        messages that have not started are discarded.
        """

        if not self._active:
            return
        self._active = False
        self._channel._discard(self)
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            self._queue.task_done()
        if self._worker is not None and not self._worker.done():
            self._queue.put_nowait(_STOP)

    async def drain(self) -> None:
        """Wait until every queued delivery has been handled."""

        await self._queue.join()

    async def wait_closed(self) -> None:
        if self._worker is not None:
            await asyncio.gather(self._worker, return_exceptions=True)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unsubscribe()

    def _enqueue(self, message: TicketMessage) -> None:
        if not self._active:
            return
        self._queue.put_nowait(message)
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name=f"realtime-subscription-{self._ticket_id}"
            )

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                if self._active:
                    await self._deliver(item)  # type: ignore[arg-type]
            finally:
                self._queue.task_done()

    async def _deliver(self, message: TicketMessage) -> None:
        try:
            result = self._callback(message)
            if inspect.isawaitable(result):
                if self._timeout is None:
                    await result
                else:
                    await asyncio.wait_for(result, timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Subscriber on ticket %s timed out after %.1fs handling message %s",
                self._ticket_id,
                self._timeout,
                message.id,
            )
        except Exception:
            logger.exception("Subscriber on ticket %s failed handling message %s", self._ticket_id, message.id)


class RealtimeChannel:
    """Fan out newly stored ticket messages to live subscribers.

    Holds no authoritative state: registrations live only as long as the
    process, and nothing published is ever replayed.
    """

    def __init__(self, *, callback_timeout: float | None = 5.0) -> None:
        self._callback_timeout = callback_timeout
        self._subscriptions: dict[int, list[Subscription]] = {}
        self._observers: list[Subscription] = []

    def subscribe(self, ticket_id: int, on_message: MessageCallback) -> Subscription:
        subscription = Subscription(self, ticket_id, on_message, timeout=self._callback_timeout)
        self._subscriptions.setdefault(ticket_id, []).append(subscription)
        logger.debug("Subscribed to ticket %s (%d active)", ticket_id, self.subscriber_count(ticket_id))
        return subscription

    def subscribe_all(self, on_message: MessageCallback) -> Subscription:
        """Observe every message published on any ticket."""

        subscription = Subscription(self, None, on_message, timeout=self._callback_timeout)
        self._observers.append(subscription)
        return subscription

    def publish(self, ticket_id: int, message: TicketMessage) -> int:
        """Queue ``message`` for everyone currently subscribed; returns the recipient count."""

        if message.ticket_id != ticket_id:
            raise ValueError(f"Message {message.id} belongs to ticket {message.ticket_id}, not {ticket_id}")
        recipients = [*self._subscriptions.get(ticket_id, ()), *self._observers]
        for subscription in recipients:
            subscription._enqueue(message)
        logger.debug("Published message %s on ticket %s to %d subscribers", message.id, ticket_id, len(recipients))
        return len(recipients)

    def subscriber_count(self, ticket_id: int) -> int:
        return len(self._subscriptions.get(ticket_id, ()))

    def close_ticket(self, ticket_id: int) -> None:
        """Drop every subscription registered on ``ticket_id``."""

        for subscription in list(self._subscriptions.get(ticket_id, ())):
            subscription.unsubscribe()

    async def close(self) -> None:
        subscriptions = [*self._observers]
        for registered in self._subscriptions.values():
            subscriptions.extend(registered)
        for subscription in subscriptions:
            subscription.unsubscribe()
        await asyncio.gather(*(item.wait_closed() for item in subscriptions))

    def _discard(self, subscription: Subscription) -> None:
        if subscription.ticket_id is None:
            registered = self._observers
        else:
            registered = self._subscriptions.get(subscription.ticket_id, [])
        if subscription in registered:
            registered.remove(subscription)
        if subscription.ticket_id is not None and not registered:
            self._subscriptions.pop(subscription.ticket_id, None)
