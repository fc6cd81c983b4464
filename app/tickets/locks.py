from __future__ import annotations

import asyncio
import weakref


class TicketLocks:
    """Per-ticket ``asyncio.Lock`` registry shared by the ticket and message services.

    Mutations of one ticket (status change, delete, message append + publish)
    run one at a time, so the projection and the realtime channel see them in
    the order the store applied them. ``registry`` serialises ticket creation
    against a full reset.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()
        self.registry = asyncio.Lock()

    def for_ticket(self, ticket_id: int) -> asyncio.Lock:
        # entries disappear once no coroutine holds or waits on the lock
        lock = self._locks.get(ticket_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[ticket_id] = lock
        return lock
