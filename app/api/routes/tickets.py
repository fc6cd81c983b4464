from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Literal

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ConfigDict, Field

from app.dependencies.auth import CurrentIdentity, build_identity_context
from app.dependencies.tickets import MessageServiceDep, TicketServiceDep
from app.tickets.errors import (
    AuthorizationError,
    NotFoundError,
    StoreUnavailable,
    TicketDeskError,
    ValidationError,
)
from app.tickets.models import MessageSender, Ticket, TicketDraft, TicketMessage, TicketScope, TicketType
from app.tickets.projection import ConversationView
from app.tickets.service import TicketService
from app.tickets.state import TicketStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickets", tags=["tickets"])

LIVE_FEED_HEARTBEAT_SECONDS = 15.0


class TicketCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    type: TicketType = Field(default=TicketType.SUPPORT)
    message: str = Field(..., min_length=1)
    item_description: str | None = Field(default=None, max_length=500)


class TicketStatusChangeRequest(BaseModel):
    status: TicketStatus


class MessageCreateRequest(BaseModel):
    content: str = Field(..., min_length=1)
    sender: MessageSender | None = Field(default=None)


class TicketResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    type: TicketType
    status: TicketStatus
    message: str
    item_description: str | None
    owner_id: str | None
    owner_display_name: str | None
    created_at: datetime
    message_count: int = 0
    last_message_at: datetime | None = None


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    ticket_id: int
    sender: MessageSender
    content: str
    created_at: datetime


class DashboardResponse(BaseModel):
    total: int
    counts: dict[TicketStatus, int]
    groups: dict[TicketStatus, list[TicketResponse]]


class ClearTicketsResponse(BaseModel):
    deleted: int


def _to_response(ticket: Ticket, service: TicketService) -> TicketResponse:
    activity = service.activity(ticket.id)
    return TicketResponse.model_validate(ticket).model_copy(
        update={"message_count": activity.message_count, "last_message_at": activity.last_message_at}
    )


def _to_message_response(message: TicketMessage) -> MessageResponse:
    return MessageResponse.model_validate(message)


def _message_payload(message: TicketMessage) -> dict[str, Any]:
    return _to_message_response(message).model_dump(mode="json")


@contextmanager
def service_errors() -> Iterator[None]:
    """Translate ticket service failures into HTTP errors."""

    try:
        yield
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc
    except AuthorizationError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail=str(exc), headers={"Retry-After": "5"}) from exc


@router.post("", response_model=TicketResponse, status_code=status.HTTP_201_CREATED, summary="Open a ticket")
async def create_ticket(
    payload: TicketCreateRequest,
    service: TicketServiceDep,
    identity: CurrentIdentity,
) -> TicketResponse:
    draft = TicketDraft(
        title=payload.title,
        message=payload.message,
        type=payload.type,
        item_description=payload.item_description,
    )
    with service_errors():
        ticket = await service.create_ticket(draft, identity)
    return _to_response(ticket, service)


@router.get("", response_model=list[TicketResponse], summary="List own tickets, or every ticket for traders")
async def list_tickets(
    service: TicketServiceDep,
    identity: CurrentIdentity,
    scope: Literal["mine", "all"] = Query(default="mine"),
) -> list[TicketResponse]:
    selected = TicketScope.all() if scope == "all" else TicketScope.owner(identity.id)
    with service_errors():
        tickets = await service.list_tickets(selected, identity)
    return [_to_response(ticket, service) for ticket in tickets]


@router.get("/search", response_model=list[TicketResponse], summary="Search tickets (traders)")
async def search_tickets(
    service: TicketServiceDep,
    identity: CurrentIdentity,
    q: str = Query(default="", max_length=255),
) -> list[TicketResponse]:
    with service_errors():
        tickets = service.search_tickets(q, identity)
    return [_to_response(ticket, service) for ticket in tickets]


@router.get("/dashboard", response_model=DashboardResponse, summary="Tickets grouped by status (traders)")
async def ticket_dashboard(service: TicketServiceDep, identity: CurrentIdentity) -> DashboardResponse:
    with service_errors():
        view = service.dashboard(identity)
    return DashboardResponse(
        total=view.total,
        counts=view.counts,
        groups={key: [_to_response(ticket, service) for ticket in tickets] for key, tickets in view.groups.items()},
    )


@router.delete("", response_model=ClearTicketsResponse, summary="Delete every ticket and message (traders)")
async def delete_all_tickets(service: TicketServiceDep, identity: CurrentIdentity) -> ClearTicketsResponse:
    with service_errors():
        deleted = await service.delete_all_tickets(identity)
    return ClearTicketsResponse(deleted=deleted)


@router.get("/{ticket_id}", response_model=TicketResponse)
async def get_ticket(ticket_id: int, service: TicketServiceDep, identity: CurrentIdentity) -> TicketResponse:
    with service_errors():
        ticket = await service.get_ticket(ticket_id, identity)
    return _to_response(ticket, service)


@router.post("/{ticket_id}/status", response_model=TicketResponse, summary="Change ticket status (traders)")
async def change_ticket_status(
    ticket_id: int,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
    identity: CurrentIdentity,
) -> TicketResponse:
    with service_errors():
        ticket = await service.update_status(ticket_id, payload.status, identity)
    return _to_response(ticket, service)


@router.delete("/{ticket_id}", status_code=status.HTTP_204_NO_CONTENT, summary="Delete a ticket (traders)")
async def delete_ticket(ticket_id: int, service: TicketServiceDep, identity: CurrentIdentity) -> None:
    with service_errors():
        await service.delete_ticket(ticket_id, identity)


@router.get("/{ticket_id}/messages", response_model=list[MessageResponse])
async def list_ticket_messages(
    ticket_id: int,
    service: MessageServiceDep,
    identity: CurrentIdentity,
) -> list[MessageResponse]:
    with service_errors():
        messages = await service.list_messages(ticket_id, identity)
    return [_to_message_response(message) for message in messages]


@router.post(
    "/{ticket_id}/messages",
    response_model=MessageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Send a message; live viewers receive it through the live feed",
)
async def add_ticket_message(
    ticket_id: int,
    payload: MessageCreateRequest,
    service: MessageServiceDep,
    identity: CurrentIdentity,
) -> MessageResponse:
    with service_errors():
        message = await service.append_message(
            ticket_id,
            content=payload.content,
            requester=identity,
            sender=payload.sender,
        )
    return _to_message_response(message)


@router.websocket("/{ticket_id}/live")
async def live_ticket_feed(websocket: WebSocket, ticket_id: int, token: str | None = Query(default=None)) -> None:
    """Send the ticket history, then every new message as it is stored."""

    state = websocket.app.state
    message_service = getattr(state, "message_service", None)
    channel = getattr(state, "channel", None)
    identity = None
    if message_service is not None and channel is not None:
        try:
            identity = build_identity_context(websocket, token).current_identity()
        except HTTPException:
            identity = None

    await websocket.accept()
    if message_service is None or channel is None:
        await websocket.send_json({"event": "error", "detail": "Message service is not configured"})
        await websocket.close(code=1013)
        return
    if identity is None:
        await websocket.send_json({"event": "error", "detail": "Invalid or missing session token"})
        await websocket.close(code=4401)
        return

    view = ConversationView(ticket_id)
    outbox: asyncio.Queue[TicketMessage] = asyncio.Queue()
    # subscribe before reading history so nothing committed in between is lost
    subscription = channel.subscribe(ticket_id, outbox.put_nowait)
    receiver: asyncio.Task[None] | None = None
    try:
        try:
            history = await message_service.list_messages(ticket_id, identity)
        except TicketDeskError as exc:
            code = 4404 if isinstance(exc, NotFoundError) else 1011
            await websocket.send_json({"event": "error", "detail": str(exc)})
            await websocket.close(code=code)
            return

        view.load(history)
        await websocket.send_json(
            {"event": "history", "ticket_id": ticket_id, "messages": [_message_payload(item) for item in view.messages]}
        )

        receiver = asyncio.create_task(_wait_for_disconnect(websocket))
        while True:
            getter = asyncio.ensure_future(outbox.get())
            done, _ = await asyncio.wait(
                {getter, receiver},
                timeout=LIVE_FEED_HEARTBEAT_SECONDS,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if getter not in done:
                getter.cancel()
                if receiver in done:
                    logger.debug("Live feed for ticket %s closed by client", ticket_id)
                    return
                if not subscription.active:
                    await websocket.send_json({"event": "closed", "ticket_id": ticket_id})
                    await websocket.close()
                    return
                await websocket.send_json({"event": "heartbeat"})
                continue
            message = getter.result()
            if view.receive(message):
                await websocket.send_json({"event": "message", "message": _message_payload(message)})
    except WebSocketDisconnect:
        logger.debug("Live feed for ticket %s disconnected", ticket_id)
    finally:
        subscription.unsubscribe()
        if receiver is not None and not receiver.done():
            receiver.cancel()


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    # inbound frames are ignored; this only notices the client going away
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
