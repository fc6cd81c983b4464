from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from app.tickets.messages import MessageService
from app.tickets.repository import TicketRepository
from app.tickets.service import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not configured")
    return service


async def get_message_service(request: Request) -> MessageService:
    service = getattr(request.app.state, "message_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Message service is not configured")
    return service


async def get_repository(request: Request) -> TicketRepository:
    repository = getattr(request.app.state, "ticket_repository", None)
    if repository is None:
        raise HTTPException(status_code=503, detail="Ticket store is not configured")
    return repository


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
MessageServiceDep = Annotated[MessageService, Depends(get_message_service)]
RepositoryDep = Annotated[TicketRepository, Depends(get_repository)]
