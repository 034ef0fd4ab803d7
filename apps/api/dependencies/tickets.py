from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from apps.api.services.tickets import TicketService


async def get_ticket_service(request: Request) -> TicketService:
    service = getattr(request.app.state, "ticket_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Ticket service is not available")
    return service


TicketServiceDep = Annotated[TicketService, Depends(get_ticket_service)]
