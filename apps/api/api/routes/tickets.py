from __future__ import annotations

from fastapi import APIRouter, Query, Response

from apps.api.api.schemas import (
    CreatedTicketModel,
    CreatedTicketResponse,
    SuccessResponse,
    TicketAssignRequest,
    TicketCreateRequest,
    TicketListResponse,
    TicketMessageCreateRequest,
    TicketModel,
    TicketResponse,
    TicketStatusChangeRequest,
    TypingRequest,
    TypingStateResponse,
)
from apps.api.dependencies.tickets import TicketServiceDep
from apps.api.services.export import export_filename
from apps.api.services.tickets import Audience, Ticket

router = APIRouter(prefix="/api/tickets", tags=["tickets"])
portal_router = APIRouter(prefix="/api/portal/tickets", tags=["portal"])


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(ticket=TicketModel.from_entity(ticket))


@router.get("", response_model=TicketListResponse, summary="List active or archived tickets")
async def list_tickets(
    service: TicketServiceDep,
    archived: bool = Query(default=False),
    status_filter: str | None = Query(default=None, alias="status"),
    query: str | None = Query(default=None, alias="q"),
) -> TicketListResponse:
    listing = await service.list_for_admin(include_archived=archived, status=status_filter, query=query)
    return TicketListResponse(
        tickets=[TicketModel.from_entity(ticket) for ticket in listing.tickets],
        stats=dict(listing.stats),
    )


@router.post("", response_model=CreatedTicketResponse)
async def create_ticket(payload: TicketCreateRequest, service: TicketServiceDep) -> CreatedTicketResponse:
    ticket = await service.submit_ticket(
        category=payload.category,
        username=payload.username,
        email=payload.email,
        subject=payload.subject,
        subject_category=payload.subject_category,
        message=payload.message,
    )
    return CreatedTicketResponse(
        ticket=CreatedTicketModel(ticket_number=ticket.ticket_number, status=ticket.status.value)
    )


@router.get("/{ticket_number}", response_model=TicketResponse)
async def get_ticket(ticket_number: str, service: TicketServiceDep) -> TicketResponse:
    ticket = await service.get_ticket(ticket_number, audience=Audience.ADMIN)
    return _ticket_response(ticket)


@router.post("/{ticket_number}/messages", response_model=TicketResponse)
async def add_ticket_message(
    ticket_number: str,
    payload: TicketMessageCreateRequest,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.post_message(
        ticket_number,
        sender=payload.sender,
        message=payload.message,
        is_internal=payload.is_internal,
    )
    if ticket.is_owner((payload.sender or "").strip()):
        ticket = ticket.public_view()
    return _ticket_response(ticket)


@router.delete("/{ticket_number}/messages/{message_id}", response_model=SuccessResponse)
async def delete_ticket_message(ticket_number: str, message_id: str, service: TicketServiceDep) -> SuccessResponse:
    await service.delete_internal_note(ticket_number, message_id)
    return SuccessResponse()


@router.patch("/{ticket_number}/status", response_model=TicketResponse)
async def change_ticket_status(
    ticket_number: str,
    payload: TicketStatusChangeRequest,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.set_status(ticket_number, payload.status)
    return _ticket_response(ticket)


@router.patch("/{ticket_number}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_number: str,
    payload: TicketAssignRequest,
    service: TicketServiceDep,
) -> TicketResponse:
    ticket = await service.assign_agent(ticket_number, payload.agent)
    return _ticket_response(ticket)


@router.patch("/{ticket_number}/close", response_model=TicketResponse)
async def close_ticket(ticket_number: str, service: TicketServiceDep) -> TicketResponse:
    ticket = await service.close_ticket(ticket_number)
    return _ticket_response(ticket)


@router.patch("/{ticket_number}/archive", response_model=TicketResponse)
async def archive_ticket(ticket_number: str, service: TicketServiceDep) -> TicketResponse:
    ticket = await service.archive_ticket(ticket_number)
    return _ticket_response(ticket)


@router.delete("/{ticket_number}", response_model=SuccessResponse)
async def delete_ticket(ticket_number: str, service: TicketServiceDep) -> SuccessResponse:
    await service.delete_ticket(ticket_number)
    return SuccessResponse()


@router.get("/{ticket_number}/download", response_class=Response, summary="Download the ticket as CSV")
async def download_ticket(ticket_number: str, service: TicketServiceDep) -> Response:
    content = await service.export_ticket_csv(ticket_number)
    filename = export_filename(ticket_number)
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/{ticket_number}/typing", response_model=SuccessResponse)
async def update_typing(ticket_number: str, payload: TypingRequest, service: TicketServiceDep) -> SuccessResponse:
    service.set_typing(ticket_number, user=payload.user, is_typing=payload.is_typing)
    return SuccessResponse()


@router.get("/{ticket_number}/typing", response_model=TypingStateResponse)
async def get_typing(ticket_number: str, service: TicketServiceDep) -> TypingStateResponse:
    entry = service.typing_state(ticket_number)
    if entry is None:
        return TypingStateResponse(is_typing=False)
    return TypingStateResponse(is_typing=True, user=entry.actor)


@portal_router.get("/{ticket_number}", response_model=TicketResponse, summary="Customer view without internal notes")
async def get_customer_ticket(ticket_number: str, service: TicketServiceDep) -> TicketResponse:
    ticket = await service.get_ticket(ticket_number, audience=Audience.CUSTOMER)
    return _ticket_response(ticket)
