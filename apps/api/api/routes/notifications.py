from __future__ import annotations

from fastapi import APIRouter

from apps.api.api.schemas import AcknowledgeResponse, NotificationListResponse, NotificationModel, SuccessResponse
from apps.api.dependencies.tickets import TicketServiceDep

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse, summary="Admin notification feed")
async def list_notifications(service: TicketServiceDep) -> NotificationListResponse:
    summary = await service.notification_summary()
    return NotificationListResponse(
        notifications=[NotificationModel.from_entity(entry) for entry in summary.notifications],
        count=summary.count,
        new_tickets_count=summary.new_tickets_count,
    )


@router.delete("/{ticket_number}", response_model=AcknowledgeResponse)
async def acknowledge_notifications(ticket_number: str, service: TicketServiceDep) -> AcknowledgeResponse:
    removed = service.acknowledge_notifications(ticket_number)
    return AcknowledgeResponse(removed=removed)


@router.delete("", response_model=SuccessResponse)
async def clear_notifications(service: TicketServiceDep) -> SuccessResponse:
    service.clear_notifications()
    return SuccessResponse()
