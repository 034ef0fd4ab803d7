"""Request and response models shared by the helpdesk routes."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from apps.api.services.presence import Notification
from apps.api.services.tickets import Ticket, TicketMessage


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuccessResponse(ApiModel):
    success: bool = True


class ErrorResponse(ApiModel):
    success: bool = False
    error: str


class TicketMessageModel(ApiModel):
    id: str
    sender: str
    message: str
    is_internal: bool
    created_at: datetime

    @classmethod
    def from_entity(cls, entity: TicketMessage) -> "TicketMessageModel":
        return cls(
            id=entity.id,
            sender=entity.sender,
            message=entity.message,
            is_internal=entity.is_internal,
            created_at=entity.created_at,
        )


class TicketModel(ApiModel):
    ticket_number: str
    username: str
    email: str | None = None
    subject: str
    category: str
    subject_category: str | None = None
    status: str
    assigned_agent: str | None = None
    is_archived: bool
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    messages: list[TicketMessageModel] = Field(default_factory=list)

    @classmethod
    def from_entity(cls, ticket: Ticket) -> "TicketModel":
        return cls(
            ticket_number=ticket.ticket_number,
            username=ticket.username,
            email=ticket.email,
            subject=ticket.subject,
            category=ticket.category.value,
            subject_category=ticket.subject_category,
            status=ticket.status.value,
            assigned_agent=ticket.assigned_agent,
            is_archived=ticket.is_archived,
            archived_at=ticket.archived_at,
            created_at=ticket.created_at,
            updated_at=ticket.updated_at,
            messages=[TicketMessageModel.from_entity(message) for message in ticket.messages],
        )


class TicketResponse(SuccessResponse):
    ticket: TicketModel


class TicketListResponse(SuccessResponse):
    tickets: list[TicketModel]
    stats: dict[str, int]


class CreatedTicketModel(ApiModel):
    ticket_number: str
    status: str


class CreatedTicketResponse(SuccessResponse):
    ticket: CreatedTicketModel


class TicketCreateRequest(ApiModel):
    # required fields are checked by TicketService.submit_ticket
    category: str | None = None
    username: str | None = None
    email: str | None = None
    subject: str | None = None
    subject_category: str | None = None
    message: str | None = None


class TicketMessageCreateRequest(ApiModel):
    sender: str | None = None
    message: str | None = None
    is_internal: bool = False


class TicketStatusChangeRequest(ApiModel):
    status: str | None = None


class TicketAssignRequest(ApiModel):
    agent: str | None = None


class TypingRequest(ApiModel):
    user: str | None = None
    is_typing: bool = True


class TypingStateResponse(SuccessResponse):
    is_typing: bool
    user: str | None = None


class NotificationModel(ApiModel):
    kind: str
    ticket_number: str
    actor: str
    message: str
    timestamp: datetime

    @classmethod
    def from_entity(cls, entity: Notification) -> "NotificationModel":
        return cls(
            kind=entity.kind.value,
            ticket_number=entity.ticket_number,
            actor=entity.actor,
            message=entity.preview,
            timestamp=entity.created_at,
        )


class NotificationListResponse(SuccessResponse):
    notifications: list[NotificationModel]
    count: int
    new_tickets_count: int


class AcknowledgeResponse(SuccessResponse):
    removed: int
