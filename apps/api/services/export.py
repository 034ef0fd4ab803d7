"""CSV rendering of a single ticket conversation."""

from __future__ import annotations

import csv
import io
from datetime import datetime
from typing import TYPE_CHECKING, Iterable, Sequence

if TYPE_CHECKING:
    from .tickets import Ticket, TicketMessage

TICKET_HEADER: tuple[str, ...] = (
    "Ticket Number",
    "Category",
    "Subject",
    "Username",
    "Email",
    "Status",
    "Assigned Agent",
    "Created At",
    "Updated At",
)
MESSAGE_HEADER: tuple[str, ...] = ("Timestamp", "Sender", "Message", "Type")
MESSAGES_MARKER = "Messages:"

INTERNAL_NOTE_LABEL = "Internal Note"
PUBLIC_LABEL = "Public"


def _timestamp(value: datetime | None) -> str:
    return value.isoformat() if value is not None else ""


def message_type_label(message: TicketMessage) -> str:
    return INTERNAL_NOTE_LABEL if message.is_internal else PUBLIC_LABEL


def ticket_row(ticket: Ticket) -> list[str]:
    return [
        ticket.ticket_number,
        ticket.category.value,
        ticket.subject,
        ticket.username,
        ticket.email or "",
        ticket.status.value,
        ticket.assigned_agent or "",
        _timestamp(ticket.created_at),
        _timestamp(ticket.updated_at),
    ]


def message_rows(messages: Iterable[TicketMessage]) -> list[list[str]]:
    return [
        [_timestamp(message.created_at), message.sender, message.message, message_type_label(message)]
        for message in messages
    ]


def _plain_line(values: Sequence[str]) -> str:
    return ",".join(values) + "\n"


def render_ticket_csv(ticket: Ticket) -> str:
    """Render the admin export: ticket summary, then every message in order.

    Internal notes are included and labelled, never filtered.
    """

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")

    buffer.write(_plain_line(TICKET_HEADER))
    writer.writerow(ticket_row(ticket))
    buffer.write("\n")
    buffer.write(MESSAGES_MARKER + "\n")
    buffer.write(_plain_line(MESSAGE_HEADER))
    writer.writerows(message_rows(ticket.messages))
    return buffer.getvalue()


def export_filename(ticket_number: str) -> str:
    return f"ticket-{ticket_number}.csv"
