"""SQLModel table definitions for the helpdesk data layer."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    """Return a timezone aware UTC timestamp."""

    return datetime.now(timezone.utc)


class TicketTable(SQLModel, table=True):
    """Support tickets submitted through the customer portal."""

    __tablename__ = "tickets"

    id: str = Field(primary_key=True, index=True)
    ticket_number: str = Field(sa_column=Column(String(16), nullable=False, unique=True, index=True))
    username: str = Field(sa_column=Column(Text, nullable=False))
    email: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    subject: str = Field(sa_column=Column(Text, nullable=False))
    category: str = Field(sa_column=Column(String(50), nullable=False))
    subject_category: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    status: str = Field(sa_column=Column(String(50), nullable=False, index=True))
    assigned_agent: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    is_archived: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    archived_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))


class TicketMessageTable(SQLModel, table=True):
    """Conversation entries, public replies and internal notes alike."""

    __tablename__ = "ticket_messages"
    __table_args__ = (UniqueConstraint("ticket_id", "sequence", name="uq_ticket_messages_sequence"),)

    id: str = Field(primary_key=True, index=True)
    ticket_id: str = Field(
        sa_column=Column(String(36), ForeignKey("tickets.id", ondelete="CASCADE"), nullable=False, index=True)
    )
    sequence: int = Field(sa_column=Column(Integer, nullable=False))
    sender: str = Field(sa_column=Column(Text, nullable=False))
    message: str = Field(sa_column=Column(Text, nullable=False))
    is_internal: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    created_at: datetime = Field(default_factory=_utcnow, sa_column=Column(DateTime(timezone=True), nullable=False))
