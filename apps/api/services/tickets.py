from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Mapping, Sequence
from zoneinfo import ZoneInfo

from sqlalchemy import delete, func, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from apps.api.core.logging import get_tracer
from apps.api.metrics import metrics_registry
from packages.db.models import TicketMessageTable, TicketTable

from .export import render_ticket_csv
from .presence import NotificationFeed, NotificationKind, Notification, TypingEntry, TypingTracker
from .sheets import NullSink, TicketSink, TicketSummary

logger = logging.getLogger(__name__)
_tracer = get_tracer()

ANONYMOUS_SENDER = "Anonymous"
TICKET_NUMBER_ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZ"


class TicketServiceError(RuntimeError):
    """Base error for ticket service issues."""


class TicketValidationError(TicketServiceError):
    """Raised when a request is missing a required field or carries an unknown value."""


class TicketNotFoundError(TicketServiceError):
    """Raised when an operation targets a non-existent ticket."""


class TicketMessageNotFoundError(TicketNotFoundError):
    """Raised when a message id does not resolve within its ticket."""


class DuplicateTicketNumberError(TicketServiceError):
    """Raised by the repository when a generated ticket number is already taken."""

    def __init__(self, ticket_number: str) -> None:
        super().__init__(f"Ticket number {ticket_number} already exists")
        self.ticket_number = ticket_number


class TicketStoreError(TicketServiceError):
    """Raised when the persistence layer fails unexpectedly."""


class TicketNumberExhaustedError(TicketStoreError):
    """Raised when every generated ticket number collided with an existing one."""


def _lookup_key(value: str) -> str:
    return " ".join(value.replace("-", " ").replace("_", " ").lower().split())


class _ParsableEnum(str, Enum):
    """String enum that resolves loose spellings to the canonical value."""

    @classmethod
    def parse(cls, value: object) -> "_ParsableEnum":
        if isinstance(value, cls):
            return value
        key = _lookup_key(str(value or ""))
        for member in cls:
            if _lookup_key(member.value) == key:
                return member
        allowed = ", ".join(member.value for member in cls)
        raise TicketValidationError(f"Unknown {cls._label()} '{value}'. Expected one of: {allowed}")

    @classmethod
    def _label(cls) -> str:
        return cls.__name__.lower()


class TicketStatus(_ParsableEnum):
    """Canonical states of the ticket lifecycle."""

    NEW = "New"
    OPEN = "Open"
    ON_HOLD = "On Hold"
    ONGOING = "Ongoing"
    IN_PROGRESS = "In Progress"
    RESOLVED = "Resolved"
    CLOSED_TODAY = "Closed Today"

    @property
    def stats_key(self) -> str:
        head, *rest = self.value.split()
        return head.lower() + "".join(word.capitalize() for word in rest)

    @classmethod
    def _label(cls) -> str:
        return "status"


class TicketCategory(_ParsableEnum):
    """Closed set of categories offered by the submission form."""

    QUESTION = "Question"
    TECHNICAL_ISSUE = "Technical Issue"
    BILLING = "Billing"
    ACCOUNT = "Account"
    FEEDBACK = "Feedback"
    OTHER = "Other"

    @classmethod
    def _label(cls) -> str:
        return "category"


class Audience(str, Enum):
    """Who a ticket is being rendered for."""

    ADMIN = "admin"
    CUSTOMER = "customer"


@dataclass(slots=True)
class TicketMessage:
    """Individual entry of a ticket conversation."""

    id: str
    sender: str
    message: str
    is_internal: bool
    created_at: datetime


@dataclass(slots=True)
class Ticket:
    """Ticket aggregate with its ordered conversation."""

    id: str
    ticket_number: str
    username: str
    email: str | None
    subject: str
    category: TicketCategory
    subject_category: str | None
    status: TicketStatus
    assigned_agent: str | None
    is_archived: bool
    archived_at: datetime | None
    created_at: datetime
    updated_at: datetime
    messages: Sequence[TicketMessage] = field(default_factory=list)

    def is_owner(self, sender: str) -> bool:
        return sender == self.username

    def public_view(self) -> "Ticket":
        """Copy of the ticket without internal notes, safe to show the customer."""

        return replace(self, messages=[message for message in self.messages if not message.is_internal])

    def matches(self, query: str) -> bool:
        needle = query.lower()
        return any(
            needle in value.lower()
            for value in (self.ticket_number, self.subject or "", self.username or "")
        )


@dataclass(slots=True)
class TicketListing:
    """Admin dashboard payload: one archive partition plus its counters."""

    tickets: Sequence[Ticket]
    stats: Mapping[str, int]


@dataclass(slots=True)
class NotificationSummary:
    notifications: Sequence[Notification]
    count: int
    new_tickets_count: int


class TicketNumberGenerator:
    """Random, display friendly ticket numbers.

    Uniqueness is not guaranteed here; the unique index on ``tickets`` decides
    and the service retries with a fresh number on collision.
    """

    def __init__(self, length: int = 6, *, alphabet: str = TICKET_NUMBER_ALPHABET) -> None:
        if length < 1:
            raise ValueError("length must be positive")
        if len(set(alphabet)) < 2:
            raise ValueError("alphabet needs at least two distinct characters")
        self._length = length
        self._alphabet = alphabet

    def __call__(self) -> str:
        return "".join(secrets.choice(self._alphabet) for _ in range(self._length))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TicketRepository:
    """Persistence helper wrapping the `tickets` and `ticket_messages` tables."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        engine: AsyncEngine | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._engine: AsyncEngine | None = engine
        self._clock = clock

    async def ensure_schema(self) -> None:
        if self._engine is None:
            raise RuntimeError("Session factory is not bound to an async engine")
        async with self._engine.begin() as connection:
            await connection.run_sync(SQLModel.metadata.create_all)

    async def ping(self) -> None:
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as exc:
            raise TicketStoreError(str(exc)) from exc

    async def create_ticket(self, ticket: Ticket) -> None:
        """Insert the ticket and its messages in one transaction.

        Only a unique violation on ``ticket_number`` surfaces as
        ``DuplicateTicketNumberError``; every other failure is a store error.
        """

        async with self._transaction() as session:
            session.add(
                TicketTable(
                    id=ticket.id,
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
                )
            )
            try:
                await session.flush()
            except IntegrityError as exc:
                if _is_ticket_number_conflict(exc):
                    raise DuplicateTicketNumberError(ticket.ticket_number) from exc
                raise
            for sequence, message in enumerate(ticket.messages):
                session.add(self._message_to_table(ticket.id, sequence, message))
            await session.flush()

    async def get_ticket(self, ticket_number: str) -> Ticket | None:
        async with self._transaction() as session:
            row = await self._ticket_row(session, ticket_number)
            if row is None:
                return None
            return await self._load(session, row)

    async def list_tickets(self, *, archived: bool = False) -> list[Ticket]:
        async with self._transaction() as session:
            result = await session.execute(
                select(TicketTable)
                .where(TicketTable.is_archived == archived)
                .order_by(TicketTable.updated_at.desc(), TicketTable.ticket_number.asc())
            )
            rows = list(result.scalars().all())
            messages = await self._message_rows(session, [row.id for row in rows])
        return [self._table_to_ticket(row, messages.get(row.id, [])) for row in rows]

    async def count_by_status(self, status: TicketStatus, *, archived: bool = False) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                select(func.count())
                .select_from(TicketTable)
                .where(TicketTable.status == status.value, TicketTable.is_archived == archived)
            )
            return int(result.scalar_one())

    async def append_message(self, ticket_number: str, message: TicketMessage) -> Ticket | None:
        async with self._transaction() as session:
            row = await self._ticket_row(session, ticket_number, for_update=True)
            if row is None:
                return None
            result = await session.execute(
                select(func.max(TicketMessageTable.sequence)).where(TicketMessageTable.ticket_id == row.id)
            )
            last = result.scalar_one_or_none()
            sequence = 0 if last is None else last + 1
            session.add(self._message_to_table(row.id, sequence, message))
            row.updated_at = self._clock()
            await session.flush()
            return await self._load(session, row)

    async def delete_message(
        self, ticket_number: str, message_id: str, *, internal_only: bool = False
    ) -> Ticket | None:
        """Remove one message; ``None`` when the ticket does not exist.

        The internal-note check runs under the same row lock as the delete.
        """

        async with self._transaction() as session:
            row = await self._ticket_row(session, ticket_number, for_update=True)
            if row is None:
                return None
            result = await session.execute(
                select(TicketMessageTable).where(
                    TicketMessageTable.id == message_id,
                    TicketMessageTable.ticket_id == row.id,
                )
            )
            message_row = result.scalars().first()
            if message_row is None:
                raise TicketMessageNotFoundError(f"Message {message_id} not found on ticket {ticket_number}")
            if internal_only and not message_row.is_internal:
                raise TicketValidationError("Only internal notes can be deleted")
            await session.delete(message_row)
            row.updated_at = self._clock()
            await session.flush()
            return await self._load(session, row)

    async def update_status(self, ticket_number: str, status: TicketStatus) -> Ticket | None:
        def apply(row: TicketTable, now: datetime) -> None:
            row.status = status.value

        return await self._update(ticket_number, apply)

    async def assign_agent(self, ticket_number: str, agent: str | None) -> Ticket | None:
        def apply(row: TicketTable, now: datetime) -> None:
            row.assigned_agent = agent

        return await self._update(ticket_number, apply)

    async def archive(self, ticket_number: str) -> Ticket | None:
        def apply(row: TicketTable, now: datetime) -> None:
            row.is_archived = True
            row.archived_at = now

        return await self._update(ticket_number, apply, skip=lambda row: row.is_archived)

    async def delete_ticket(self, ticket_number: str) -> bool:
        async with self._transaction() as session:
            row = await self._ticket_row(session, ticket_number, for_update=True)
            if row is None:
                return False
            await session.execute(delete(TicketMessageTable).where(TicketMessageTable.ticket_id == row.id))
            await session.delete(row)
            return True

    async def _update(
        self,
        ticket_number: str,
        apply: Callable[[TicketTable, datetime], None],
        *,
        skip: Callable[[TicketTable], bool] | None = None,
    ) -> Ticket | None:
        async with self._transaction() as session:
            row = await self._ticket_row(session, ticket_number, for_update=True)
            if row is None:
                return None
            if skip is None or not skip(row):
                now = self._clock()
                apply(row, now)
                row.updated_at = now
                await session.flush()
            return await self._load(session, row)

    @staticmethod
    async def _ticket_row(
        session: AsyncSession, ticket_number: str, *, for_update: bool = False
    ) -> TicketTable | None:
        statement = select(TicketTable).where(TicketTable.ticket_number == ticket_number)
        if for_update:
            statement = statement.with_for_update()
        result = await session.execute(statement)
        return result.scalars().first()

    @staticmethod
    async def _message_rows(
        session: AsyncSession, ticket_ids: Sequence[str]
    ) -> dict[str, list[TicketMessageTable]]:
        grouped: dict[str, list[TicketMessageTable]] = {}
        if not ticket_ids:
            return grouped
        result = await session.execute(
            select(TicketMessageTable)
            .where(TicketMessageTable.ticket_id.in_(list(ticket_ids)))
            .order_by(TicketMessageTable.ticket_id, TicketMessageTable.sequence.asc())
        )
        for message in result.scalars().all():
            grouped.setdefault(message.ticket_id, []).append(message)
        return grouped

    async def _load(self, session: AsyncSession, row: TicketTable) -> Ticket:
        messages = await self._message_rows(session, [row.id])
        return self._table_to_ticket(row, messages.get(row.id, []))

    @staticmethod
    def _message_to_table(ticket_id: str, sequence: int, message: TicketMessage) -> TicketMessageTable:
        return TicketMessageTable(
            id=message.id,
            ticket_id=ticket_id,
            sequence=sequence,
            sender=message.sender,
            message=message.message,
            is_internal=message.is_internal,
            created_at=message.created_at,
        )

    @staticmethod
    def _table_to_ticket(row: TicketTable, messages: Sequence[TicketMessageTable]) -> Ticket:
        return Ticket(
            id=row.id,
            ticket_number=row.ticket_number,
            username=row.username,
            email=row.email,
            subject=row.subject,
            category=TicketCategory(row.category),
            subject_category=row.subject_category,
            status=TicketStatus(row.status),
            assigned_agent=row.assigned_agent,
            is_archived=bool(row.is_archived),
            archived_at=_ensure_datetime(row.archived_at) if row.archived_at is not None else None,
            created_at=_ensure_datetime(row.created_at),
            updated_at=_ensure_datetime(row.updated_at),
            messages=[
                TicketMessage(
                    id=message.id,
                    sender=message.sender,
                    message=message.message,
                    is_internal=bool(message.is_internal),
                    created_at=_ensure_datetime(message.created_at),
                )
                for message in messages
            ],
        )


def _ensure_datetime(value: datetime | None) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    raise TypeError("Expected datetime value from database")


def _is_ticket_number_conflict(exc: IntegrityError) -> bool:
    # sqlite names the column, PostgreSQL names the index ix_tickets_ticket_number
    return "ticket_number" in str(exc.orig)


def _require(**fields: str | None) -> None:
    missing = [name for name, value in fields.items() if not (value or "").strip()]
    if missing:
        raise TicketValidationError(f"Missing required fields: {', '.join(missing)}")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class TicketService:
    """Ticket lifecycle operations composed from the store and ephemeral state."""

    def __init__(
        self,
        repository: TicketRepository,
        *,
        typing: TypingTracker | None = None,
        notifications: NotificationFeed | None = None,
        sink: TicketSink | None = None,
        number_factory: Callable[[], str] | None = None,
        max_number_attempts: int = 5,
        timezone_name: str = "UTC",
        allow_public_message_delete: bool = False,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if max_number_attempts < 1:
            raise ValueError("max_number_attempts must be at least 1")
        self._repository = repository
        self._typing = typing if typing is not None else TypingTracker()
        self._notifications = notifications if notifications is not None else NotificationFeed()
        self._sink = sink if sink is not None else NullSink()
        self._number_factory = number_factory if number_factory is not None else TicketNumberGenerator()
        self._max_number_attempts = max_number_attempts
        self._zone = ZoneInfo(timezone_name)
        self._allow_public_message_delete = allow_public_message_delete
        self._clock = clock

    @property
    def typing(self) -> TypingTracker:
        return self._typing

    @property
    def notifications(self) -> NotificationFeed:
        return self._notifications

    async def ping(self) -> None:
        await self._repository.ping()

    async def aclose(self) -> None:
        await self._sink.aclose()

    async def submit_ticket(
        self,
        *,
        category: str | TicketCategory | None,
        username: str | None,
        email: str | None,
        subject: str | None,
        subject_category: str | None,
        message: str | None,
    ) -> Ticket:
        _require(
            category=category.value if isinstance(category, TicketCategory) else category,
            subject=subject,
            message=message,
        )
        parsed_category = TicketCategory.parse(category)
        sender = _clean(username) or ANONYMOUS_SENDER
        now = self._clock()
        first_message = TicketMessage(
            id=str(uuid.uuid4()),
            sender=sender,
            message=message,
            is_internal=False,
            created_at=now,
        )

        def build(ticket_number: str) -> Ticket:
            return Ticket(
                id=str(uuid.uuid4()),
                ticket_number=ticket_number,
                username=sender,
                email=_clean(email),
                subject=subject.strip(),
                category=parsed_category,
                subject_category=_clean(subject_category),
                status=TicketStatus.NEW,
                assigned_agent=None,
                is_archived=False,
                archived_at=None,
                created_at=now,
                updated_at=now,
                messages=[first_message],
            )

        with _tracer.start_as_current_span("tickets.submit") as span:
            ticket = await self._insert_with_fresh_number(build)
            span.set_attribute("helpdesk.ticket_number", ticket.ticket_number)

        metrics_registry.counter("helpdesk_tickets_created_total").inc()
        logger.info("Created ticket %s in category %s", ticket.ticket_number, ticket.category.value)
        self._notifications.record(
            NotificationKind.NEW_TICKET,
            ticket_number=ticket.ticket_number,
            actor=sender,
            message=message,
        )
        self._forward_to_sink(ticket)
        return ticket

    async def _insert_with_fresh_number(self, build: Callable[[str], Ticket]) -> Ticket:
        for attempt in range(1, self._max_number_attempts + 1):
            ticket = build(self._number_factory())
            try:
                await self._repository.create_ticket(ticket)
            except DuplicateTicketNumberError as exc:
                metrics_registry.counter("helpdesk_ticket_number_collisions_total").inc()
                logger.warning(
                    "Ticket number %s already taken (attempt %d/%d)",
                    exc.ticket_number,
                    attempt,
                    self._max_number_attempts,
                )
                continue
            return ticket
        raise TicketNumberExhaustedError(
            f"Could not allocate a unique ticket number after {self._max_number_attempts} attempts"
        )

    def _forward_to_sink(self, ticket: Ticket) -> None:
        summary = TicketSummary(
            ticket_number=ticket.ticket_number,
            subject=ticket.subject,
            category=ticket.category.value,
            created_at=ticket.created_at,
            status=ticket.status.value,
        )
        try:
            self._sink.submit(summary)
        except Exception:  # noqa: BLE001
            logger.exception("Ticket sink rejected summary for %s", ticket.ticket_number)

    async def get_ticket(self, ticket_number: str, *, audience: Audience = Audience.ADMIN) -> Ticket:
        ticket = await self._repository.get_ticket(ticket_number)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        if audience is Audience.CUSTOMER:
            return ticket.public_view()
        return ticket

    async def post_message(
        self,
        ticket_number: str,
        *,
        sender: str | None,
        message: str | None,
        is_internal: bool = False,
    ) -> Ticket:
        _require(sender=sender, message=message)
        entry = TicketMessage(
            id=str(uuid.uuid4()),
            sender=sender.strip(),
            message=message,
            is_internal=bool(is_internal),
            created_at=self._clock(),
        )
        ticket = await self._repository.append_message(ticket_number, entry)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")

        metrics_registry.counter("helpdesk_messages_total").inc(
            labels={"kind": "internal" if entry.is_internal else "public"}
        )
        self._typing.clear_typing(ticket_number)
        if ticket.is_owner(entry.sender) and not entry.is_internal:
            self._notifications.record(
                NotificationKind.NEW_MESSAGE,
                ticket_number=ticket_number,
                actor=entry.sender,
                message=entry.message,
            )
        return ticket

    async def delete_internal_note(self, ticket_number: str, message_id: str) -> Ticket:
        updated = await self._repository.delete_message(
            ticket_number,
            message_id,
            internal_only=not self._allow_public_message_delete,
        )
        if updated is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        logger.info("Deleted message %s from ticket %s", message_id, ticket_number)
        return updated

    async def set_status(self, ticket_number: str, status: str | TicketStatus | None) -> Ticket:
        _require(status=status.value if isinstance(status, TicketStatus) else status)
        parsed = TicketStatus.parse(status)
        ticket = await self._repository.update_status(ticket_number, parsed)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        logger.info("Ticket %s moved to %s", ticket_number, parsed.value)
        return ticket

    async def close_ticket(self, ticket_number: str) -> Ticket:
        return await self.set_status(ticket_number, TicketStatus.CLOSED_TODAY)

    async def assign_agent(self, ticket_number: str, agent: str | None) -> Ticket:
        ticket = await self._repository.assign_agent(ticket_number, _clean(agent))
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        return ticket

    async def archive_ticket(self, ticket_number: str) -> Ticket:
        ticket = await self._repository.archive(ticket_number)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        self._typing.clear_typing(ticket_number)
        logger.info("Archived ticket %s", ticket_number)
        return ticket

    async def delete_ticket(self, ticket_number: str) -> None:
        deleted = await self._repository.delete_ticket(ticket_number)
        if not deleted:
            raise TicketNotFoundError(f"Ticket {ticket_number} not found")
        self._typing.clear_typing(ticket_number)
        self._notifications.acknowledge(ticket_number)
        logger.info("Deleted ticket %s", ticket_number)

    async def export_ticket_csv(self, ticket_number: str) -> str:
        ticket = await self.get_ticket(ticket_number, audience=Audience.ADMIN)
        with _tracer.start_as_current_span("tickets.export_csv") as span:
            span.set_attribute("helpdesk.message_count", len(ticket.messages))
            with metrics_registry.time_distribution("helpdesk_export_duration_seconds"):
                return render_ticket_csv(ticket)

    async def list_for_admin(
        self,
        *,
        include_archived: bool = False,
        status: str | TicketStatus | None = None,
        query: str | None = None,
    ) -> TicketListing:
        status_filter = TicketStatus.parse(status) if status else None
        tickets = await self._repository.list_tickets(archived=include_archived)
        stats = self.compute_stats(tickets)

        if status_filter is not None:
            tickets = [ticket for ticket in tickets if ticket.status is status_filter]
        needle = _clean(query)
        if needle:
            tickets = [ticket for ticket in tickets if ticket.matches(needle)]
        return TicketListing(tickets=tickets, stats=stats)

    def compute_stats(self, tickets: Sequence[Ticket]) -> dict[str, int]:
        stats = {status.stats_key: 0 for status in TicketStatus}
        day_start = self._start_of_day()
        for ticket in tickets:
            if ticket.status is TicketStatus.CLOSED_TODAY and ticket.updated_at < day_start:
                continue
            stats[ticket.status.stats_key] += 1
        stats["total"] = len(tickets)
        return stats

    def _start_of_day(self) -> datetime:
        local_now = self._clock().astimezone(self._zone)
        return local_now.replace(hour=0, minute=0, second=0, microsecond=0)

    def set_typing(self, ticket_number: str, *, user: str | None, is_typing: bool) -> None:
        if not is_typing:
            self._typing.clear_typing(ticket_number)
            return
        _require(user=user)
        self._typing.set_typing(ticket_number, user.strip())

    def typing_state(self, ticket_number: str) -> TypingEntry | None:
        return self._typing.current(ticket_number)

    async def notification_summary(self) -> NotificationSummary:
        entries = self._notifications.entries()
        new_tickets = await self._repository.count_by_status(TicketStatus.NEW, archived=False)
        return NotificationSummary(notifications=entries, count=len(entries), new_tickets_count=new_tickets)

    def acknowledge_notifications(self, ticket_number: str) -> int:
        return self._notifications.acknowledge(ticket_number)

    def clear_notifications(self) -> None:
        self._notifications.clear()
