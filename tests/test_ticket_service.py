from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from apps.api.metrics import metrics_registry
from apps.api.services.presence import NotificationFeed, NotificationKind, TypingTracker
from apps.api.services.tickets import (
    Audience,
    TicketCategory,
    TicketMessageNotFoundError,
    TicketNotFoundError,
    TicketNumberExhaustedError,
    TicketNumberGenerator,
    TicketService,
    TicketStatus,
    TicketValidationError,
)

from .factories import START, SequenceNumbers, TickingClock, make_ticket


async def _submit(service: TicketService, **overrides):
    values = {
        "category": "Account",
        "username": "maria",
        "email": "maria@example.com",
        "subject": "Cannot log in",
        "subject_category": "Login",
        "message": "Hello, my password reset link is broken.",
    }
    values.update(overrides)
    return await service.submit_ticket(**values)


def test_enum_parsing_accepts_loose_spellings():
    assert TicketStatus.parse("on-hold") is TicketStatus.ON_HOLD
    assert TicketStatus.parse("IN_PROGRESS") is TicketStatus.IN_PROGRESS
    assert TicketStatus.parse(" closed  today ") is TicketStatus.CLOSED_TODAY
    assert TicketCategory.parse("technical issue") is TicketCategory.TECHNICAL_ISSUE

    with pytest.raises(TicketValidationError, match="Unknown status"):
        TicketStatus.parse("Escalated")


def test_stats_keys_are_camel_case():
    assert [status.stats_key for status in TicketStatus] == [
        "new",
        "open",
        "onHold",
        "ongoing",
        "inProgress",
        "resolved",
        "closedToday",
    ]


def test_ticket_number_generator_uses_unambiguous_alphabet():
    generator = TicketNumberGenerator(8)
    number = generator()

    assert len(number) == 8
    assert not set(number) & set("01IO")


@pytest.mark.asyncio
async def test_submit_creates_new_ticket_with_first_message(service: TicketService):
    ticket = await _submit(service, category="technical-issue")

    assert ticket.status is TicketStatus.NEW
    assert ticket.category is TicketCategory.TECHNICAL_ISSUE
    assert ticket.is_archived is False
    assert ticket.assigned_agent is None
    assert len(ticket.messages) == 1
    assert ticket.messages[0].sender == "maria"
    assert ticket.messages[0].is_internal is False

    stored = await service.get_ticket(ticket.ticket_number)
    assert stored.messages[0].message == "Hello, my password reset link is broken."


@pytest.mark.asyncio
async def test_submit_defaults_blank_username_to_anonymous(service: TicketService):
    ticket = await _submit(service, username="   ", email="")

    assert ticket.username == "Anonymous"
    assert ticket.email is None
    assert ticket.messages[0].sender == "Anonymous"


@pytest.mark.asyncio
@pytest.mark.parametrize("missing", ["category", "subject", "message"])
async def test_submit_requires_core_fields(service: TicketService, missing: str):
    with pytest.raises(TicketValidationError, match=missing):
        await _submit(service, **{missing: ""})

    assert (await service.list_for_admin()).tickets == []


@pytest.mark.asyncio
async def test_submit_rejects_unknown_category(service: TicketService):
    with pytest.raises(TicketValidationError, match="Unknown category"):
        await _submit(service, category="Sales")


@pytest.mark.asyncio
async def test_submit_retries_on_ticket_number_collision(repository, clock):
    numbers = SequenceNumbers("AAAAAA", "AAAAAA", "BBBBBB")
    service = TicketService(repository, number_factory=numbers, clock=clock)
    collisions = metrics_registry.counter("helpdesk_ticket_number_collisions_total")
    before = collisions.value()

    first = await _submit(service, subject="First")
    second = await _submit(service, subject="Second", username="li")

    assert first.ticket_number == "AAAAAA"
    assert second.ticket_number == "BBBBBB"
    assert numbers.calls == 3
    assert collisions.value() == before + 1

    original = await service.get_ticket("AAAAAA")
    assert original.subject == "First"
    assert original.username == "maria"


@pytest.mark.asyncio
async def test_submit_gives_up_after_max_attempts(repository, clock):
    numbers = SequenceNumbers(*(["ZZZZZZ"] * 4))
    service = TicketService(repository, number_factory=numbers, max_number_attempts=3, clock=clock)
    await _submit(service)

    with pytest.raises(TicketNumberExhaustedError):
        await _submit(service, subject="Another")

    assert numbers.calls == 4
    assert len((await service.list_for_admin()).tickets) == 1


@pytest.mark.asyncio
async def test_submit_records_new_ticket_notification(service: TicketService):
    ticket = await _submit(service, message="x" * 80)

    [notification] = service.notifications.entries()
    assert notification.kind is NotificationKind.NEW_TICKET
    assert notification.ticket_number == ticket.ticket_number
    assert notification.actor == "maria"
    assert notification.preview == "x" * 50 + "..."


@pytest.mark.asyncio
async def test_customer_public_message_notifies_but_agent_reply_does_not(service: TicketService):
    ticket = await _submit(service)
    service.clear_notifications()

    await service.post_message(ticket.ticket_number, sender="Sam", message="Looking into it")
    await service.post_message(ticket.ticket_number, sender="maria", message="note to self", is_internal=True)
    assert service.notifications.entries() == []

    updated = await service.post_message(ticket.ticket_number, sender="maria", message="Any update?")

    [notification] = service.notifications.entries()
    assert notification.kind is NotificationKind.NEW_MESSAGE
    assert notification.actor == "maria"
    assert [message.message for message in updated.messages] == [
        "Hello, my password reset link is broken.",
        "Looking into it",
        "note to self",
        "Any update?",
    ]


@pytest.mark.asyncio
async def test_post_message_validates_and_reports_missing_ticket(service: TicketService):
    with pytest.raises(TicketValidationError):
        await service.post_message("ABC234", sender="", message="hi")
    with pytest.raises(TicketNotFoundError):
        await service.post_message("NOPE99", sender="Sam", message="hi")


@pytest.mark.asyncio
async def test_reply_and_archive_clear_typing(service: TicketService):
    ticket = await _submit(service)

    service.set_typing(ticket.ticket_number, user="Sam", is_typing=True)
    assert service.typing_state(ticket.ticket_number).actor == "Sam"

    await service.post_message(ticket.ticket_number, sender="Sam", message="Done")
    assert service.typing_state(ticket.ticket_number) is None

    service.set_typing(ticket.ticket_number, user="maria", is_typing=True)
    await service.archive_ticket(ticket.ticket_number)
    assert service.typing_state(ticket.ticket_number) is None


@pytest.mark.asyncio
async def test_typing_stop_and_missing_user(service: TicketService):
    service.set_typing("ABC234", user="Sam", is_typing=True)
    service.set_typing("ABC234", user=None, is_typing=False)
    assert service.typing_state("ABC234") is None

    with pytest.raises(TicketValidationError):
        service.set_typing("ABC234", user="  ", is_typing=True)


@pytest.mark.asyncio
async def test_delete_internal_note_only(service: TicketService):
    ticket = await _submit(service)
    with_note = await service.post_message(ticket.ticket_number, sender="Sam", message="VIP", is_internal=True)
    public_id = with_note.messages[0].id
    note_id = with_note.messages[1].id

    with pytest.raises(TicketValidationError):
        await service.delete_internal_note(ticket.ticket_number, public_id)
    with pytest.raises(TicketMessageNotFoundError):
        await service.delete_internal_note(ticket.ticket_number, "missing")

    updated = await service.delete_internal_note(ticket.ticket_number, note_id)
    assert [message.id for message in updated.messages] == [public_id]


@pytest.mark.asyncio
async def test_public_message_delete_can_be_enabled(repository, clock):
    service = TicketService(repository, allow_public_message_delete=True, clock=clock)
    ticket = await _submit(service)

    updated = await service.delete_internal_note(ticket.ticket_number, ticket.messages[0].id)

    assert updated.messages == []


@pytest.mark.asyncio
async def test_status_assignment_and_close(service: TicketService):
    ticket = await _submit(service)

    moved = await service.set_status(ticket.ticket_number, "in_progress")
    assigned = await service.assign_agent(ticket.ticket_number, "  Sam ")
    closed = await service.close_ticket(ticket.ticket_number)
    unassigned = await service.assign_agent(ticket.ticket_number, "")

    assert moved.status is TicketStatus.IN_PROGRESS
    assert assigned.assigned_agent == "Sam"
    assert closed.status is TicketStatus.CLOSED_TODAY
    assert unassigned.assigned_agent is None

    with pytest.raises(TicketValidationError):
        await service.set_status(ticket.ticket_number, "Escalated")
    with pytest.raises(TicketValidationError):
        await service.set_status(ticket.ticket_number, None)
    with pytest.raises(TicketNotFoundError):
        await service.set_status("NOPE99", "Open")
    with pytest.raises(TicketNotFoundError):
        await service.assign_agent("NOPE99", "Sam")


@pytest.mark.asyncio
async def test_archive_moves_ticket_between_partitions(service: TicketService):
    ticket = await _submit(service)

    archived = await service.archive_ticket(ticket.ticket_number)

    assert archived.is_archived is True
    assert archived.archived_at is not None
    assert (await service.list_for_admin()).tickets == []
    assert [t.ticket_number for t in (await service.list_for_admin(include_archived=True)).tickets] == [
        ticket.ticket_number
    ]
    with pytest.raises(TicketNotFoundError):
        await service.archive_ticket("NOPE99")


@pytest.mark.asyncio
async def test_delete_ticket_drops_its_notifications(service: TicketService):
    kept = await _submit(service, subject="Keep")
    doomed = await _submit(service, subject="Drop")

    await service.delete_ticket(doomed.ticket_number)

    assert [entry.ticket_number for entry in service.notifications.entries()] == [kept.ticket_number]
    with pytest.raises(TicketNotFoundError):
        await service.get_ticket(doomed.ticket_number)
    with pytest.raises(TicketNotFoundError):
        await service.delete_ticket(doomed.ticket_number)


@pytest.mark.asyncio
async def test_customer_view_hides_internal_notes(service: TicketService):
    ticket = await _submit(service)
    await service.post_message(ticket.ticket_number, sender="Sam", message="internal", is_internal=True)
    await service.post_message(ticket.ticket_number, sender="Sam", message="public reply")

    admin = await service.get_ticket(ticket.ticket_number, audience=Audience.ADMIN)
    customer = await service.get_ticket(ticket.ticket_number, audience=Audience.CUSTOMER)

    assert len(admin.messages) == 3
    assert [message.message for message in customer.messages] == [
        "Hello, my password reset link is broken.",
        "public reply",
    ]


@pytest.mark.asyncio
async def test_list_for_admin_filters_after_computing_stats(service: TicketService):
    login = await _submit(service, subject="Cannot log in")
    billing = await _submit(service, subject="Invoice is wrong", category="Billing", username="li")
    await service.set_status(billing.ticket_number, "on hold")

    everything = await service.list_for_admin()
    on_hold = await service.list_for_admin(status="on-hold")
    by_query = await service.list_for_admin(query="INVOICE")
    by_number = await service.list_for_admin(query=login.ticket_number.lower())

    assert [t.ticket_number for t in everything.tickets] == [billing.ticket_number, login.ticket_number]
    assert [t.ticket_number for t in on_hold.tickets] == [billing.ticket_number]
    assert [t.ticket_number for t in by_query.tickets] == [billing.ticket_number]
    assert [t.ticket_number for t in by_number.tickets] == [login.ticket_number]
    for listing in (everything, on_hold, by_query, by_number):
        assert listing.stats["new"] == 1
        assert listing.stats["onHold"] == 1
        assert listing.stats["total"] == 2

    with pytest.raises(TicketValidationError):
        await service.list_for_admin(status="Escalated")


@pytest.mark.asyncio
async def test_list_for_admin_is_read_only(service: TicketService):
    await _submit(service)

    first = await service.list_for_admin()
    second = await service.list_for_admin()

    assert first.stats == second.stats
    assert [t.updated_at for t in first.tickets] == [t.updated_at for t in second.tickets]


@pytest.mark.asyncio
async def test_compute_stats_counts_closed_today_only_since_local_midnight(repository):
    service = TicketService(repository, clock=TickingClock(start=START))
    tickets = [
        make_ticket(ticket_number="A", status=TicketStatus.CLOSED_TODAY, updated_at=START),
        make_ticket(ticket_number="B", status=TicketStatus.CLOSED_TODAY, updated_at=START - timedelta(days=1)),
        make_ticket(ticket_number="C", status=TicketStatus.OPEN),
    ]

    stats = service.compute_stats(tickets)

    assert stats["closedToday"] == 1
    assert stats["open"] == 1
    assert stats["total"] == 3
    assert set(stats) == {"new", "open", "onHold", "ongoing", "inProgress", "resolved", "closedToday", "total"}


@pytest.mark.asyncio
async def test_compute_stats_uses_configured_timezone(repository):
    # 09:00 UTC on 2 March is 04:00 in New York, so the local day began at 05:00 UTC
    service = TicketService(repository, timezone_name="America/New_York", clock=TickingClock(start=START))
    late_yesterday = datetime(2026, 3, 2, 4, 30, tzinfo=timezone.utc)
    early_today = datetime(2026, 3, 2, 5, 30, tzinfo=timezone.utc)

    stats = service.compute_stats(
        [
            make_ticket(ticket_number="A", status=TicketStatus.CLOSED_TODAY, updated_at=late_yesterday),
            make_ticket(ticket_number="B", status=TicketStatus.CLOSED_TODAY, updated_at=early_today),
        ]
    )

    assert stats["closedToday"] == 1


@pytest.mark.asyncio
async def test_notification_summary_counts_active_new_tickets(service: TicketService):
    first = await _submit(service)
    second = await _submit(service, username="li")
    await service.set_status(second.ticket_number, "Open")
    await service.post_message(first.ticket_number, sender="maria", message="ping")

    summary = await service.notification_summary()

    assert summary.count == 3
    assert summary.new_tickets_count == 1
    assert summary.notifications[0].kind is NotificationKind.NEW_MESSAGE

    assert service.acknowledge_notifications(first.ticket_number) == 2
    assert service.acknowledge_notifications(first.ticket_number) == 0
    service.clear_notifications()
    assert (await service.notification_summary()).count == 0


@pytest.mark.asyncio
async def test_export_includes_internal_notes(service: TicketService):
    ticket = await _submit(service)
    await service.post_message(ticket.ticket_number, sender="Sam", message="VIP customer", is_internal=True)

    content = await service.export_ticket_csv(ticket.ticket_number)

    assert '"VIP customer","Internal Note"' in content
    with pytest.raises(TicketNotFoundError):
        await service.export_ticket_csv("NOPE99")


@pytest.mark.asyncio
async def test_service_rejects_non_positive_attempts(repository):
    with pytest.raises(ValueError):
        TicketService(
            repository,
            typing=TypingTracker(),
            notifications=NotificationFeed(),
            max_number_attempts=0,
        )


@pytest.mark.asyncio
async def test_service_keeps_injected_trackers_even_when_empty(repository, clock):
    typing = TypingTracker(stale_after=3.0)
    feed = NotificationFeed(limit=5)

    service = TicketService(repository, typing=typing, notifications=feed, clock=clock)

    assert service.typing is typing
    assert service.notifications is feed
    assert service.notifications.limit == 5
    assert service.typing.stale_after == 3.0


@pytest.mark.asyncio
async def test_delete_internal_note_on_missing_ticket(service: TicketService):
    with pytest.raises(TicketNotFoundError) as excinfo:
        await service.delete_internal_note("NOPE99", "anything")

    assert not isinstance(excinfo.value, TicketMessageNotFoundError)


@pytest.mark.asyncio
async def test_feed_timestamps_follow_service_clock(service: TicketService):
    await _submit(service)

    [notification] = service.notifications.entries()

    assert notification.created_at > START
    assert notification.created_at < START + timedelta(hours=1)
