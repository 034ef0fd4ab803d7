"""In-memory typing presence and admin notification feed.

Both stores are advisory: they are never persisted and are safe to lose on a
restart. Staleness is measured with a monotonic clock so wall-clock jumps do
not resurrect or expire typing entries.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Deque, Dict

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

PREVIEW_ELLIPSIS = "..."


@dataclass(frozen=True, slots=True)
class TypingEntry:
    """Actor currently composing a reply on a ticket."""

    ticket_number: str
    actor: str
    started_at: float


class TypingTracker:
    """Per-ticket "is typing" flags that expire after a staleness window."""

    def __init__(self, *, stale_after: float = 10.0, clock: Clock = time.monotonic) -> None:
        if stale_after <= 0:
            raise ValueError("stale_after must be positive")
        self._stale_after = stale_after
        self._clock = clock
        self._entries: Dict[str, TypingEntry] = {}
        self._lock = Lock()

    @property
    def stale_after(self) -> float:
        return self._stale_after

    def set_typing(self, ticket_number: str, actor: str) -> None:
        entry = TypingEntry(ticket_number=ticket_number, actor=actor, started_at=self._clock())
        with self._lock:
            self._entries[ticket_number] = entry

    def clear_typing(self, ticket_number: str) -> None:
        with self._lock:
            self._entries.pop(ticket_number, None)

    def current(self, ticket_number: str) -> TypingEntry | None:
        """Return the live entry for ``ticket_number`` or ``None`` when absent or stale."""

        with self._lock:
            entry = self._entries.get(ticket_number)
        if entry is None or self._is_stale(entry, self._clock()):
            return None
        return entry

    def is_typing(self, ticket_number: str) -> bool:
        return self.current(ticket_number) is not None

    def sweep(self) -> int:
        """Drop stale entries and return how many were removed."""

        now = self._clock()
        with self._lock:
            stale = [key for key, entry in self._entries.items() if self._is_stale(entry, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _is_stale(self, entry: TypingEntry, now: float) -> bool:
        return now - entry.started_at > self._stale_after


class NotificationKind(str, Enum):
    """Admin-facing events surfaced in the notification dropdown."""

    NEW_TICKET = "new_ticket"
    NEW_MESSAGE = "new_message"


@dataclass(frozen=True, slots=True)
class Notification:
    kind: NotificationKind
    ticket_number: str
    actor: str
    preview: str
    created_at: datetime


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate_preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + PREVIEW_ELLIPSIS


class NotificationFeed:
    """Bounded newest-first list of admin notifications."""

    def __init__(
        self,
        *,
        limit: int = 50,
        preview_length: int = 50,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self._preview_length = preview_length
        self._clock = clock
        self._entries: Deque[Notification] = deque(maxlen=limit)
        self._lock = Lock()

    @property
    def limit(self) -> int:
        return self._entries.maxlen or 0

    def record(
        self,
        kind: NotificationKind,
        *,
        ticket_number: str,
        actor: str,
        message: str,
    ) -> Notification:
        notification = Notification(
            kind=kind,
            ticket_number=ticket_number,
            actor=actor,
            preview=truncate_preview(message, self._preview_length),
            created_at=self._clock(),
        )
        # appendleft on a bounded deque evicts from the right in the same step
        with self._lock:
            self._entries.appendleft(notification)
        return notification

    def entries(self) -> list[Notification]:
        with self._lock:
            return list(self._entries)

    def acknowledge(self, ticket_number: str) -> int:
        """Remove every entry for ``ticket_number`` and return how many were dropped."""

        with self._lock:
            kept = [entry for entry in self._entries if entry.ticket_number != ticket_number]
            removed = len(self._entries) - len(kept)
            self._entries.clear()
            self._entries.extend(kept)
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PresenceSweeper:
    """Background task evicting stale typing entries on a fixed interval."""

    def __init__(self, tracker: TypingTracker, *, interval: float = 30.0) -> None:
        self._tracker = tracker
        self._interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="presence-sweeper")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            removed = self._tracker.sweep()
            if removed:
                logger.debug("Evicted %d stale typing entries", removed)
