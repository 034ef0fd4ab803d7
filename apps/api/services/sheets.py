"""Best-effort forwarding of new-ticket summaries to a spreadsheet webhook."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx

from apps.api.metrics import metrics_registry

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TicketSummary:
    """Row appended to the external sheet for every new ticket."""

    ticket_number: str
    subject: str
    category: str
    created_at: datetime
    status: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "ticketNumber": self.ticket_number,
            "subject": self.subject,
            "category": self.category,
            "createdAt": self.created_at.isoformat(),
            "status": self.status,
        }


class TicketSink(Protocol):
    def submit(self, summary: TicketSummary) -> None:
        ...

    async def aclose(self) -> None:
        ...


class NullSink:
    """Sink used when no spreadsheet webhook is configured."""

    def submit(self, summary: TicketSummary) -> None:
        logger.debug("No sheet webhook configured; skipping ticket %s", summary.ticket_number)

    async def aclose(self) -> None:
        return None


class SheetsSink:
    """Post summaries to a Google Apps Script style webhook without blocking callers.

    ``submit`` schedules the request on the running loop and returns at once.
    Every failure is logged and counted, never raised.
    """

    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, summary: TicketSummary) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._send(summary))
        except RuntimeError:
            logger.warning("No running event loop; dropping sheet row for ticket %s", summary.ticket_number)
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _send(self, summary: TicketSummary) -> None:
        try:
            response = await self._client.post(self._webhook_url, json=summary.to_payload())
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            metrics_registry.counter("helpdesk_sink_failures_total").inc()
            logger.warning("Failed to log ticket %s to sheet: %s", summary.ticket_number, exc)
            return
        logger.info("Logged ticket %s to sheet", summary.ticket_number)

    async def drain(self, timeout: float = 5.0) -> None:
        """Wait (bounded) for in-flight submissions."""

        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)

    async def aclose(self, timeout: float = 5.0) -> None:
        """Drain, cancel whatever outlived the wait, then close the client."""

        await self.drain(timeout)
        leftover = set(self._pending)
        for task in leftover:
            task.cancel()
        if leftover:
            await asyncio.gather(*leftover, return_exceptions=True)
            logger.warning("Cancelled %d sheet submissions still in flight at shutdown", len(leftover))
        await self._client.aclose()


def build_sink(webhook_url: str | None, *, timeout: float = 5.0) -> TicketSink:
    if not webhook_url:
        return NullSink()
    return SheetsSink(webhook_url, timeout=timeout)
