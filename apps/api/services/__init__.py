"""Service layer exports."""

from .presence import NotificationFeed, PresenceSweeper, TypingTracker
from .sheets import NullSink, SheetsSink, TicketSummary
from .tickets import TicketRepository, TicketService

__all__ = [
    "NotificationFeed",
    "NullSink",
    "PresenceSweeper",
    "SheetsSink",
    "TicketRepository",
    "TicketService",
    "TicketSummary",
    "TypingTracker",
]
