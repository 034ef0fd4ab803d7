"""Route modules exposed by the API package."""

from . import notifications, ping, tickets

__all__ = ["notifications", "ping", "tickets"]
