"""Route modules exposed by the API package."""

from . import notifications, ping, recurrences, work_items

__all__ = ["notifications", "ping", "recurrences", "work_items"]
