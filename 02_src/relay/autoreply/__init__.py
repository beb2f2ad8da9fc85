"""Auto-reply module."""

from .scheduler import AutoReplyScheduler, BusinessHours

__all__ = ["AutoReplyScheduler", "BusinessHours"]
