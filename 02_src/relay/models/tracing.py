"""Tracing and audit data models."""

from dataclasses import dataclass
from datetime import datetime


@dataclass
class TraceEvent:
    """A single audit event (joins, moderation actions, notifications)."""

    id: str
    event_type: str  # e.g. "identity_created", "moderation_block"
    actor: str  # who created this event
    data: dict  # full self-contained data for display
    timestamp: datetime
