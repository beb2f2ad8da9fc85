"""Audit trail routes for the operator console."""

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel

from ...app import Application
from ...errors import RelayError
from ...models import TraceEvent
from .admin import raise_http


class TraceEventResponse(BaseModel):
    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime

    @classmethod
    def from_event(cls, event: TraceEvent) -> "TraceEventResponse":
        return cls(
            id=event.id,
            event_type=event.event_type,
            actor=event.actor,
            data=event.data,
            timestamp=event.timestamp,
        )


def _parse_after(after: str | None) -> datetime | None:
    """ISO timestamp; naive values are taken as UTC."""
    if not after:
        return None
    try:
        parsed = datetime.fromisoformat(after)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid after timestamp: {after}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="Only events newer than this"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: list[str] | None = Query(
            None, description="Repeat to match several types, e.g. moderation_block"
        ),
        actor: str | None = Query(None, description="relay, moderation, notifications"),
    ) -> list[TraceEventResponse]:
        """Newest-first audit records of moderation and delivery actions."""
        after_dt = _parse_after(after)
        try:
            events = await app.storage.get_trace_events(
                after=after_dt,
                event_types=event_type or None,
                actor=actor,
                limit=limit,
            )
        except RelayError as e:
            raise_http(e)
        return [TraceEventResponse.from_event(event) for event in events]

    return router
