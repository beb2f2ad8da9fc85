"""Off-hours automatic replies."""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, time, timezone
from typing import Callable
from zoneinfo import ZoneInfo

from ..errors import StoreUnavailable
from ..logging_config import get_logger
from ..models import (
    DeliveryStatus,
    Direction,
    EventType,
    Message,
    MessageKind,
    OutboundEvent,
)
from ..presence import PresenceRegistry
from ..storage import IStorage

logger = get_logger(__name__)


@dataclass
class BusinessHours:
    """Staffed local-time window. ``start > end`` spans midnight."""

    start: time
    end: time
    tz: ZoneInfo

    def is_open(self, now: datetime) -> bool:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        local = now.astimezone(self.tz).time().replace(tzinfo=None)

        if self.start == self.end:
            return True
        if self.start < self.end:
            return self.start <= local < self.end
        return local >= self.start or local < self.end


class AutoReplyScheduler:
    """Sends one off-hours reply per connection lifetime."""

    def __init__(
        self,
        storage: IStorage,
        registry: PresenceRegistry,
        hours: BusinessHours,
        text: str,
        delay: float = 1.5,
        clock: Callable[[], datetime] | None = None,
    ):
        self._storage = storage
        self._registry = registry
        self._hours = hours
        self._text = text
        self._delay = delay
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def is_off_hours(self) -> bool:
        return not self._hours.is_open(self._clock())

    async def maybe_schedule(self, connection_id: str, identity_id: str) -> Message | None:
        """Queue the off-hours reply if this connection has not had one yet.

        The reply is persisted right away and delivered after ``delay`` by a
        task that disconnect cancels.
        """
        if not self.is_off_hours():
            return None
        if not await self._registry.claim_auto_reply(connection_id):
            return None

        message = Message(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            content=self._text,
            kind=MessageKind.TEXT,
            direction=Direction.FROM_OPERATOR,
            status=DeliveryStatus.SENT,
            created_at=datetime.now(timezone.utc),
        )
        try:
            saved = await self._storage.save_message(message)
        except StoreUnavailable:
            await self._registry.release_auto_reply(connection_id)
            raise
        if not saved:
            logger.info("Auto-reply skipped, identity %s gone or blocked", identity_id)
            return None

        task = asyncio.create_task(self._deliver_later(message))
        self._registry.attach_task(connection_id, task)
        return message

    async def _deliver_later(self, message: Message) -> None:
        await asyncio.sleep(self._delay)
        payload = {"message": message.to_dict(), "auto_reply": True}
        try:
            await self._registry.emit_to_identity(
                message.identity_id, OutboundEvent(EventType.MESSAGE, payload)
            )
            await self._registry.emit_to_operators(
                OutboundEvent(EventType.OPERATOR_MESSAGE, payload)
            )
        except Exception as e:
            logger.warning("Auto-reply delivery to %s failed: %s", message.identity_id, e)
