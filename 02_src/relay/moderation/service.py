"""Moderation state machine: mute, block, delete, merge and full reset."""

from typing import Protocol

from ..errors import IdentityNotFound, InvalidMerge
from ..logging_config import get_logger
from ..models import (
    EventType,
    Identity,
    LogoutReason,
    MergeResult,
    OutboundEvent,
    logout_event,
)
from ..presence import PresenceRegistry
from ..storage import IStorage
from ..tracker import ITracker

logger = get_logger(__name__)


class IModerationService(Protocol):
    """Operator-initiated transitions of an identity's moderation state."""

    async def mute(self, identity_id: str, muted: bool = True) -> Identity:
        ...

    async def block(self, identity_id: str) -> int:
        ...

    async def unblock(self, identity_id: str) -> Identity:
        ...

    async def delete_all_data(self, identity_id: str) -> int:
        ...

    async def merge(self, source_id: str, target_id: str) -> MergeResult:
        ...

    async def wipe_all(self) -> int:
        ...

    async def stats(self) -> dict:
        ...


class ModerationService:
    """Applies moderation transitions to the store and to live connections."""

    def __init__(
        self,
        storage: IStorage,
        registry: PresenceRegistry,
        tracker: ITracker,
        actor: str = "moderation",
    ):
        self._storage = storage
        self._registry = registry
        self._tracker = tracker
        self._actor = actor

    async def mute(self, identity_id: str, muted: bool = True) -> Identity:
        """Toggle external notifications for an identity. Presence is untouched."""
        identity = await self._storage.set_identity_flags(identity_id, muted=muted)
        if identity is None:
            raise IdentityNotFound(identity_id)

        await self._registry.emit_to_operators(
            OutboundEvent(EventType.IDENTITY_UPDATED, {"identity": identity.to_dict()})
        )
        await self._tracker.track(
            "moderation_mute", self._actor, {"identity_id": identity_id, "muted": muted}
        )
        logger.info("Identity %s muted=%s", identity_id, muted)
        return identity

    async def remove(self, identity_id: str, retain_shell: bool) -> int:
        """
        Destroy an identity's history and cut its live connections.

        With ``retain_shell`` the record stays behind with ``blocked=True`` so
        the id can never join again (block). Without it the record is deleted
        as well (delete). Returns the number of messages removed.
        """
        removed = await self._storage.purge_identity(identity_id, retain_shell)

        reason = LogoutReason.BLOCKED if retain_shell else LogoutReason.DELETED
        closed = await self._registry.evict(identity_id, logout_event(reason))
        await self._registry.emit_to_operators(
            OutboundEvent(
                EventType.IDENTITY_REMOVED,
                {"identity_id": identity_id, "reason": reason.value},
            )
        )

        await self._tracker.track(
            "moderation_block" if retain_shell else "moderation_delete",
            self._actor,
            {
                "identity_id": identity_id,
                "messages_removed": removed,
                "connections_closed": closed,
            },
        )
        logger.info(
            "Identity %s %s: %s messages removed, %s connections closed",
            identity_id,
            reason.value,
            removed,
            closed,
        )
        return removed

    async def block(self, identity_id: str) -> int:
        return await self.remove(identity_id, retain_shell=True)

    async def delete_all_data(self, identity_id: str) -> int:
        if await self._storage.get_identity(identity_id) is None:
            raise IdentityNotFound(identity_id)
        return await self.remove(identity_id, retain_shell=False)

    async def unblock(self, identity_id: str) -> Identity:
        """Admin reversal of a block."""
        identity = await self._storage.set_identity_flags(identity_id, blocked=False)
        if identity is None:
            raise IdentityNotFound(identity_id)

        await self._registry.emit_to_operators(
            OutboundEvent(EventType.IDENTITY_UPDATED, {"identity": identity.to_dict()})
        )
        await self._tracker.track(
            "moderation_unblock", self._actor, {"identity_id": identity_id}
        )
        return identity

    async def merge(self, source_id: str, target_id: str) -> MergeResult:
        """Move every message and subscription of source to target, drop source.

        A missing target is created; a blocked target is unblocked.
        """
        if source_id == target_id:
            raise InvalidMerge(f"Cannot merge {source_id} into itself")

        result = await self._storage.merge_identities(source_id, target_id)

        await self._registry.evict(
            source_id, logout_event(LogoutReason.MERGED, identity_id=target_id)
        )
        await self._registry.emit_to_operators(
            OutboundEvent(
                EventType.IDENTITY_REMOVED,
                {
                    "identity_id": source_id,
                    "reason": LogoutReason.MERGED.value,
                    "merged_into": target_id,
                },
            )
        )
        await self._registry.emit_to_identity(
            target_id,
            OutboundEvent(EventType.READ_STATE, {"identity_id": target_id}),
        )

        await self._tracker.track(
            "moderation_merge",
            self._actor,
            {
                "source_id": source_id,
                "target_id": target_id,
                "moved_messages": result.moved_messages,
                "moved_subscriptions": result.moved_subscriptions,
                "target_created": result.target_created,
            },
        )
        logger.info(
            "Merged %s into %s (%s messages)",
            source_id,
            target_id,
            result.moved_messages,
        )
        return result

    async def wipe_all(self) -> int:
        """Delete every identity, message and subscription and drop everyone.

        Returns the number of connections closed.
        """
        await self._storage.wipe_identities()

        event = OutboundEvent(EventType.RESET, {"reason": LogoutReason.RESET.value})
        closed = await self._registry.evict_all(event)

        await self._tracker.track(
            "moderation_wipe", self._actor, {"connections_closed": closed}
        )
        logger.warning("All relay data wiped, %s connections closed", closed)
        return closed

    async def stats(self) -> dict:
        return {
            "identities": await self._storage.count_identities(),
            "messages": await self._storage.count_messages(),
            "online": len(self._registry.online()),
        }
