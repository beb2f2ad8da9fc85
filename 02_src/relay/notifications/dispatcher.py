"""Notification dispatcher: bot channel and push side effects of the relay."""

import asyncio

from ..errors import PushDeliveryError, RelayError
from ..logging_config import get_logger
from ..models import ConfigKey, Identity, Message, MessageKind, Subscription
from ..storage import IStorage
from ..tracker import ITracker
from .bot import IBotChannel, delete_action
from .push import IPushSender

logger = get_logger(__name__)

SWITCH_OFF_VALUES = {"off", "false", "0", "no"}
SUMMARY_MAX_CHARS = 200


def format_summary(identity: Identity, message: Message) -> str:
    """Short operator-facing text for an inbound message."""
    if message.kind is MessageKind.IMAGE:
        body = "[image]"
    else:
        body = message.content.strip()
        if len(body) > SUMMARY_MAX_CHARS:
            body = body[: SUMMARY_MAX_CHARS - 1].rstrip() + "…"

    owner = identity.owner_tag or "-"
    return f"🔔 *New message* ({owner})\nUser: `#{identity.id}`\nContent: {body}"


class NotificationDispatcher:
    """
    Best-effort outbound notifications.

    Nothing here may fail the chat path: every downstream error is logged and
    swallowed, except that push endpoints reporting permanent failure are
    deleted from the store.
    """

    def __init__(
        self,
        storage: IStorage,
        bot: IBotChannel,
        push: IPushSender,
        tracker: ITracker,
        owner_groups: dict[str, str] | None = None,
    ):
        self._storage = storage
        self._bot = bot
        self._push = push
        self._tracker = tracker
        self._owner_groups = owner_groups or {}

    async def notifications_enabled(self) -> bool:
        value = await self._storage.get_config(ConfigKey.NOTIFICATIONS_ENABLED)
        return value is None or value.strip().lower() not in SWITCH_OFF_VALUES

    async def resolve_chat_id(self, identity: Identity) -> str | None:
        """Owner-tag group first, then the globally bound chat."""
        if identity.owner_tag and identity.owner_tag in self._owner_groups:
            return self._owner_groups[identity.owner_tag]
        return await self._storage.get_config(ConfigKey.BOT_CHAT_ID)

    async def notify_operators(self, identity: Identity, message: Message) -> bool:
        """Send a summary of a user message to the bot channel.

        Returns True if a notification went out.
        """
        try:
            if identity.muted:
                return False
            if not await self.notifications_enabled():
                return False
            chat_id = await self.resolve_chat_id(identity)
            if not chat_id:
                return False

            await self._bot.send_notification(
                chat_id,
                format_summary(identity, message),
                [delete_action(identity.id)],
            )
        except RelayError as e:
            logger.warning("Bot notification for %s failed: %s", identity.id, e)
            return False
        except Exception as e:
            logger.error(
                "Unexpected bot notification error for %s: %s",
                identity.id,
                e,
                exc_info=True,
            )
            return False

        await self._tracker.track(
            "notification_sent",
            "notifications",
            {"identity_id": identity.id, "message_id": message.id},
        )
        return True

    async def push_to_identity(self, identity_id: str, message: Message) -> int:
        """Push a summary to every subscription of an identity.

        Returns the number of endpoints that accepted the payload.
        """
        try:
            subscriptions = await self._storage.get_subscriptions(identity_id)
        except RelayError as e:
            logger.warning("Cannot load subscriptions of %s: %s", identity_id, e)
            return 0
        if not subscriptions:
            return 0

        if message.kind is MessageKind.IMAGE:
            body = "[image]"
        else:
            body = message.content[:SUMMARY_MAX_CHARS]
        payload = {
            "title": "New message",
            "body": body,
            "identity_id": identity_id,
            "message_id": message.id,
        }
        results = await asyncio.gather(
            *[self._push.send(sub, payload) for sub in subscriptions],
            return_exceptions=True,
        )

        delivered = 0
        for subscription, result in zip(subscriptions, results):
            if result is None:
                delivered += 1
            elif isinstance(result, PushDeliveryError) and result.permanent:
                await self._drop_subscription(subscription, result)
            elif isinstance(result, Exception):
                logger.warning(
                    "Push to %s failed: %s", subscription.endpoint, result
                )
        return delivered

    async def _drop_subscription(
        self, subscription: Subscription, error: PushDeliveryError
    ) -> None:
        logger.info(
            "Removing dead subscription %s (%s)", subscription.endpoint, error.detail
        )
        try:
            await self._storage.delete_subscription(subscription.id)
        except RelayError as e:
            logger.warning("Cannot remove subscription %s: %s", subscription.id, e)
            return
        await self._tracker.track(
            "subscription_removed",
            "notifications",
            {"identity_id": subscription.identity_id, "endpoint": subscription.endpoint},
        )
