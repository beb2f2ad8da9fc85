"""External bot channel (Telegram group chat)."""

from dataclasses import dataclass
from typing import Protocol

import httpx

from ..errors import NotificationError
from ..logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class BotAction:
    """An inline button attached to a notification."""

    label: str
    callback_data: str


def delete_action(identity_id: str) -> BotAction:
    """Moderation shortcut that wipes the identity when pressed."""
    return BotAction(label="🗑️ Delete user", callback_data=f"del_{identity_id}")


class IBotChannel(Protocol):
    """Outbound bridge to the external messaging channel."""

    async def send_notification(
        self, chat_id: str, text: str, actions: list[BotAction] | None = None
    ) -> None:
        """Send a formatted notification. Raises NotificationError."""
        ...


class TelegramBotChannel:
    """Posts notifications through the Telegram Bot API."""

    def __init__(
        self,
        token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._url = f"{api_base.rstrip('/')}/bot{token}/sendMessage"
        self._timeout = timeout
        self._client = client

    async def send_notification(
        self, chat_id: str, text: str, actions: list[BotAction] | None = None
    ) -> None:
        payload: dict = {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        if actions:
            payload["reply_markup"] = {
                "inline_keyboard": [
                    [{"text": a.label, "callback_data": a.callback_data} for a in actions]
                ]
            }

        try:
            if self._client is not None:
                response = await self._client.post(self._url, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self._url, json=payload)
        except httpx.HTTPError as e:
            raise NotificationError(f"Telegram request failed: {e}") from e

        if response.status_code >= 400:
            raise NotificationError(
                f"Telegram error {response.status_code}: {response.text[:200]}"
            )


class NullBotChannel:
    """Used when no bot token is configured."""

    async def send_notification(
        self, chat_id: str, text: str, actions: list[BotAction] | None = None
    ) -> None:
        logger.debug("Bot channel disabled, dropping notification for %s", chat_id)
