"""Notifications module."""

from .bot import BotAction, IBotChannel, NullBotChannel, TelegramBotChannel, delete_action
from .dispatcher import NotificationDispatcher, format_summary
from .push import IPushSender, NullPushSender, WebPushSender

__all__ = [
    "BotAction",
    "IBotChannel",
    "NullBotChannel",
    "TelegramBotChannel",
    "delete_action",
    "NotificationDispatcher",
    "format_summary",
    "IPushSender",
    "NullPushSender",
    "WebPushSender",
]
