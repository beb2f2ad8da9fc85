"""Support relay core."""

from .app import Application, IApplication
from .autoreply import AutoReplyScheduler, BusinessHours
from .config import RelaySettings
from .engine import JoinOutcome, RelayEngine
from .identity import IdentityIssuer
from .moderation import IModerationService, ModerationService
from .notifications import (
    IBotChannel,
    IPushSender,
    NotificationDispatcher,
    TelegramBotChannel,
    WebPushSender,
)
from .presence import IConnection, PresenceRegistry
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

__all__ = [
    # Application
    "Application",
    "IApplication",
    "RelaySettings",
    # Components
    "IStorage",
    "Storage",
    "IConnection",
    "PresenceRegistry",
    "IdentityIssuer",
    "IModerationService",
    "ModerationService",
    "AutoReplyScheduler",
    "BusinessHours",
    "IBotChannel",
    "IPushSender",
    "WebPushSender",
    "TelegramBotChannel",
    "NotificationDispatcher",
    "ITracker",
    "Tracker",
    "JoinOutcome",
    "RelayEngine",
]
