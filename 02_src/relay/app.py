"""Application bootstrap and lifecycle management."""

from typing import Protocol
from zoneinfo import ZoneInfo

from .autoreply import AutoReplyScheduler, BusinessHours
from .config import RelaySettings
from .engine import RelayEngine
from .identity import IdentityIssuer
from .logging_config import get_logger
from .models import DeliveryStatus
from .moderation import ModerationService
from .notifications import (
    IBotChannel,
    IPushSender,
    NotificationDispatcher,
    NullBotChannel,
    NullPushSender,
    TelegramBotChannel,
    WebPushSender,
)
from .presence import PresenceRegistry
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        settings: RelaySettings | None = None,
        db_path: str | None = None,
        bot: IBotChannel | None = None,
        push: IPushSender | None = None,
    ):
        self._settings = settings or RelaySettings.from_env()
        self._db_path = db_path if db_path is not None else self._settings.db_path
        self._bot_override = bot
        self._push_override = push

        # Components (will be initialized in start())
        self._storage: IStorage | None = None
        self._registry: PresenceRegistry | None = None
        self._tracker: ITracker | None = None
        self._moderation: ModerationService | None = None
        self._dispatcher: NotificationDispatcher | None = None
        self._engine: RelayEngine | None = None

    def _build_bot(self) -> IBotChannel:
        if self._bot_override is not None:
            return self._bot_override
        if self._settings.telegram_bot_token:
            return TelegramBotChannel(
                self._settings.telegram_bot_token,
                api_base=self._settings.telegram_api_base,
            )
        logger.info("TELEGRAM_BOT_TOKEN not set, bot notifications disabled")
        return NullBotChannel()

    def _build_push(self) -> IPushSender:
        if self._push_override is not None:
            return self._push_override
        if self._settings.vapid_private_key:
            return WebPushSender(
                self._settings.vapid_private_key,
                self._settings.vapid_subject,
                timeout=self._settings.push_timeout,
            )
        logger.info("VAPID_PRIVATE_KEY not set, push notifications disabled")
        return NullPushSender()

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting relay")
        settings = self._settings

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. PresenceRegistry (in-memory, owned by this application)
        self._registry = PresenceRegistry(broadcast_timeout=settings.broadcast_timeout)

        # 3. Tracker (depends on Storage)
        self._tracker = Tracker(self._storage)

        # 4. Moderation (depends on Storage, PresenceRegistry, Tracker)
        self._moderation = ModerationService(self._storage, self._registry, self._tracker)

        # 5. Notifications (depends on Storage, Tracker)
        self._dispatcher = NotificationDispatcher(
            storage=self._storage,
            bot=self._build_bot(),
            push=self._build_push(),
            tracker=self._tracker,
            owner_groups=settings.owner_groups,
        )

        # 6. Auto-reply (depends on Storage, PresenceRegistry)
        auto_reply = AutoReplyScheduler(
            storage=self._storage,
            registry=self._registry,
            hours=BusinessHours(
                start=settings.business_hours_start,
                end=settings.business_hours_end,
                tz=ZoneInfo(settings.timezone),
            ),
            text=settings.off_hours_text,
            delay=settings.auto_reply_delay,
        )

        # 7. RelayEngine (depends on everything above)
        self._engine = RelayEngine(
            storage=self._storage,
            registry=self._registry,
            issuer=IdentityIssuer(),
            moderation=self._moderation,
            dispatcher=self._dispatcher,
            auto_reply=auto_reply,
            tracker=self._tracker,
            welcome_text=settings.welcome_text,
            operator_reply_status=DeliveryStatus(settings.operator_reply_status),
            console_password=settings.console_password,
        )
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._engine:
            await self._engine.drain()
        if self._registry:
            await self._registry.evict_all()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        if self._engine:
            await self._engine.drain()
        if self._registry:
            await self._registry.evict_all()
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def registry(self) -> PresenceRegistry:
        if not self._registry:
            raise RuntimeError("Application not started")
        return self._registry

    @property
    def moderation(self) -> ModerationService:
        if not self._moderation:
            raise RuntimeError("Application not started")
        return self._moderation

    @property
    def engine(self) -> RelayEngine:
        """Get relay engine instance."""
        if not self._engine:
            raise RuntimeError("Application not started")
        return self._engine
