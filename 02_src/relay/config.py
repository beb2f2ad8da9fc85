"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "relay.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def parse_clock(value: str) -> time:
    """Parse an ``HH:MM`` string into a ``time``."""
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


def parse_owner_groups(value: str | None) -> dict[str, str]:
    """Parse ``tag=chat_id,tag2=chat_id2`` into a mapping."""
    groups: dict[str, str] = {}
    if not value:
        return groups

    for pair in value.split(","):
        tag, sep, chat_id = pair.partition("=")
        if not sep or not tag.strip() or not chat_id.strip():
            continue
        groups[tag.strip()] = chat_id.strip()
    return groups


@dataclass
class RelaySettings:
    """Runtime settings of the relay core."""

    db_path: PathLike | None = None
    business_hours_start: time = time(9, 0)
    business_hours_end: time = time(21, 0)
    timezone: str = "UTC"
    auto_reply_delay: float = 1.5
    welcome_text: str = "Welcome! An operator will be with you shortly."
    off_hours_text: str = (
        "Our operators are offline right now. "
        "Leave a message and we will reply during business hours."
    )
    telegram_bot_token: str | None = None
    telegram_api_base: str = "https://api.telegram.org"
    owner_groups: dict[str, str] = field(default_factory=dict)
    vapid_private_key: str | None = None
    vapid_subject: str = "mailto:support@localhost"
    push_timeout: float = 10.0
    broadcast_timeout: float = 5.0
    operator_reply_status: str = "sent"
    console_password: str | None = None

    @classmethod
    def from_env(cls) -> "RelaySettings":
        """Build settings from environment variables."""
        reply_status = os.getenv("OPERATOR_REPLY_STATUS", "sent").lower()
        if reply_status not in ("sent", "read"):
            raise ValueError(
                f"OPERATOR_REPLY_STATUS must be 'sent' or 'read', got {reply_status!r}"
            )

        defaults = cls()
        return cls(
            db_path=os.getenv("DATABASE_URL") or None,
            business_hours_start=parse_clock(os.getenv("BUSINESS_HOURS_START", "09:00")),
            business_hours_end=parse_clock(os.getenv("BUSINESS_HOURS_END", "21:00")),
            timezone=os.getenv("RELAY_TIMEZONE", "UTC"),
            auto_reply_delay=float(os.getenv("AUTO_REPLY_DELAY", "1.5")),
            welcome_text=os.getenv("WELCOME_TEXT", defaults.welcome_text),
            off_hours_text=os.getenv("OFF_HOURS_TEXT", defaults.off_hours_text),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_api_base=os.getenv("TELEGRAM_API_BASE", defaults.telegram_api_base),
            owner_groups=parse_owner_groups(os.getenv("OWNER_GROUPS")),
            vapid_private_key=os.getenv("VAPID_PRIVATE_KEY") or None,
            vapid_subject=os.getenv("VAPID_SUBJECT", defaults.vapid_subject),
            push_timeout=float(os.getenv("PUSH_TIMEOUT", "10")),
            broadcast_timeout=float(os.getenv("BROADCAST_TIMEOUT", "5")),
            operator_reply_status=reply_status,
            console_password=os.getenv("CONSOLE_PASSWORD") or None,
        )
