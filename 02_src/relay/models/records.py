"""Persisted record models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp")
PLACEHOLDER_OWNER_TAGS = {"", "undefined", "null", "none"}


class MessageKind(str, Enum):
    """Shape of a message payload."""

    TEXT = "text"
    IMAGE = "image"


class Direction(str, Enum):
    """Which side of the conversation wrote a message."""

    FROM_USER = "from_user"
    FROM_OPERATOR = "from_operator"

    @property
    def opposite(self) -> "Direction":
        if self is Direction.FROM_USER:
            return Direction.FROM_OPERATOR
        return Direction.FROM_USER


class DeliveryStatus(str, Enum):
    SENT = "sent"
    READ = "read"


class ConfigKey:
    """Keys of the runtime configuration table."""

    CONSOLE_PASSWORD = "console_password"
    NOTIFICATIONS_ENABLED = "notifications_enabled"
    BOT_CHAT_ID = "bot_chat_id"


@dataclass
class Identity:
    """A chat participant's account."""

    id: str
    owner_tag: str | None
    created_at: datetime
    updated_at: datetime
    muted: bool = False
    blocked: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_tag": self.owner_tag,
            "muted": self.muted,
            "blocked": self.blocked,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Message:
    """A single chat message owned by an identity."""

    id: str
    identity_id: str
    content: str
    kind: MessageKind
    direction: Direction
    status: DeliveryStatus
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "identity_id": self.identity_id,
            "content": self.content,
            "kind": self.kind.value,
            "direction": self.direction.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Subscription:
    """A push-notification registration."""

    id: str
    identity_id: str
    endpoint: str
    created_at: datetime
    keys: dict = field(default_factory=dict)  # opaque credential blob


@dataclass
class IdentityOverview:
    """Row of the operator console's identity list."""

    identity: Identity
    message_count: int
    online: bool = False

    def to_dict(self) -> dict:
        data = self.identity.to_dict()
        data["message_count"] = self.message_count
        data["online"] = self.online
        return data


@dataclass
class MergeResult:
    """Outcome of reassigning one identity's history to another."""

    source_id: str
    target_id: str
    moved_messages: int
    moved_subscriptions: int
    target_created: bool = False
    target_unblocked: bool = False


def infer_kind(content: str) -> MessageKind:
    """Guess the message kind from its content."""
    stripped = content.strip()
    if stripped.startswith("data:image/"):
        return MessageKind.IMAGE

    lowered = stripped.lower()
    if lowered.startswith(("http://", "https://")) and " " not in stripped:
        path = lowered.split("?", 1)[0]
        if path.endswith(IMAGE_EXTENSIONS):
            return MessageKind.IMAGE

    return MessageKind.TEXT


def is_placeholder_owner_tag(owner_tag: str | None) -> bool:
    """Return True when the owner tag carries no routing information."""
    if owner_tag is None:
        return True
    return owner_tag.strip().lower() in PLACEHOLDER_OWNER_TAGS
