"""Realtime event models.

Inbound events arrive as JSON from a connection and are validated into exactly
one variant of ``InboundEvent``. Outbound events are what the relay pushes to
channels; their kinds form the closed ``EventType`` enum.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .records import MessageKind


class JoinEvent(BaseModel):
    """User joins with a known id, or an empty id to get one issued."""

    type: Literal["join"] = "join"
    identity_id: str | None = None
    owner_tag: str | None = None


class IssueEvent(BaseModel):
    """Identity-issuance handshake: asks for a fresh, unused id."""

    type: Literal["issue"] = "issue"


class OperatorJoinEvent(BaseModel):
    """Console joins the operator channel; checked against the console password."""

    type: Literal["operator_join"] = "operator_join"
    password: str = ""


class SendEvent(BaseModel):
    """User -> operator message."""

    type: Literal["send"] = "send"
    content: str = Field(min_length=1)
    kind: MessageKind | None = None
    client_ref: str | None = None
    identity_id: str | None = None
    owner_tag: str | None = None


class ReplyEvent(BaseModel):
    """Operator -> user message."""

    type: Literal["reply"] = "reply"
    target_id: str = Field(min_length=1)
    content: str = Field(min_length=1)
    kind: MessageKind | None = None
    client_ref: str | None = None


class TypingEvent(BaseModel):
    """Typing indicator. Operators must name the target identity."""

    type: Literal["typing"] = "typing"
    target_id: str | None = None
    is_typing: bool = True


class ReadEvent(BaseModel):
    """Read receipt. Operators must name the identity whose messages they read."""

    type: Literal["read"] = "read"
    identity_id: str | None = None


class DeleteMessageEvent(BaseModel):
    type: Literal["delete_message"] = "delete_message"
    message_id: str = Field(min_length=1)


class MuteEvent(BaseModel):
    type: Literal["mute"] = "mute"
    identity_id: str = Field(min_length=1)
    muted: bool = True


class BlockEvent(BaseModel):
    type: Literal["block"] = "block"
    identity_id: str = Field(min_length=1)


class UnblockEvent(BaseModel):
    type: Literal["unblock"] = "unblock"
    identity_id: str = Field(min_length=1)


class DeleteIdentityEvent(BaseModel):
    type: Literal["delete_identity"] = "delete_identity"
    identity_id: str = Field(min_length=1)


class MergeEvent(BaseModel):
    type: Literal["merge"] = "merge"
    source_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)


class WipeEvent(BaseModel):
    type: Literal["wipe"] = "wipe"


InboundEvent = Annotated[
    Union[
        JoinEvent,
        IssueEvent,
        OperatorJoinEvent,
        SendEvent,
        ReplyEvent,
        TypingEvent,
        ReadEvent,
        DeleteMessageEvent,
        MuteEvent,
        BlockEvent,
        UnblockEvent,
        DeleteIdentityEvent,
        MergeEvent,
        WipeEvent,
    ],
    Field(discriminator="type"),
]

# Events only an operator session may issue
OPERATOR_EVENTS = (
    ReplyEvent,
    DeleteMessageEvent,
    MuteEvent,
    BlockEvent,
    UnblockEvent,
    DeleteIdentityEvent,
    MergeEvent,
    WipeEvent,
)

_inbound_adapter: TypeAdapter = TypeAdapter(InboundEvent)


def parse_event(data: dict) -> BaseModel:
    """Validate raw JSON data into one inbound event variant.

    Raises:
        pydantic.ValidationError: unknown ``type`` or invalid fields.
    """
    return _inbound_adapter.validate_python(data)


class EventType(str, Enum):
    """Kinds of events pushed to connections."""

    PRESENCE_SNAPSHOT = "presence_snapshot"
    PRESENCE_CHANGED = "presence_changed"
    JOIN_ACCEPTED = "join_accepted"
    IDENTITY_ISSUED = "identity_issued"
    MESSAGE = "message"
    OPERATOR_MESSAGE = "operator_message"
    LOGOUT = "logout"
    IDENTITY_REMOVED = "identity_removed"
    IDENTITY_UPDATED = "identity_updated"
    READ_STATE = "read_state"
    MESSAGE_DELETED = "message_deleted"
    TYPING = "typing"
    RESET = "reset"
    ERROR = "error"
    SEND_FAILED = "send_failed"


class LogoutReason(str, Enum):
    UNAUTHORIZED = "unauthorized"
    BLOCKED = "blocked"
    DELETED = "deleted"
    MERGED = "merged"
    RESET = "reset"


@dataclass
class OutboundEvent:
    """An event delivered to one or more connections."""

    type: EventType
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"type": self.type.value, "data": self.data}


def logout_event(reason: LogoutReason, **extra) -> OutboundEvent:
    """Build a forced-logout event."""
    return OutboundEvent(EventType.LOGOUT, {"reason": reason.value, **extra})
