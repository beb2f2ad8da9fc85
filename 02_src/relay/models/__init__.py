"""Core data models for the support relay."""

from .events import (
    OPERATOR_EVENTS,
    BlockEvent,
    DeleteIdentityEvent,
    DeleteMessageEvent,
    EventType,
    InboundEvent,
    IssueEvent,
    JoinEvent,
    LogoutReason,
    MergeEvent,
    MuteEvent,
    OperatorJoinEvent,
    OutboundEvent,
    ReadEvent,
    ReplyEvent,
    SendEvent,
    TypingEvent,
    UnblockEvent,
    WipeEvent,
    logout_event,
    parse_event,
)
from .records import (
    ConfigKey,
    DeliveryStatus,
    Direction,
    Identity,
    IdentityOverview,
    MergeResult,
    Message,
    MessageKind,
    Subscription,
    infer_kind,
    is_placeholder_owner_tag,
)
from .tracing import TraceEvent

__all__ = [
    # Records
    "ConfigKey",
    "DeliveryStatus",
    "Direction",
    "Identity",
    "IdentityOverview",
    "MergeResult",
    "Message",
    "MessageKind",
    "Subscription",
    "infer_kind",
    "is_placeholder_owner_tag",
    # Tracing
    "TraceEvent",
    # Events
    "OPERATOR_EVENTS",
    "BlockEvent",
    "DeleteIdentityEvent",
    "DeleteMessageEvent",
    "EventType",
    "InboundEvent",
    "IssueEvent",
    "JoinEvent",
    "LogoutReason",
    "MergeEvent",
    "MuteEvent",
    "OperatorJoinEvent",
    "OutboundEvent",
    "ReadEvent",
    "ReplyEvent",
    "SendEvent",
    "TypingEvent",
    "UnblockEvent",
    "WipeEvent",
    "logout_event",
    "parse_event",
]
