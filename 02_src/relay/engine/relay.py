"""Relay engine: joins, the message path and ancillary relay operations."""

import asyncio
import hmac
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

from pydantic import BaseModel

from ..autoreply import AutoReplyScheduler
from ..errors import (
    IdentityBlocked,
    IdentityExists,
    IdentityNotFound,
    InvalidRequest,
    MessageNotFound,
    RelayError,
    StoreUnavailable,
    Unauthorized,
)
from ..identity import IdentityIssuer
from ..logging_config import get_logger
from ..models import (
    OPERATOR_EVENTS,
    BlockEvent,
    ConfigKey,
    DeleteIdentityEvent,
    DeleteMessageEvent,
    DeliveryStatus,
    Direction,
    EventType,
    Identity,
    IdentityOverview,
    IssueEvent,
    JoinEvent,
    LogoutReason,
    MergeEvent,
    Message,
    MessageKind,
    MuteEvent,
    OperatorJoinEvent,
    OutboundEvent,
    ReadEvent,
    ReplyEvent,
    SendEvent,
    TypingEvent,
    UnblockEvent,
    WipeEvent,
    infer_kind,
    is_placeholder_owner_tag,
    logout_event,
)
from ..moderation import IModerationService
from ..notifications import NotificationDispatcher
from ..presence import IConnection, PresenceRegistry, Session
from ..storage import IStorage
from ..tracker import ITracker

logger = get_logger(__name__)

Handler = Callable[[Session, BaseModel], Awaitable[None]]


class JoinOutcome(str, Enum):
    CREATED = "created"
    ACCEPTED = "accepted"
    REJECTED_UNAUTHORIZED = "rejected_unauthorized"
    REJECTED_BLOCKED = "rejected_blocked"
    CONNECTION_CLOSED = "connection_closed"


JOINED = (JoinOutcome.CREATED, JoinOutcome.ACCEPTED)


def _usable_tag(owner_tag: str | None) -> str | None:
    return None if is_placeholder_owner_tag(owner_tag) else owner_tag.strip()


class RelayEngine:
    """
    Routes messages between user channels and the operator channel.

    Ingress always runs inbound event -> persist -> fan-out -> side effects.
    Side effects (bot notification, push) run as background tasks so they
    can never stall or fail the chat path; ``drain()`` awaits them.
    """

    def __init__(
        self,
        storage: IStorage,
        registry: PresenceRegistry,
        issuer: IdentityIssuer,
        moderation: IModerationService,
        dispatcher: NotificationDispatcher,
        auto_reply: AutoReplyScheduler,
        tracker: ITracker,
        welcome_text: str,
        operator_reply_status: DeliveryStatus = DeliveryStatus.SENT,
        console_password: str | None = None,
    ):
        self._storage = storage
        self._registry = registry
        self._issuer = issuer
        self._moderation = moderation
        self._dispatcher = dispatcher
        self._auto_reply = auto_reply
        self._tracker = tracker
        self._welcome_text = welcome_text
        self._operator_reply_status = operator_reply_status
        self._default_console_password = console_password
        self._background: set[asyncio.Task] = set()

        self._handlers: dict[type, Handler] = {
            JoinEvent: self._on_join,
            IssueEvent: self._on_issue,
            OperatorJoinEvent: self._on_operator_join,
            SendEvent: self._on_send,
            ReplyEvent: self._on_reply,
            TypingEvent: self._on_typing,
            ReadEvent: self._on_read,
            DeleteMessageEvent: self._on_delete_message,
            MuteEvent: self._on_mute,
            BlockEvent: self._on_block,
            UnblockEvent: self._on_unblock,
            DeleteIdentityEvent: self._on_delete_identity,
            MergeEvent: self._on_merge,
            WipeEvent: self._on_wipe,
        }

    # ---- Connection lifecycle ----

    def connect(self, connection: IConnection) -> Session:
        return self._registry.register(connection)

    async def disconnect(self, connection_id: str) -> None:
        """Finalizer for a closed connection, whatever the cause."""
        session = self._registry.session(connection_id)
        identity_id = session.identity_id if session else None

        await self._registry.disconnect(connection_id)

        if identity_id:
            try:
                await self._storage.touch_identity(identity_id)
            except StoreUnavailable as e:
                logger.warning("Could not touch %s on disconnect: %s", identity_id, e)

    async def drain(self) -> None:
        """Wait for pending notification tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # ---- Dispatch ----

    async def handle(self, connection_id: str, event: BaseModel) -> None:
        """Process one inbound event from a connection."""
        session = self._registry.session(connection_id)
        if session is None:
            logger.debug("Event %s for closed connection %s", event, connection_id)
            return

        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"No handler for event {type(event).__name__}")

        try:
            if isinstance(event, OPERATOR_EVENTS) and not session.is_operator:
                raise Unauthorized(f"'{event.type}' requires an operator connection")
            await handler(session, event)
        except StoreUnavailable as e:
            if isinstance(event, (SendEvent, ReplyEvent)):
                await self._registry.emit_to_connection(
                    connection_id,
                    OutboundEvent(
                        EventType.SEND_FAILED,
                        {"client_ref": event.client_ref, "detail": "retry later"},
                    ),
                )
            else:
                await self._reply_error(connection_id, event, e)
        except RelayError as e:
            logger.info("Event %s from %s failed: %s", event.type, connection_id, e)
            await self._reply_error(connection_id, event, e)

    async def _reply_error(
        self, connection_id: str, event: BaseModel, error: RelayError
    ) -> None:
        await self._registry.emit_to_connection(
            connection_id,
            OutboundEvent(
                EventType.ERROR,
                {"code": error.code, "detail": error.detail, "event": event.type},
            ),
        )

    async def _on_join(self, session: Session, event: JoinEvent) -> None:
        await self.join(session.connection_id, event.identity_id, event.owner_tag)

    async def _on_issue(self, session: Session, event: IssueEvent) -> None:
        identity_id = await self.issue_identity()
        await self._registry.emit_to_connection(
            session.connection_id,
            OutboundEvent(EventType.IDENTITY_ISSUED, {"identity_id": identity_id}),
        )

    async def _on_operator_join(self, session: Session, event: OperatorJoinEvent) -> None:
        await self.join_operator(session.connection_id, event.password)

    async def _on_send(self, session: Session, event: SendEvent) -> None:
        await self.send_from_user(
            session.connection_id,
            event.content,
            kind=event.kind,
            client_ref=event.client_ref,
            identity_id=event.identity_id,
            owner_tag=event.owner_tag,
        )

    async def _on_reply(self, session: Session, event: ReplyEvent) -> None:
        await self.reply_from_operator(
            event.target_id, event.content, kind=event.kind, client_ref=event.client_ref
        )

    async def _on_typing(self, session: Session, event: TypingEvent) -> None:
        await self.typing(session.connection_id, event.target_id, event.is_typing)

    async def _on_read(self, session: Session, event: ReadEvent) -> None:
        if session.is_operator:
            if not event.identity_id:
                raise InvalidRequest("Operators must name the identity they read")
            await self.mark_read(event.identity_id, reader_is_operator=True)
        else:
            if not session.identity_id:
                raise Unauthorized("Join before sending read receipts")
            await self.mark_read(session.identity_id, reader_is_operator=False)

    async def _on_delete_message(self, session: Session, event: DeleteMessageEvent) -> None:
        await self.delete_message(event.message_id)

    async def _on_mute(self, session: Session, event: MuteEvent) -> None:
        await self._moderation.mute(event.identity_id, event.muted)

    async def _on_block(self, session: Session, event: BlockEvent) -> None:
        await self._moderation.block(event.identity_id)

    async def _on_unblock(self, session: Session, event: UnblockEvent) -> None:
        await self._moderation.unblock(event.identity_id)

    async def _on_delete_identity(self, session: Session, event: DeleteIdentityEvent) -> None:
        await self._moderation.delete_all_data(event.identity_id)

    async def _on_merge(self, session: Session, event: MergeEvent) -> None:
        await self._moderation.merge(event.source_id, event.target_id)

    async def _on_wipe(self, session: Session, event: WipeEvent) -> None:
        await self._moderation.wipe_all()

    # ---- Joins ----

    async def issue_identity(self) -> str:
        """Identity-issuance handshake: a 6-digit id not yet in the store."""
        return await self._issuer.issue(self._storage)

    async def join_operator(
        self, connection_id: str, password: str = ""
    ) -> list[str] | None:
        """Join the operator channel if the console password matches.

        A mismatch, or no password configured at all, gets logout(unauthorized)
        and the connection is closed. Returns the online snapshot on success.
        """
        expected = await self._console_password()
        if not expected or not hmac.compare_digest(
            expected.encode(), password.encode()
        ):
            if not expected:
                logger.warning("No console password configured, operator joins refused")
            logger.info("Operator join from %s rejected", connection_id)
            await self._registry.kick(
                connection_id, logout_event(LogoutReason.UNAUTHORIZED)
            )
            return None

        snapshot = await self._registry.join_operator(connection_id)
        await self._registry.emit_to_connection(
            connection_id,
            OutboundEvent(EventType.PRESENCE_SNAPSHOT, {"online": snapshot}),
        )
        logger.info("Operator connection %s joined", connection_id)
        return snapshot

    async def _console_password(self) -> str | None:
        stored = await self._storage.get_config(ConfigKey.CONSOLE_PASSWORD)
        return stored or self._default_console_password

    async def join(
        self,
        connection_id: str,
        identity_id: str | None,
        owner_tag: str | None = None,
    ) -> JoinOutcome:
        """Bind a user connection to an identity.

        Unknown ids are created only when a usable owner tag comes with them;
        an empty id asks for a fresh one to be issued.
        """
        tag = _usable_tag(owner_tag)
        identity_id = (identity_id or "").strip()
        identity = await self._storage.get_identity(identity_id) if identity_id else None
        created = False

        if identity is None:
            if tag is None:
                await self._registry.emit_to_connection(
                    connection_id, logout_event(LogoutReason.UNAUTHORIZED)
                )
                logger.info("Join of unknown identity %r without owner tag", identity_id)
                return JoinOutcome.REJECTED_UNAUTHORIZED

            if not identity_id:
                identity_id = await self.issue_identity()
            try:
                identity = await self._storage.create_identity(identity_id, tag)
                created = True
            except IdentityExists:
                identity = await self._storage.get_identity(identity_id)
                if identity is None:
                    await self._registry.emit_to_connection(
                        connection_id, logout_event(LogoutReason.UNAUTHORIZED)
                    )
                    return JoinOutcome.REJECTED_UNAUTHORIZED

        if identity.blocked:
            await self._registry.kick(connection_id, logout_event(LogoutReason.BLOCKED))
            logger.info("Blocked identity %s tried to join", identity_id)
            return JoinOutcome.REJECTED_BLOCKED

        if not created and tag and tag != identity.owner_tag:
            await self._storage.touch_identity(identity_id, tag)
            identity.owner_tag = tag

        if not await self._registry.join_user(connection_id, identity_id):
            return JoinOutcome.CONNECTION_CLOSED

        await self._registry.emit_to_connection(
            connection_id,
            OutboundEvent(
                EventType.JOIN_ACCEPTED,
                {"identity": identity.to_dict(), "created": created},
            ),
        )

        if created:
            await self._tracker.track(
                "identity_created",
                "relay",
                {"identity_id": identity_id, "owner_tag": tag},
            )
            welcome = self._new_message(
                identity_id,
                self._welcome_text,
                MessageKind.TEXT,
                Direction.FROM_OPERATOR,
                DeliveryStatus.SENT,
            )
            if await self._storage.save_message(welcome):
                await self._registry.emit_to_identity(
                    identity_id,
                    OutboundEvent(EventType.MESSAGE, {"message": welcome.to_dict()}),
                )
            return JoinOutcome.CREATED

        return JoinOutcome.ACCEPTED

    # ---- Message path ----

    async def send_from_user(
        self,
        connection_id: str,
        content: str,
        kind: MessageKind | None = None,
        client_ref: str | None = None,
        identity_id: str | None = None,
        owner_tag: str | None = None,
    ) -> Message | None:
        """User -> operator message. Returns None when the send was rejected."""
        session = self._registry.session(connection_id)
        if session is None:
            return None

        if session.identity_id is None:
            # First inbound message on a connection that never joined
            if not identity_id:
                await self._registry.kick(
                    connection_id, logout_event(LogoutReason.UNAUTHORIZED)
                )
                return None
            if await self.join(connection_id, identity_id, owner_tag) not in JOINED:
                # join already sent the logout
                await self._registry.kick(connection_id)
                return None
        elif identity_id and identity_id != session.identity_id:
            raise Unauthorized("Connection is bound to another identity")

        bound_id = session.identity_id
        identity = await self._storage.get_identity(bound_id)
        if identity is None or identity.blocked:
            await self._reject_sender(connection_id, identity)
            return None

        tag = _usable_tag(owner_tag)
        if not await self._storage.touch_identity(bound_id, tag):
            await self._reject_sender(connection_id, None)
            return None
        if tag:
            identity.owner_tag = tag

        message = self._new_message(
            bound_id,
            content,
            kind or infer_kind(content),
            Direction.FROM_USER,
            DeliveryStatus.SENT,
        )
        if not await self._storage.save_message(message):
            # Lost a race with block/delete between the lookup and the insert
            current = await self._storage.get_identity(bound_id)
            await self._reject_sender(connection_id, current)
            return None

        payload = {"message": message.to_dict(), "client_ref": client_ref}
        await self._registry.emit_to_identity(
            bound_id, OutboundEvent(EventType.MESSAGE, payload)
        )
        await self._registry.emit_to_operators(
            OutboundEvent(
                EventType.OPERATOR_MESSAGE,
                {**payload, "owner_tag": tag or identity.owner_tag},
            )
        )

        try:
            await self._auto_reply.maybe_schedule(connection_id, bound_id)
        except StoreUnavailable as e:
            logger.warning("Auto-reply for %s not scheduled: %s", bound_id, e)

        self._spawn(self._dispatcher.notify_operators(identity, message))
        return message

    async def _reject_sender(self, connection_id: str, identity: Identity | None) -> None:
        if identity is not None and identity.blocked:
            reason = LogoutReason.BLOCKED
        else:
            reason = LogoutReason.UNAUTHORIZED
        await self._registry.kick(connection_id, logout_event(reason))
        logger.info("Send from %s rejected (%s)", connection_id, reason.value)

    async def reply_from_operator(
        self,
        target_id: str,
        content: str,
        kind: MessageKind | None = None,
        client_ref: str | None = None,
    ) -> Message:
        """Operator -> user message. Unknown targets get a placeholder identity."""
        target_id = target_id.strip()
        if not target_id:
            raise InvalidRequest("Reply needs a target identity")

        identity = await self._storage.get_identity(target_id)
        if identity is None:
            identity = await self._storage.upsert_identity(target_id)
            await self._tracker.track(
                "identity_created", "relay", {"identity_id": target_id, "owner_tag": None}
            )
        elif identity.blocked:
            raise IdentityBlocked(target_id)

        message = self._new_message(
            target_id,
            content,
            kind or infer_kind(content),
            Direction.FROM_OPERATOR,
            self._operator_reply_status,
        )
        if not await self._storage.save_message(message):
            current = await self._storage.get_identity(target_id)
            if current is None:
                raise IdentityNotFound(target_id)
            raise IdentityBlocked(target_id)

        payload = {"message": message.to_dict(), "client_ref": client_ref}
        await self._registry.emit_to_identity(
            target_id, OutboundEvent(EventType.MESSAGE, payload)
        )
        await self._registry.emit_to_operators(
            OutboundEvent(EventType.OPERATOR_MESSAGE, payload)
        )

        self._spawn(self._dispatcher.push_to_identity(target_id, message))
        return message

    # ---- Ancillary operations ----

    async def typing(
        self, connection_id: str, target_id: str | None, is_typing: bool = True
    ) -> None:
        """Transient typing indicator; nothing is persisted."""
        session = self._registry.session(connection_id)
        if session is None:
            return

        if session.is_operator:
            if not target_id:
                raise InvalidRequest("Operator typing needs a target identity")
            await self._registry.emit_to_identity(
                target_id,
                OutboundEvent(
                    EventType.TYPING,
                    {"identity_id": target_id, "from": "operator", "is_typing": is_typing},
                ),
            )
            return

        if not session.identity_id:
            raise Unauthorized("Join before sending typing indicators")
        await self._registry.emit_to_operators(
            OutboundEvent(
                EventType.TYPING,
                {"identity_id": session.identity_id, "from": "user", "is_typing": is_typing},
            )
        )

    async def mark_read(self, identity_id: str, reader_is_operator: bool) -> int:
        """Mark the counterpart's messages read and tell the counterpart."""
        reader = Direction.FROM_OPERATOR if reader_is_operator else Direction.FROM_USER
        updated = await self._storage.mark_read(identity_id, reader.opposite)
        event = OutboundEvent(
            EventType.READ_STATE,
            {
                "identity_id": identity_id,
                "reader": "operator" if reader_is_operator else "user",
                "updated": updated,
            },
        )
        if reader_is_operator:
            await self._registry.emit_to_identity(identity_id, event)
        else:
            await self._registry.emit_to_operators(event)
        return updated

    async def delete_message(self, message_id: str) -> Message:
        message = await self._storage.delete_message(message_id)
        if message is None:
            raise MessageNotFound(message_id)

        event = OutboundEvent(
            EventType.MESSAGE_DELETED,
            {"message_id": message_id, "identity_id": message.identity_id},
        )
        await self._registry.emit_to_identity(message.identity_id, event)
        await self._registry.emit_to_operators(event)
        return message

    async def history(self, identity_id: str) -> list[Message]:
        return await self._storage.get_messages(identity_id)

    async def list_identities(self) -> list[IdentityOverview]:
        overviews = await self._storage.list_identities()
        for overview in overviews:
            overview.online = self._registry.is_online(overview.identity.id)
        return overviews

    @staticmethod
    def _new_message(
        identity_id: str,
        content: str,
        kind: MessageKind,
        direction: Direction,
        status: DeliveryStatus,
    ) -> Message:
        return Message(
            id=str(uuid.uuid4()),
            identity_id=identity_id,
            content=content,
            kind=kind,
            direction=direction,
            status=status,
            created_at=datetime.now(timezone.utc),
        )
