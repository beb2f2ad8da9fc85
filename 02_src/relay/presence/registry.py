"""Presence registry: live connections, channel membership and online set."""

import asyncio
from dataclasses import dataclass
from typing import Protocol

from ..logging_config import get_logger
from ..models import EventType, OutboundEvent

logger = get_logger(__name__)


class IConnection(Protocol):
    """One realtime transport connection."""

    @property
    def connection_id(self) -> str:
        """Unique id of this connection."""
        ...

    async def send(self, event: OutboundEvent) -> None:
        """Push an event to the peer."""
        ...

    async def close(self, code: int = 1000) -> None:
        """Close the connection from the server side."""
        ...


@dataclass
class Session:
    """Per-connection state."""

    connection: IConnection
    identity_id: str | None = None
    is_operator: bool = False
    auto_reply_fired: bool = False
    auto_reply_task: asyncio.Task | None = None

    @property
    def connection_id(self) -> str:
        return self.connection.connection_id

    def cancel_task(self) -> None:
        if self.auto_reply_task and not self.auto_reply_task.done():
            self.auto_reply_task.cancel()
        self.auto_reply_task = None


class PresenceRegistry:
    """
    Tracks which identities are connected and routes events to channels.

    Every identity has a private channel made of the connections bound to it;
    all operator connections form the shared operator channel. Fan-out has no
    acknowledgement: each send is bounded by ``broadcast_timeout`` and failures
    are logged and dropped.
    """

    def __init__(self, broadcast_timeout: float = 5.0):
        self._broadcast_timeout = broadcast_timeout
        self._lock = asyncio.Lock()
        self._sessions: dict[str, Session] = {}
        self._members: dict[str, set[str]] = {}  # identity_id -> connection ids
        self._operators: set[str] = set()
        self._online: set[str] = set()

    # ---- Connection lifecycle ----

    def register(self, connection: IConnection) -> Session:
        """Track a freshly opened connection (not yet in any channel)."""
        session = Session(connection=connection)
        self._sessions[connection.connection_id] = session
        logger.info(
            "Connection %s registered, total=%s",
            connection.connection_id,
            len(self._sessions),
        )
        return session

    def session(self, connection_id: str) -> Session | None:
        return self._sessions.get(connection_id)

    async def join_operator(self, connection_id: str) -> list[str]:
        """Join the operator channel and return a snapshot of the online set."""
        async with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                return []
            session.is_operator = True
            self._operators.add(connection_id)
            return sorted(self._online)

    async def join_user(self, connection_id: str, identity_id: str) -> bool:
        """Bind a connection to an identity's channel and mark it online.

        Returns False if the connection is already gone.
        """
        async with self._lock:
            session = self._sessions.get(connection_id)
            if session is None:
                return False
            went_offline = None
            if session.identity_id and session.identity_id != identity_id:
                went_offline = self._release(session)
            session.identity_id = identity_id
            self._members.setdefault(identity_id, set()).add(connection_id)
            self._online.add(identity_id)

        if went_offline:
            await self._broadcast_offline(went_offline)
        await self.emit_to_operators(
            OutboundEvent(
                EventType.PRESENCE_CHANGED,
                {"identity_id": identity_id, "online": True},
            )
        )
        return True

    async def disconnect(self, connection_id: str) -> str | None:
        """Finalize a closed connection. Safe to call more than once.

        Returns the identity that went offline, if any.
        """
        async with self._lock:
            session = self._sessions.pop(connection_id, None)
            if session is None:
                return None
            session.cancel_task()
            went_offline = self._release(session)

        logger.info("Connection %s disconnected", connection_id)
        if went_offline:
            await self._broadcast_offline(went_offline)
        return went_offline

    async def kick(self, connection_id: str, event: OutboundEvent | None = None) -> bool:
        """Send an optional final event, then close and finalize one connection."""
        async with self._lock:
            session = self._sessions.pop(connection_id, None)
            if session is None:
                return False
            session.cancel_task()
            went_offline = self._release(session)

        await self._terminate(session.connection, event)
        if went_offline:
            await self._broadcast_offline(went_offline)
        return True

    async def evict(self, identity_id: str, event: OutboundEvent | None = None) -> int:
        """Close every connection bound to an identity and drop its presence.

        Returns the number of connections closed; zero is not an error.
        """
        async with self._lock:
            sessions = [
                self._sessions.pop(conn_id)
                for conn_id in self._members.pop(identity_id, set())
                if conn_id in self._sessions
            ]
            was_online = identity_id in self._online
            self._online.discard(identity_id)
            for session in sessions:
                session.cancel_task()

        await asyncio.gather(*[self._terminate(s.connection, event) for s in sessions])

        if sessions:
            logger.info("Evicted %s connection(s) of %s", len(sessions), identity_id)
        if was_online:
            await self._broadcast_offline(identity_id)
        return len(sessions)

    async def evict_all(self, event: OutboundEvent | None = None) -> int:
        """Close every live connection and clear presence."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
            self._members.clear()
            self._operators.clear()
            self._online.clear()
            for session in sessions:
                session.cancel_task()

        await asyncio.gather(*[self._terminate(s.connection, event) for s in sessions])
        logger.info("Evicted all %s connection(s)", len(sessions))
        return len(sessions)

    def _release(self, session: Session) -> str | None:
        """Remove channel membership. Caller holds the lock."""
        self._operators.discard(session.connection_id)
        identity_id = session.identity_id
        if not identity_id:
            return None

        members = self._members.get(identity_id)
        if members is not None:
            members.discard(session.connection_id)
            if members:
                return None
            del self._members[identity_id]

        if identity_id in self._online:
            self._online.discard(identity_id)
            return identity_id
        return None

    # ---- Auto-reply bookkeeping ----

    async def claim_auto_reply(self, connection_id: str) -> bool:
        """Mark the connection as having fired its auto-reply.

        Returns True only for the first claim of a connection's lifetime.
        """
        async with self._lock:
            session = self._sessions.get(connection_id)
            if session is None or session.auto_reply_fired:
                return False
            session.auto_reply_fired = True
            return True

    async def release_auto_reply(self, connection_id: str) -> None:
        """Undo a claim whose reply could not be stored."""
        async with self._lock:
            session = self._sessions.get(connection_id)
            if session is not None:
                session.auto_reply_fired = False

    def attach_task(self, connection_id: str, task: asyncio.Task) -> bool:
        """Tie a task to a connection so disconnect cancels it."""
        session = self._sessions.get(connection_id)
        if session is None:
            task.cancel()
            return False
        session.cancel_task()
        session.auto_reply_task = task
        return True

    # ---- Queries ----

    def online(self) -> list[str]:
        return sorted(self._online)

    def is_online(self, identity_id: str) -> bool:
        return identity_id in self._online

    def connection_count(self, identity_id: str | None = None) -> int:
        if identity_id is None:
            return len(self._sessions)
        return len(self._members.get(identity_id, ()))

    # ---- Fan-out ----

    async def emit_to_identity(self, identity_id: str, event: OutboundEvent) -> int:
        """Send to the identity's private channel."""
        connections = [
            self._sessions[conn_id].connection
            for conn_id in list(self._members.get(identity_id, ()))
            if conn_id in self._sessions
        ]
        return await self._fan_out(connections, event)

    async def emit_to_operators(self, event: OutboundEvent) -> int:
        """Send to the shared operator channel."""
        connections = [
            self._sessions[conn_id].connection
            for conn_id in list(self._operators)
            if conn_id in self._sessions
        ]
        return await self._fan_out(connections, event)

    async def emit_to_connection(self, connection_id: str, event: OutboundEvent) -> bool:
        session = self._sessions.get(connection_id)
        if session is None:
            return False
        return await self._fan_out([session.connection], event) == 1

    async def _fan_out(self, connections: list[IConnection], event: OutboundEvent) -> int:
        if not connections:
            return 0
        results = await asyncio.gather(
            *[self._send(conn, event) for conn in connections]
        )
        return sum(results)

    async def _send(self, connection: IConnection, event: OutboundEvent) -> bool:
        try:
            await asyncio.wait_for(connection.send(event), self._broadcast_timeout)
            return True
        except asyncio.TimeoutError:
            logger.warning(
                "Send of %s to %s timed out", event.type.value, connection.connection_id
            )
        except Exception as e:
            logger.warning(
                "Send of %s to %s failed: %s",
                event.type.value,
                connection.connection_id,
                e,
            )
        return False

    async def _terminate(self, connection: IConnection, event: OutboundEvent | None) -> None:
        if event is not None:
            await self._send(connection, event)
        try:
            await asyncio.wait_for(connection.close(), self._broadcast_timeout)
        except Exception as e:
            logger.warning("Close of %s failed: %s", connection.connection_id, e)

    async def _broadcast_offline(self, identity_id: str) -> None:
        await self.emit_to_operators(
            OutboundEvent(
                EventType.PRESENCE_CHANGED,
                {"identity_id": identity_id, "online": False},
            )
        )
