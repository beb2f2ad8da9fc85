"""SQLite storage implementation."""

import asyncio
import functools
import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import aiosqlite

from ..config import resolve_db_path
from ..errors import IdentityExists, IdentityNotFound, StoreUnavailable
from ..logging_config import get_logger
from ..models import (
    DeliveryStatus,
    Direction,
    Identity,
    IdentityOverview,
    MergeResult,
    Message,
    MessageKind,
    Subscription,
    TraceEvent,
)

logger = get_logger(__name__)

_IDENTITY_COLUMNS = "id, owner_tag, muted, blocked, created_at, updated_at"
_MESSAGE_COLUMNS = "id, identity_id, content, kind, direction, status, created_at"
_SUBSCRIPTION_COLUMNS = "id, identity_id, endpoint, keys, created_at"


class IStorage(Protocol):
    """Persistent store for identities, messages, config and subscriptions."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Identities
    async def get_identity(self, identity_id: str) -> Identity | None:
        ...

    async def create_identity(self, identity_id: str, owner_tag: str | None) -> Identity:
        """Insert a new identity. Raises IdentityExists on collision."""
        ...

    async def upsert_identity(
        self, identity_id: str, owner_tag: str | None = None
    ) -> Identity:
        """Create the identity or refresh updated_at (and owner_tag when given)."""
        ...

    async def touch_identity(
        self, identity_id: str, owner_tag: str | None = None
    ) -> bool:
        """Refresh updated_at of an existing identity. False if absent."""
        ...

    async def set_identity_flags(
        self,
        identity_id: str,
        muted: bool | None = None,
        blocked: bool | None = None,
    ) -> Identity | None:
        """Update moderation flags. None if the identity is absent."""
        ...

    async def delete_identity(self, identity_id: str) -> bool:
        ...

    async def list_identities(self) -> list[IdentityOverview]:
        """All identities, newest first, with message counts."""
        ...

    async def count_identities(self) -> int:
        ...

    # Messages
    async def save_message(self, message: Message) -> bool:
        """Insert a message if its owner exists and is not blocked."""
        ...

    async def get_message(self, message_id: str) -> Message | None:
        ...

    async def get_messages(self, identity_id: str) -> list[Message]:
        """Messages of an identity in creation order."""
        ...

    async def delete_message(self, message_id: str) -> Message | None:
        """Delete one message and return it."""
        ...

    async def delete_messages(self, identity_id: str) -> int:
        ...

    async def mark_read(self, identity_id: str, direction: Direction) -> int:
        """Mark all messages of one direction as read."""
        ...

    async def count_messages(self) -> int:
        ...

    # Subscriptions
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        """Create or update a subscription by endpoint."""
        ...

    async def delete_subscription(self, subscription_id: str) -> bool:
        ...

    async def get_subscriptions(self, identity_id: str) -> list[Subscription]:
        ...

    async def delete_subscriptions(self, identity_id: str) -> int:
        ...

    # Config
    async def get_config(self, key: str) -> str | None:
        ...

    async def set_config(self, key: str, value: str) -> None:
        ...

    # Composite operations
    async def purge_identity(self, identity_id: str, retain_shell: bool) -> int:
        """Delete messages and subscriptions, then delete or block the record."""
        ...

    async def merge_identities(self, source_id: str, target_id: str) -> MergeResult:
        """Move all messages and subscriptions to target, then delete source."""
        ...

    async def wipe_identities(self) -> None:
        """Delete every subscription, message and identity."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters."""
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _identity_from_row(row) -> Identity:
    return Identity(
        id=row[0],
        owner_tag=row[1],
        muted=bool(row[2]),
        blocked=bool(row[3]),
        created_at=_parse_ts(row[4]),
        updated_at=_parse_ts(row[5]),
    )


def _message_from_row(row) -> Message:
    return Message(
        id=row[0],
        identity_id=row[1],
        content=row[2],
        kind=MessageKind(row[3]),
        direction=Direction(row[4]),
        status=DeliveryStatus(row[5]),
        created_at=_parse_ts(row[6]),
    )


def _subscription_from_row(row) -> Subscription:
    return Subscription(
        id=row[0],
        identity_id=row[1],
        endpoint=row[2],
        keys=json.loads(row[3]),
        created_at=_parse_ts(row[4]),
    )


def _store_call(func):
    """Surface sqlite failures as StoreUnavailable."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except sqlite3.Error as e:
            logger.error("Store call %s failed: %s", func.__name__, e, exc_info=True)
            raise StoreUnavailable(f"{func.__name__} failed: {e}") from e

    return wrapper


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None
        # Serializes writes on the shared connection
        self._write_lock = asyncio.Lock()

    @property
    def _db(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)
        await self._conn.execute("PRAGMA foreign_keys = ON")

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def _fetchone(self, query: str, params: tuple = ()):
        async with self._db.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple = ()):
        async with self._db.execute(query, params) as cursor:
            return await cursor.fetchall()

    async def _write(self, query: str, params: tuple = ()) -> int:
        """Run one statement in its own transaction, return affected rows."""
        async with self._write_lock:
            try:
                cursor = await self._db.execute(query, params)
                await self._db.commit()
            except sqlite3.Error:
                await self._db.rollback()
                raise
            return cursor.rowcount

    # Identities
    @_store_call
    async def get_identity(self, identity_id: str) -> Identity | None:
        row = await self._fetchone(
            f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE id = ?",
            (identity_id,),
        )
        return _identity_from_row(row) if row else None

    @_store_call
    async def create_identity(self, identity_id: str, owner_tag: str | None) -> Identity:
        now = _now()
        try:
            await self._write(
                """
                INSERT INTO identities (id, owner_tag, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (identity_id, owner_tag, _ts(now), _ts(now)),
            )
        except sqlite3.IntegrityError as e:
            raise IdentityExists(identity_id) from e
        return Identity(id=identity_id, owner_tag=owner_tag, created_at=now, updated_at=now)

    @_store_call
    async def upsert_identity(
        self, identity_id: str, owner_tag: str | None = None
    ) -> Identity:
        now = _ts(_now())
        await self._write(
            """
            INSERT INTO identities (id, owner_tag, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                updated_at = excluded.updated_at,
                owner_tag = COALESCE(excluded.owner_tag, identities.owner_tag)
            """,
            (identity_id, owner_tag, now, now),
        )
        identity = await self.get_identity(identity_id)
        if identity is None:
            # Deleted by a concurrent moderation action right after the upsert
            raise IdentityNotFound(identity_id)
        return identity

    @_store_call
    async def touch_identity(
        self, identity_id: str, owner_tag: str | None = None
    ) -> bool:
        updated = await self._write(
            """
            UPDATE identities
            SET updated_at = ?, owner_tag = COALESCE(?, owner_tag)
            WHERE id = ?
            """,
            (_ts(_now()), owner_tag, identity_id),
        )
        return updated > 0

    @_store_call
    async def set_identity_flags(
        self,
        identity_id: str,
        muted: bool | None = None,
        blocked: bool | None = None,
    ) -> Identity | None:
        await self._write(
            """
            UPDATE identities
            SET muted = COALESCE(?, muted),
                blocked = COALESCE(?, blocked),
                updated_at = ?
            WHERE id = ?
            """,
            (
                None if muted is None else int(muted),
                None if blocked is None else int(blocked),
                _ts(_now()),
                identity_id,
            ),
        )
        return await self.get_identity(identity_id)

    @_store_call
    async def delete_identity(self, identity_id: str) -> bool:
        deleted = await self._write(
            "DELETE FROM identities WHERE id = ?", (identity_id,)
        )
        return deleted > 0

    @_store_call
    async def list_identities(self) -> list[IdentityOverview]:
        rows = await self._fetchall(
            """
            SELECT i.id, i.owner_tag, i.muted, i.blocked, i.created_at,
                   i.updated_at, COUNT(m.id)
            FROM identities i
            LEFT JOIN messages m ON m.identity_id = i.id
            GROUP BY i.id
            ORDER BY i.created_at DESC
            """
        )
        return [
            IdentityOverview(identity=_identity_from_row(row), message_count=row[6])
            for row in rows
        ]

    @_store_call
    async def count_identities(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) FROM identities")
        return row[0]

    # Messages
    @_store_call
    async def save_message(self, message: Message) -> bool:
        if not message.id:
            message.id = str(uuid.uuid4())

        inserted = await self._write(
            f"""
            INSERT INTO messages ({_MESSAGE_COLUMNS})
            SELECT ?, ?, ?, ?, ?, ?, ?
            WHERE EXISTS (
                SELECT 1 FROM identities WHERE id = ? AND blocked = 0
            )
            """,
            (
                message.id,
                message.identity_id,
                message.content,
                message.kind.value,
                message.direction.value,
                message.status.value,
                _ts(message.created_at),
                message.identity_id,
            ),
        )
        return inserted > 0

    @_store_call
    async def get_message(self, message_id: str) -> Message | None:
        row = await self._fetchone(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
        )
        return _message_from_row(row) if row else None

    @_store_call
    async def get_messages(self, identity_id: str) -> list[Message]:
        rows = await self._fetchall(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages
            WHERE identity_id = ?
            ORDER BY created_at ASC, rowid ASC
            """,
            (identity_id,),
        )
        return [_message_from_row(row) for row in rows]

    @_store_call
    async def delete_message(self, message_id: str) -> Message | None:
        message = await self.get_message(message_id)
        if message is None:
            return None
        deleted = await self._write("DELETE FROM messages WHERE id = ?", (message_id,))
        return message if deleted else None

    @_store_call
    async def delete_messages(self, identity_id: str) -> int:
        return await self._write(
            "DELETE FROM messages WHERE identity_id = ?", (identity_id,)
        )

    @_store_call
    async def mark_read(self, identity_id: str, direction: Direction) -> int:
        return await self._write(
            """
            UPDATE messages SET status = ?
            WHERE identity_id = ? AND direction = ? AND status != ?
            """,
            (
                DeliveryStatus.READ.value,
                identity_id,
                direction.value,
                DeliveryStatus.READ.value,
            ),
        )

    @_store_call
    async def count_messages(self) -> int:
        row = await self._fetchone("SELECT COUNT(*) FROM messages")
        return row[0]

    # Subscriptions
    @_store_call
    async def save_subscription(self, subscription: Subscription) -> Subscription:
        if not subscription.id:
            subscription.id = str(uuid.uuid4())

        await self._write(
            f"""
            INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS})
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(endpoint) DO UPDATE SET
                identity_id = excluded.identity_id,
                keys = excluded.keys
            """,
            (
                subscription.id,
                subscription.identity_id,
                subscription.endpoint,
                json.dumps(subscription.keys),
                _ts(subscription.created_at),
            ),
        )
        row = await self._fetchone(
            f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE endpoint = ?",
            (subscription.endpoint,),
        )
        return _subscription_from_row(row)

    @_store_call
    async def delete_subscription(self, subscription_id: str) -> bool:
        deleted = await self._write(
            "DELETE FROM subscriptions WHERE id = ?", (subscription_id,)
        )
        return deleted > 0

    @_store_call
    async def get_subscriptions(self, identity_id: str) -> list[Subscription]:
        rows = await self._fetchall(
            f"""
            SELECT {_SUBSCRIPTION_COLUMNS}
            FROM subscriptions
            WHERE identity_id = ?
            ORDER BY created_at ASC
            """,
            (identity_id,),
        )
        return [_subscription_from_row(row) for row in rows]

    @_store_call
    async def delete_subscriptions(self, identity_id: str) -> int:
        return await self._write(
            "DELETE FROM subscriptions WHERE identity_id = ?", (identity_id,)
        )

    # Config
    @_store_call
    async def get_config(self, key: str) -> str | None:
        row = await self._fetchone("SELECT value FROM config WHERE key = ?", (key,))
        return row[0] if row else None

    @_store_call
    async def set_config(self, key: str, value: str) -> None:
        await self._write(
            """
            INSERT INTO config (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (key, value),
        )

    # Composite operations
    @_store_call
    async def purge_identity(self, identity_id: str, retain_shell: bool) -> int:
        async with self._write_lock:
            try:
                cursor = await self._db.execute(
                    "DELETE FROM messages WHERE identity_id = ?", (identity_id,)
                )
                removed = cursor.rowcount
                await self._db.execute(
                    "DELETE FROM subscriptions WHERE identity_id = ?", (identity_id,)
                )
                if retain_shell:
                    now = _ts(_now())
                    await self._db.execute(
                        """
                        INSERT INTO identities
                            (id, owner_tag, blocked, created_at, updated_at)
                        VALUES (?, NULL, 1, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET
                            blocked = 1,
                            updated_at = excluded.updated_at
                        """,
                        (identity_id, now, now),
                    )
                else:
                    await self._db.execute(
                        "DELETE FROM identities WHERE id = ?", (identity_id,)
                    )
                await self._db.commit()
            except sqlite3.Error:
                await self._db.rollback()
                raise
        return removed

    @_store_call
    async def merge_identities(self, source_id: str, target_id: str) -> MergeResult:
        async with self._write_lock:
            source = await self._fetchone(
                f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE id = ?",
                (source_id,),
            )
            if source is None:
                raise IdentityNotFound(source_id)
            target = await self._fetchone(
                f"SELECT {_IDENTITY_COLUMNS} FROM identities WHERE id = ?",
                (target_id,),
            )

            result = MergeResult(
                source_id=source_id,
                target_id=target_id,
                moved_messages=0,
                moved_subscriptions=0,
            )
            now = _ts(_now())
            try:
                if target is None:
                    await self._db.execute(
                        """
                        INSERT INTO identities (id, owner_tag, created_at, updated_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (target_id, source[1], now, now),
                    )
                    result.target_created = True
                elif target[3]:
                    await self._db.execute(
                        "UPDATE identities SET blocked = 0, updated_at = ? WHERE id = ?",
                        (now, target_id),
                    )
                    result.target_unblocked = True

                cursor = await self._db.execute(
                    "UPDATE messages SET identity_id = ? WHERE identity_id = ?",
                    (target_id, source_id),
                )
                result.moved_messages = cursor.rowcount
                cursor = await self._db.execute(
                    "UPDATE subscriptions SET identity_id = ? WHERE identity_id = ?",
                    (target_id, source_id),
                )
                result.moved_subscriptions = cursor.rowcount
                await self._db.execute(
                    "DELETE FROM identities WHERE id = ?", (source_id,)
                )
                await self._db.commit()
            except sqlite3.Error:
                await self._db.rollback()
                raise
        return result

    @_store_call
    async def wipe_identities(self) -> None:
        async with self._write_lock:
            try:
                for table in ("subscriptions", "messages", "identities"):
                    await self._db.execute(f"DELETE FROM {table}")
                await self._db.commit()
            except sqlite3.Error:
                await self._db.rollback()
                raise

    # TraceEvents
    @_store_call
    async def save_trace_event(self, event: TraceEvent) -> None:
        await self._write(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                _ts(event.timestamp),
            ),
        )

    @_store_call
    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        conditions = []
        params: list = []

        if after:
            if after.tzinfo is None:
                after = after.replace(tzinfo=timezone.utc)
            conditions.append("timestamp > ?")
            params.append(_ts(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        rows = await self._fetchall(query, tuple(params))
        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_parse_ts(row[4]),
            )
            for row in rows
        ]

    # Lifecycle
    @_store_call
    async def clear(self) -> None:
        async with self._write_lock:
            tables = [
                "subscriptions",
                "messages",
                "identities",
                "config",
                "trace_events",
            ]
            for table in tables:
                await self._db.execute(f"DELETE FROM {table}")
            await self._db.commit()
