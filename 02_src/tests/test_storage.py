"""Tests for Storage."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from relay.errors import IdentityExists, IdentityNotFound
from relay.models import (
    DeliveryStatus,
    Direction,
    Message,
    MessageKind,
    Subscription,
    TraceEvent,
)


def _message(identity_id: str, content: str = "hi", **overrides) -> Message:
    data = dict(
        id=str(uuid.uuid4()),
        identity_id=identity_id,
        content=content,
        kind=MessageKind.TEXT,
        direction=Direction.FROM_USER,
        status=DeliveryStatus.SENT,
        created_at=datetime.now(timezone.utc),
    )
    data.update(overrides)
    return Message(**data)


def _subscription(identity_id: str, endpoint: str) -> Subscription:
    return Subscription(
        id="",
        identity_id=identity_id,
        endpoint=endpoint,
        keys={"p256dh": "key", "auth": "secret"},
        created_at=datetime.now(timezone.utc),
    )


class TestStorageInit:
    """Tests for Storage initialization."""

    async def test_init_creates_tables(self, storage):
        """Test that init creates all tables."""
        async with storage._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ) as cursor:
            tables = [row[0] for row in await cursor.fetchall()]
            assert "identities" in tables
            assert "messages" in tables
            assert "subscriptions" in tables
            assert "config" in tables
            assert "trace_events" in tables

    async def test_uninitialized_storage_raises(self):
        from relay.storage import Storage

        st = Storage(":memory:")
        with pytest.raises(RuntimeError):
            await st.get_identity("1")


class TestStorageIdentities:
    """Tests for Identity storage."""

    async def test_create_and_get(self, storage):
        created = await storage.create_identity("123456", "shop")
        retrieved = await storage.get_identity("123456")

        assert retrieved is not None
        assert retrieved.id == "123456"
        assert retrieved.owner_tag == "shop"
        assert retrieved.muted is False
        assert retrieved.blocked is False
        assert retrieved.created_at == created.created_at

    async def test_get_nonexistent_identity(self, storage):
        assert await storage.get_identity("nope") is None

    async def test_create_duplicate_raises(self, storage):
        await storage.create_identity("123456", "shop")
        with pytest.raises(IdentityExists):
            await storage.create_identity("123456", "other")

    async def test_upsert_creates_then_keeps_tag(self, storage):
        created = await storage.upsert_identity("42", "shop")
        assert created.owner_tag == "shop"

        refreshed = await storage.upsert_identity("42")
        assert refreshed.owner_tag == "shop"
        assert refreshed.updated_at >= created.updated_at

    async def test_touch_identity(self, storage):
        await storage.create_identity("42", None)
        assert await storage.touch_identity("42", "shop") is True
        assert (await storage.get_identity("42")).owner_tag == "shop"

    async def test_touch_missing_identity(self, storage):
        assert await storage.touch_identity("42") is False
        assert await storage.get_identity("42") is None

    async def test_set_flags(self, storage):
        await storage.create_identity("42", None)

        identity = await storage.set_identity_flags("42", muted=True)
        assert identity.muted is True
        assert identity.blocked is False

        identity = await storage.set_identity_flags("42", blocked=True)
        assert identity.muted is True
        assert identity.blocked is True

    async def test_set_flags_missing(self, storage):
        assert await storage.set_identity_flags("42", muted=True) is None

    async def test_delete_identity_cascades(self, storage):
        await storage.create_identity("42", None)
        await storage.save_message(_message("42"))

        assert await storage.delete_identity("42") is True
        assert await storage.get_messages("42") == []
        assert await storage.delete_identity("42") is False

    async def test_list_identities_newest_first_with_counts(self, storage):
        await storage.create_identity("1", "a")
        await storage.create_identity("2", "b")
        await storage.save_message(_message("2"))
        await storage.save_message(_message("2"))

        overviews = await storage.list_identities()
        assert [o.identity.id for o in overviews] == ["2", "1"]
        assert overviews[0].message_count == 2
        assert overviews[1].message_count == 0
        assert await storage.count_identities() == 2


class TestStorageMessages:
    """Tests for Message storage."""

    async def test_save_and_get(self, storage):
        await storage.create_identity("42", None)
        message = _message("42", "hello")

        assert await storage.save_message(message) is True
        retrieved = await storage.get_message(message.id)
        assert retrieved.content == "hello"
        assert retrieved.direction is Direction.FROM_USER

    async def test_save_assigns_id(self, storage):
        await storage.create_identity("42", None)
        message = _message("42", id="")
        await storage.save_message(message)
        assert message.id

    async def test_save_for_unknown_identity_rejected(self, storage):
        assert await storage.save_message(_message("42")) is False
        assert await storage.count_messages() == 0

    async def test_save_for_blocked_identity_rejected(self, storage):
        await storage.create_identity("42", None)
        await storage.set_identity_flags("42", blocked=True)

        assert await storage.save_message(_message("42")) is False
        assert await storage.get_messages("42") == []

    async def test_messages_in_creation_order(self, storage):
        await storage.create_identity("42", None)
        base = datetime.now(timezone.utc)
        await storage.save_message(
            _message("42", "second", created_at=base + timedelta(seconds=1))
        )
        await storage.save_message(_message("42", "first", created_at=base))
        await storage.save_message(
            _message("42", "third", created_at=base + timedelta(seconds=1))
        )

        contents = [m.content for m in await storage.get_messages("42")]
        assert contents == ["first", "second", "third"]

    async def test_delete_message(self, storage):
        await storage.create_identity("42", None)
        message = _message("42")
        await storage.save_message(message)

        deleted = await storage.delete_message(message.id)
        assert deleted.id == message.id
        assert await storage.get_message(message.id) is None
        assert await storage.delete_message(message.id) is None

    async def test_mark_read_one_direction(self, storage):
        await storage.create_identity("42", None)
        await storage.save_message(_message("42"))
        await storage.save_message(_message("42"))
        await storage.save_message(_message("42", direction=Direction.FROM_OPERATOR))

        assert await storage.mark_read("42", Direction.FROM_USER) == 2
        assert await storage.mark_read("42", Direction.FROM_USER) == 0

        statuses = {
            m.direction: m.status for m in await storage.get_messages("42")
        }
        assert statuses[Direction.FROM_USER] is DeliveryStatus.READ
        assert statuses[Direction.FROM_OPERATOR] is DeliveryStatus.SENT


class TestStorageSubscriptions:
    async def test_save_and_get(self, storage):
        await storage.create_identity("42", None)
        saved = await storage.save_subscription(_subscription("42", "https://push/a"))

        assert saved.id
        subs = await storage.get_subscriptions("42")
        assert len(subs) == 1
        assert subs[0].keys == {"p256dh": "key", "auth": "secret"}

    async def test_same_endpoint_is_updated(self, storage):
        await storage.create_identity("1", None)
        await storage.create_identity("2", None)
        first = await storage.save_subscription(_subscription("1", "https://push/a"))
        second = await storage.save_subscription(_subscription("2", "https://push/a"))

        assert second.id == first.id
        assert await storage.get_subscriptions("1") == []
        assert len(await storage.get_subscriptions("2")) == 1

    async def test_delete_subscription(self, storage):
        await storage.create_identity("42", None)
        saved = await storage.save_subscription(_subscription("42", "https://push/a"))

        assert await storage.delete_subscription(saved.id) is True
        assert await storage.get_subscriptions("42") == []


class TestStorageConfig:
    async def test_get_missing(self, storage):
        assert await storage.get_config("bot_chat_id") is None

    async def test_set_and_overwrite(self, storage):
        await storage.set_config("bot_chat_id", "-1")
        await storage.set_config("bot_chat_id", "-2")
        assert await storage.get_config("bot_chat_id") == "-2"


class TestStorageComposite:
    """Tests for multi-statement moderation operations."""

    async def _seed(self, storage, identity_id: str, messages: int, endpoint=None):
        await storage.create_identity(identity_id, "shop")
        for _ in range(messages):
            await storage.save_message(_message(identity_id))
        if endpoint:
            await storage.save_subscription(_subscription(identity_id, endpoint))

    async def test_purge_retaining_shell_blocks(self, storage):
        await self._seed(storage, "42", 3, "https://push/a")

        removed = await storage.purge_identity("42", retain_shell=True)

        assert removed == 3
        identity = await storage.get_identity("42")
        assert identity.blocked is True
        assert await storage.get_messages("42") == []
        assert await storage.get_subscriptions("42") == []

    async def test_purge_shell_for_unknown_identity(self, storage):
        assert await storage.purge_identity("42", retain_shell=True) == 0
        assert (await storage.get_identity("42")).blocked is True

    async def test_purge_without_shell_deletes(self, storage):
        await self._seed(storage, "42", 2)

        assert await storage.purge_identity("42", retain_shell=False) == 2
        assert await storage.get_identity("42") is None

    async def test_merge_moves_everything(self, storage):
        await self._seed(storage, "42", 3, "https://push/a")
        await self._seed(storage, "99", 1)

        result = await storage.merge_identities("42", "99")

        assert result.moved_messages == 3
        assert result.moved_subscriptions == 1
        assert result.target_created is False
        assert await storage.get_identity("42") is None
        assert len(await storage.get_messages("99")) == 4
        assert len(await storage.get_subscriptions("99")) == 1

    async def test_merge_creates_missing_target(self, storage):
        await self._seed(storage, "42", 2)

        result = await storage.merge_identities("42", "99")

        assert result.target_created is True
        target = await storage.get_identity("99")
        assert target.owner_tag == "shop"
        assert len(await storage.get_messages("99")) == 2

    async def test_merge_unblocks_target(self, storage):
        await self._seed(storage, "42", 1)
        await storage.purge_identity("99", retain_shell=True)

        result = await storage.merge_identities("42", "99")

        assert result.target_unblocked is True
        assert (await storage.get_identity("99")).blocked is False

    async def test_merge_missing_source(self, storage):
        with pytest.raises(IdentityNotFound):
            await storage.merge_identities("42", "99")
        assert await storage.get_identity("99") is None

    async def test_wipe_identities_keeps_config(self, storage):
        await self._seed(storage, "1", 2, "https://push/a")
        await self._seed(storage, "2", 1)
        await storage.set_config("bot_chat_id", "-1")

        await storage.wipe_identities()

        assert await storage.count_identities() == 0
        assert await storage.count_messages() == 0
        assert await storage.get_subscriptions("1") == []
        assert await storage.get_config("bot_chat_id") == "-1"


class TestStorageTraceEvents:
    """Tests for TraceEvent storage."""

    async def test_save_and_filter(self, storage):
        now = datetime.now(timezone.utc)
        for i, (event_type, actor) in enumerate(
            [("moderation_block", "moderation"), ("identity_created", "relay")]
        ):
            await storage.save_trace_event(
                TraceEvent(
                    id=f"t{i}",
                    event_type=event_type,
                    actor=actor,
                    data={"i": i},
                    timestamp=now + timedelta(seconds=i),
                )
            )

        events = await storage.get_trace_events()
        assert [e.id for e in events] == ["t1", "t0"]

        blocks = await storage.get_trace_events(event_types=["moderation_block"])
        assert [e.id for e in blocks] == ["t0"]

        relay_events = await storage.get_trace_events(actor="relay")
        assert [e.id for e in relay_events] == ["t1"]

        later = await storage.get_trace_events(after=now)
        assert [e.id for e in later] == ["t1"]

    async def test_clear(self, storage):
        await storage.create_identity("42", None)
        await storage.set_config("bot_chat_id", "-1")

        await storage.clear()

        assert await storage.count_identities() == 0
        assert await storage.get_config("bot_chat_id") is None
