"""Tests for ModerationService."""

import uuid
from datetime import datetime, timezone

import pytest

from conftest import FakeConnection
from relay.errors import IdentityNotFound, InvalidMerge
from relay.models import (
    DeliveryStatus,
    Direction,
    EventType,
    Message,
    MessageKind,
    Subscription,
)


async def _seed(storage, identity_id: str, messages: int = 0, owner_tag="shop"):
    await storage.create_identity(identity_id, owner_tag)
    for i in range(messages):
        await storage.save_message(
            Message(
                id=str(uuid.uuid4()),
                identity_id=identity_id,
                content=f"message {i}",
                kind=MessageKind.TEXT,
                direction=Direction.FROM_USER,
                status=DeliveryStatus.SENT,
                created_at=datetime.now(timezone.utc),
            )
        )


async def _join(registry, identity_id: str) -> FakeConnection:
    conn = FakeConnection()
    registry.register(conn)
    await registry.join_user(conn.connection_id, identity_id)
    return conn


async def _operator(registry) -> FakeConnection:
    conn = FakeConnection()
    registry.register(conn)
    await registry.join_operator(conn.connection_id)
    return conn


class TestMute:
    async def test_mute_sets_flag_only(self, moderation, storage, registry):
        await _seed(storage, "42", 2)
        user = await _join(registry, "42")
        operator = await _operator(registry)

        identity = await moderation.mute("42")

        assert identity.muted is True
        assert not user.closed
        assert registry.is_online("42")
        assert len(await storage.get_messages("42")) == 2
        updated = operator.of_type(EventType.IDENTITY_UPDATED)
        assert updated[0].data["identity"]["muted"] is True

    async def test_unmute(self, moderation, storage):
        await _seed(storage, "42")
        await moderation.mute("42")
        identity = await moderation.mute("42", muted=False)
        assert identity.muted is False

    async def test_mute_unknown(self, moderation):
        with pytest.raises(IdentityNotFound):
            await moderation.mute("42")


class TestBlock:
    async def test_block_closes_connections_and_purges(
        self, moderation, storage, registry
    ):
        """Blocking 42 with two open connections."""
        await _seed(storage, "42", 3)
        first = await _join(registry, "42")
        second = await _join(registry, "42")
        operator = await _operator(registry)

        removed = await moderation.block("42")

        assert removed == 3
        for conn in (first, second):
            assert conn.closed
            logout = conn.of_type(EventType.LOGOUT)
            assert logout[0].data["reason"] == "blocked"
        assert not registry.is_online("42")
        assert await storage.get_messages("42") == []
        assert (await storage.get_identity("42")).blocked is True

        removed_events = operator.of_type(EventType.IDENTITY_REMOVED)
        assert removed_events[0].data == {"identity_id": "42", "reason": "blocked"}
        presence = operator.of_type(EventType.PRESENCE_CHANGED)
        assert presence[-1].data == {"identity_id": "42", "online": False}

    async def test_block_unknown_leaves_shell(self, moderation, storage):
        assert await moderation.block("42") == 0
        assert (await storage.get_identity("42")).blocked is True

    async def test_block_is_tracked(self, moderation, storage):
        await _seed(storage, "42", 1)
        await moderation.block("42")

        events = await storage.get_trace_events(event_types=["moderation_block"])
        assert events[0].data["messages_removed"] == 1

    async def test_unblock(self, moderation, storage):
        await moderation.block("42")
        identity = await moderation.unblock("42")
        assert identity.blocked is False

    async def test_unblock_unknown(self, moderation):
        with pytest.raises(IdentityNotFound):
            await moderation.unblock("42")


class TestDelete:
    async def test_delete_removes_record(self, moderation, storage, registry):
        await _seed(storage, "42", 2)
        user = await _join(registry, "42")

        assert await moderation.delete_all_data("42") == 2

        assert await storage.get_identity("42") is None
        assert user.closed
        assert user.of_type(EventType.LOGOUT)[0].data["reason"] == "deleted"

    async def test_delete_unknown(self, moderation):
        with pytest.raises(IdentityNotFound):
            await moderation.delete_all_data("42")

    async def test_deleted_id_can_rejoin_later(self, moderation, storage):
        await _seed(storage, "42")
        await moderation.delete_all_data("42")
        created = await storage.create_identity("42", "shop")
        assert created.blocked is False


class TestMerge:
    async def test_merge_moves_history(self, moderation, storage, registry):
        """Merging 42 (3 messages) into 99 (1 message) leaves 4 on 99."""
        await _seed(storage, "42", 3)
        await _seed(storage, "99", 1)
        source_conn = await _join(registry, "42")
        target_conn = await _join(registry, "99")
        operator = await _operator(registry)

        result = await moderation.merge("42", "99")

        assert result.moved_messages == 3
        assert len(await storage.get_messages("99")) == 4
        assert await storage.get_identity("42") is None

        assert source_conn.closed
        logout = source_conn.of_type(EventType.LOGOUT)[0]
        assert logout.data == {"reason": "merged", "identity_id": "99"}
        assert not target_conn.closed
        assert target_conn.of_type(EventType.READ_STATE)

        removed = operator.of_type(EventType.IDENTITY_REMOVED)[0]
        assert removed.data["merged_into"] == "99"

    async def test_merge_moves_subscriptions(self, moderation, storage):
        await _seed(storage, "42")
        await storage.save_subscription(
            Subscription(
                id="",
                identity_id="42",
                endpoint="https://push/a",
                created_at=datetime.now(timezone.utc),
            )
        )

        result = await moderation.merge("42", "99")

        assert result.moved_subscriptions == 1
        assert result.target_created is True
        assert len(await storage.get_subscriptions("99")) == 1

    async def test_merge_into_itself(self, moderation, storage):
        await _seed(storage, "42")
        with pytest.raises(InvalidMerge):
            await moderation.merge("42", "42")

    async def test_merge_unknown_source(self, moderation):
        with pytest.raises(IdentityNotFound):
            await moderation.merge("42", "99")


class TestWipe:
    async def test_wipe_all(self, moderation, storage, registry):
        """Five users connected plus an operator; everything goes."""
        users = []
        for i in range(5):
            await _seed(storage, str(100000 + i), 2)
            users.append(await _join(registry, str(100000 + i)))
            await storage.save_subscription(
                Subscription(
                    id="",
                    identity_id=str(100000 + i),
                    endpoint=f"https://push/{i}",
                    created_at=datetime.now(timezone.utc),
                )
            )
        operator = await _operator(registry)
        await storage.set_config("bot_chat_id", "-1")

        closed = await moderation.wipe_all()

        assert closed == 6
        for conn in users + [operator]:
            assert conn.closed
            assert conn.of_type(EventType.RESET)
        assert registry.online() == []
        assert await storage.count_identities() == 0
        assert await storage.count_messages() == 0
        for i in range(5):
            assert await storage.get_subscriptions(str(100000 + i)) == []
        assert await storage.get_config("bot_chat_id") == "-1"


class TestStats:
    async def test_stats(self, moderation, storage, registry):
        await _seed(storage, "1", 2)
        await _seed(storage, "2", 1)
        await _join(registry, "1")

        assert await moderation.stats() == {"identities": 2, "messages": 3, "online": 1}
