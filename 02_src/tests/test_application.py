"""Tests for Application."""

import pytest

from conftest import FakeConnection
from relay.app import Application
from relay.config import RelaySettings
from relay.models import DeliveryStatus, EventType
from relay.notifications import (
    NullBotChannel,
    NullPushSender,
    TelegramBotChannel,
    WebPushSender,
)


def _app(**settings) -> Application:
    return Application(settings=RelaySettings(db_path=":memory:", **settings))


class TestApplicationStart:
    """Tests for Application.start()."""

    @pytest.mark.asyncio
    async def test_start_initializes_components(self):
        """Test that start initializes all components."""
        app = _app()
        await app.start()

        assert app._storage is not None
        assert app._registry is not None
        assert app._tracker is not None
        assert app._moderation is not None
        assert app._dispatcher is not None
        assert app._engine is not None

        await app.stop()

    @pytest.mark.asyncio
    async def test_start_wires_shared_components(self):
        """Test that components share one storage and one registry."""
        app = _app()
        await app.start()

        assert app._tracker._storage is app._storage
        assert app._moderation._storage is app._storage
        assert app._moderation._registry is app._registry
        assert app._engine._registry is app._registry
        assert app._engine._dispatcher is app._dispatcher

        await app.stop()

    @pytest.mark.asyncio
    async def test_start_creates_database_tables(self):
        """Test that start creates database tables."""
        app = _app()
        await app.start()

        assert await app.storage.count_identities() == 0

        await app.stop()

    @pytest.mark.asyncio
    async def test_bot_channel_selection(self):
        without_token = _app()
        await without_token.start()
        assert isinstance(without_token._dispatcher._bot, NullBotChannel)
        await without_token.stop()

        with_token = _app(telegram_bot_token="TOKEN")
        await with_token.start()
        assert isinstance(with_token._dispatcher._bot, TelegramBotChannel)
        await with_token.stop()

    @pytest.mark.asyncio
    async def test_push_sender_selection(self):
        without_key = _app()
        await without_key.start()
        assert isinstance(without_key._dispatcher._push, NullPushSender)
        await without_key.stop()

        with_key = _app(vapid_private_key="PRIVATE")
        await with_key.start()
        assert isinstance(with_key._dispatcher._push, WebPushSender)
        await with_key.stop()

    @pytest.mark.asyncio
    async def test_operator_reply_status_from_settings(self):
        app = _app(operator_reply_status="read")
        await app.start()

        message = await app.engine.reply_from_operator("42", "hello")
        assert message.status is DeliveryStatus.READ

        await app.stop()


class TestApplicationProperties:
    def test_properties_before_start(self):
        app = _app()
        for name in ("storage", "registry", "moderation", "engine"):
            with pytest.raises(RuntimeError):
                getattr(app, name)


class TestApplicationLifecycle:
    @pytest.mark.asyncio
    async def test_stop_closes_connections(self):
        app = _app()
        await app.start()
        conn = FakeConnection()
        app.engine.connect(conn)
        await app.engine.join(conn.connection_id, "42", "shop")

        await app.stop()

        assert conn.closed

    @pytest.mark.asyncio
    async def test_reset_clears_data(self):
        app = _app()
        await app.start()
        conn = FakeConnection()
        app.engine.connect(conn)
        await app.engine.join(conn.connection_id, "42", "shop")
        assert conn.of_type(EventType.JOIN_ACCEPTED)

        await app.reset()

        assert await app.storage.count_identities() == 0
        assert app.registry.connection_count() == 0
        await app.stop()
