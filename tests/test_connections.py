"""Tests for spectrebot.core.connections: one live chat connection per account."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from spectrebot.core.chat import ChatCredentials
from spectrebot.core.connections import ConnectionSupervisor, ConnectResult
from spectrebot.core.errors import ConnectFailed
from spectrebot.services.twitch_api import TokenRefreshResult
from tests.conftest import make_account, make_sender, wait_until


class TestConnect:
    @pytest.mark.asyncio
    async def test_connects_with_account_token(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))

        assert await supervisor.connect("alice") == ConnectResult.CONNECTED

        assert supervisor.is_connected("alice")
        channel, credentials = transport.attempts[0]
        assert channel == "alice"
        assert credentials == ChatCredentials(login="alice", token="access-1")

    @pytest.mark.asyncio
    async def test_second_connect_is_a_no_op(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))

        await supervisor.connect("alice")
        assert await supervisor.connect("#Alice") == ConnectResult.ALREADY_CONNECTED

        assert len(transport.attempts) == 1
        assert len(transport.live("alice")) == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))
        transport.gate = asyncio.Event()

        first = asyncio.create_task(supervisor.connect("alice"))
        second = asyncio.create_task(supervisor.connect("alice"))
        await asyncio.sleep(0.01)
        transport.gate.set()
        results = await asyncio.gather(first, second)

        assert sorted(r.value for r in results) == ["already-connected", "connected"]
        assert len(transport.attempts) == 1
        assert len(transport.live("alice")) == 1

    @pytest.mark.asyncio
    async def test_no_handle_until_transport_connects(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))
        transport.gate = asyncio.Event()

        task = asyncio.create_task(supervisor.connect("alice"))
        await asyncio.sleep(0.01)
        assert supervisor.get("alice") is None

        transport.gate.set()
        await task
        assert supervisor.get("alice") is not None

    @pytest.mark.asyncio
    async def test_transport_failure_raises_and_leaves_no_handle(
        self, supervisor, store, transport
    ):
        await store.upsert(make_account("alice"))
        transport.refuse.add("alice")

        with pytest.raises(ConnectFailed):
            await supervisor.connect("alice")

        assert supervisor.get("alice") is None
        transport.refuse.clear()
        assert await supervisor.connect("alice") == ConnectResult.CONNECTED

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_before_connecting(
        self, supervisor, store, transport, twitch_api
    ):
        await store.upsert(make_account("alice", expires_in=-30))

        await supervisor.connect("alice")

        assert twitch_api.refresh_calls == ["refresh-1"]
        assert transport.attempts[0][1].token == "access-new-1"

    @pytest.mark.asyncio
    async def test_expired_token_that_cannot_refresh(
        self, supervisor, store, transport, twitch_api
    ):
        await store.upsert(make_account("alice", expires_in=-30))
        twitch_api.refresh_results = [TokenRefreshResult(success=False, error="HTTP 400")]

        with pytest.raises(ConnectFailed):
            await supervisor.connect("alice")

        assert transport.attempts == []

    @pytest.mark.asyncio
    async def test_unknown_account(self, supervisor):
        with pytest.raises(ConnectFailed):
            await supervisor.connect("nobody")

    @pytest.mark.asyncio
    async def test_uncredentialed_account_needs_bot_identity(self, supervisor, store):
        await store.upsert(make_account("bob", expires_in=None))

        assert not supervisor.can_connect_without_credential
        with pytest.raises(ConnectFailed):
            await supervisor.connect("bob")

    @pytest.mark.asyncio
    async def test_uncredentialed_account_joins_as_bot(self, transport, scheduler, router, store):
        bot = ChatCredentials(login="spectrebot", token="bot-token")
        supervisor = ConnectionSupervisor(transport, scheduler, router, bot_credentials=bot)
        await store.upsert(make_account("bob", expires_in=None))

        await supervisor.connect("bob")

        assert transport.attempts == [("bob", bot)]


class TestReconnect:
    @pytest.mark.asyncio
    async def test_closes_old_connection_before_opening_new(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        old = transport.connections[0]

        assert await supervisor.reconnect("alice") == ConnectResult.CONNECTED

        assert old.closed
        assert len(transport.connections) == 2
        assert transport.live("alice") == [transport.connections[1]]
        assert supervisor.get("alice").connection is transport.connections[1]

    @pytest.mark.asyncio
    async def test_reconnect_uses_current_stored_token(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        store.rows["alice"].access_token = "access-2"

        await supervisor.reconnect("alice")

        assert transport.attempts[-1][1].token == "access-2"

    @pytest.mark.asyncio
    async def test_reconnect_without_existing_connection(self, supervisor, store):
        await store.upsert(make_account("alice"))

        assert await supervisor.reconnect("alice") == ConnectResult.CONNECTED
        assert supervisor.is_connected("alice")


class TestDisconnects:
    @pytest.mark.asyncio
    async def test_transport_loss_drops_handle_but_not_timer(
        self, supervisor, scheduler, store, transport
    ):
        await store.upsert(make_account("alice"))
        scheduler.schedule_refresh("alice", "refresh-1", 500)
        await supervisor.connect("alice")

        await transport.connections[0].drop()

        assert not supervisor.is_connected("alice")
        assert scheduler.pending("alice") is not None
        assert await supervisor.connect("alice") == ConnectResult.CONNECTED

    @pytest.mark.asyncio
    async def test_loss_of_stale_connection_is_ignored(self, supervisor, store, transport):
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        stale = transport.connections[0]
        await supervisor.reconnect("alice")

        await stale.on_disconnect(stale)

        assert supervisor.is_connected("alice")

    @pytest.mark.asyncio
    async def test_dropped_connection_is_rejoined(self, transport, scheduler, router, store):
        supervisor = ConnectionSupervisor(transport, scheduler, router, reconnect_delay=0.01)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")

        await transport.connections[0].drop()
        await wait_until(lambda: supervisor.is_connected("alice"))

        assert len(transport.connections) == 2
        assert transport.live("alice") == [transport.connections[1]]
        await supervisor.close_all()

    @pytest.mark.asyncio
    async def test_rejoin_backs_off_until_transport_recovers(
        self, transport, scheduler, router, store
    ):
        supervisor = ConnectionSupervisor(transport, scheduler, router, reconnect_delay=0.01)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        transport.refuse.add("alice")

        await transport.connections[0].drop()
        await wait_until(lambda: len(transport.attempts) >= 3)
        transport.refuse.clear()
        await wait_until(lambda: supervisor.is_connected("alice"), timeout=2.0)

        assert len(transport.live("alice")) == 1
        await supervisor.close_all()

    @pytest.mark.asyncio
    async def test_rejoin_stops_when_account_is_removed(
        self, transport, scheduler, router, store
    ):
        supervisor = ConnectionSupervisor(transport, scheduler, router, reconnect_delay=0.01)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        await store.delete_all()

        await transport.connections[0].drop()
        await asyncio.sleep(0.05)

        assert not supervisor.is_connected("alice")
        assert len(transport.attempts) == 1

    @pytest.mark.asyncio
    async def test_close_all_cancels_pending_rejoin(self, transport, scheduler, router, store):
        supervisor = ConnectionSupervisor(transport, scheduler, router, reconnect_delay=0.05)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")

        await transport.connections[0].drop()
        await supervisor.close_all()
        await asyncio.sleep(0.1)

        assert len(transport.attempts) == 1

    @pytest.mark.asyncio
    async def test_close_all(self, supervisor, store, transport):
        for name in ("alice", "bob"):
            await store.upsert(make_account(name))
            await supervisor.connect(name)

        assert await supervisor.close_all() == 2

        assert supervisor.connected_usernames == []
        assert all(c.closed for c in transport.connections)


class TestMessageDispatch:
    @pytest.mark.asyncio
    async def test_messages_reach_router_with_args(self, transport, scheduler, store):
        router = AsyncMock()
        supervisor = ConnectionSupervisor(transport, scheduler, router)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")
        sender = make_sender("viewer")

        await transport.connections[0].receive("!addaccount   abc  ", sender)

        router.dispatch.assert_awaited_once_with(
            transport.connections[0], "alice", "!addaccount   abc  ", sender, ["abc"]
        )

    @pytest.mark.asyncio
    async def test_streamer_own_messages_are_dispatched(self, transport, scheduler, store):
        router = AsyncMock()
        supervisor = ConnectionSupervisor(transport, scheduler, router)
        await store.upsert(make_account("alice"))
        await supervisor.connect("alice")

        await transport.connections[0].receive("!rank", make_sender("alice"))

        router.dispatch.assert_awaited_once()
