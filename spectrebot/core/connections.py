"""Chat connection supervision: one live connection per account."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from spectrebot.core.chat import ChatConnection, ChatCredentials, ChatSender, ChatTransport
from spectrebot.core.errors import ConnectFailed, RefreshFailed, StoreError
from spectrebot.core.router import split_command
from spectrebot.shared.models.account import normalize_username

if TYPE_CHECKING:
    from spectrebot.core.router import CommandRouter
    from spectrebot.core.scheduler import RefreshScheduler

LOGGER = logging.getLogger("spectrebot.connections")


class ConnectResult(enum.Enum):
    CONNECTED = "connected"
    ALREADY_CONNECTED = "already-connected"


@dataclass
class ConnectionHandle:
    username: str
    channel: str
    connection: ChatConnection = field(repr=False)
    connected: bool = True
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ConnectionSupervisor:
    """Owns the table of live chat connections, keyed by username.

    Handles are only created after the transport reports connected, and
    concurrent connect attempts for one account share a single attempt.
    """

    def __init__(
        self,
        transport: ChatTransport,
        scheduler: RefreshScheduler,
        router: CommandRouter,
        *,
        bot_credentials: ChatCredentials | None = None,
        reconnect_delay: float | None = 5.0,
        max_reconnect_delay: float = 300.0,
    ) -> None:
        self.transport = transport
        self.scheduler = scheduler
        self.router = router
        self.bot_credentials = bot_credentials
        # None turns off rejoining after the server drops a connection
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._handles: dict[str, ConnectionHandle] = {}
        self._connecting: dict[str, asyncio.Task] = {}
        self._rejoining: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, username: str) -> ConnectionHandle | None:
        return self._handles.get(normalize_username(username))

    def is_connected(self, username: str) -> bool:
        handle = self.get(username)
        return handle is not None and handle.connected

    @property
    def connected_usernames(self) -> list[str]:
        return sorted(u for u, h in self._handles.items() if h.connected)

    @property
    def can_connect_without_credential(self) -> bool:
        """True when a shared bot identity can join channels that never authorized."""
        return self.bot_credentials is not None

    # ------------------------------------------------------------------
    # Connect / reconnect
    # ------------------------------------------------------------------

    async def connect(self, username: str) -> ConnectResult:
        """Open the chat connection for *username* unless one is already live.

        Raises ConnectFailed if the transport cannot be established or no
        usable credential exists, and StoreError if the account cannot be read.
        """
        username = normalize_username(username)

        handle = self._handles.get(username)
        if handle is not None and handle.connected:
            LOGGER.info(f"[{username}] Bot is already connected")
            return ConnectResult.ALREADY_CONNECTED

        task = self._connecting.get(username)
        if task is not None:
            await asyncio.shield(task)
            return ConnectResult.ALREADY_CONNECTED

        task = asyncio.create_task(self._open(username), name=f"connect:{username}")
        self._connecting[username] = task
        task.add_done_callback(lambda t: self._drop_connecting(username, t))
        await asyncio.shield(task)
        return ConnectResult.CONNECTED

    def _drop_connecting(self, username: str, task: asyncio.Task) -> None:
        if self._connecting.get(username) is task:
            del self._connecting[username]
        if not task.cancelled():
            # Mark the exception as retrieved; awaiting callers already saw it
            task.exception()

    async def _open(self, username: str) -> None:
        credentials = await self._resolve_credentials(username)
        try:
            connection = await self.transport.connect(
                username,
                credentials,
                on_message=self._on_message,
                on_disconnect=self._on_disconnect,
            )
        except ConnectFailed as e:
            LOGGER.error(f"[{username}] Error connecting bot: {e.reason}")
            raise

        self._handles[username] = ConnectionHandle(
            username=username, channel=connection.channel, connection=connection
        )
        LOGGER.info(f"[{username}] Bot connected to #{connection.channel} as {credentials.login}")

    async def _resolve_credentials(self, username: str) -> ChatCredentials:
        try:
            account = await self.scheduler.ensure_fresh(username)
        except RefreshFailed as e:
            raise ConnectFailed(f"no valid token ({e.reason})", username=username) from e

        if account is None:
            raise ConnectFailed("account is not linked", username=username)
        if account.has_credential:
            assert account.access_token is not None
            return ChatCredentials(login=account.username, token=account.access_token)
        if self.bot_credentials is not None:
            return self.bot_credentials
        raise ConnectFailed("no credential available", username=username)

    async def reconnect(self, username: str) -> ConnectResult:
        """Tear down any existing connection, then connect again.

        The old socket is closed before the new one is opened, but Twitch may
        still show the old session for a moment after close. Two sessions for
        one account can therefore overlap briefly; this is a known race.
        """
        username = normalize_username(username)

        pending = self._connecting.get(username)
        if pending is not None:
            try:
                await asyncio.shield(pending)
            except (ConnectFailed, StoreError):
                pass

        await self.disconnect(username)
        result = await self.connect(username)
        LOGGER.info(f"[{username}] Bot reconnected")
        return result

    async def disconnect(self, username: str) -> bool:
        username = normalize_username(username)
        self._cancel_rejoin(username)
        handle = self._handles.pop(username, None)
        if handle is None:
            return False
        handle.connected = False
        await handle.connection.close()
        LOGGER.info(f"[{username}] Bot disconnected from #{handle.channel}")
        return True

    async def close_all(self) -> int:
        """Close every connection and abandon in-flight connects and rejoins."""
        for task in list(self._rejoining.values()):
            task.cancel()
        self._rejoining.clear()
        for task in list(self._connecting.values()):
            task.cancel()
        self._connecting.clear()

        handles = list(self._handles.values())
        self._handles.clear()
        for handle in handles:
            handle.connected = False
        results = await asyncio.gather(
            *(h.connection.close() for h in handles), return_exceptions=True
        )
        for handle, result in zip(handles, results):
            if isinstance(result, Exception):
                LOGGER.warning(f"[{handle.username}] Error closing connection: {result}")
        if handles:
            LOGGER.info(f"Closed {len(handles)} chat connections")
        return len(handles)

    # ------------------------------------------------------------------
    # Transport callbacks
    # ------------------------------------------------------------------

    async def _on_disconnect(self, connection: ChatConnection) -> None:
        username = normalize_username(connection.channel)
        handle = self._handles.get(username)
        if handle is None or handle.connection is not connection:
            return
        handle.connected = False
        del self._handles[username]
        # Refresh scheduling is untouched
        LOGGER.warning(f"[{username}] Chat connection lost")
        if self.reconnect_delay is not None and username not in self._rejoining:
            task = asyncio.create_task(self._rejoin(username), name=f"rejoin:{username}")
            self._rejoining[username] = task
            task.add_done_callback(lambda t: self._drop_rejoin(username, t))

    async def _rejoin(self, username: str) -> None:
        """Reopen a dropped connection, backing off until it comes back.

        Gives up once the account is gone from the store.
        """
        assert self.reconnect_delay is not None
        delay = self.reconnect_delay
        while True:
            await asyncio.sleep(delay)
            try:
                if await self.scheduler.store.find_by_username(username) is None:
                    LOGGER.info(f"[{username}] Account removed, not rejoining")
                    return
                await self.connect(username)
                LOGGER.info(f"[{username}] Rejoined chat after connection loss")
                return
            except (ConnectFailed, StoreError) as e:
                delay = min(delay * 2, self.max_reconnect_delay)
                LOGGER.warning(f"[{username}] Rejoin failed ({e.reason}), next try in {delay:.0f}s")

    def _cancel_rejoin(self, username: str) -> None:
        task = self._rejoining.pop(username, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _drop_rejoin(self, username: str, task: asyncio.Task) -> None:
        if self._rejoining.get(username) is task:
            del self._rejoining[username]

    async def _on_message(
        self, connection: ChatConnection, channel: str, sender: ChatSender, text: str
    ) -> None:
        _, args = split_command(text)
        await self.router.dispatch(connection, channel, text, sender, args)
