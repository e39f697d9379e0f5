"""Twitch chat transport over the IRC websocket gateway.

A connection authenticates once, at connect time, with ``PASS oauth:<token>``.
There is no in-place credential swap: a new token means a new connection.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

import aiohttp

from spectrebot.core.errors import ConnectFailed
from spectrebot.shared.models.account import normalize_username

LOGGER = logging.getLogger("spectrebot.chat")

IRC_URL = "wss://irc-ws.chat.twitch.tv:443"

_AUTH_FAILURES = ("Login authentication failed", "Improperly formatted auth", "Login unsuccessful")

_TAG_ESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


@dataclass
class ChatCredentials:
    login: str
    token: str = field(repr=False)


@dataclass
class ChatSender:
    """Metadata about the author of a chat message."""

    login: str
    display_name: str
    badges: dict[str, str] = field(default_factory=dict)
    message_id: str | None = None
    user_id: str | None = None

    @property
    def is_broadcaster(self) -> bool:
        return "broadcaster" in self.badges

    @property
    def is_moderator(self) -> bool:
        return "moderator" in self.badges or self.is_broadcaster


@dataclass
class IRCMessage:
    command: str
    params: list[str] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    prefix: str | None = None

    @property
    def nick(self) -> str | None:
        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0]


def _unescape_tag(value: str) -> str:
    out: list[str] = []
    chars = iter(value)
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_TAG_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def parse_irc_line(line: str) -> IRCMessage:
    """Parse a single IRC line with optional IRCv3 tags."""
    tags: dict[str, str] = {}
    prefix: str | None = None
    rest = line.rstrip("\r\n")

    if rest.startswith("@"):
        raw_tags, _, rest = rest[1:].partition(" ")
        for item in raw_tags.split(";"):
            key, _, value = item.partition("=")
            tags[key] = _unescape_tag(value)

    if rest.startswith(":"):
        prefix, _, rest = rest[1:].partition(" ")

    trailing: str | None = None
    if " :" in rest:
        rest, _, trailing = rest.partition(" :")
    elif rest.startswith(":"):
        trailing = rest[1:]
        rest = ""

    parts = rest.split()
    command = parts[0].upper() if parts else ""
    params = parts[1:]
    if trailing is not None:
        params.append(trailing)

    return IRCMessage(command=command, params=params, tags=tags, prefix=prefix)


def parse_badges(raw: str) -> dict[str, str]:
    """``moderator/1,subscriber/12`` -> ``{"moderator": "1", "subscriber": "12"}``"""
    badges: dict[str, str] = {}
    for item in raw.split(","):
        if not item:
            continue
        name, _, version = item.partition("/")
        badges[name] = version
    return badges


def sender_from_message(message: IRCMessage) -> ChatSender:
    login = message.nick or message.tags.get("login", "")
    return ChatSender(
        login=login.lower(),
        display_name=message.tags.get("display-name") or login,
        badges=parse_badges(message.tags.get("badges", "")),
        message_id=message.tags.get("id") or None,
        user_id=message.tags.get("user-id") or None,
    )


class ChatConnection(Protocol):
    channel: str
    login: str

    @property
    def connected(self) -> bool: ...

    def send(self, text: str) -> None: ...

    async def close(self) -> None: ...


MessageCallback = Callable[[ChatConnection, str, ChatSender, str], Awaitable[None]]
DisconnectCallback = Callable[[ChatConnection], Awaitable[None]]


class ChatTransport(Protocol):
    async def connect(
        self,
        channel: str,
        credentials: ChatCredentials,
        *,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> ChatConnection: ...


class TwitchChatConnection:
    """One authenticated IRC session joined to a single channel."""

    def __init__(
        self,
        ws: aiohttp.ClientWebSocketResponse,
        channel: str,
        login: str,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        self.channel = channel
        self.login = login
        self._ws = ws
        self._on_message = on_message
        self._on_disconnect = on_disconnect
        self._closing = False
        self._sends: set[asyncio.Task] = set()
        self._handlers: set[asyncio.Task] = set()
        self._reader: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return not self._closing and not self._ws.closed

    def start(self) -> None:
        self._reader = asyncio.create_task(self._read_loop(), name=f"chat-reader:{self.channel}")

    def send(self, text: str) -> None:
        """Queue a chat message. Best effort; failures are only logged."""
        if not self.connected:
            LOGGER.warning(f"[{self.channel}] Dropping message, connection is closed")
            return
        task = asyncio.create_task(self._send_raw(f"PRIVMSG #{self.channel} :{text}"))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    async def _send_raw(self, line: str) -> None:
        try:
            await self._ws.send_str(line)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            LOGGER.warning(f"[{self.channel}] Send failed: {type(e).__name__}: {e}")

    async def close(self) -> None:
        """Flush queued messages and close the socket."""
        if self._closing:
            return
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)
        self._closing = True
        await self._ws.close()
        if self._reader is not None and self._reader is not asyncio.current_task():
            self._reader.cancel()
        LOGGER.debug(f"[{self.channel}] Chat connection closed")

    async def _read_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    for line in msg.data.split("\r\n"):
                        if line:
                            await self._handle_line(line)
                elif msg.type in (aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            LOGGER.error(f"[{self.channel}] Chat reader error: {type(e).__name__}: {e}")

        if not self._closing:
            self._closing = True
            await self._on_disconnect(self)

    async def _handle_line(self, line: str) -> None:
        message = parse_irc_line(line)

        if message.command == "PING":
            await self._send_raw(f"PONG :{message.params[-1] if message.params else ''}")
        elif message.command == "RECONNECT":
            LOGGER.info(f"[{self.channel}] Server requested reconnect")
            await self._ws.close()
        elif message.command == "PRIVMSG" and len(message.params) >= 2:
            channel = normalize_username(message.params[0])
            sender = sender_from_message(message)
            task = asyncio.create_task(
                self._on_message(self, channel, sender, message.params[1])
            )
            self._handlers.add(task)
            task.add_done_callback(self._handlers.discard)


class TwitchChatTransport:
    """Opens per-channel IRC websocket connections."""

    def __init__(
        self,
        url: str = IRC_URL,
        *,
        session: aiohttp.ClientSession | None = None,
        connect_timeout: float = 10.0,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self._session = session

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def connect(
        self,
        channel: str,
        credentials: ChatCredentials,
        *,
        on_message: MessageCallback,
        on_disconnect: DisconnectCallback,
    ) -> TwitchChatConnection:
        channel = normalize_username(channel)
        login = normalize_username(credentials.login)
        token = credentials.token.removeprefix("oauth:")

        try:
            ws = await self._get_session().ws_connect(self.url)
        except (aiohttp.ClientError, OSError) as e:
            raise ConnectFailed(f"websocket connect failed: {e}", username=channel) from e

        try:
            await ws.send_str("CAP REQ :twitch.tv/tags twitch.tv/commands")
            await ws.send_str(f"PASS oauth:{token}")
            await ws.send_str(f"NICK {login}")
            await asyncio.wait_for(self._handshake(ws, channel), timeout=self.connect_timeout)
        except BaseException as e:
            await ws.close()
            if isinstance(e, ConnectFailed):
                e.username = channel
                raise
            if isinstance(e, asyncio.TimeoutError):
                raise ConnectFailed("timed out joining channel", username=channel) from e
            if isinstance(e, (aiohttp.ClientError, ConnectionError)):
                raise ConnectFailed(f"handshake failed: {e}", username=channel) from e
            raise

        connection = TwitchChatConnection(ws, channel, login, on_message, on_disconnect)
        connection.start()
        return connection

    async def _handshake(self, ws: aiohttp.ClientWebSocketResponse, channel: str) -> None:
        """Wait for the welcome numeric, join, and wait for the join echo."""
        async for msg in ws:
            if msg.type != aiohttp.WSMsgType.TEXT:
                break
            for line in msg.data.split("\r\n"):
                if not line:
                    continue
                message = parse_irc_line(line)
                if message.command == "PING":
                    await ws.send_str(f"PONG :{message.params[-1] if message.params else ''}")
                elif message.command == "NOTICE" and any(
                    failure in message.params[-1] for failure in _AUTH_FAILURES
                ):
                    raise ConnectFailed(f"authentication rejected: {message.params[-1]}")
                elif message.command == "001":
                    await ws.send_str(f"JOIN #{channel}")
                elif message.command == "JOIN" and message.params and (
                    normalize_username(message.params[0]) == channel
                ):
                    return
        raise ConnectFailed("connection closed during handshake")

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
