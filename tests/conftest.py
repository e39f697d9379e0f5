"""Shared test fixtures for the Spectre bot."""

from __future__ import annotations

import asyncio
import dataclasses
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from spectrebot.core.chat import ChatCredentials, ChatSender
from spectrebot.core.connections import ConnectionSupervisor
from spectrebot.core.errors import ConnectFailed, StoreError
from spectrebot.core.lifecycle import SessionCoordinator
from spectrebot.core.refresher import CredentialRefresher
from spectrebot.core.router import CommandRouter
from spectrebot.core.scheduler import RefreshScheduler
from spectrebot.services.twitch_api import TokenRefreshResult, TokenValidation
from spectrebot.shared.models.account import Account, normalize_username

# ---------------------------------------------------------------------------
# Shared helpers (plain functions, importable by test files)
# ---------------------------------------------------------------------------


def make_account(
    username: str = "alice",
    *,
    expires_in: float | None = 3600,
    player_id: str | None = "player-1",
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
) -> Account:
    """Account with a credential expiring in *expires_in* seconds.

    ``expires_in=None`` gives an account with no credential at all.
    """
    if expires_in is None:
        return Account(username=username, player_id=player_id)
    return Account(
        username=username,
        player_id=player_id,
        access_token=access_token,
        refresh_token=refresh_token,
        token_expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


def make_sender(login: str = "viewer", *, badges: dict[str, str] | None = None) -> ChatSender:
    return ChatSender(login=login, display_name=login.capitalize(), badges=badges or {})


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class InMemoryAccountStore:
    """Dict-backed stand-in for AccountRepository."""

    def __init__(self, accounts: list[Account] | None = None) -> None:
        self.rows: dict[str, Account] = {}
        self.fail_updates = 0
        self.fail_lists = False
        self.credential_updates: list[tuple[str, str, str, datetime]] = []
        for account in accounts or []:
            self.rows[account.username] = dataclasses.replace(account)

    async def find_by_username(self, username: str) -> Account | None:
        row = self.rows.get(normalize_username(username))
        return dataclasses.replace(row) if row else None

    async def list_accounts(self) -> list[Account]:
        if self.fail_lists:
            raise StoreError("database unavailable")
        return [dataclasses.replace(a) for _, a in sorted(self.rows.items())]

    async def upsert(self, account: Account) -> None:
        existing = self.rows.get(account.username)
        row = dataclasses.replace(account)
        if existing is not None and row.player_id is None:
            row.player_id = existing.player_id
        self.rows[account.username] = row

    async def update_credential(
        self, username: str, access_token: str, refresh_token: str, expires_at: datetime
    ) -> None:
        if self.fail_updates:
            self.fail_updates -= 1
            raise StoreError("write failed", username=username)
        row = self.rows.get(username)
        if row is None:
            raise StoreError("credential update matched no account", username=username)
        row.access_token = access_token
        row.refresh_token = refresh_token
        row.token_expires_at = expires_at
        self.credential_updates.append((username, access_token, refresh_token, expires_at))

    async def link_player(self, username: str, player_id: str) -> Account:
        username = normalize_username(username)
        row = self.rows.setdefault(username, Account(username=username))
        row.player_id = player_id
        return dataclasses.replace(row)

    async def delete_all(self) -> int:
        count = len(self.rows)
        self.rows.clear()
        return count


class FakeTwitchAPI:
    """Scriptable stand-in for the OAuth half of TwitchAPIClient."""

    def __init__(self) -> None:
        self.refresh_results: list[TokenRefreshResult] = []
        self.validations: dict[str, TokenValidation] = {}
        self.refresh_calls: list[str] = []
        self.validate_calls: list[str] = []
        self.refresh_gate: asyncio.Event | None = None
        self.refresh_expires_in = 14400
        self._issued = 0

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        self.refresh_calls.append(refresh_token)
        if self.refresh_gate is not None:
            await self.refresh_gate.wait()
        if self.refresh_results:
            return self.refresh_results.pop(0)
        self._issued += 1
        return TokenRefreshResult(
            success=True,
            access_token=f"access-new-{self._issued}",
            refresh_token=f"refresh-new-{self._issued}",
            expires_in=self.refresh_expires_in,
        )

    async def validate_token(self, access_token: str) -> TokenValidation:
        self.validate_calls.append(access_token)
        return self.validations.get(
            access_token, TokenValidation(valid=True, login=None, expires_in=3600)
        )


class FakeConnection:
    def __init__(self, channel, login, on_message, on_disconnect) -> None:
        self.channel = channel
        self.login = login
        self.on_message = on_message
        self.on_disconnect = on_disconnect
        self.sent: list[str] = []
        self.closed = False

    @property
    def connected(self) -> bool:
        return not self.closed

    def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self) -> None:
        self.closed = True

    async def receive(self, text: str, sender: ChatSender | None = None) -> None:
        """Deliver a chat line as if it came from the server."""
        await self.on_message(self, self.channel, sender or make_sender(), text)

    async def drop(self) -> None:
        """Simulate the server closing the socket."""
        self.closed = True
        await self.on_disconnect(self)


class FakeTransport:
    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.attempts: list[tuple[str, ChatCredentials]] = []
        self.refuse: set[str] = set()
        self.gate: asyncio.Event | None = None

    async def connect(self, channel, credentials, *, on_message, on_disconnect):
        self.attempts.append((channel, credentials))
        if self.gate is not None:
            await self.gate.wait()
        if channel in self.refuse:
            raise ConnectFailed("connection refused", username=channel)
        connection = FakeConnection(channel, credentials.login, on_message, on_disconnect)
        self.connections.append(connection)
        return connection

    def live(self, channel: str) -> list[FakeConnection]:
        return [c for c in self.connections if c.channel == channel and not c.closed]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryAccountStore:
    return InMemoryAccountStore()


@pytest.fixture
def twitch_api() -> FakeTwitchAPI:
    return FakeTwitchAPI()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def router() -> CommandRouter:
    return CommandRouter()


@pytest_asyncio.fixture
async def scheduler(store, twitch_api):
    scheduler = RefreshScheduler(store, CredentialRefresher(twitch_api), twitch_api)
    yield scheduler
    await scheduler.close()


@pytest_asyncio.fixture
async def supervisor(transport, scheduler, router):
    supervisor = ConnectionSupervisor(transport, scheduler, router)
    yield supervisor
    await supervisor.close_all()


@pytest.fixture
def coordinator(store, scheduler, supervisor) -> SessionCoordinator:
    return SessionCoordinator(store, scheduler, supervisor)
