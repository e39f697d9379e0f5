"""Per-account token refresh scheduling.

Each linked account has at most one pending refresh timer. Arming a new
timer always cancels the previous one, and concurrent refresh requests for
the same account share one in-flight exchange so two tasks never race to
rotate the same refresh token.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from spectrebot.core.errors import RefreshFailed, StoreError, ValidationFailed
from spectrebot.core.refresher import CredentialRefresher, RefreshedCredential
from spectrebot.shared.models.account import Account, normalize_username

if TYPE_CHECKING:
    from spectrebot.services.twitch_api import TwitchAPIClient
    from spectrebot.shared.repositories.account import AccountStore

LOGGER = logging.getLogger("spectrebot.scheduler")

RefreshListener = Callable[[str], Awaitable[None]]


@dataclass
class PendingRefresh:
    """A single armed refresh timer."""

    username: str
    refresh_token: str = field(repr=False)
    delay: float
    due_at: datetime
    task: asyncio.Task = field(repr=False)


class RefreshScheduler:
    def __init__(
        self,
        store: AccountStore,
        refresher: CredentialRefresher,
        twitch_api: TwitchAPIClient,
        *,
        refresh_margin: float = 300,
        min_delay: float = 60,
        retry_delay: float = 60,
    ) -> None:
        self.store = store
        self.refresher = refresher
        self.twitch_api = twitch_api
        self.refresh_margin = refresh_margin
        self.min_delay = min_delay
        self.retry_delay = retry_delay

        # Set by the lifecycle coordinator; called after every successful refresh
        self.on_credential_refreshed: RefreshListener | None = None

        self._pending: dict[str, PendingRefresh] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._expiry: dict[str, datetime] = {}
        self._background: set[asyncio.Task] = set()
        self._sweep_task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def pending(self, username: str) -> PendingRefresh | None:
        return self._pending.get(normalize_username(username))

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def expires_at(self, username: str) -> datetime | None:
        """Last expiry confirmed by the provider and saved to the store."""
        return self._expiry.get(normalize_username(username))

    def compute_delay(self, expires_in: float) -> float:
        """Seconds until the next refresh for a token with *expires_in* left."""
        return max(expires_in - self.refresh_margin, self.min_delay)

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    def schedule_refresh(self, username: str, refresh_token: str, delay: float) -> PendingRefresh:
        """Arm the refresh timer for *username*, replacing any existing one."""
        username = normalize_username(username)
        self.cancel(username)

        if delay <= 0:
            LOGGER.warning(f"[{username}] Refresh time invalid, retrying in {self.retry_delay}s.")
            delay = self.retry_delay

        task = asyncio.create_task(
            self._run_timer(username, refresh_token, delay), name=f"refresh:{username}"
        )
        entry = PendingRefresh(
            username=username,
            refresh_token=refresh_token,
            delay=delay,
            due_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
            task=task,
        )
        self._pending[username] = entry
        LOGGER.info(f"[{username}] Next token refresh scheduled in {delay / 60:.2f} minutes.")
        return entry

    def cancel(self, username: str) -> bool:
        """Cancel the pending timer for *username*. Returns True if one existed."""
        entry = self._pending.pop(normalize_username(username), None)
        if entry is None:
            return False
        if entry.task is not asyncio.current_task():
            entry.task.cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending timer and in-flight refresh."""
        count = len(self._pending)
        for username in list(self._pending):
            self.cancel(username)
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        self._expiry.clear()
        if count:
            LOGGER.info(f"Cancelled {count} pending token refreshes")
        return count

    async def _run_timer(self, username: str, refresh_token: str, delay: float) -> None:
        await asyncio.sleep(delay)

        entry = self._pending.get(username)
        if entry is not None and entry.task is asyncio.current_task():
            del self._pending[username]

        try:
            await self.refresh_now(username, refresh_token)
        except StoreError:
            # Already logged; a retry has been armed
            pass
        except Exception as e:
            LOGGER.exception(f"[{username}] Unexpected error in refresh timer: {e}")

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh_now(
        self, username: str, refresh_token: str, *, notify: bool = True
    ) -> RefreshedCredential | None:
        """Refresh immediately, joining an in-flight refresh if there is one.

        Returns the new credential, or None when the exchange failed and a
        retry has been scheduled, or when a reset cancelled the exchange.
        Raises StoreError if the new credential could not be saved.
        """
        username = normalize_username(username)
        task = self._inflight.get(username)
        if task is None:
            task = asyncio.create_task(
                self._do_refresh(username, refresh_token, notify), name=f"refresh-now:{username}"
            )
            self._inflight[username] = task
            task.add_done_callback(lambda t: self._drop_inflight(username, t))
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and current is not None and not current.cancelling():
                # The shared refresh was dropped by cancel_all, not the caller
                LOGGER.info(f"[{username}] In-flight refresh was cancelled by a reset")
                return None
            raise

    def _drop_inflight(self, username: str, task: asyncio.Task) -> None:
        if self._inflight.get(username) is task:
            del self._inflight[username]

    async def _do_refresh(
        self, username: str, refresh_token: str, notify: bool
    ) -> RefreshedCredential | None:
        try:
            credential = await self.refresher.refresh(username, refresh_token)
        except RefreshFailed as e:
            LOGGER.error(f"[{username}] Token refresh failed: {e.reason}")
            self.schedule_refresh(username, refresh_token, self.retry_delay)
            return None

        expires_at = datetime.now(timezone.utc) + timedelta(seconds=credential.expires_in)
        try:
            await self.store.update_credential(
                username, credential.access_token, credential.refresh_token, expires_at
            )
        except StoreError as e:
            LOGGER.error(f"[{username}] Refreshed token could not be saved: {e.reason}")
            # The provider may already have rotated the old refresh token
            self.schedule_refresh(username, credential.refresh_token, self.retry_delay)
            raise

        self._expiry[username] = expires_at
        LOGGER.info(
            f"[{username}] Token refreshed. Expires in {credential.expires_in / 60:.1f} minutes."
        )
        self.schedule_refresh(
            username, credential.refresh_token, self.compute_delay(credential.expires_in)
        )

        if notify and self.on_credential_refreshed is not None:
            self._spawn(self._notify_refreshed(username))
        return credential

    async def _notify_refreshed(self, username: str) -> None:
        assert self.on_credential_refreshed is not None
        try:
            await self.on_credential_refreshed(username)
        except Exception as e:
            LOGGER.exception(f"[{username}] Credential refresh listener failed: {e}")

    async def ensure_fresh(self, username: str) -> Account | None:
        """Return the stored account, refreshing first if its token has expired.

        Accounts without a credential are returned unchanged. Raises
        RefreshFailed when an expired token could not be renewed.
        """
        account = await self.store.find_by_username(username)
        if account is None or not account.has_credential:
            return account
        if account.seconds_left() > 0:
            return account

        assert account.refresh_token is not None
        LOGGER.info(f"[{account.username}] Stored token has expired. Refreshing before connect...")
        credential = await self.refresh_now(account.username, account.refresh_token, notify=False)
        if credential is None:
            raise RefreshFailed("token expired and refresh failed", username=account.username)

        account.access_token = credential.access_token
        account.refresh_token = credential.refresh_token
        account.token_expires_at = self._expiry.get(account.username)
        return account

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def _validate(self, username: str, access_token: str) -> int:
        validation = await self.twitch_api.validate_token(access_token)
        if not validation.valid:
            raise ValidationFailed(validation.error or "token rejected", username=username)
        return validation.expires_in

    async def validate_now(self, username: str, access_token: str, refresh_token: str) -> bool:
        """Check a token with the provider and schedule its refresh.

        An invalid token, or a failed validation call, is treated as expired
        and refreshed immediately. Returns True when the token was valid.
        """
        username = normalize_username(username)
        try:
            expires_in = await self._validate(username, access_token)
        except ValidationFailed as e:
            LOGGER.warning(f"[{username}] Token validation failed ({e.reason}). Refreshing now...")
            self.cancel(username)
            await self.refresh_now(username, refresh_token)
            return False

        LOGGER.info(f"[{username}] Token is valid. Expires in {expires_in / 60:.1f} minutes.")
        self._expiry[username] = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        self.schedule_refresh(username, refresh_token, self.compute_delay(expires_in))
        return True

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    async def sweep(self) -> int:
        """Re-check every credentialed account that has no live timer.

        Returns the number of accounts that were refreshed or re-validated.
        """
        accounts = await self.store.list_accounts()
        checked = 0
        for account in accounts:
            username = account.username
            if not account.has_credential:
                continue
            if username in self._pending or username in self._inflight:
                continue

            assert account.access_token is not None and account.refresh_token is not None
            try:
                if account.seconds_left() <= 0:
                    LOGGER.info(f"[{username}] Token has expired. Refreshing...")
                    await self.refresh_now(username, account.refresh_token)
                else:
                    await self.validate_now(username, account.access_token, account.refresh_token)
                checked += 1
            except Exception as e:
                LOGGER.exception(f"[{username}] Sweep failed: {e}")
        return checked

    def start_sweep(self, interval: float) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        self._sweep_task = asyncio.create_task(self._sweep_loop(interval), name="token-sweep")
        LOGGER.info(f"Started periodic token validation every {interval} seconds.")

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                checked = await self.sweep()
                if checked:
                    LOGGER.info(f"Token sweep re-checked {checked} accounts")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                LOGGER.error(f"Error in token sweep: {type(e).__name__}: {e}")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def wait_idle(self) -> None:
        """Wait for queued refresh notifications to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        self.cancel_all()
        await self.wait_idle()
