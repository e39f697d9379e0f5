"""Session lifecycle coordination.

Per-account state machine (informal)::

    Unlinked -> Authorized(validating) -> Authorized(scheduled)
             -> Refreshing -> Authorized(scheduled) | RefreshRetry (loops)

There is no automatic terminal failure state; only an administrative reset
removes an account.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from spectrebot.core.connections import ConnectResult
from spectrebot.core.errors import ConnectFailed
from spectrebot.shared.models.account import Account, TokenGrant, normalize_username

if TYPE_CHECKING:
    from spectrebot.core.connections import ConnectionSupervisor
    from spectrebot.core.scheduler import RefreshScheduler
    from spectrebot.services.notifier import DiscordNotifier
    from spectrebot.shared.repositories.account import AccountStore

LOGGER = logging.getLogger("spectrebot.lifecycle")


class SessionCoordinator:
    """Ties the account store, refresh scheduler and connection supervisor together."""

    def __init__(
        self,
        store: AccountStore,
        scheduler: RefreshScheduler,
        supervisor: ConnectionSupervisor,
        *,
        notifier: DiscordNotifier | None = None,
    ) -> None:
        self.store = store
        self.scheduler = scheduler
        self.supervisor = supervisor
        self.notifier = notifier
        scheduler.on_credential_refreshed = self.on_credential_refreshed

    async def bootstrap(self) -> int:
        """Reconcile stored accounts with refresh timers and live connections.

        Returns the number of accounts that ended up connected. One account
        failing never stops the others from loading.
        """
        LOGGER.info("Loading stored accounts...")
        try:
            accounts = await self.store.list_accounts()
        except Exception as e:
            LOGGER.error(f"Failed to load accounts: {e}")
            return 0

        connected = 0
        for account in accounts:
            try:
                if await self._bootstrap_account(account):
                    connected += 1
            except Exception as e:
                LOGGER.error(f"[{account.username}] Bootstrap failed: {type(e).__name__}: {e}")

        LOGGER.info(f"Bootstrap complete: {connected}/{len(accounts)} accounts connected")
        return connected

    async def _bootstrap_account(self, account: Account) -> bool:
        if account.has_credential:
            assert account.access_token is not None and account.refresh_token is not None
            LOGGER.info(f"[{account.username}] Validating stored token...")
            await self.scheduler.validate_now(
                account.username, account.access_token, account.refresh_token
            )
        elif account.player_id and self.supervisor.can_connect_without_credential:
            LOGGER.info(f"[{account.username}] No token yet, joining with the bot identity")
        else:
            LOGGER.warning(f"No tokens found for {account.username}, skipping...")
            return False

        await self.supervisor.connect(account.username)
        return True

    async def on_account_linked(self, grant: TokenGrant) -> ConnectResult | None:
        """Persist a freshly authorized account, schedule its refresh and connect.

        StoreError propagates to the caller. Connection failures are logged
        and reported as None.
        """
        username = normalize_username(grant.username)
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=grant.expires_in)
        LOGGER.info(f"[{username}] Access token will expire at: {expires_at.isoformat()}")

        await self.store.upsert(
            Account(
                username=username,
                access_token=grant.access_token,
                refresh_token=grant.refresh_token,
                token_expires_at=expires_at,
            )
        )
        self.scheduler.schedule_refresh(
            username, grant.refresh_token, self.scheduler.compute_delay(grant.expires_in)
        )

        if self.notifier is not None:
            self.notifier.notify(f"New account added {username}")

        try:
            result = await self.supervisor.connect(username)
        except ConnectFailed as e:
            LOGGER.error(f"Error starting chatbot: {e}")
            return None
        LOGGER.info(f"[{username}] Chatbot started ({result.value})")
        return result

    async def link_player(self, username: str, player_id: str) -> Account:
        """Attach a player id to a channel, creating the row if needed.

        The channel is joined when it has a credential or the bot identity can
        stand in; join failures are logged only.
        """
        account = await self.store.link_player(username, player_id)
        if account.has_credential or self.supervisor.can_connect_without_credential:
            try:
                await self.supervisor.connect(account.username)
            except ConnectFailed as e:
                LOGGER.error(f"Could not join after linking player: {e}")
        return account

    async def on_credential_refreshed(self, username: str) -> None:
        """Reconnect after a refresh; the transport only authenticates at connect."""
        try:
            await self.supervisor.reconnect(username)
        except ConnectFailed as e:
            LOGGER.error(f"Reconnect after token refresh failed: {e}")
            return

        if self.notifier is not None:
            self.notifier.notify(f"🔄 Token refreshed for {username}.")

    async def reset(self, on_cleared: Callable[[], None] | None = None) -> int:
        """Administrative reset: drop every account, timer and connection.

        *on_cleared* runs after the store and timers are cleared but before the
        connections close, so a chat reply can still go out.
        """
        deleted = await self.store.delete_all()
        self.scheduler.cancel_all()
        if on_cleared is not None:
            on_cleared()
        await self.supervisor.close_all()
        LOGGER.warning(f"Reset complete: {deleted} accounts removed")
        return deleted

    async def start(self, sweep_interval: float) -> None:
        await self.bootstrap()
        self.scheduler.start_sweep(sweep_interval)

    async def shutdown(self) -> None:
        await self.scheduler.close()
        await self.supervisor.close_all()
        LOGGER.info("Session coordinator stopped")
