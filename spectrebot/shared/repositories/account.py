"""Repository for the accounts table."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Protocol

import asyncpg

from spectrebot.core.errors import StoreError
from spectrebot.shared.models.account import Account, normalize_username

logger = logging.getLogger(__name__)

_COLUMNS = (
    "username, player_id, access_token, refresh_token, token_expires_at, created_at, updated_at"
)

# Errors that mean the store itself is unavailable or rejected the statement
_STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, TimeoutError)


class AccountStore(Protocol):
    """Narrow read/write contract the session core relies on."""

    async def find_by_username(self, username: str) -> Account | None: ...

    async def list_accounts(self) -> list[Account]: ...

    async def upsert(self, account: Account) -> None: ...

    async def update_credential(
        self,
        username: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None: ...

    async def link_player(self, username: str, player_id: str) -> Account: ...

    async def delete_all(self) -> int: ...


class AccountRepository:
    """Pure SQL operations for accounts."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def find_by_username(self, username: str) -> Account | None:
        """Get a single account by login."""
        username = normalize_username(username)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {_COLUMNS} FROM accounts WHERE username = $1",
                    username,
                )
        except _STORE_ERRORS as e:
            raise StoreError(f"find failed: {type(e).__name__}: {e}", username=username) from e
        if not row:
            return None
        return Account(**dict(row))

    async def list_accounts(self) -> list[Account]:
        """Return all accounts."""
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(f"SELECT {_COLUMNS} FROM accounts ORDER BY username")
        except _STORE_ERRORS as e:
            raise StoreError(f"list failed: {type(e).__name__}: {e}") from e
        return [Account(**dict(r)) for r in rows]

    async def upsert(self, account: Account) -> None:
        """Insert or update an account's credential, keeping any player link."""
        username = normalize_username(account.username)
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    INSERT INTO accounts
                        (username, player_id, access_token, refresh_token, token_expires_at)
                    VALUES ($1, $2, $3, $4, $5)
                    ON CONFLICT (username) DO UPDATE SET
                        player_id        = COALESCE(EXCLUDED.player_id, accounts.player_id),
                        access_token     = EXCLUDED.access_token,
                        refresh_token    = EXCLUDED.refresh_token,
                        token_expires_at = EXCLUDED.token_expires_at,
                        updated_at       = NOW()
                    """,
                    username,
                    account.player_id,
                    account.access_token,
                    account.refresh_token,
                    account.token_expires_at,
                )
        except _STORE_ERRORS as e:
            raise StoreError(f"upsert failed: {type(e).__name__}: {e}", username=username) from e

    async def update_credential(
        self,
        username: str,
        access_token: str,
        refresh_token: str,
        expires_at: datetime,
    ) -> None:
        """Overwrite the credential after a successful refresh."""
        username = normalize_username(username)
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute(
                    """
                    UPDATE accounts SET
                        access_token     = $2,
                        refresh_token    = $3,
                        token_expires_at = $4,
                        updated_at       = NOW()
                    WHERE username = $1
                    """,
                    username,
                    access_token,
                    refresh_token,
                    expires_at,
                )
        except _STORE_ERRORS as e:
            raise StoreError(
                f"credential update failed: {type(e).__name__}: {e}", username=username
            ) from e
        if result == "UPDATE 0":
            raise StoreError("credential update matched no account", username=username)

    async def link_player(self, username: str, player_id: str) -> Account:
        """Attach a player id, creating the account row if needed."""
        username = normalize_username(username)
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO accounts (username, player_id)
                    VALUES ($1, $2)
                    ON CONFLICT (username) DO UPDATE SET
                        player_id  = EXCLUDED.player_id,
                        updated_at = NOW()
                    RETURNING {_COLUMNS}
                    """,
                    username,
                    player_id,
                )
        except _STORE_ERRORS as e:
            raise StoreError(f"link failed: {type(e).__name__}: {e}", username=username) from e
        logger.info(f"Linked player {player_id} to {username}")
        return Account(**dict(row))

    async def delete_all(self) -> int:
        """Administrative reset: remove every account row."""
        try:
            async with self.pool.acquire() as conn:
                result = await conn.execute("DELETE FROM accounts")
        except _STORE_ERRORS as e:
            raise StoreError(f"reset failed: {type(e).__name__}: {e}") from e
        deleted = int(result.split()[-1]) if result else 0
        logger.warning(f"Deleted {deleted} accounts")
        return deleted
