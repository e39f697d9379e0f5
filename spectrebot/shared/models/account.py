"""Data models for the accounts table."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


def normalize_username(name: str) -> str:
    """Lower-case a Twitch login and strip the IRC channel '#' prefix."""
    return name.strip().lstrip("#").lower()


@dataclass
class Account:
    """Linked streamer account record."""

    username: str
    player_id: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_credential(self) -> bool:
        """A token without a known expiry or a refresh token is not usable."""
        return bool(self.access_token and self.refresh_token and self.token_expires_at)

    def seconds_left(self, now: datetime | None = None) -> float:
        """Seconds until the stored access token expires (negative if expired)."""
        if self.token_expires_at is None:
            return 0.0
        now = now or datetime.now(timezone.utc)
        return (self.token_expires_at - now).total_seconds()


@dataclass
class TokenGrant:
    """Tokens returned by a completed OAuth authorization-code exchange."""

    username: str
    access_token: str
    refresh_token: str
    expires_in: int
