"""Refresh-token exchange against the identity provider."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from spectrebot.core.errors import RefreshFailed

if TYPE_CHECKING:
    from spectrebot.services.twitch_api import TwitchAPIClient

LOGGER = logging.getLogger("spectrebot.refresher")


@dataclass
class RefreshedCredential:
    access_token: str
    refresh_token: str
    expires_in: int


class CredentialRefresher:
    """Turns a refresh token into a new credential.

    Does not retry and does not persist anything.
    """

    def __init__(self, twitch_api: TwitchAPIClient) -> None:
        self.twitch_api = twitch_api

    async def refresh(self, username: str, refresh_token: str) -> RefreshedCredential:
        if not refresh_token:
            raise RefreshFailed("no refresh token", username=username)

        LOGGER.info(f"[{username}] Refreshing access token...")
        result = await self.twitch_api.refresh_access_token(refresh_token)
        if not result.success or not result.access_token:
            raise RefreshFailed(result.error or "unknown error", username=username)

        if not result.refresh_token:
            LOGGER.debug(f"[{username}] Provider did not rotate the refresh token")

        return RefreshedCredential(
            access_token=result.access_token,
            refresh_token=result.refresh_token or refresh_token,
            expires_in=result.expires_in,
        )
