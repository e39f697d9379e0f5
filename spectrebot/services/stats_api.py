"""Client for the Spectre player statistics service."""

import logging
import time
from typing import Any
from urllib.parse import quote

import httpx
from cachetools import TTLCache  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


class StatsAPIError(Exception):
    """Stats service returned an error or could not be reached."""


class StatsAPIClient:
    """Fetches player profiles with a short-lived in-process cache."""

    def __init__(
        self,
        base_url: str,
        *,
        cache_ttl: float = 30.0,
        http: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._http = http or httpx.AsyncClient(timeout=8.0)
        self._cache: TTLCache = TTLCache(maxsize=128, ttl=cache_ttl, timer=time.monotonic)

    async def close(self) -> None:
        await self._http.aclose()

    async def get_full_profile(self, player_id: str) -> dict[str, Any]:
        """Return the player's full profile (stats + recent matches)."""
        cached = self._cache.get(player_id)
        if cached is not None:
            logger.debug(f"Using cached profile for {player_id}")
            return cached

        url = f"{self.base_url}/player/{quote(player_id, safe='')}/full_profile"
        try:
            response = await self._http.get(url)
        except httpx.HTTPError as e:
            raise StatsAPIError(f"request failed: {type(e).__name__}: {e}") from e

        if response.status_code != 200:
            raise StatsAPIError(f"HTTP {response.status_code} for player {player_id}")

        try:
            data = response.json()
        except ValueError as e:
            raise StatsAPIError(f"invalid JSON for player {player_id}") from e
        if not isinstance(data, dict):
            raise StatsAPIError(f"unexpected profile payload for player {player_id}")

        self._cache[player_id] = data
        return data

    def invalidate(self, player_id: str) -> None:
        self._cache.pop(player_id, None)
