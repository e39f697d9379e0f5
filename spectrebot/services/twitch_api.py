"""Twitch API client service.

Covers the OAuth endpoints the session core depends on (authorization-code
exchange, refresh-token exchange, validate) plus the Helix lookups used by
chat commands. All calls use the broadcaster's user access token.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

import httpx

from spectrebot.core.config import BROADCASTER_SCOPES
from spectrebot.shared.models.account import TokenGrant, normalize_username

logger = logging.getLogger(__name__)

HELIX_BASE = "https://api.twitch.tv/helix"
OAUTH_BASE = "https://id.twitch.tv/oauth2"


@dataclass
class TokenRefreshResult:
    """Result of a token refresh operation.

    ``refresh_token`` is whatever the provider returned and may be None;
    rotation is optional on Twitch's side.
    """

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_in: int = 0
    error: str | None = None


@dataclass
class TokenValidation:
    """Result of a call to the validate endpoint."""

    valid: bool
    login: str | None = None
    expires_in: int = 0
    error: str | None = None


class TwitchAPIClient:
    """Client for interacting with Twitch OAuth and Helix.

    Manages a shared httpx client for connection reuse.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        *,
        http: httpx.AsyncClient | None = None,
    ):
        if not client_id or not client_secret:
            raise ValueError("Twitch client_id and client_secret are required")

        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri

        # Shared HTTP client, reuses TCP connections across requests
        self._http = http or httpx.AsyncClient(timeout=10.0)

    async def close(self) -> None:
        """Close the shared HTTP client. Call on app shutdown."""
        await self._http.aclose()

    def _user_headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Client-Id": self.client_id}

    # ------------------------------------------------------------------
    # OAuth flow
    # ------------------------------------------------------------------

    def generate_oauth_url(self, state: str | None = None) -> str:
        """Generate Twitch OAuth authorization URL."""
        scope_string = "+".join(s.replace(":", "%3A") for s in BROADCASTER_SCOPES)
        encoded_redirect_uri = quote(self.redirect_uri, safe="")

        url = (
            f"{OAUTH_BASE}/authorize"
            f"?client_id={self.client_id}"
            f"&redirect_uri={encoded_redirect_uri}"
            f"&response_type=code"
            f"&scope={scope_string}"
            f"&force_verify=true"
        )
        if state:
            url += f"&state={quote(state, safe='')}"
        return url

    async def exchange_code_for_token(
        self, code: str
    ) -> tuple[bool, str | None, TokenGrant | None]:
        """Exchange OAuth code for access token.

        Returns:
            Tuple of (success, error_message, grant)
        """
        try:
            token_response = await self._http.post(
                f"{OAUTH_BASE}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": self.redirect_uri,
                },
            )

            if token_response.status_code != 200:
                logger.error(f"Failed to exchange code: {token_response.status_code}")
                logger.error(f"Response: {token_response.text}")
                return False, "token_exchange_failed", None

            token_data = token_response.json()
            access_token = token_data.get("access_token")
            refresh_token = token_data.get("refresh_token")

            if not access_token or not refresh_token:
                logger.error("Token response is missing access_token or refresh_token")
                return False, "incomplete_token", None

            # Resolve the login that owns the new token
            response = await self._http.get(
                f"{HELIX_BASE}/users", headers=self._user_headers(access_token)
            )
            if response.status_code != 200:
                return False, "user_fetch_failed", None

            users = response.json().get("data", [])
            if not users:
                return False, "user_fetch_failed", None

            login = normalize_username(users[0]["login"])
            expires_in = int(token_data.get("expires_in", 0))
            logger.debug(f"Token exchanged for user: {login}")

            return (
                True,
                None,
                TokenGrant(
                    username=login,
                    access_token=access_token,
                    refresh_token=refresh_token,
                    expires_in=expires_in,
                ),
            )

        except httpx.TimeoutException:
            logger.error("Timeout while exchanging code for token")
            return False, "timeout", None
        except httpx.HTTPError as e:
            logger.exception(f"HTTP error exchanging code: {e}")
            return False, "exchange_failed", None

    # ------------------------------------------------------------------
    # User token management
    # ------------------------------------------------------------------

    async def refresh_access_token(self, refresh_token: str) -> TokenRefreshResult:
        """Refresh a user's access token using their refresh token."""
        try:
            response = await self._http.post(
                f"{OAUTH_BASE}/token",
                data={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                },
            )

            if response.status_code != 200:
                try:
                    error_data = response.json()
                except ValueError:
                    error_data = {}
                error_msg = error_data.get("message", f"HTTP {response.status_code}")
                return TokenRefreshResult(success=False, error=error_msg)

            try:
                data = response.json()
            except ValueError:
                logger.error(f"Refresh response was not JSON: {response.text[:200]}")
                return TokenRefreshResult(success=False, error="invalid response")
            new_access_token = data.get("access_token")

            if not new_access_token:
                return TokenRefreshResult(
                    success=False, error="No access_token in refresh response"
                )

            return TokenRefreshResult(
                success=True,
                access_token=new_access_token,
                refresh_token=data.get("refresh_token") or None,
                expires_in=int(data.get("expires_in", 0)),
            )

        except httpx.TimeoutException:
            return TokenRefreshResult(success=False, error="timeout")
        except httpx.HTTPError as e:
            return TokenRefreshResult(success=False, error=f"{type(e).__name__}: {e}")

    async def validate_token(self, access_token: str) -> TokenValidation:
        """Ask the identity provider how long an access token has left."""
        try:
            response = await self._http.get(
                f"{OAUTH_BASE}/validate",
                headers={"Authorization": f"OAuth {access_token}"},
            )
        except httpx.HTTPError as e:
            return TokenValidation(valid=False, error=f"{type(e).__name__}: {e}")

        if response.status_code != 200:
            return TokenValidation(valid=False, error=f"HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError:
            return TokenValidation(valid=False, error="invalid response")
        return TokenValidation(
            valid=True,
            login=data.get("login"),
            expires_in=int(data.get("expires_in", 0)),
        )

    # ------------------------------------------------------------------
    # Streams
    # ------------------------------------------------------------------

    async def get_stream(self, login: str, access_token: str) -> dict | None:
        """Return the live stream for a login, or None when offline.

        Adds a parsed ``started_at_dt`` to the Helix payload.
        Raises httpx.HTTPStatusError on non-200 responses.
        """
        response = await self._http.get(
            f"{HELIX_BASE}/streams",
            params={"user_login": normalize_username(login)},
            headers=self._user_headers(access_token),
        )
        if response.status_code != 200:
            logger.error(
                f"Failed to fetch live stream status for {login}: "
                f"{response.status_code} {response.text}"
            )
            response.raise_for_status()

        streams = response.json().get("data", [])
        if not streams:
            return None

        stream = dict(streams[0])
        stream["started_at_dt"] = datetime.fromisoformat(
            stream["started_at"].replace("Z", "+00:00")
        )
        return stream
