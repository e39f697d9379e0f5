"""Discord webhook notifications for account events."""

import asyncio
import logging

import httpx

logger = logging.getLogger(__name__)


class DiscordNotifier:
    """Posts short status lines to a Discord webhook.

    Delivery is best-effort: ``notify`` never raises and never blocks the caller.
    An empty webhook URL disables the notifier.
    """

    def __init__(self, webhook_url: str, *, http: httpx.AsyncClient | None = None) -> None:
        self.webhook_url = webhook_url
        self._http = http or httpx.AsyncClient(timeout=5.0)
        self._tasks: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def notify(self, content: str) -> None:
        """Queue a message for delivery."""
        if not self.enabled:
            return
        task = asyncio.create_task(self._post(content))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, content: str) -> None:
        try:
            response = await self._http.post(self.webhook_url, json={"content": content})
            if response.status_code >= 400:
                logger.warning(f"Discord webhook returned {response.status_code}")
        except httpx.HTTPError as e:
            logger.warning(f"Discord webhook failed: {type(e).__name__}: {e}")

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._http.aclose()
