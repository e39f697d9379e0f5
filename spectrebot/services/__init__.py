"""External service clients."""

from .notifier import DiscordNotifier
from .stats_api import StatsAPIClient, StatsAPIError
from .twitch_api import TokenRefreshResult, TokenValidation, TwitchAPIClient

__all__ = [
    "DiscordNotifier",
    "StatsAPIClient",
    "StatsAPIError",
    "TokenRefreshResult",
    "TokenValidation",
    "TwitchAPIClient",
]
