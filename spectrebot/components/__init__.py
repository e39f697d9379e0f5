"""Chat command components.

Each component groups related commands; ``build_components`` wires them with
their dependencies so the router table can be built once at startup.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .account import AccountCommands
from .general import GeneralCommands
from .stats import StatsCommands

if TYPE_CHECKING:
    from spectrebot.core.lifecycle import SessionCoordinator
    from spectrebot.core.router import Component
    from spectrebot.services.stats_api import StatsAPIClient
    from spectrebot.services.twitch_api import TwitchAPIClient
    from spectrebot.shared.repositories.account import AccountStore


def build_components(
    store: AccountStore,
    coordinator: SessionCoordinator,
    stats: StatsAPIClient,
    twitch_api: TwitchAPIClient,
    *,
    owner_username: str,
) -> list[Component]:
    return [
        GeneralCommands(),
        AccountCommands(coordinator, owner_username=owner_username),
        StatsCommands(store, stats, twitch_api, coordinator.scheduler),
    ]


__all__ = ["AccountCommands", "GeneralCommands", "StatsCommands", "build_components"]
