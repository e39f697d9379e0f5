"""Dependency injection utilities for FastAPI

The session core is built once in the app lifespan and published here;
route handlers reach it through the getters below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import HTTPException

if TYPE_CHECKING:
    from spectrebot.core.connections import ConnectionSupervisor
    from spectrebot.core.lifecycle import SessionCoordinator
    from spectrebot.core.scheduler import RefreshScheduler
    from spectrebot.services.twitch_api import TwitchAPIClient
    from spectrebot.shared.repositories.account import AccountStore

logger = logging.getLogger(__name__)


@dataclass
class SessionCore:
    store: AccountStore
    twitch_api: TwitchAPIClient
    scheduler: RefreshScheduler
    supervisor: ConnectionSupervisor
    coordinator: SessionCoordinator


_core: SessionCore | None = None


def set_session_core(core: SessionCore | None) -> None:
    """Publish (or clear, on shutdown) the running session core."""
    global _core
    _core = core


def get_session_core() -> SessionCore:
    if _core is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return _core


# ============================================
# Service Dependencies
# ============================================


def get_store() -> AccountStore:
    return get_session_core().store


def get_twitch_api() -> TwitchAPIClient:
    return get_session_core().twitch_api


def get_scheduler() -> RefreshScheduler:
    return get_session_core().scheduler


def get_supervisor() -> ConnectionSupervisor:
    return get_session_core().supervisor


def get_coordinator() -> SessionCoordinator:
    return get_session_core().coordinator
