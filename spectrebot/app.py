"""FastAPI application factory"""

import logging
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from spectrebot import __version__
from spectrebot.components import build_components
from spectrebot.core.chat import ChatCredentials, TwitchChatTransport
from spectrebot.core.config import Settings, get_settings
from spectrebot.core.connections import ConnectionSupervisor
from spectrebot.core.dependencies import SessionCore, set_session_core
from spectrebot.core.lifecycle import SessionCoordinator
from spectrebot.core.logging import setup_logging
from spectrebot.core.refresher import CredentialRefresher
from spectrebot.core.router import CommandRouter
from spectrebot.core.scheduler import RefreshScheduler
from spectrebot.routers import accounts_router, auth_router
from spectrebot.services import DiscordNotifier, StatsAPIClient, TwitchAPIClient
from spectrebot.shared.database import DatabaseManager
from spectrebot.shared.repositories import AccountRepository

logger = logging.getLogger(__name__)

# Track server start time
_start_time: float = 0.0


def _bot_credentials(settings: Settings) -> ChatCredentials | None:
    if not settings.has_bot_identity:
        return None
    return ChatCredentials(login=settings.bot_username, token=settings.bot_token)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle startup and shutdown"""
    global _start_time
    _start_time = time.time()

    settings = get_settings()
    logger.info("Starting Spectre bot")

    db_manager = DatabaseManager(settings.database_url)
    await db_manager.connect()
    await db_manager.setup_schema()
    app.state.db_manager = db_manager

    store = AccountRepository(db_manager.pool)
    twitch_api = TwitchAPIClient(
        client_id=settings.client_id,
        client_secret=settings.client_secret,
        redirect_uri=settings.redirect_uri,
    )
    stats = StatsAPIClient(settings.stats_api_url)
    notifier = DiscordNotifier(settings.discord_webhook_url)
    transport = TwitchChatTransport()

    router = CommandRouter()
    scheduler = RefreshScheduler(
        store,
        CredentialRefresher(twitch_api),
        twitch_api,
        refresh_margin=settings.refresh_margin,
        min_delay=settings.min_refresh_delay,
        retry_delay=settings.refresh_retry_delay,
    )
    supervisor = ConnectionSupervisor(
        transport,
        scheduler,
        router,
        bot_credentials=_bot_credentials(settings),
        reconnect_delay=settings.chat_reconnect_delay,
    )
    coordinator = SessionCoordinator(store, scheduler, supervisor, notifier=notifier)

    # Command table is fixed for the lifetime of the process
    for component in build_components(
        store, coordinator, stats, twitch_api, owner_username=settings.owner_username
    ):
        router.add_component(component)
    logger.info(f"Registered commands: {', '.join(router.command_names)}")

    set_session_core(
        SessionCore(
            store=store,
            twitch_api=twitch_api,
            scheduler=scheduler,
            supervisor=supervisor,
            coordinator=coordinator,
        )
    )
    await coordinator.start(settings.sweep_interval)

    yield

    # Shutdown
    logger.info("Shutting down Spectre bot")
    set_session_core(None)
    try:
        await coordinator.shutdown()
        await transport.close()
        await notifier.close()
        await stats.close()
        await twitch_api.close()
    except Exception as e:
        logger.exception(f"Error during shutdown: {e}")
    finally:
        await db_manager.disconnect()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Spectre Bot",
        description="Twitch chat bot for Spectre player stats",
        version=__version__,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
    )

    app.include_router(auth_router.router)
    app.include_router(accounts_router.router)

    # Liveness probe, no external dependency
    @app.get("/health")
    async def health():
        """Liveness check for Docker / hosting platforms"""
        return {
            "status": "healthy",
            "uptime_seconds": int(time.time() - _start_time),
        }

    logger.info("FastAPI application configured")

    return app
