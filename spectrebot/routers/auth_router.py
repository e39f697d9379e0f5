"""OAuth routes: send the streamer to Twitch and link the account on return."""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse, RedirectResponse

from spectrebot.core.dependencies import get_coordinator, get_twitch_api
from spectrebot.core.errors import StoreError
from spectrebot.core.lifecycle import SessionCoordinator
from spectrebot.services.twitch_api import TwitchAPIClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["authentication"])


@router.get("/")
async def root() -> RedirectResponse:
    return RedirectResponse(url="/login")


@router.get("/login")
async def login(twitch_api: TwitchAPIClient = Depends(get_twitch_api)) -> RedirectResponse:
    """Redirect to the Twitch authorization page."""
    auth_url = twitch_api.generate_oauth_url()
    logger.info(f"Generated auth URL: {auth_url}")
    return RedirectResponse(url=auth_url)


@router.get("/callback", response_class=PlainTextResponse)
async def callback(
    code: str | None = None,
    twitch_api: TwitchAPIClient = Depends(get_twitch_api),
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> PlainTextResponse:
    """Complete the authorization-code flow and bring the account online."""
    if not code:
        return PlainTextResponse("Invalid code", status_code=400)

    success, error, grant = await twitch_api.exchange_code_for_token(code)
    if not success or grant is None:
        logger.error(f"Error during OAuth process: {error}")
        return PlainTextResponse("Authentication failed", status_code=500)

    try:
        await coordinator.on_account_linked(grant)
    except StoreError as e:
        logger.error(f"Error saving linked account: {e}")
        return PlainTextResponse("Authentication failed", status_code=500)

    return PlainTextResponse("Successfully authenticated with Twitch!")
