"""Linked account listing and manual player linking."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from spectrebot.core.connections import ConnectionSupervisor
from spectrebot.core.dependencies import (
    get_coordinator,
    get_scheduler,
    get_store,
    get_supervisor,
)
from spectrebot.core.errors import StoreError
from spectrebot.core.lifecycle import SessionCoordinator
from spectrebot.core.scheduler import RefreshScheduler
from spectrebot.shared.repositories.account import AccountStore

logger = logging.getLogger(__name__)

router = APIRouter(tags=["accounts"])


# ============================================
# Response Models
# ============================================


class AccountStatus(BaseModel):
    username: str
    player_id: str | None
    has_credential: bool
    token_expires_at: datetime | None
    connected: bool
    next_refresh_at: datetime | None


class StatusResponse(BaseModel):
    accounts: list[AccountStatus]
    connected: int
    pending_refreshes: int


class LinkResponse(BaseModel):
    username: str
    player_id: str
    message: str


# ============================================
# Routes
# ============================================


@router.get("/status", response_model=StatusResponse)
async def status(
    store: AccountStore = Depends(get_store),
    scheduler: RefreshScheduler = Depends(get_scheduler),
    supervisor: ConnectionSupervisor = Depends(get_supervisor),
) -> StatusResponse:
    """Linked accounts with their connection and refresh state."""
    try:
        accounts = await store.list_accounts()
    except StoreError as e:
        logger.error(f"Failed to list accounts: {e}")
        raise HTTPException(status_code=500, detail="Failed to list accounts") from e

    rows = []
    for account in accounts:
        pending = scheduler.pending(account.username)
        rows.append(
            AccountStatus(
                username=account.username,
                player_id=account.player_id,
                has_credential=account.has_credential,
                token_expires_at=account.token_expires_at,
                connected=supervisor.is_connected(account.username),
                next_refresh_at=pending.due_at if pending else None,
            )
        )
    return StatusResponse(
        accounts=rows,
        connected=len(supervisor.connected_usernames),
        pending_refreshes=scheduler.pending_count,
    )


@router.get("/api/v2/connected-accounts", response_model=list[str])
async def connected_accounts(store: AccountStore = Depends(get_store)) -> list[str]:
    """Usernames of every linked account."""
    try:
        accounts = await store.list_accounts()
    except StoreError as e:
        logger.error(f"Failed to list accounts: {e}")
        raise HTTPException(status_code=500, detail="Failed to list accounts") from e
    return [account.username for account in accounts]


@router.get("/addaccount", response_model=LinkResponse)
async def add_account(
    channel: str = Query(..., min_length=1),
    player_id: str = Query(..., alias="playerId", min_length=1),
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> LinkResponse:
    """Link a Spectre player id to a channel without going through chat."""
    try:
        account = await coordinator.link_player(channel, player_id)
    except StoreError as e:
        logger.error(f"Failed to link player {player_id} to {channel}: {e}")
        raise HTTPException(status_code=500, detail="Failed to link account") from e

    return LinkResponse(
        username=account.username,
        player_id=player_id,
        message=f"{account.username} has been successfully linked with player ID: {player_id}",
    )
