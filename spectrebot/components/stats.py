"""Spectre statistics commands backed by the stats service."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import httpx

from spectrebot.core.errors import RefreshFailed, StoreError
from spectrebot.core.router import CommandContext, Component, command
from spectrebot.services.stats_api import StatsAPIError

if TYPE_CHECKING:
    from spectrebot.core.scheduler import RefreshScheduler
    from spectrebot.services.stats_api import StatsAPIClient
    from spectrebot.services.twitch_api import TwitchAPIClient
    from spectrebot.shared.models.account import Account
    from spectrebot.shared.repositories.account import AccountStore

LOGGER = logging.getLogger("spectrebot.components.stats")

# Internal map ids -> names players know
MAP_NAMES = {
    "Metro_P": "Metro",
    "Greenbelt_P": "Mill",
    "Commons": "Commons",
    "Junction_P": "Skyway",
}


def map_display_name(raw: str | None) -> str:
    if not raw:
        return "unknown map"
    return MAP_NAMES.get(raw, raw)


def mvp_score(player: dict[str, Any]) -> int:
    return (player.get("kills") or 0) + (player.get("assists") or 0) - (player.get("deaths") or 0)


def parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def match_won(match: dict[str, Any]) -> bool:
    team = match.get("player_team") or {}
    return match.get("winner") == team.get("team_index")


@dataclass
class StreamRecord:
    """Win/loss tally for one channel's current stream."""

    stream_started_at: datetime
    tracked_match_ids: set[str] = field(default_factory=set)
    win_count: int = 0
    loss_count: int = 0
    previous_sr: int | None = None

    @property
    def match_count(self) -> int:
        return len(self.tracked_match_ids)

    def track(self, match: dict[str, Any]) -> bool:
        """Count a match once. Returns False if it was already counted."""
        match_id = str(match.get("id"))
        if match_id in self.tracked_match_ids:
            return False
        self.tracked_match_ids.add(match_id)
        if match_won(match):
            self.win_count += 1
        else:
            self.loss_count += 1
        return True

    def sr_change(self, current_sr: int) -> int:
        """SR delta since the last call; zero on the first call."""
        change = 0 if self.previous_sr is None else current_sr - self.previous_sr
        self.previous_sr = current_sr
        return change


class StatsCommands(Component):
    """!rank, !lastmatch and !record for the player linked to the channel."""

    def __init__(
        self,
        store: AccountStore,
        stats: StatsAPIClient,
        twitch_api: TwitchAPIClient,
        scheduler: RefreshScheduler,
    ) -> None:
        self.store = store
        self.stats = stats
        self.twitch_api = twitch_api
        self.scheduler = scheduler
        # channel -> record for the stream that is currently live
        self.records: dict[str, StreamRecord] = {}

    async def _linked_account(self, ctx: CommandContext) -> Account | None:
        account = await self.store.find_by_username(ctx.channel)
        if account is None or not account.player_id:
            ctx.reply("no player ID linked to this channel.")
            return None
        return account

    async def _stream_status(self, account: Account) -> dict | None:
        """Helix stream lookup with the channel's token, refreshed once on a 401."""
        fresh = await self.scheduler.ensure_fresh(account.username) or account
        assert fresh.access_token is not None
        try:
            return await self.twitch_api.get_stream(fresh.username, fresh.access_token)
        except httpx.HTTPStatusError as e:
            if e.response.status_code != 401 or not fresh.refresh_token:
                raise

        LOGGER.info(f"[{fresh.username}] Helix rejected the token, refreshing and retrying")
        credential = await self.scheduler.refresh_now(
            fresh.username, fresh.refresh_token, notify=False
        )
        if credential is None:
            raise RefreshFailed("token rejected and refresh failed", username=fresh.username)
        return await self.twitch_api.get_stream(fresh.username, credential.access_token)

    @command()
    async def rank(self, ctx: CommandContext) -> None:
        """Show the linked player's current ranked rating.

        Usage: !rank
        """
        account = await self._linked_account(ctx)
        if account is None:
            return
        assert account.player_id is not None

        try:
            data = await self.stats.get_full_profile(account.player_id)
        except StatsAPIError as e:
            LOGGER.error(f"[{ctx.channel}] Error fetching rank: {e}")
            ctx.reply("Sorry, I couldn't fetch the rank data.")
            return

        stats = data.get("stats") or {}
        rating = stats.get("rank_rating")
        if rating is None:
            ctx.reply("no ranked data found for the player.")
            return

        tier = stats.get("rank")
        tier_text = f" ({tier})" if tier else ""
        ctx.reply(f"{account.username} is at {rating} SR{tier_text}")

    @command()
    async def lastmatch(self, ctx: CommandContext) -> None:
        """Summarize the linked player's most recent match.

        Usage: !lastmatch
        """
        account = await self._linked_account(ctx)
        if account is None:
            return
        assert account.player_id is not None
        player_id = account.player_id

        try:
            data = await self.stats.get_full_profile(player_id)
        except StatsAPIError as e:
            LOGGER.error(f"[{ctx.channel}] Error fetching last match data: {e}")
            ctx.reply("Sorry, I couldn't fetch the last match data.")
            return

        matches = data.get("matches") or []
        if not matches:
            ctx.reply("No matches found for the player.")
            return

        last = matches[0]
        teammates = (last.get("player_team") or {}).get("players") or []
        player = next((p for p in teammates if p.get("id") == player_id), None)
        if player is None:
            ctx.reply("Sorry, no player data found for the last match.")
            return

        result = "won" if match_won(last) else "lost"
        sponsor = player.get("sponsor_name") or "no sponsor"
        map_name = map_display_name(last.get("map"))
        mvp = max(teammates, key=mvp_score)
        mvp_tag = " (MVP)" if mvp.get("id") == player_id else ""
        kills, deaths, assists = (player.get(k) or 0 for k in ("kills", "deaths", "assists"))
        kda = f"{kills}/{deaths}/{assists}"

        rating, previous = player.get("ranked_rating"), player.get("previous_ranked_rating")
        if isinstance(rating, (int, float)) and isinstance(previous, (int, float)):
            rating_delta: int | float | str = rating - previous
        else:
            rating_delta = "N/A"

        ctx.reply(
            f"{account.username} {result} the last game | Played {sponsor} on {map_name}{mvp_tag}"
            f" | KDA: {kda} | Ranked Rating {result}: {rating_delta}"
        )

    @command()
    async def record(self, ctx: CommandContext) -> None:
        """Win/loss and SR movement for matches played during this stream.

        Usage: !record
        """
        account = await self._linked_account(ctx)
        if account is None:
            return
        assert account.player_id is not None

        if not account.access_token:
            ctx.reply("no valid access token found.")
            return

        try:
            stream = await self._stream_status(account)
        except (httpx.HTTPError, RefreshFailed, StoreError) as e:
            LOGGER.error(f"[{ctx.channel}] Error fetching stream status: {e}")
            ctx.reply("Sorry, I couldn't fetch the record data.")
            return
        if stream is None:
            ctx.reply("the stream is not live.")
            return

        stream_start: datetime = stream["started_at_dt"]
        try:
            data = await self.stats.get_full_profile(account.player_id)
        except StatsAPIError as e:
            LOGGER.error(f"[{ctx.channel}] Error in !record: {e}")
            ctx.reply("Sorry, I couldn't fetch the record data.")
            return

        matches = data.get("matches") or []
        if not matches:
            ctx.reply("no matches played yet during this stream.")
            return

        last = matches[0]
        try:
            match_date = parse_timestamp(last["match_date"])
        except (KeyError, TypeError, ValueError) as e:
            LOGGER.error(f"[{ctx.channel}] Match has no usable date: {e!r}")
            ctx.reply("Sorry, I couldn't fetch the record data.")
            return
        if not stream_start <= match_date <= datetime.now(timezone.utc):
            ctx.reply("No matches have been played yet.")
            return

        record = self.records.get(ctx.channel)
        if record is None or record.stream_started_at != stream_start:
            LOGGER.info(f"[{ctx.channel}] Stream started, initializing record.")
            record = StreamRecord(stream_started_at=stream_start)
            self.records[ctx.channel] = record
        record.track(last)

        current_sr = (data.get("stats") or {}).get("rank_rating") or 0
        change = record.sr_change(current_sr)
        status = "up" if change > 0 else "down" if change < 0 else "no change"

        ctx.say(
            f"{account.username} is {status} {abs(change)} SR, "
            f"Won {record.win_count} - Lost {record.loss_count} this stream"
        )
