"""Account management commands: player linking and the administrative reset."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from spectrebot.core.router import CommandContext, Component, command
from spectrebot.shared.models.account import normalize_username

if TYPE_CHECKING:
    from spectrebot.core.lifecycle import SessionCoordinator

LOGGER = logging.getLogger("spectrebot.components.account")


class AccountCommands(Component):
    def __init__(self, coordinator: SessionCoordinator, *, owner_username: str) -> None:
        self.coordinator = coordinator
        self.owner_username = normalize_username(owner_username)

    def is_owner(self, ctx: CommandContext) -> bool:
        return ctx.sender.login == self.owner_username

    @command()
    async def addaccount(self, ctx: CommandContext) -> None:
        """Link a Spectre player id to this channel.

        Usage: !addaccount <playerID>
        Broadcaster, moderators and the bot owner only.
        """
        if not (ctx.sender.is_moderator or self.is_owner(ctx)):
            ctx.reply("you do not have permission to run this command.")
            return
        if not ctx.args:
            ctx.reply("please provide a valid player ID.")
            return

        player_id = ctx.args[0]
        LOGGER.info(f"[{ctx.channel}] Linking player ID: {player_id}")
        try:
            await self.coordinator.link_player(ctx.channel, player_id)
        except Exception as e:
            LOGGER.error(f"[{ctx.channel}] Error linking player: {e}")
            ctx.reply("there was an error executing the command.")
            return
        ctx.reply(f"your account has been successfully linked with player ID: {player_id}")

    @command()
    async def resetdb(self, ctx: CommandContext) -> None:
        """Remove every linked account, refresh timer and connection.

        Usage: !resetdb
        Bot owner only.
        """
        if not self.is_owner(ctx):
            ctx.reply("you do not have permission to run this command.")
            return

        try:
            await self.coordinator.reset(
                on_cleared=lambda: ctx.reply("the database has been reset successfully.")
            )
        except Exception as e:
            LOGGER.error(f"Error resetting accounts: {e}")
            ctx.reply("there was an error executing the command.")
