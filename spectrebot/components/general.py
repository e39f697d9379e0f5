from spectrebot.core.router import CommandContext, Component, command

COMMAND_LIST = "!rank !lastmatch !record !addaccount <playerID>"


class GeneralCommands(Component):
    """General user commands for the bot."""

    @command()
    async def help(self, ctx: CommandContext) -> None:
        """Point users at the support server.

        Usage: !help
        """
        ctx.reply(
            "If you need help with the bot, please visit discord.gg/santaigg , "
            f"Otherwise, current Spectre commands are {COMMAND_LIST}"
        )

    @command("commands")
    async def list_commands(self, ctx: CommandContext) -> None:
        """List available commands.

        Usage: !commands
        """
        ctx.reply(f"current Spectre commands are {COMMAND_LIST}")
