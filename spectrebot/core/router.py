"""Chat command routing.

Commands are registered once at startup from component objects; there is
no dynamic discovery.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spectrebot.core.chat import ChatConnection, ChatSender

LOGGER = logging.getLogger("spectrebot.router")


def split_command(text: str) -> tuple[str, list[str]]:
    """Split a chat line into a lower-cased command token and its arguments."""
    tokens = text.split()
    if not tokens:
        return "", []
    return tokens[0].lower(), tokens[1:]


@dataclass
class CommandContext:
    connection: ChatConnection
    channel: str
    text: str
    sender: ChatSender
    command: str
    args: list[str] = field(default_factory=list)

    def say(self, text: str) -> None:
        self.connection.send(text)

    def reply(self, text: str) -> None:
        """Send a message that mentions the sender."""
        self.connection.send(f"@{self.sender.display_name}, {text}")


Handler = Callable[[CommandContext], Awaitable[None]]


def command(*names: str) -> Callable[[Handler], Handler]:
    """Mark a component method as a chat command.

    Usage: ``@command()`` registers the method name, ``@command("a", "b")``
    registers the given names instead.
    """

    def decorator(func: Handler) -> Handler:
        func.__command_names__ = names or (func.__name__,)  # type: ignore[attr-defined]
        return func

    return decorator


class Component:
    """Group of related chat commands."""

    def commands(self) -> dict[str, Handler]:
        table: dict[str, Handler] = {}
        for attr in dir(type(self)):
            names = getattr(getattr(type(self), attr, None), "__command_names__", None)
            if names:
                handler = getattr(self, attr)
                for name in names:
                    table[name] = handler
        return table


class CommandRouter:
    """Maps command tokens (``!rank``) to handlers."""

    def __init__(self, prefix: str = "!") -> None:
        self.prefix = prefix
        self._commands: dict[str, Handler] = {}

    def register(self, name: str, handler: Handler) -> None:
        key = name.lower()
        if not key.startswith(self.prefix):
            key = f"{self.prefix}{key}"
        if key in self._commands:
            LOGGER.warning(f"Command {key} registered twice, keeping the latest")
        self._commands[key] = handler

    def add_component(self, component: Component) -> None:
        for name, handler in component.commands().items():
            self.register(name, handler)

    @property
    def command_names(self) -> list[str]:
        return sorted(self._commands)

    async def dispatch(
        self,
        connection: ChatConnection,
        channel: str,
        text: str,
        sender: ChatSender,
        args: list[str] | None = None,
    ) -> bool:
        """Run the handler for the message's command. Returns False if none matched.

        Handler errors are logged and never propagate.
        """
        token, parsed = split_command(text)
        handler = self._commands.get(token)
        if handler is None:
            return False

        ctx = CommandContext(
            connection=connection,
            channel=channel,
            text=text,
            sender=sender,
            command=token,
            args=parsed if args is None else args,
        )
        LOGGER.debug(f"[{channel}] {sender.login}: {token} {ctx.args}")
        try:
            await handler(ctx)
        except Exception as e:
            LOGGER.exception(f"[{channel}] Error executing {token}: {e}")
        return True
