"""Text commands typed by the owner."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from services.common.structured_logging import get_logger

from .arbiter import PresenceArbiter
from .connection import ConnectionManager

RESUME_COMMAND = "&povv"
PAUSE_COMMAND = "!vc pause"
STATUS_COMMAND = "!vc status"


class Command(Enum):
    RESUME = RESUME_COMMAND
    PAUSE = PAUSE_COMMAND
    STATUS = STATUS_COMMAND


def parse_command(content: str) -> Command | None:
    """Match message text against the known commands, case-insensitively."""
    normalized = content.strip().lower()
    for command in Command:
        if normalized == command.value:
            return command
    return None


@dataclass(frozen=True, slots=True)
class IncomingMessage:
    """The parts of a chat message the dispatcher looks at."""

    author_id: int
    content: str
    delete: Callable[[], Awaitable[None]]


def format_status(paused: bool, retrying: bool) -> str:
    text = "paused" if paused else "running"
    if retrying:
        text += " (retry mode)"
    return text


class CommandDispatcher:
    """Maps the three control commands onto manager and arbiter operations."""

    def __init__(
        self,
        manager: ConnectionManager,
        arbiter: PresenceArbiter,
        owner_id: int,
    ) -> None:
        self._manager = manager
        self._arbiter = arbiter
        self._owner_id = owner_id
        self._logger = get_logger(__name__, service_name="presence")

    async def dispatch(self, message: IncomingMessage) -> str | None:
        """Run the command in ``message``, if any.

        Returns the status text for the status command, the command name for
        the others, and None when the message is not a command for us.
        """
        if message.author_id != self._owner_id:
            return None
        command = parse_command(message.content)
        if command is None:
            return None

        if command is Command.RESUME:
            self._logger.info("command.resume")
            await self._acknowledge(message)
            await self._arbiter.resume()
            return command.name.lower()

        if command is Command.PAUSE:
            self._logger.info("command.pause")
            await self._manager.pause("command")
            await self._acknowledge(message)
            return command.name.lower()

        state = self._manager.state
        status = format_status(state.paused, state.retrying)
        self._logger.info("command.status", status=status, **state.snapshot())
        await self._acknowledge(message)
        return status

    async def _acknowledge(self, message: IncomingMessage) -> None:
        try:
            await message.delete()
        except Exception as exc:
            self._logger.debug("command.delete_failed", error=str(exc))


__all__ = [
    "Command",
    "CommandDispatcher",
    "IncomingMessage",
    "PAUSE_COMMAND",
    "RESUME_COMMAND",
    "STATUS_COMMAND",
    "format_status",
    "parse_command",
]
