"""Voice platform boundary: connection handles and the platform interface.

The connection manager only ever talks to these abstractions. The discord.py
implementation lives in ``discord_voice``; tests substitute in-memory fakes.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from services.common.structured_logging import get_logger

from .state import ConnectionStatus, TargetLocation

StatusListener = Callable[["VoiceHandle", ConnectionStatus, ConnectionStatus], None]


class PresenceError(Exception):
    """Base exception for presence agent failures."""


class TargetNotFoundError(PresenceError):
    """The configured guild or channel cannot be resolved.

    Requires operator intervention; callers must not retry.
    """

    def __init__(self, kind: str, target_id: int) -> None:
        self.kind = kind
        self.target_id = target_id
        super().__init__(f"{kind} {target_id} not found")


@dataclass(frozen=True, slots=True)
class ChannelSnapshot:
    """Freshly fetched metadata for the target voice channel."""

    channel_id: int
    name: str
    user_limit: int
    member_ids: frozenset[int] = field(default_factory=frozenset)

    def occupancy(self, *, excluding: int | None = None) -> int:
        if excluding is None:
            return len(self.member_ids)
        return len(self.member_ids - {excluding})

    def is_full(self, *, excluding: int | None = None) -> bool:
        """True when the channel has a user limit and it has been reached."""
        if self.user_limit <= 0:
            return False
        return self.occupancy(excluding=excluding) >= self.user_limit


class VoiceHandle(ABC):
    """An opaque voice connection with an observable status.

    Subclasses drive status changes through ``_set_status``; listeners are
    notified synchronously, in registration order, once per actual change.
    """

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._status = ConnectionStatus.SIGNALLING
        self._listeners: list[StatusListener] = []
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    def _set_status(self, status: ConnectionStatus) -> None:
        previous = self._status
        if previous is status or previous is ConnectionStatus.DESTROYED:
            return
        self._status = status
        self._logger.debug(
            "voice.status_changed",
            handle=self.label,
            previous=previous.value,
            status=status.value,
        )
        for listener in list(self._listeners):
            try:
                listener(self, previous, status)
            except Exception as exc:
                self._logger.exception(
                    "voice.status_listener_failed",
                    handle=self.label,
                    status=status.value,
                    error=str(exc),
                )

    async def wait_for(
        self, statuses: Iterable[ConnectionStatus], timeout: float
    ) -> ConnectionStatus | None:
        """Wait until the handle enters one of ``statuses``.

        Returns the status reached, or None on timeout. The temporary
        subscription is always removed, whichever way the wait ends.
        """
        wanted = frozenset(statuses)
        if self._status in wanted:
            return self._status

        loop = asyncio.get_running_loop()
        reached: asyncio.Future[ConnectionStatus] = loop.create_future()

        def _on_status(
            _handle: VoiceHandle, _previous: ConnectionStatus, status: ConnectionStatus
        ) -> None:
            if status in wanted and not reached.done():
                reached.set_result(status)

        self.add_listener(_on_status)
        try:
            return await asyncio.wait_for(reached, timeout=timeout)
        except asyncio.TimeoutError:
            return None
        finally:
            self.remove_listener(_on_status)

    @abstractmethod
    async def destroy(self) -> None:
        """Tear down the underlying connection and enter DESTROYED."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.label!r} status={self._status.value}>"


class VoicePlatform(ABC):
    """Operations the presence agent needs from the chat platform."""

    @property
    @abstractmethod
    def user_id(self) -> int:
        """ID of the agent's own (bot) account."""

    @abstractmethod
    async def fetch_channel(self, target: TargetLocation) -> ChannelSnapshot:
        """Fetch target channel metadata, bypassing caches.

        Raises:
            TargetNotFoundError: the guild or channel does not exist or is not
                a voice channel.
        """

    @abstractmethod
    async def fetch_voice_channel_id(self, guild_id: int) -> int | None:
        """Fetch the owner's current voice channel in ``guild_id``.

        Must query the platform, never a local cache. Returns None when the
        owner is not in voice.
        """

    @abstractmethod
    async def connect(
        self, target: TargetLocation, *, self_mute: bool, self_deaf: bool
    ) -> VoiceHandle:
        """Start connecting to ``target`` and return the handle immediately."""

    @abstractmethod
    async def disconnect_orphan(self, guild_id: int) -> bool:
        """Disconnect any platform-side voice connection in ``guild_id``.

        Returns True if one was found.
        """


__all__ = [
    "ChannelSnapshot",
    "PresenceError",
    "StatusListener",
    "TargetNotFoundError",
    "VoiceHandle",
    "VoicePlatform",
]
