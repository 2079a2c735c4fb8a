"""Session state and value types for the presence agent."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .voice import VoiceHandle


class ConnectionStatus(Enum):
    """Observable status of a voice connection handle."""

    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class ConnectionPhase(Enum):
    """Phase of the current connection as tracked by the connection manager."""

    IDLE = "idle"
    JOINING = "joining"
    READY = "ready"
    PENDING_CHECK = "pending_check"
    DESTROYED = "destroyed"


class JoinFailure(Enum):
    """Reasons a join attempt did not produce a connection."""

    PAUSED = "paused"
    JOIN_IN_PROGRESS = "join_in_progress"
    TARGET_NOT_FOUND = "target_not_found"
    CHANNEL_FULL = "channel_full"
    TIMEOUT = "timeout"
    DISCONNECTED = "disconnected"
    ERROR = "error"


# Failures that are routed to the delayed reconnect.
TRANSIENT_FAILURES = frozenset(
    {JoinFailure.TIMEOUT, JoinFailure.DISCONNECTED, JoinFailure.ERROR}
)


@dataclass(frozen=True, slots=True)
class JoinResult:
    """Outcome of a single join attempt."""

    ok: bool
    reason: JoinFailure | None = None

    @classmethod
    def success(cls) -> JoinResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, reason: JoinFailure) -> JoinResult:
        return cls(ok=False, reason=reason)

    @property
    def transient(self) -> bool:
        return self.reason in TRANSIENT_FAILURES


@dataclass(frozen=True, slots=True)
class TargetLocation:
    """The one guild/channel pair the agent holds presence in."""

    guild_id: int
    channel_id: int


class SessionState:
    """Process-wide session flags.

    All mutation goes through methods so that the flag invariants hold:
    the agent is never both paused and retrying, and at most one connection
    handle is referenced at a time.
    """

    def __init__(self) -> None:
        self._paused = False
        self._pause_reason: str | None = None
        self._joining = False
        self._retrying = False
        self._active: VoiceHandle | None = None

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def pause_reason(self) -> str | None:
        return self._pause_reason

    @property
    def joining(self) -> bool:
        return self._joining

    @property
    def retrying(self) -> bool:
        return self._retrying

    @property
    def active_connection(self) -> VoiceHandle | None:
        return self._active

    def pause(self, reason: str) -> bool:
        """Enter the paused state. Returns False if already paused."""
        self._retrying = False
        if self._paused:
            return False
        self._paused = True
        self._pause_reason = reason
        return True

    def resume(self) -> bool:
        """Leave the paused state. Returns False if not paused."""
        if not self._paused:
            return False
        self._paused = False
        self._pause_reason = None
        return True

    def begin_join(self) -> bool:
        """Take the join mutex. Returns False if a join is already in flight."""
        if self._joining:
            return False
        self._joining = True
        return True

    def end_join(self) -> None:
        self._joining = False

    def begin_retry(self) -> bool:
        """Enter retry mode. Refused while paused or already retrying."""
        if self._paused or self._retrying:
            return False
        self._retrying = True
        return True

    def end_retry(self) -> bool:
        """Leave retry mode. Returns True if retry mode was active."""
        was_retrying = self._retrying
        self._retrying = False
        return was_retrying

    def set_active(self, handle: VoiceHandle) -> None:
        if self._active is not None and self._active is not handle:
            raise RuntimeError("another connection is still active")
        self._active = handle

    def clear_active(self, handle: VoiceHandle) -> bool:
        """Drop the reference to ``handle`` if it is still the current one."""
        if self._active is handle:
            self._active = None
            return True
        return False

    def is_current(self, handle: VoiceHandle) -> bool:
        return self._active is handle

    def snapshot(self) -> dict[str, Any]:
        return {
            "paused": self._paused,
            "pause_reason": self._pause_reason,
            "joining": self._joining,
            "retrying": self._retrying,
            "connected": self._active is not None,
        }


__all__ = [
    "ConnectionPhase",
    "ConnectionStatus",
    "JoinFailure",
    "JoinResult",
    "SessionState",
    "TRANSIENT_FAILURES",
    "TargetLocation",
]
