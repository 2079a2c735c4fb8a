"""Owner-presence decisions driven by voice-state changes."""

from __future__ import annotations

from dataclasses import dataclass

from services.common.structured_logging import get_logger

from .connection import ConnectionManager
from .state import JoinFailure, JoinResult, SessionState


@dataclass(frozen=True, slots=True)
class VoiceStateChange:
    """A voice-state transition of one guild member."""

    user_id: int
    guild_id: int
    before_channel_id: int | None
    after_channel_id: int | None


class PresenceArbiter:
    """Yields the channel to the owner and takes it back when they leave voice.

    The owner is a human account distinct from the agent's bot account.
    Changes of the agent's own voice state (``agent_id``) are connection
    health, handled here only when the agent was moved out of the target.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        owner_id: int,
        *,
        agent_id: int | None = None,
    ) -> None:
        self._manager = manager
        self._owner_id = owner_id
        self._agent_id = agent_id
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def state(self) -> SessionState:
        return self._manager.state

    async def startup(self, owner_channel_id: int | None) -> JoinResult:
        """Initial decision before any event has been seen.

        ``owner_channel_id`` is the owner's voice channel as fetched at startup.
        """
        target_channel_id = self._manager.target.channel_id
        if owner_channel_id == target_channel_id:
            self._manager.pause_state("owner_in_target")
            self._logger.info("presence.startup_paused", reason="owner_in_target")
            return JoinResult.failure(JoinFailure.PAUSED)
        if owner_channel_id is not None:
            self._manager.pause_state("owner_elsewhere")
            self._logger.info(
                "presence.startup_paused",
                reason="owner_elsewhere",
                owner_channel_id=owner_channel_id,
            )
            return JoinResult.failure(JoinFailure.PAUSED)
        return await self._manager.join()

    async def handle_voice_state(self, change: VoiceStateChange) -> JoinResult | None:
        """React to one voice-state change. Returns the join result if a join ran."""
        if change.guild_id != self._manager.target.guild_id:
            return None
        if change.before_channel_id == change.after_channel_id:
            return None

        target_channel_id = self._manager.target.channel_id
        after = change.after_channel_id

        if self._agent_id is not None and change.user_id == self._agent_id:
            if after is not None and after != target_channel_id and not self.state.paused:
                self._logger.info(
                    "presence.agent_moved",
                    from_channel_id=change.before_channel_id,
                    to_channel_id=after,
                )
                return await self._manager.join()
            return None

        if change.user_id != self._owner_id:
            return None

        if after is None:
            self._logger.info(
                "presence.owner_left_voice",
                from_channel_id=change.before_channel_id,
                was_paused=self.state.paused,
            )
            self._manager.resume()
            return await self._manager.join()

        if self.state.paused:
            return None

        reason = "owner_in_target" if after == target_channel_id else "owner_elsewhere"
        self._logger.info("presence.owner_joined_voice", owner_channel_id=after)
        await self._manager.pause(reason)
        return None

    async def resume(self) -> JoinResult:
        """Clear the pause and join immediately."""
        self._manager.resume()
        return await self._manager.join()


__all__ = ["PresenceArbiter", "VoiceStateChange"]
