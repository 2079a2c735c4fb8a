"""Connection lifecycle for the single held voice connection.

The manager owns the one live ``VoiceHandle``. Status changes on the current
handle drive a small phase machine; a drop from an established connection
runs the squeeze check, which decides between "owner took the seat back"
(pause, stay off) and "network dropped us" (reconnect after a short delay).

The squeeze check relies on ordering: wait out the grace window first, then
read membership from the platform rather than the local cache. The cache lags
the disconnect event, so reading it early reports the owner as absent and the
agent would reconnect over them.
"""

from __future__ import annotations

import asyncio
import itertools
from contextlib import suppress

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
)

from services.common.structured_logging import correlation_context, get_logger

from .notifications import NotificationKind, NotificationService
from .retry import RetryScheduler
from .state import (
    ConnectionPhase,
    ConnectionStatus,
    JoinFailure,
    JoinResult,
    SessionState,
    TargetLocation,
)
from .voice import TargetNotFoundError, VoiceHandle, VoicePlatform

_RECOVERING = frozenset({ConnectionStatus.SIGNALLING, ConnectionStatus.CONNECTING})
_JOIN_SETTLED = frozenset({ConnectionStatus.READY, ConnectionStatus.DISCONNECTED})

# (phase, status) -> next phase for the current handle. Pairs not listed leave
# the phase unchanged. Entering PENDING_CHECK starts the squeeze check.
_Phase = ConnectionPhase
_Status = ConnectionStatus

PHASE_TRANSITIONS: dict[tuple[ConnectionPhase, ConnectionStatus], ConnectionPhase] = {
    (_Phase.JOINING, _Status.READY): _Phase.READY,
    (_Phase.JOINING, _Status.DISCONNECTED): _Phase.PENDING_CHECK,
    (_Phase.READY, _Status.SIGNALLING): _Phase.JOINING,
    (_Phase.READY, _Status.CONNECTING): _Phase.JOINING,
    (_Phase.READY, _Status.DISCONNECTED): _Phase.PENDING_CHECK,
    (_Phase.IDLE, _Status.DESTROYED): _Phase.DESTROYED,
    (_Phase.JOINING, _Status.DESTROYED): _Phase.DESTROYED,
    (_Phase.READY, _Status.DESTROYED): _Phase.DESTROYED,
    (_Phase.PENDING_CHECK, _Status.DESTROYED): _Phase.DESTROYED,
}


def next_phase(phase: ConnectionPhase, status: ConnectionStatus) -> ConnectionPhase:
    return PHASE_TRANSITIONS.get((phase, status), phase)


class ConnectionManager:
    """Performs join/leave and decides how to react to connection drops."""

    def __init__(
        self,
        state: SessionState,
        platform: VoicePlatform,
        target: TargetLocation,
        notifier: NotificationService,
        *,
        join_timeout_seconds: float = 10.0,
        squeeze_grace_seconds: float = 1.2,
        squeeze_fetch_attempts: int = 2,
        reconnect_delay_seconds: float = 0.5,
        retry_interval_seconds: float = 5.0,
        self_mute: bool = True,
        self_deaf: bool = False,
    ) -> None:
        self.state = state
        self.target = target
        self._platform = platform
        self._notifier = notifier
        self._join_timeout_seconds = join_timeout_seconds
        self._squeeze_grace_seconds = squeeze_grace_seconds
        self._squeeze_fetch_attempts = max(1, squeeze_fetch_attempts)
        self._reconnect_delay_seconds = reconnect_delay_seconds
        self._self_mute = self_mute
        self._self_deaf = self_deaf
        self.retry = RetryScheduler(
            state,
            notifier,
            self.attempt_join,
            interval_seconds=retry_interval_seconds,
        )
        self._phase = ConnectionPhase.IDLE
        self._check_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._attempt_ids = itertools.count(1)
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def connected(self) -> bool:
        return self.state.active_connection is not None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # -- join / leave -----------------------------------------------------

    async def attempt_join(self) -> JoinResult:
        """Open a fresh connection to the target channel.

        Refuses while paused or while another join is in flight. Never raises;
        every failure is reported through the returned ``JoinResult``.
        """
        if self.state.paused:
            self._logger.info("presence.join_skipped", reason="paused")
            return JoinResult.failure(JoinFailure.PAUSED)
        if not self.state.begin_join():
            self._logger.debug("presence.join_skipped", reason="join_in_progress")
            return JoinResult.failure(JoinFailure.JOIN_IN_PROGRESS)

        attempt_id = f"join-{next(self._attempt_ids)}"
        try:
            with correlation_context(attempt_id):
                return await self._attempt_join()
        finally:
            self.state.end_join()

    async def _attempt_join(self) -> JoinResult:
        target = self.target
        try:
            snapshot = await self._platform.fetch_channel(target)
        except TargetNotFoundError as exc:
            self._logger.error(
                "presence.target_not_found",
                guild_id=target.guild_id,
                channel_id=target.channel_id,
                error=str(exc),
            )
            return JoinResult.failure(JoinFailure.TARGET_NOT_FOUND)
        except Exception as exc:
            self._logger.warning(
                "presence.channel_fetch_failed",
                guild_id=target.guild_id,
                channel_id=target.channel_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return JoinResult.failure(JoinFailure.ERROR)

        if snapshot.is_full(excluding=self._platform.user_id):
            self._logger.warning(
                "presence.channel_full",
                channel_id=snapshot.channel_id,
                occupancy=snapshot.occupancy(excluding=self._platform.user_id),
                user_limit=snapshot.user_limit,
            )
            return JoinResult.failure(JoinFailure.CHANNEL_FULL)

        previous = self.state.active_connection
        if previous is not None:
            self._logger.info("presence.connection_replaced", handle=previous.label)
            await self.destroy(previous)

        self._logger.info(
            "presence.join_attempt",
            guild_id=target.guild_id,
            channel_id=target.channel_id,
            channel_name=snapshot.name,
        )
        handle: VoiceHandle | None = None
        try:
            handle = await self._platform.connect(
                target, self_mute=self._self_mute, self_deaf=self._self_deaf
            )
            handle.add_listener(self._on_status)
            settled = await handle.wait_for(_JOIN_SETTLED, self._join_timeout_seconds)
        except Exception as exc:
            self._logger.warning(
                "presence.join_failed",
                reason=JoinFailure.ERROR.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if handle is not None:
                await self.destroy(handle)
            return JoinResult.failure(JoinFailure.ERROR)

        if settled is not ConnectionStatus.READY:
            reason = (
                JoinFailure.TIMEOUT if settled is None else JoinFailure.DISCONNECTED
            )
            self._logger.warning(
                "presence.join_failed",
                reason=reason.value,
                timeout_seconds=self._join_timeout_seconds,
            )
            await self.destroy(handle)
            return JoinResult.failure(reason)

        if self.state.paused:
            # Paused while the join was in flight: honour it now that it settled.
            self._logger.info("presence.join_discarded", reason="paused")
            await self.destroy(handle)
            return JoinResult.failure(JoinFailure.PAUSED)

        self.state.set_active(handle)
        self._phase = ConnectionPhase.JOINING
        self.retry.exit(success=True)
        self._logger.info(
            "presence.joined",
            guild_id=target.guild_id,
            channel_id=target.channel_id,
            channel_name=snapshot.name,
            handle=handle.label,
        )
        # Changes between settling and becoming current reached no listener;
        # replay the status now so a drop in that gap still starts a check.
        self._on_status(handle, ConnectionStatus.READY, handle.status)
        return JoinResult.success()

    async def join(self) -> JoinResult:
        """Attempt a join and route the failure to the matching recovery path."""
        result = await self.attempt_join()
        if result.ok:
            return result
        if result.reason is JoinFailure.CHANNEL_FULL:
            self.retry.enter("channel full")
        elif result.reason is JoinFailure.TARGET_NOT_FOUND:
            self._notifier.dispatch(
                NotificationKind.ERROR,
                f"Target guild {self.target.guild_id} / channel "
                f"{self.target.channel_id} could not be resolved. Check the configuration.",
            )
        elif result.transient and not self.state.retrying:
            self.schedule_reconnect(result.reason.value)
        return result

    async def leave(self) -> bool:
        """Drop the connection. Safe to call repeatedly.

        Returns True if a connection (local or orphaned) was torn down.
        """
        self.retry.exit(success=False)
        self.cancel_reconnect()
        self._cancel_check()

        handle = self.state.active_connection
        if handle is not None:
            await self.destroy(handle)
            self._logger.info("presence.left", handle=handle.label)
            return True

        try:
            orphaned = await self._platform.disconnect_orphan(self.target.guild_id)
        except Exception as exc:
            self._logger.warning(
                "presence.orphan_disconnect_failed",
                guild_id=self.target.guild_id,
                error=str(exc),
            )
            return False
        if orphaned:
            self._logger.info("presence.left_orphan", guild_id=self.target.guild_id)
        return orphaned

    def pause_state(self, reason: str) -> bool:
        """Set ``paused`` and cancel timers without touching the connection."""
        changed = self.state.pause(reason)
        self.retry.exit(success=False)
        self.cancel_reconnect()
        if changed:
            self._logger.info("presence.paused", reason=reason)
        return changed

    async def pause(self, reason: str) -> bool:
        """Pause and leave the channel."""
        changed = self.pause_state(reason)
        await self.leave()
        return changed

    def resume(self) -> bool:
        """Clear ``paused`` and retry mode. Does not join by itself."""
        self.retry.exit(success=False)
        changed = self.state.resume()
        if changed:
            self._logger.info("presence.resumed")
        return changed

    async def destroy(self, handle: VoiceHandle) -> None:
        """Detach from ``handle`` and tear it down.

        Only clears ``active_connection`` when ``handle`` is still current, so a
        late destroy of a superseded handle cannot drop the newer one.
        """
        handle.remove_listener(self._on_status)
        if self.state.clear_active(handle):
            self._phase = ConnectionPhase.DESTROYED
        try:
            await handle.destroy()
        except Exception as exc:
            self._logger.warning(
                "presence.destroy_failed", handle=handle.label, error=str(exc)
            )

    # -- reconnect ----------------------------------------------------------

    def schedule_reconnect(self, reason: str) -> None:
        """Rejoin after the reconnect delay, replacing any pending reconnect."""
        if self.state.paused:
            return
        self.cancel_reconnect()
        self._logger.info(
            "presence.reconnect_scheduled",
            reason=reason,
            delay_seconds=self._reconnect_delay_seconds,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after_delay(reason)
        )

    def cancel_reconnect(self) -> None:
        task = self._reconnect_task
        if task is None:
            return
        self._reconnect_task = None
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _reconnect_after_delay(self, reason: str) -> None:
        await asyncio.sleep(self._reconnect_delay_seconds)
        if self._reconnect_task is asyncio.current_task():
            self._reconnect_task = None
        if self.state.paused:
            return
        result = await self.join()
        self._logger.debug(
            "presence.reconnect_finished",
            reason=reason,
            ok=result.ok,
            failure=result.reason.value if result.reason else None,
        )

    # -- status handling ----------------------------------------------------

    def _on_status(
        self,
        handle: VoiceHandle,
        previous: ConnectionStatus,
        status: ConnectionStatus,
    ) -> None:
        if not self.state.is_current(handle):
            return

        if status is ConnectionStatus.DESTROYED:
            self.state.clear_active(handle)
            handle.remove_listener(self._on_status)
            self._cancel_check()

        phase = self._phase
        self._phase = next_phase(phase, status)
        entered_check = (
            self._phase is ConnectionPhase.PENDING_CHECK
            and phase is not ConnectionPhase.PENDING_CHECK
        )
        if entered_check:
            self._logger.warning(
                "presence.connection_lost",
                handle=handle.label,
                previous=previous.value,
            )
            self._start_check(handle)

    def _start_check(self, handle: VoiceHandle) -> None:
        self._cancel_check()
        self._check_task = asyncio.get_running_loop().create_task(
            self._squeeze_check(handle)
        )

    def _cancel_check(self) -> None:
        task = self._check_task
        if task is None:
            return
        self._check_task = None
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _squeeze_check(self, handle: VoiceHandle) -> None:
        with correlation_context(f"squeeze-{handle.label}"):
            try:
                await self._run_squeeze_check(handle)
            finally:
                if self._check_task is asyncio.current_task():
                    self._check_task = None

    async def _run_squeeze_check(self, handle: VoiceHandle) -> None:
        # 1. Grace window: let the platform try to recover on its own.
        await handle.wait_for(_RECOVERING, self._squeeze_grace_seconds)

        if not self.state.is_current(handle):
            return

        # 2. Recovering internally: keep the same listener, decide nothing.
        status = handle.status
        if status is not ConnectionStatus.DISCONNECTED:
            self._phase = (
                ConnectionPhase.READY
                if status is ConnectionStatus.READY
                else ConnectionPhase.JOINING
            )
            self._logger.info(
                "presence.connection_recovering", handle=handle.label, status=status.value
            )
            return

        # 3. Still down: ask the platform where the owner is now.
        owner_channel_id = await self._fetch_owner_channel()
        if not self.state.is_current(handle):
            return

        # 4. Owner holds the target channel: squeezed out, stay off.
        if owner_channel_id == self.target.channel_id:
            self._logger.info(
                "presence.squeeze_detected",
                handle=handle.label,
                channel_id=self.target.channel_id,
            )
            self.pause_state("squeeze")
            await self.destroy(handle)
            self._notifier.dispatch(
                NotificationKind.GENERIC,
                "Owner joined the target channel; paused until they leave voice.",
            )
            return

        # 5. Genuine drop: replace the connection after a short delay.
        self._logger.warning(
            "presence.network_drop",
            handle=handle.label,
            owner_channel_id=owner_channel_id,
        )
        if self.state.paused:
            return
        await self.destroy(handle)
        self.schedule_reconnect("network_drop")

    async def _fetch_owner_channel(self) -> int | None:
        """Fresh voice channel of the owner, or None if unknown.

        Exhausting the attempts also yields None, which the check treats as a
        network drop.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._squeeze_fetch_attempts),
            retry=retry_if_exception_type(Exception),
            after=self._log_fetch_failure,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._platform.fetch_voice_channel_id(
                        self.target.guild_id
                    )
        except RetryError as exc:
            self._logger.warning(
                "presence.membership_fetch_exhausted",
                attempts=exc.last_attempt.attempt_number,
            )
        return None

    def _log_fetch_failure(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.warning(
            "presence.membership_fetch_failed",
            attempt=retry_state.attempt_number,
            max_attempts=self._squeeze_fetch_attempts,
            error=str(exc),
            error_type=type(exc).__name__,
        )

    async def close(self) -> None:
        """Cancel background work owned by the manager."""
        tasks = [t for t in (self._reconnect_task, self._check_task) if t is not None]
        self.cancel_reconnect()
        self._cancel_check()
        await self.retry.aclose()
        for task in tasks:
            if task is not asyncio.current_task():
                with suppress(asyncio.CancelledError):
                    await task


__all__ = ["ConnectionManager", "PHASE_TRANSITIONS", "next_phase"]
