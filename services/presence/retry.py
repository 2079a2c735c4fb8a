"""Periodic rejoin while the target channel is at capacity."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from contextlib import suppress

from services.common.structured_logging import get_logger

from .notifications import NotificationKind, NotificationService
from .state import JoinFailure, JoinResult, SessionState

JoinCallback = Callable[[], Awaitable[JoinResult]]


class RetryScheduler:
    """Owns the single repeating retry timer.

    ``enter`` and ``exit`` are idempotent. While armed, the timer calls the
    join callback every ``interval_seconds`` until a join succeeds, the
    target disappears, or retry mode is cancelled from outside.
    """

    def __init__(
        self,
        state: SessionState,
        notifier: NotificationService,
        join: JoinCallback,
        *,
        interval_seconds: float = 5.0,
    ) -> None:
        self._state = state
        self._notifier = notifier
        self._join = join
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self._attempts = 0
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def armed(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def attempts(self) -> int:
        return self._attempts

    def enter(self, reason: str) -> bool:
        """Enter retry mode. Returns False if already retrying or paused."""
        if not self._state.begin_retry():
            return False
        self._attempts = 0
        self._logger.warning(
            "retry.entered",
            reason=reason,
            interval_seconds=self._interval_seconds,
        )
        self._notifier.dispatch(
            NotificationKind.CAPACITY,
            f"Target channel unavailable ({reason}); retrying every "
            f"{self._interval_seconds:g}s.",
        )
        self._arm()
        return True

    def exit(self, success: bool) -> bool:
        """Leave retry mode. Returns True if retry mode was active."""
        self._cancel_timer()
        was_retrying = self._state.end_retry()
        if not was_retrying:
            return False
        self._logger.info("retry.exited", success=success, attempts=self._attempts)
        if success:
            self._notifier.dispatch(
                NotificationKind.RECOVERED,
                f"Rejoined the target channel after {self._attempts} retry attempt(s).",
            )
        return True

    def _arm(self) -> None:
        self._cancel_timer()
        self._task = asyncio.get_running_loop().create_task(self._run())

    def _cancel_timer(self) -> None:
        task = self._task
        if task is None:
            return
        self._task = None
        if task is asyncio.current_task():
            return
        task.cancel()

    async def _run(self) -> None:
        while self._state.retrying:
            await asyncio.sleep(self._interval_seconds)
            if not self._state.retrying:
                return
            self._attempts += 1
            try:
                result = await self._join()
            except Exception as exc:
                self._logger.exception(
                    "retry.join_raised", attempt=self._attempts, error=str(exc)
                )
                continue

            if result.ok:
                self.exit(success=True)
                return
            if result.reason is JoinFailure.TARGET_NOT_FOUND:
                self.exit(success=False)
                return
            self._logger.debug(
                "retry.attempt_failed",
                attempt=self._attempts,
                reason=result.reason.value if result.reason else None,
            )
            if result.reason is JoinFailure.CHANNEL_FULL:
                self._notifier.dispatch(
                    NotificationKind.CAPACITY,
                    f"Target channel still full after {self._attempts} attempt(s).",
                )

    async def aclose(self) -> None:
        task = self._task
        self.exit(success=False)
        if task is not None and task is not asyncio.current_task():
            with suppress(asyncio.CancelledError):
                await task


__all__ = ["JoinCallback", "RetryScheduler"]
