"""Outbound webhook notifications with per-kind throttling."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum

import httpx
from pydantic import BaseModel, Field

from services.common.structured_logging import get_logger


class NotificationKind(Enum):
    """Notification classes; each selects an embed title and color."""

    CAPACITY = "capacity"
    RECOVERED = "recovered"
    ERROR = "error"
    GENERIC = "generic"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def color(self) -> int:
        return _COLORS[self]


_TITLES: dict[NotificationKind, str] = {
    NotificationKind.CAPACITY: "Channel full",
    NotificationKind.RECOVERED: "Recovered",
    NotificationKind.ERROR: "Error",
    NotificationKind.GENERIC: "Status",
}

_COLORS: dict[NotificationKind, int] = {
    NotificationKind.CAPACITY: 0xF1C40F,  # amber
    NotificationKind.RECOVERED: 0x2ECC71,  # green
    NotificationKind.ERROR: 0xE74C3C,  # red
    NotificationKind.GENERIC: 0x3498DB,  # blue
}

THROTTLED_KINDS = frozenset({NotificationKind.CAPACITY})
DEFAULT_FOOTER = "voice-keeper"


class EmbedFooter(BaseModel):
    """Footer block of a webhook embed."""

    text: str = Field(..., description="Footer text")


class WebhookEmbed(BaseModel):
    """A single embed in a webhook message."""

    title: str = Field(..., description="Embed title")
    description: str = Field(..., description="Embed body text")
    color: int = Field(..., description="Sidebar color as a 24-bit integer")
    timestamp: str = Field(..., description="ISO-8601 timestamp")
    footer: EmbedFooter = Field(..., description="Embed footer")


class WebhookPayload(BaseModel):
    """Webhook message body."""

    content: str = Field("", description="Mention string or empty")
    embeds: list[WebhookEmbed] = Field(..., description="Message embeds")


def build_payload(
    kind: NotificationKind,
    text: str,
    *,
    mention: str = "",
    footer: str = DEFAULT_FOOTER,
    now: datetime | None = None,
) -> WebhookPayload:
    """Build the webhook body for one notification."""
    moment = now or datetime.now(timezone.utc)
    return WebhookPayload(
        content=mention,
        embeds=[
            WebhookEmbed(
                title=kind.title,
                description=text,
                color=kind.color,
                timestamp=moment.isoformat(),
                footer=EmbedFooter(text=footer),
            )
        ],
    )


class NotificationService:
    """Fire-and-forget webhook sender.

    Without a webhook URL every call is a no-op. Capacity notifications are
    suppressed for ``cooldown_seconds`` after the last successful send of
    that kind, and while one of that kind is still being sent; other kinds
    always go out. Delivery failures are logged and dropped.
    """

    def __init__(
        self,
        webhook_url: str = "",
        *,
        mention: str = "",
        cooldown_seconds: float = 30.0,
        timeout_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._webhook_url = webhook_url
        self._mention = mention
        self._cooldown_seconds = cooldown_seconds
        self._timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._clock = clock
        self._last_sent: dict[NotificationKind, float] = {}
        self._pending: set[asyncio.Task[bool]] = set()
        self._sending: set[NotificationKind] = set()
        self._logger = get_logger(__name__, service_name="presence")

    @property
    def enabled(self) -> bool:
        return bool(self._webhook_url)

    def last_sent_at(self, kind: NotificationKind) -> float | None:
        return self._last_sent.get(kind)

    def _throttled(self, kind: NotificationKind) -> bool:
        if kind not in THROTTLED_KINDS:
            return False
        if kind in self._sending:
            return True
        last = self._last_sent.get(kind)
        return last is not None and (self._clock() - last) < self._cooldown_seconds

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout_seconds)
            )
        return self._client

    async def notify(self, kind: NotificationKind, text: str) -> bool:
        """Send one notification. Returns True if it was delivered."""
        if not self.enabled:
            return False
        if self._throttled(kind):
            self._logger.debug("notify.suppressed", kind=kind.value)
            return False

        payload = build_payload(kind, text, mention=self._mention)
        self._sending.add(kind)
        try:
            response = await self._get_client().post(
                self._webhook_url, json=payload.model_dump()
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            self._logger.warning(
                "notify.delivery_failed",
                kind=kind.value,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        finally:
            self._sending.discard(kind)

        self._last_sent[kind] = self._clock()
        self._logger.info(
            "notify.sent", kind=kind.value, status_code=response.status_code
        )
        return True

    def dispatch(self, kind: NotificationKind, text: str) -> asyncio.Task[bool] | None:
        """Schedule ``notify`` in the background without awaiting it."""
        if not self.enabled:
            return None
        task = asyncio.get_running_loop().create_task(self.notify(kind, text))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched notification to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


__all__ = [
    "EmbedFooter",
    "NotificationKind",
    "NotificationService",
    "WebhookEmbed",
    "WebhookPayload",
    "build_payload",
]
