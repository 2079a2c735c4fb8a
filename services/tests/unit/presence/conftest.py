"""Fixtures shared by the presence agent unit tests."""

import json
from typing import Any

import httpx
import pytest

from services.presence.arbiter import PresenceArbiter
from services.presence.connection import ConnectionManager
from services.presence.notifications import NotificationService
from services.presence.state import SessionState, TargetLocation
from services.tests.mocks.voice_platform import (
    GUILD_ID,
    OWNER_ID,
    TARGET_CHANNEL_ID,
    USER_ID,
    FakeVoicePlatform,
)

WEBHOOK_URL = "https://hooks.example.com/api/webhooks/1/token"


@pytest.fixture
def target() -> TargetLocation:
    return TargetLocation(guild_id=GUILD_ID, channel_id=TARGET_CHANNEL_ID)


@pytest.fixture
def state() -> SessionState:
    return SessionState()


@pytest.fixture
def platform() -> FakeVoicePlatform:
    return FakeVoicePlatform(user_id=USER_ID, channel_id=TARGET_CHANNEL_ID)


@pytest.fixture
def webhook_requests() -> list[dict[str, Any]]:
    """Bodies posted to the webhook, in order."""
    return []


@pytest.fixture
def notifier(webhook_requests: list[dict[str, Any]]) -> NotificationService:
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(json.loads(request.content))
        return httpx.Response(204)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return NotificationService(WEBHOOK_URL, client=client, cooldown_seconds=30.0)


@pytest.fixture
def manager(
    state: SessionState,
    platform: FakeVoicePlatform,
    target: TargetLocation,
    notifier: NotificationService,
) -> ConnectionManager:
    """Manager with timings shrunk so lifecycle tests finish in milliseconds."""
    return ConnectionManager(
        state,
        platform,
        target,
        notifier,
        join_timeout_seconds=0.05,
        squeeze_grace_seconds=0.05,
        squeeze_fetch_attempts=2,
        reconnect_delay_seconds=0.01,
        retry_interval_seconds=0.02,
    )


@pytest.fixture
def arbiter(manager: ConnectionManager) -> PresenceArbiter:
    return PresenceArbiter(manager, OWNER_ID, agent_id=USER_ID)
