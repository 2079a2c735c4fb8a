"""Global test configuration and fixtures for voice-keeper."""

from collections.abc import Generator
import os
from typing import Any

from freezegun import freeze_time
import pytest
import structlog


# Variables read by the config library; a developer's shell must not leak in.
AGENT_ENV_VARS = (
    "DISCORD_TOKEN",
    "GUILD_ID",
    "CHANNEL_ID",
    "OWNER_ID",
    "WEBHOOK_URL",
    "WEBHOOK_MENTION",
    "LOG_LEVEL",
    "LOG_JSON",
    "SERVICE_NAME",
)


@pytest.fixture(scope="session", autouse=True)
def setup_test_logging() -> None:
    """Route structlog through stdlib logging with JSON rendering."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@pytest.fixture(autouse=True)
def reset_environment() -> Generator[None, None, None]:
    """Run each test without agent variables and restore os.environ after."""
    original_env = os.environ.copy()
    for name in AGENT_ENV_VARS:
        os.environ.pop(name, None)

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def mock_time() -> Generator[Any, None, None]:
    """Freeze wall-clock time for payload timestamps."""
    with freeze_time("2024-01-01 12:00:00") as frozen_time:
        yield frozen_time


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Mark tests unit or component from their directory."""
    for item in items:
        test_path = str(item.fspath)
        if "services/tests/" not in test_path:
            continue
        relative_path = test_path.split("services/tests/", 1)[1]
        if relative_path.startswith("unit/"):
            item.add_marker(pytest.mark.unit)
        elif relative_path.startswith("component/"):
            item.add_marker(pytest.mark.component)
