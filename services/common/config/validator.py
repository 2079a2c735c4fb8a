"""Validators for configuration fields."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

from services.common.structured_logging import get_logger

logger = get_logger(__name__)

SNOWFLAKE_MAX = 2**64


def validate_url(url: str) -> bool:
    """True for an absolute http(s) URL with a host."""
    if not url:
        return False
    parts = urlsplit(url)
    return parts.scheme in ("http", "https") and bool(parts.hostname)


def validate_optional_url(url: str) -> bool:
    """Like ``validate_url``, but an empty string (feature disabled) passes."""
    return not url or validate_url(url)


def validate_snowflake(value: int) -> bool:
    return 0 < value < SNOWFLAKE_MAX


def create_validator(
    validator_func: Callable[[Any], bool], error_msg: str
) -> Callable[[Any], bool]:
    """Wrap ``validator_func`` so that a failure is logged with ``error_msg``.

    Exceptions raised by the wrapped function count as failures.
    """

    def validator(value: Any) -> bool:
        try:
            valid = validator_func(value)
        except Exception as exc:
            logger.warning(
                "config.validator_error",
                validator=validator_func.__name__,
                error=str(exc),
            )
            return False
        if not valid:
            logger.debug("config.validation_rejected", reason=error_msg)
        return valid

    return validator


validate_webhook_url = create_validator(validate_optional_url, "Invalid webhook URL")
validate_discord_id = create_validator(validate_snowflake, "Invalid Discord ID")
