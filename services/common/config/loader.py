"""Loading configuration classes from the environment."""

from __future__ import annotations

from typing import Any, TypeVar

from services.common.structured_logging import get_logger

from .base import BaseConfig, ConfigError


C = TypeVar("C", bound=BaseConfig)

logger = get_logger(__name__)


def load_config_from_env(config_class: type[C], **overrides: Any) -> C:
    """Instantiate ``config_class`` from the environment.

    Keyword ``overrides`` stand in for unset environment variables. Secret
    fields are masked in the debug summary.

    Raises:
        ConfigError: a required field is missing or a value is invalid.
    """
    try:
        config = config_class(**overrides)
    except ConfigError as exc:
        logger.error(
            "config.load_failed", config_class=config_class.__name__, error=str(exc)
        )
        raise

    values = config.to_dict(mask_secrets=True)
    logger.debug(
        "config.loaded",
        config_class=config_class.__name__,
        values=values,
        from_env=sorted(name for name in values if config.source_of(name) == "env"),
    )
    return config
