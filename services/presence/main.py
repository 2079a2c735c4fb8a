"""Entrypoint for the voice presence agent."""

from __future__ import annotations

import asyncio
import sys

from services.common.config import ConfigError
from services.common.structured_logging import configure_logging, get_logger

from .config import load_config
from .discord_voice import run_bot


def main() -> None:
    try:
        config = load_config()
    except ConfigError as exc:
        configure_logging("INFO", json_logs=False, service_name="presence")
        get_logger(__name__, service_name="presence").error(
            "presence.config_invalid", error=str(exc)
        )
        sys.exit(2)

    configure_logging(
        config.logging.level,
        json_logs=config.logging.json_logs,
        service_name=config.logging.service_name,
    )
    get_logger(__name__, service_name="presence").info(
        "presence.starting", **config.presence.to_dict(mask_secrets=True)
    )
    try:
        asyncio.run(run_bot(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
