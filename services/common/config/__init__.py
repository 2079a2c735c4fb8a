"""Configuration system for voice-keeper services.

This module provides:
- Environment-driven configuration classes
- Type conversion and validation
- Shared logging configuration
"""

from .base import (
    BaseConfig,
    ConfigError,
    FieldDefinition,
    LoggingConfig,
    RequiredFieldError,
    ValidationError,
)
from .loader import load_config_from_env
from .validator import (
    create_validator,
    validate_discord_id,
    validate_optional_url,
    validate_snowflake,
    validate_url,
    validate_webhook_url,
)


__all__ = [
    # Base classes
    "BaseConfig",
    "ConfigError",
    "ValidationError",
    "RequiredFieldError",
    "FieldDefinition",
    # Core configurations
    "LoggingConfig",
    # Utilities
    "load_config_from_env",
    # Validators
    "create_validator",
    "validate_discord_id",
    "validate_optional_url",
    "validate_snowflake",
    "validate_url",
    "validate_webhook_url",
]
