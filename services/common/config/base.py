"""Core configuration primitives for voice-keeper services.

A configuration class declares its fields once, as ``FieldDefinition``
entries. Each value is taken from the field's environment variable if set,
otherwise from a constructor keyword, otherwise from the declared default.
Validation runs on construction, so an instance that exists is a valid one.
"""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

_TRUE_STRINGS = frozenset({"true", "1", "yes", "on"})
_FALSE_STRINGS = frozenset({"false", "0", "no", "off", ""})
_MASK = "***"


class ConfigError(Exception):
    """Base exception for configuration-related errors."""

    pass


class ValidationError(ConfigError):
    """Exception raised when configuration validation fails."""

    def __init__(self, field_name: str, value: Any, message: str) -> None:
        self.field = field_name
        self.value = value
        self.message = message
        super().__init__(f"Validation failed for field '{field_name}': {message}")


class RequiredFieldError(ConfigError):
    """Exception raised when a required field is missing."""

    def __init__(self, field_name: str, env_var: str | None = None) -> None:
        self.field = field_name
        self.env_var = env_var
        hint = f" (set {env_var})" if env_var else ""
        super().__init__(f"Required field '{field_name}' is missing{hint}")


@dataclass(frozen=True)
class FieldDefinition:
    """Definition for a configuration field with validation rules.

    ``secret`` fields are masked by ``BaseConfig.to_dict(mask_secrets=True)``
    so that they can be logged safely.
    """

    name: str
    field_type: type[Any]
    default: Any = None
    required: bool = False
    description: str = ""
    validator: Callable[[Any], bool] | None = None
    env_var: str | None = None
    choices: list[Any] | None = None
    min_value: int | float | None = None
    max_value: int | float | None = None
    secret: bool = False

    def __post_init__(self) -> None:
        if self.required and self.default is not None:
            raise ValueError(
                f"Field '{self.name}' cannot be both required and have a default value"
            )
        if self.choices and self.default not in self.choices:
            raise ValueError(f"Field '{self.name}' default value not in choices")

    def parse(self, raw: str) -> Any:
        """Convert an environment string to the field type."""
        text = raw.strip()
        try:
            if self.field_type is bool:
                lowered = text.lower()
                if lowered in _TRUE_STRINGS:
                    return True
                if lowered in _FALSE_STRINGS:
                    return False
                raise ValueError(raw)
            if self.field_type in (int, float):
                return self.field_type(text)
        except ValueError as exc:
            raise ValidationError(
                self.name, raw, f"Expected {self.field_type.__name__}"
            ) from exc
        return text

    def check(self, value: Any) -> Any:
        """Validate ``value`` and return it in normalized form."""
        # Accept ints where floats are declared (e.g. DELAY=1).
        if self.field_type is float and isinstance(value, int):
            value = float(value)
        if not isinstance(value, self.field_type):
            raise ValidationError(
                self.name, value, f"Expected {self.field_type.__name__}"
            )

        if self.choices:
            if isinstance(value, str):
                value = next(
                    (
                        choice
                        for choice in self.choices
                        if isinstance(choice, str) and choice.upper() == value.upper()
                    ),
                    value,
                )
            if value not in self.choices:
                raise ValidationError(self.name, value, f"Must be one of {self.choices}")

        if self.min_value is not None and value < self.min_value:
            raise ValidationError(self.name, value, f"Must be >= {self.min_value}")
        if self.max_value is not None and value > self.max_value:
            raise ValidationError(self.name, value, f"Must be <= {self.max_value}")

        if self.validator and not self.validator(value):
            raise ValidationError(self.name, value, "Custom validation failed")
        return value


class BaseConfig(ABC):
    """Base configuration class with validation and environment loading."""

    def __init__(self, **overrides: Any) -> None:
        self._values: dict[str, Any] = {}
        self._sources: dict[str, str] = {}
        for field_def in self.get_field_definitions():
            value, source = self._resolve(field_def, overrides)
            if value is None or (field_def.required and value == ""):
                if field_def.required:
                    raise RequiredFieldError(field_def.name, field_def.env_var)
            else:
                value = field_def.check(value)
            self._values[field_def.name] = value
            self._sources[field_def.name] = source

    @staticmethod
    def _resolve(
        field_def: FieldDefinition, overrides: dict[str, Any]
    ) -> tuple[Any, str]:
        if field_def.env_var:
            raw = os.getenv(field_def.env_var)
            if raw is not None:
                return field_def.parse(raw), "env"
        if field_def.name in overrides:
            return overrides[field_def.name], "override"
        return field_def.default, "default"

    @classmethod
    @abstractmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        """Get field definitions for this configuration class."""
        pass

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._values:
            return self._values[name]
        raise AttributeError(f"Configuration field '{name}' not found")

    def source_of(self, name: str) -> str:
        """Where a field's value came from: ``env``, ``override`` or ``default``."""
        return self._sources[name]

    def to_dict(self, *, mask_secrets: bool = False) -> dict[str, Any]:
        values = self._values.copy()
        if mask_secrets:
            for field_def in self.get_field_definitions():
                if field_def.secret and values.get(field_def.name):
                    values[field_def.name] = _MASK
        return values


class LoggingConfig(BaseConfig):
    """Logging configuration."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="level",
                field_type=str,
                default="INFO",
                description="Log level",
                env_var="LOG_LEVEL",
                choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            ),
            FieldDefinition(
                name="json_logs",
                field_type=bool,
                default=True,
                description="Use JSON logging format",
                env_var="LOG_JSON",
            ),
            FieldDefinition(
                name="service_name",
                field_type=str,
                default="voice-keeper",
                description="Service name for logging",
                env_var="SERVICE_NAME",
            ),
        ]
