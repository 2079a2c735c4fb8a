"""Presence agent configuration using the shared config library."""

from __future__ import annotations

from services.common.config import (
    BaseConfig,
    FieldDefinition,
    LoggingConfig,
    load_config_from_env,
    validate_discord_id,
    validate_webhook_url,
)

from .state import TargetLocation


class PresenceConfig(BaseConfig):
    """Discord session, target channel, webhook and lifecycle timings."""

    @classmethod
    def get_field_definitions(cls) -> list[FieldDefinition]:
        return [
            FieldDefinition(
                name="token",
                field_type=str,
                required=True,
                description="Discord bot token of the agent account",
                env_var="DISCORD_TOKEN",
                secret=True,
            ),
            FieldDefinition(
                name="guild_id",
                field_type=int,
                required=True,
                description="Target guild (server) ID",
                env_var="GUILD_ID",
                validator=validate_discord_id,
            ),
            FieldDefinition(
                name="channel_id",
                field_type=int,
                required=True,
                description="Target voice channel ID",
                env_var="CHANNEL_ID",
                validator=validate_discord_id,
            ),
            FieldDefinition(
                name="owner_id",
                field_type=int,
                required=True,
                description="User ID of the human owner the agent yields to",
                env_var="OWNER_ID",
                validator=validate_discord_id,
            ),
            FieldDefinition(
                name="webhook_url",
                field_type=str,
                default="",
                description="Webhook for notifications; empty disables them",
                env_var="WEBHOOK_URL",
                validator=validate_webhook_url,
            ),
            FieldDefinition(
                name="webhook_mention",
                field_type=str,
                default="",
                description="Mention string placed in the webhook message content",
                env_var="WEBHOOK_MENTION",
            ),
            FieldDefinition(
                name="join_timeout_seconds",
                field_type=float,
                default=10.0,
                description="How long a join waits for the connection to settle",
                env_var="JOIN_TIMEOUT_SECONDS",
                min_value=1.0,
                max_value=120.0,
            ),
            FieldDefinition(
                name="squeeze_grace_seconds",
                field_type=float,
                default=1.2,
                description="Grace window before judging a drop as squeeze or network loss",
                env_var="SQUEEZE_GRACE_SECONDS",
                min_value=0.0,
                max_value=30.0,
            ),
            FieldDefinition(
                name="squeeze_fetch_attempts",
                field_type=int,
                default=2,
                description="Attempts at the fresh membership fetch during a squeeze check",
                env_var="SQUEEZE_FETCH_ATTEMPTS",
                min_value=1,
                max_value=10,
            ),
            FieldDefinition(
                name="reconnect_delay_seconds",
                field_type=float,
                default=0.5,
                description="Delay before rejoining after a network drop",
                env_var="RECONNECT_DELAY_SECONDS",
                min_value=0.0,
                max_value=60.0,
            ),
            FieldDefinition(
                name="retry_interval_seconds",
                field_type=float,
                default=5.0,
                description="Period of the channel-full retry timer",
                env_var="RETRY_INTERVAL_SECONDS",
                min_value=0.5,
                max_value=600.0,
            ),
            FieldDefinition(
                name="capacity_notify_cooldown_seconds",
                field_type=float,
                default=30.0,
                description="Minimum gap between channel-full notifications",
                env_var="CAPACITY_NOTIFY_COOLDOWN_SECONDS",
                min_value=0.0,
                max_value=86400.0,
            ),
            FieldDefinition(
                name="status_poll_interval_seconds",
                field_type=float,
                default=0.25,
                description="How often the voice client's connection state is sampled",
                env_var="VOICE_STATUS_POLL_SECONDS",
                min_value=0.05,
                max_value=5.0,
            ),
        ]

    @property
    def target(self) -> TargetLocation:
        return TargetLocation(guild_id=self.guild_id, channel_id=self.channel_id)


class AgentConfig:
    """Top-level configuration: presence settings plus logging."""

    def __init__(self, presence: PresenceConfig, logging: LoggingConfig) -> None:
        self.presence = presence
        self.logging = logging


def load_config() -> AgentConfig:
    """Load configuration from the environment.

    Raises:
        ConfigError: a required variable is missing or a value is invalid.
    """
    return AgentConfig(
        presence=load_config_from_env(PresenceConfig),
        logging=load_config_from_env(LoggingConfig, service_name="presence"),
    )


__all__ = ["AgentConfig", "PresenceConfig", "load_config"]
