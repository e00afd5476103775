"""Configuration for channel workers.

Loads from environment variables with DELIVERY_CONSUMER_ prefix.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from delivery_pipeline.models import EnumChannel


class EnumCommitPolicy(StrEnum):
    """When a channel worker advances its committed read position.

    ALWAYS: Commit after every iteration regardless of whether the outcome
        was stored and published. Favours liveness; a sink failure means
        the outcome is missing from that sink.
    REQUIRE_SINKS: Commit only when both store and publish succeeded.
        Otherwise rewind to the message and retry it after backoff, which
        blocks the channel until the sinks recover.

    Malformed input is skipped and committed under both policies.
    """

    ALWAYS = "always"
    REQUIRE_SINKS = "require_sinks"


class ConfigChannelConsumer(BaseSettings):
    """Configuration for the per-channel Kafka consumers.

    Environment variables use the DELIVERY_CONSUMER_ prefix.
    Example: DELIVERY_CONSUMER_BOOTSTRAP_SERVERS=kafka:9092
    """

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_CONSUMER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Kafka connection
    bootstrap_servers: str = Field(
        default="localhost:9092",
        description="Kafka bootstrap servers",
    )
    group_id_prefix: str = Field(
        default="delivery-service",
        description="Consumer group is '<prefix>-<channel>'",
    )
    topic_template: str = Field(
        default="{channel}-notifications",
        description="Input topic name; '{channel}' is replaced by the channel",
    )

    # Channels to run
    channels: list[EnumChannel] = Field(
        default=[EnumChannel.EMAIL, EnumChannel.SMS, EnumChannel.PUSH],
        description="Channels to start a worker for",
    )

    # Consumer behavior
    auto_offset_reset: str = Field(
        default="latest",
        description="Where to start consuming if no offset exists",
    )
    commit_policy: EnumCommitPolicy = Field(
        default=EnumCommitPolicy.ALWAYS,
        description="When to commit after processing a message",
    )

    # Retry backoff for fetch failures and rewinds
    retry_initial_seconds: float = Field(
        default=0.5,
        gt=0,
        le=60,
        description="First backoff delay after a failed iteration",
    )
    retry_max_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="Backoff delay cap",
    )

    @field_validator("channels", mode="before")
    @classmethod
    def _parse_channels(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, list | tuple):
            return [
                EnumChannel.parse(item) if isinstance(item, str) else item
                for item in value
            ]
        return value

    @model_validator(mode="after")
    def _check_template(self) -> ConfigChannelConsumer:
        if "{channel}" not in self.topic_template:
            raise ValueError("topic_template must contain '{channel}'")
        if self.retry_max_seconds < self.retry_initial_seconds:
            raise ValueError("retry_max_seconds must be >= retry_initial_seconds")
        return self

    def topic_for(self, channel: EnumChannel) -> str:
        """Input topic of ``channel``."""
        return self.topic_template.format(channel=channel.value)

    def group_id_for(self, channel: EnumChannel) -> str:
        """Consumer group of ``channel``. Read positions are per group."""
        return f"{self.group_id_prefix}-{channel.value}"
