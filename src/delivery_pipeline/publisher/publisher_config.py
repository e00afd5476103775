"""Completion Publisher Configuration Model.

Uses pydantic-settings for automatic environment variable loading
(DELIVERY_PUBLISHER_ prefix).
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigCompletionPublisher(BaseSettings):
    """Configuration for the completion event producer."""

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_PUBLISHER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    bootstrap_servers: str = Field(
        default="localhost:9092",
        min_length=1,
        description="Kafka broker addresses (host:port, comma-separated)",
    )
    topic: str = Field(
        default="delivery-events",
        min_length=1,
        description="Shared completion topic for every channel",
    )
    client_id: str = Field(
        default="delivery-pipeline-publisher",
        min_length=1,
        max_length=255,
    )
    acks: Literal["all", 1, 0] = Field(
        default="all",
        description="Broker acknowledgement level required before publish returns",
    )
    request_timeout_ms: int = Field(default=5000, ge=100, le=300_000)
    publish_timeout_seconds: float = Field(
        default=10.0,
        ge=0.1,
        le=300.0,
        description="Upper bound on one acknowledged send",
    )
