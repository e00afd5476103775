"""Configuration for per-channel delivery simulation.

Loads overrides from environment variables with DELIVERY_POLICY_ prefix.
An override replaces the whole policy of that channel, either as JSON:

    DELIVERY_POLICY_EMAIL='{"min_latency_ms": 50, "max_latency_ms": 200,
        "failure_rate": 0.25, "failure_message": "SMTP connection timeout"}'

or as all four nested variables (DELIVERY_POLICY_EMAIL__FAILURE_RATE=...).
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from delivery_pipeline.models import EnumChannel


class ConfigChannelPolicy(BaseModel):
    """Latency bounds and failure characteristics for one channel.

    Never mutated after startup; shared read-only by that channel's worker.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    min_latency_ms: int = Field(..., ge=0, description="Lower delay bound")
    max_latency_ms: int = Field(..., ge=0, description="Upper delay bound")
    failure_rate: float = Field(
        ...,
        ge=0.0,
        le=1.0,
        description="Probability that an attempt is reported FAILED",
    )
    failure_message: str = Field(
        ...,
        min_length=1,
        description="error_message recorded on FAILED outcomes",
    )

    @model_validator(mode="after")
    def _check_bounds(self) -> ConfigChannelPolicy:
        if self.max_latency_ms < self.min_latency_ms:
            raise ValueError(
                f"max_latency_ms ({self.max_latency_ms}) must be >= "
                f"min_latency_ms ({self.min_latency_ms})"
            )
        return self


DEFAULT_EMAIL_POLICY = ConfigChannelPolicy(
    min_latency_ms=50,
    max_latency_ms=200,
    failure_rate=0.10,
    failure_message="SMTP connection timeout",
)

DEFAULT_SMS_POLICY = ConfigChannelPolicy(
    min_latency_ms=30,
    max_latency_ms=100,
    failure_rate=0.10,
    failure_message="carrier gateway unreachable",
)

DEFAULT_PUSH_POLICY = ConfigChannelPolicy(
    min_latency_ms=20,
    max_latency_ms=80,
    failure_rate=0.10,
    failure_message="device token invalid",
)


class ConfigDeliveryPolicies(BaseSettings):
    """Channel policies for every known channel."""

    model_config = SettingsConfigDict(
        env_prefix="DELIVERY_POLICY_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    email: ConfigChannelPolicy = Field(default=DEFAULT_EMAIL_POLICY)
    sms: ConfigChannelPolicy = Field(default=DEFAULT_SMS_POLICY)
    push: ConfigChannelPolicy = Field(default=DEFAULT_PUSH_POLICY)

    def for_channel(self, channel: EnumChannel) -> ConfigChannelPolicy:
        """Return the policy configured for ``channel``."""
        policy: ConfigChannelPolicy = getattr(self, channel.value)
        return policy
