# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Data models for notifications and delivery outcomes.

Notifications arrive on per-channel topics as JSON produced by the
upstream router. Outcomes are derived once per processing attempt and
written to both the outcome store and the completion topic.

Wire compatibility:
    The upstream producer names the channel field ``type`` and the body
    field ``message``. Both spellings are accepted on input. Completion
    events use the analytics indexer's names (``type``, ``timestamp``,
    ``delivery_time_ms``); see ModelDeliveryOutcome.to_event_payload.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from delivery_pipeline.errors import NotificationDecodeError

# =============================================================================
# Enums
# =============================================================================


class EnumChannel(StrEnum):
    """Delivery channel. Each channel has its own topic, worker and policy."""

    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"

    @classmethod
    def parse(cls, value: str | EnumChannel) -> EnumChannel:
        """Parse a channel name case-insensitively.

        Example:
            >>> EnumChannel.parse("SMS")
            <EnumChannel.SMS: 'sms'>
        """
        if isinstance(value, EnumChannel):
            return value
        return cls(value.strip().lower())


class EnumDeliveryStatus(StrEnum):
    """Result of one simulated delivery attempt."""

    SENT = "SENT"
    FAILED = "FAILED"


# =============================================================================
# Input
# =============================================================================


class ModelNotification(BaseModel):
    """A notification request routed to one channel's input topic."""

    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)

    id: str = Field(..., min_length=1)
    channel: EnumChannel = Field(
        ..., validation_alias=AliasChoices("channel", "type")
    )
    recipient: str = Field(..., min_length=1)
    subject: str | None = Field(default=None)
    body: str = Field(default="", validation_alias=AliasChoices("body", "message"))

    @field_validator("channel", mode="before")
    @classmethod
    def _normalize_channel(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @classmethod
    def from_bytes(cls, raw: bytes | str | None) -> ModelNotification:
        """Decode a raw record value into a notification.

        Raises:
            NotificationDecodeError: If the payload is empty, not UTF-8,
                not JSON, or fails validation.
        """
        if raw is None:
            raise NotificationDecodeError("Record has no value")
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            return cls.model_validate_json(raw)
        except (UnicodeDecodeError, ValueError) as e:
            # pydantic.ValidationError is a ValueError subclass
            raise NotificationDecodeError(
                "Malformed notification payload",
                details={"error": str(e)},
            ) from e


# =============================================================================
# Output
# =============================================================================


class ModelDeliveryAttempt(BaseModel):
    """What a delivery policy reports for one notification."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    status: EnumDeliveryStatus
    latency_ms: int = Field(..., ge=0)
    error_message: str | None = None


class ModelDeliveryOutcome(BaseModel):
    """Immutable record of one processing attempt.

    Redelivery of the same notification yields a second, independent
    outcome with the same ``notification_id``; nothing here deduplicates.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    notification_id: str = Field(..., min_length=1)
    channel: EnumChannel
    recipient: str
    status: EnumDeliveryStatus
    observed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    latency_ms: int = Field(..., ge=0)
    error_message: str | None = None

    @model_validator(mode="after")
    def _error_iff_failed(self) -> ModelDeliveryOutcome:
        if self.status == EnumDeliveryStatus.FAILED and not self.error_message:
            raise ValueError("FAILED outcome requires error_message")
        if self.status == EnumDeliveryStatus.SENT and self.error_message is not None:
            raise ValueError("SENT outcome must not carry error_message")
        return self

    @classmethod
    def from_attempt(
        cls,
        notification: ModelNotification,
        attempt: ModelDeliveryAttempt,
        observed_at: datetime | None = None,
    ) -> ModelDeliveryOutcome:
        return cls(
            notification_id=notification.id,
            channel=notification.channel,
            recipient=notification.recipient,
            status=attempt.status,
            observed_at=observed_at or datetime.now(UTC),
            latency_ms=attempt.latency_ms,
            error_message=attempt.error_message,
        )

    def to_event_payload(self) -> dict[str, Any]:
        """JSON-ready completion event body.

        Uses the field names the analytics indexer reads: ``type`` is the
        upper-case channel, ``timestamp`` is observed_at and
        ``delivery_time_ms`` is latency_ms. ``error_message`` is omitted
        when SENT.

        Example:
            >>> outcome.to_event_payload()
            {'notification_id': 'n1', 'type': 'EMAIL', 'recipient': 'a@b.com',
             'status': 'SENT', 'timestamp': '2025-01-01T12:00:00Z',
             'delivery_time_ms': 120}
        """
        data = self.model_dump(mode="json", exclude_none=True)
        payload: dict[str, Any] = {
            "notification_id": data["notification_id"],
            "type": data["channel"].upper(),
            "recipient": data["recipient"],
            "status": data["status"],
            "timestamp": data["observed_at"],
            "delivery_time_ms": data["latency_ms"],
        }
        if "error_message" in data:
            payload["error_message"] = data["error_message"]
        return payload


__all__ = [
    "EnumChannel",
    "EnumDeliveryStatus",
    "ModelDeliveryAttempt",
    "ModelDeliveryOutcome",
    "ModelNotification",
]
