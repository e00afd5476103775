# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Error codes and exception classes for the delivery pipeline.

Every failure the pipeline can surface maps onto one of these classes.
Only ``WorkerStartupError`` is fatal; the others are caught by the
channel worker, logged, and counted.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class EnumDeliveryErrorCode(StrEnum):
    """Error codes for delivery pipeline operations."""

    # Input errors
    DESERIALIZATION_ERROR = "DESERIALIZATION_ERROR"

    # Sink errors
    STORAGE_ERROR = "STORAGE_ERROR"
    PUBLISH_ERROR = "PUBLISH_ERROR"

    # Transport errors (log context for worker retries, never raised)
    FETCH_ERROR = "FETCH_ERROR"
    COMMIT_ERROR = "COMMIT_ERROR"

    # Lifecycle errors
    INITIALIZATION_ERROR = "INITIALIZATION_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class DeliveryPipelineError(Exception):
    """Base exception for delivery pipeline operations.

    Attributes:
        code: Error code from EnumDeliveryErrorCode.
        message: Human-readable error message.
        details: Additional error context for logging.
    """

    default_code: EnumDeliveryErrorCode = EnumDeliveryErrorCode.INITIALIZATION_ERROR

    def __init__(
        self,
        message: str,
        code: EnumDeliveryErrorCode | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(code={self.code}, message={self.message!r}, "
            f"details={self.details})"
        )


class NotificationDecodeError(DeliveryPipelineError):
    """Input record could not be decoded into a notification (poison pill)."""

    default_code = EnumDeliveryErrorCode.DESERIALIZATION_ERROR


class OutcomeStoreError(DeliveryPipelineError):
    """Outcome could not be persisted."""

    default_code = EnumDeliveryErrorCode.STORAGE_ERROR


class CompletionPublishError(DeliveryPipelineError):
    """Completion event was not acknowledged by the transport."""

    default_code = EnumDeliveryErrorCode.PUBLISH_ERROR


class WorkerStartupError(DeliveryPipelineError):
    """A channel worker could not be brought up. Fatal to the supervisor."""

    default_code = EnumDeliveryErrorCode.INITIALIZATION_ERROR


__all__ = [
    "CompletionPublishError",
    "DeliveryPipelineError",
    "EnumDeliveryErrorCode",
    "NotificationDecodeError",
    "OutcomeStoreError",
    "WorkerStartupError",
]
