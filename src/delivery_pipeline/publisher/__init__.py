"""Completion event publishing.

Key Components:
    - CompletionPublisher: Acknowledged Kafka publisher for the shared
      completion topic, keyed by notification_id
    - ProtocolCompletionPublisher: Contract channel workers depend on
    - ConfigCompletionPublisher: Producer configuration
"""

from __future__ import annotations

from delivery_pipeline.publisher.completion_publisher import (
    CompletionPublisher,
    ProtocolCompletionPublisher,
)
from delivery_pipeline.publisher.publisher_config import ConfigCompletionPublisher

__all__ = [
    "CompletionPublisher",
    "ConfigCompletionPublisher",
    "ProtocolCompletionPublisher",
]
