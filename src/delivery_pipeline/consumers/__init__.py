"""Kafka channel workers for notification delivery.

This module provides the per-channel worker that consumes notification
records, simulates delivery, and fans each outcome out to the outcome
store and the completion topic.

Key Components:
    - ChannelWorker: Fetch-process-commit loop with at-least-once delivery
    - ConfigChannelConsumer: Configuration for the workers
    - EnumCommitPolicy: When a worker advances its read position
    - EnumWorkerState: Worker state machine
    - WorkerMetrics: Metrics tracking for observability

Architecture:
    ```
    <channel>-notifications (one topic per channel)
           |
           v
    ChannelWorker --(simulate)--> ProtocolDeliveryPolicy
           |
           +--> ProtocolOutcomeStore       (delivery_outcomes table)
           +--> ProtocolCompletionPublisher (delivery-events topic)
           |
           v
    commit offset
    ```
"""

from __future__ import annotations

from delivery_pipeline.consumers.channel_worker import (
    ChannelWorker,
    EnumWorkerState,
    IterationResult,
    WorkerMetrics,
)
from delivery_pipeline.consumers.config import ConfigChannelConsumer, EnumCommitPolicy

__all__ = [
    # Worker
    "ChannelWorker",
    "IterationResult",
    # Configuration
    "ConfigChannelConsumer",
    "EnumCommitPolicy",
    # Metrics and enums
    "EnumWorkerState",
    "WorkerMetrics",
]
