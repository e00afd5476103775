# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Kafka publisher for delivery completion events.

Every channel worker publishes through one shared instance onto a single
completion topic. Records are keyed by notification_id so consumers that
partition by key see each notification's events in order.

``publish`` only returns once the broker has acknowledged the record;
any failure is raised to the caller as CompletionPublishError.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Protocol, runtime_checkable

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from delivery_pipeline.errors import CompletionPublishError
from delivery_pipeline.models import ModelDeliveryOutcome
from delivery_pipeline.publisher.publisher_config import ConfigCompletionPublisher

logger = logging.getLogger(__name__)


@runtime_checkable
class ProtocolCompletionPublisher(Protocol):
    """Contract for emitting completion events."""

    async def publish(self, outcome: ModelDeliveryOutcome) -> None:
        """Emit one completion event and wait for acknowledgement.

        Raises:
            CompletionPublishError: If the transport did not acknowledge.
        """
        ...


def _serialize(value: dict[str, Any]) -> bytes:
    return json.dumps(value).encode("utf-8")


class CompletionPublisher:
    """Acknowledged publisher for the completion topic.

    Args:
        config: Producer configuration.
        producer: Pre-built producer. Created from ``config`` on start()
            when omitted.

    Example:
        >>> publisher = CompletionPublisher(ConfigCompletionPublisher())
        >>> await publisher.start()
        >>> try:
        ...     await publisher.publish(outcome)
        ... finally:
        ...     await publisher.close()
    """

    def __init__(
        self,
        config: ConfigCompletionPublisher,
        producer: AIOKafkaProducer | None = None,
    ) -> None:
        self._config = config
        self._producer = producer
        self._started = False

    @property
    def topic(self) -> str:
        return self._config.topic

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Connect the producer.

        Raises:
            CompletionPublishError: If the broker cannot be reached.
        """
        if self._started:
            logger.debug("CompletionPublisher already started")
            return

        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self._config.bootstrap_servers,
                client_id=self._config.client_id,
                value_serializer=_serialize,
                acks=self._config.acks,
                request_timeout_ms=self._config.request_timeout_ms,
            )

        try:
            await self._producer.start()
        except KafkaError as e:
            raise CompletionPublishError(
                "Failed to start completion producer",
                details={
                    "bootstrap_servers": self._config.bootstrap_servers,
                    "error": str(e),
                },
            ) from e

        self._started = True
        logger.info(
            "CompletionPublisher started",
            extra={
                "topic": self._config.topic,
                "bootstrap_servers": self._config.bootstrap_servers,
            },
        )

    async def close(self) -> None:
        """Flush and stop the producer. Safe to call multiple times."""
        if not self._started or self._producer is None:
            return
        try:
            await self._producer.stop()
        except KafkaError as e:
            logger.warning(
                "Error stopping completion producer",
                extra={"error": str(e)},
            )
        finally:
            self._started = False
            logger.info("CompletionPublisher closed")

    async def publish(self, outcome: ModelDeliveryOutcome) -> None:
        if not self._started or self._producer is None:
            raise CompletionPublishError(
                "CompletionPublisher not started. Call start() first.",
                details={"notification_id": outcome.notification_id},
            )

        key = outcome.notification_id.encode("utf-8")
        try:
            await asyncio.wait_for(
                self._producer.send_and_wait(
                    self._config.topic,
                    value=outcome.to_event_payload(),
                    key=key,
                ),
                timeout=self._config.publish_timeout_seconds,
            )
        except TimeoutError as e:
            raise CompletionPublishError(
                "Timed out publishing completion event",
                details={
                    "notification_id": outcome.notification_id,
                    "topic": self._config.topic,
                    "timeout_seconds": self._config.publish_timeout_seconds,
                },
            ) from e
        except KafkaError as e:
            raise CompletionPublishError(
                "Failed to publish completion event",
                details={
                    "notification_id": outcome.notification_id,
                    "topic": self._config.topic,
                    "error": str(e),
                },
            ) from e

        logger.debug(
            "Published completion event",
            extra={
                "notification_id": outcome.notification_id,
                "channel": outcome.channel.value,
                "topic": self._config.topic,
            },
        )


__all__ = ["CompletionPublisher", "ProtocolCompletionPublisher"]
