# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Kafka channel worker for notification delivery.

One worker runs per channel. It pulls one record at a time from the
channel's input topic and drives it through a fixed sequence:

    ```
    FETCHING -> PROCESSING -> PERSISTING -> PUBLISHING -> COMMITTING -> IDLE
                    |              |             |
                    v              v             v
             delivery policy  outcome store  completion publisher
    ```

Delivery contract:
    - At-least-once: the read position is committed explicitly after the
      iteration, so a crash between fetch and commit redelivers the record
      and yields a second outcome with the same notification_id.
    - Commit is unconditional under EnumCommitPolicy.ALWAYS (default): a
      store failure does not block publishing, and neither failure blocks
      the commit. REQUIRE_SINKS rewinds and retries instead.
    - Malformed records are poison pills: logged, skipped and committed
      without an outcome.
    - Fetch failures are retried indefinitely with capped exponential
      backoff; the position never moves past a record that was not fetched.

Shutdown:
    The shutdown event is only observed at the fetch boundary. A record
    that was fetched always runs through COMMITTING before the worker
    stops, so no record is left fetched but uncommitted.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from aiokafka import AIOKafkaConsumer, TopicPartition
from aiokafka.errors import KafkaError

from delivery_pipeline.consumers.config import ConfigChannelConsumer, EnumCommitPolicy
from delivery_pipeline.errors import (
    CompletionPublishError,
    EnumDeliveryErrorCode,
    NotificationDecodeError,
    OutcomeStoreError,
    WorkerStartupError,
)
from delivery_pipeline.models import (
    EnumChannel,
    EnumDeliveryStatus,
    ModelDeliveryOutcome,
    ModelNotification,
)

if TYPE_CHECKING:
    from delivery_pipeline.policies import ProtocolDeliveryPolicy
    from delivery_pipeline.publisher import ProtocolCompletionPublisher
    from delivery_pipeline.storage import ProtocolOutcomeStore

logger = logging.getLogger(__name__)


# =============================================================================
# Enums
# =============================================================================


class EnumWorkerState(StrEnum):
    """Channel worker states.

    State Transitions:
        IDLE -> FETCHING -> PROCESSING -> PERSISTING -> PUBLISHING
             -> COMMITTING -> IDLE
        PROCESSING -> COMMITTING: Malformed record (skipped)
        FETCHING -> SHUTTING_DOWN -> STOPPED: Shutdown observed while idle
    """

    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    PERSISTING = "persisting"
    PUBLISHING = "publishing"
    COMMITTING = "committing"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


# =============================================================================
# Worker Metrics
# =============================================================================


class WorkerMetrics:
    """Processing statistics for one channel worker.

    Attributes:
        messages_received: Records fetched from the input topic.
        messages_processed: Records that produced an outcome.
        messages_sent: Outcomes with status SENT.
        messages_failed: Outcomes with status FAILED.
        messages_skipped: Malformed records skipped without an outcome.
        store_errors: Outcomes that could not be persisted.
        publish_errors: Outcomes that could not be published.
        fetch_errors: Failed fetch attempts.
        commit_errors: Failed commits and rewinds.
        rewinds: Records rewound for redelivery.
        last_message_at: Timestamp of last fetched record.
    """

    def __init__(self) -> None:
        self.messages_received: int = 0
        self.messages_processed: int = 0
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self.messages_skipped: int = 0
        self.store_errors: int = 0
        self.publish_errors: int = 0
        self.fetch_errors: int = 0
        self.commit_errors: int = 0
        self.rewinds: int = 0
        self.last_message_at: datetime | None = None
        self._lock = asyncio.Lock()

    async def record_received(self) -> None:
        async with self._lock:
            self.messages_received += 1
            self.last_message_at = datetime.now(UTC)

    async def record_outcome(self, status: EnumDeliveryStatus) -> None:
        async with self._lock:
            self.messages_processed += 1
            if status == EnumDeliveryStatus.SENT:
                self.messages_sent += 1
            else:
                self.messages_failed += 1

    async def increment(self, counter: str) -> None:
        """Increment one of the error/skip counters by name."""
        async with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    async def snapshot(self) -> dict[str, object]:
        """Get a snapshot of current metrics."""
        async with self._lock:
            return {
                "messages_received": self.messages_received,
                "messages_processed": self.messages_processed,
                "messages_sent": self.messages_sent,
                "messages_failed": self.messages_failed,
                "messages_skipped": self.messages_skipped,
                "store_errors": self.store_errors,
                "publish_errors": self.publish_errors,
                "fetch_errors": self.fetch_errors,
                "commit_errors": self.commit_errors,
                "rewinds": self.rewinds,
                "last_message_at": (
                    self.last_message_at.isoformat() if self.last_message_at else None
                ),
            }


@dataclass(frozen=True)
class IterationResult:
    """What happened to one fetched record before commit."""

    outcome: ModelDeliveryOutcome | None
    stored: bool = False
    published: bool = False

    @property
    def skipped(self) -> bool:
        return self.outcome is None

    @property
    def sinks_ok(self) -> bool:
        return self.skipped or (self.stored and self.published)


# =============================================================================
# Channel Worker
# =============================================================================


class ChannelWorker:
    """Fetch-process-commit loop for one delivery channel.

    Thread Safety:
        Designed for a single asyncio task. The store and publisher are
        shared by reference with sibling workers and must tolerate
        concurrent use; the worker never locks them.

    Example:
        >>> worker = ChannelWorker(
        ...     channel=EnumChannel.EMAIL,
        ...     config=ConfigChannelConsumer(),
        ...     policy=policies[EnumChannel.EMAIL],
        ...     store=store,
        ...     publisher=publisher,
        ... )
        >>> await worker.start()
        >>> try:
        ...     await worker.run()
        ... finally:
        ...     await worker.close()
    """

    def __init__(
        self,
        channel: EnumChannel,
        config: ConfigChannelConsumer,
        policy: ProtocolDeliveryPolicy,
        store: ProtocolOutcomeStore,
        publisher: ProtocolCompletionPublisher,
        shutdown_event: asyncio.Event | None = None,
        consumer: AIOKafkaConsumer | None = None,
    ) -> None:
        """Initialize the worker.

        Args:
            channel: Channel served by this worker.
            config: Consumer configuration (topics, backoff, commit policy).
            policy: Delivery simulation for this channel.
            store: Shared outcome store.
            publisher: Shared completion publisher.
            shutdown_event: Broadcast shutdown signal. A private event is
                created when omitted.
            consumer: Pre-built consumer already bound to this channel's
                topic. Created on start() when omitted.
        """
        if policy.channel != channel:
            raise ValueError(
                f"Policy for {policy.channel.value} given to {channel.value} worker"
            )

        self._channel = channel
        self._config = config
        self._policy = policy
        self._store = store
        self._publisher = publisher
        self._shutdown_event = shutdown_event or asyncio.Event()
        self._consumer = consumer
        self._owns_consumer = consumer is None

        self._state = EnumWorkerState.IDLE
        self._started = False
        self._running = False
        self._retry_delay = config.retry_initial_seconds

        self.metrics = WorkerMetrics()

        self._worker_id = f"{channel.value}-worker-{uuid4().hex[:8]}"

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def channel(self) -> EnumChannel:
        return self._channel

    @property
    def state(self) -> EnumWorkerState:
        return self._state

    @property
    def is_running(self) -> bool:
        """True while run() is inside its loop."""
        return self._running

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def topic(self) -> str:
        return self._config.topic_for(self._channel)

    @property
    def group_id(self) -> str:
        return self._config.group_id_for(self._channel)

    def _log_extra(self, **extra: Any) -> dict[str, Any]:
        return {"channel": self._channel.value, "worker_id": self._worker_id, **extra}

    # =========================================================================
    # Lifecycle Methods
    # =========================================================================

    async def start(self) -> None:
        """Connect the Kafka consumer with auto-commit disabled.

        Raises:
            WorkerStartupError: If the consumer cannot connect.
        """
        if self._started:
            logger.warning("Worker already started", extra=self._log_extra())
            return

        if self._consumer is None:
            self._consumer = AIOKafkaConsumer(
                self.topic,
                bootstrap_servers=self._config.bootstrap_servers,
                group_id=self.group_id,
                auto_offset_reset=self._config.auto_offset_reset,
                enable_auto_commit=False,  # Manual commits for at-least-once
            )

        try:
            await self._consumer.start()
        except KafkaError as e:
            logger.exception(
                "Failed to start channel worker",
                extra=self._log_extra(topic=self.topic, error=str(e)),
            )
            raise WorkerStartupError(
                f"Failed to start {self._channel.value} worker",
                details={"topic": self.topic, "error": str(e)},
            ) from e

        self._started = True
        logger.info(
            "Channel worker started",
            extra=self._log_extra(topic=self.topic, group_id=self.group_id),
        )

    def request_stop(self) -> None:
        """Set the shutdown event. Observed at the next fetch boundary."""
        self._shutdown_event.set()

    async def close(self) -> None:
        """Stop the Kafka consumer. Safe to call multiple times."""
        if not self._started or self._consumer is None:
            return

        try:
            await self._consumer.stop()
        except KafkaError as e:
            logger.warning(
                "Error stopping Kafka consumer",
                extra=self._log_extra(error=str(e)),
            )
        finally:
            self._started = False
            if self._owns_consumer:
                self._consumer = None

        metrics_snapshot = await self.metrics.snapshot()
        logger.info(
            "Channel worker closed",
            extra=self._log_extra(final_metrics=metrics_snapshot),
        )

    def _require_consumer(self) -> AIOKafkaConsumer:
        if not self._started or self._consumer is None:
            raise RuntimeError("Worker not started. Call start() before run().")
        return self._consumer

    # =========================================================================
    # Consume Loop
    # =========================================================================

    async def run(self) -> None:
        """Run the fetch-process-commit loop until shutdown is signalled."""
        self._require_consumer()
        self._running = True

        logger.info(
            "Channel worker waiting for messages",
            extra=self._log_extra(topic=self.topic),
        )

        try:
            while not self._shutdown_event.is_set():
                self._state = EnumWorkerState.FETCHING
                try:
                    message = await self._fetch()
                except KafkaError as e:
                    await self.metrics.increment("fetch_errors")
                    logger.warning(
                        "Error fetching message, backing off",
                        extra=self._log_extra(
                            error_code=EnumDeliveryErrorCode.FETCH_ERROR,
                            error=str(e),
                            retry_in_seconds=self._retry_delay,
                        ),
                    )
                    await self._backoff()
                    continue
                except Exception as e:
                    await self.metrics.increment("fetch_errors")
                    logger.exception(
                        "Unexpected error fetching message, backing off",
                        extra=self._log_extra(
                            error_code=EnumDeliveryErrorCode.FETCH_ERROR,
                            error=str(e),
                        ),
                    )
                    await self._backoff()
                    continue

                if message is None:
                    break

                await self._run_iteration(message)
        finally:
            self._state = EnumWorkerState.SHUTTING_DOWN
            logger.info("Channel worker shutting down", extra=self._log_extra())
            self._running = False
            self._state = EnumWorkerState.STOPPED

    async def _fetch(self) -> Any | None:
        """Wait for the next record or the shutdown signal.

        Returns:
            The next ConsumerRecord, or None if shutdown was signalled first.

        Raises:
            KafkaError: If the fetch itself failed.
        """
        consumer = self._require_consumer()

        fetch_task = asyncio.ensure_future(consumer.getone())
        shutdown_task = asyncio.ensure_future(self._shutdown_event.wait())
        try:
            done, _ = await asyncio.wait(
                {fetch_task, shutdown_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (shutdown_task, fetch_task):
                if not task.done():
                    task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await task

        # A fetched record wins over a simultaneous shutdown
        if fetch_task in done:
            return fetch_task.result()
        return None

    async def _run_iteration(self, message: Any) -> None:
        """Process one fetched record and settle its read position."""
        correlation_id = uuid4()
        await self.metrics.record_received()

        try:
            result = await self.process_message(message, correlation_id)
        except Exception as e:
            logger.exception(
                "Unexpected error processing message, rewinding",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                    error=str(e),
                ),
            )
            await self._rewind(message, correlation_id)
            await self._backoff()
            return

        if (
            self._config.commit_policy == EnumCommitPolicy.REQUIRE_SINKS
            and not result.sinks_ok
        ):
            logger.warning(
                "Sink failure under require_sinks policy, rewinding",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    offset=message.offset,
                    stored=result.stored,
                    published=result.published,
                ),
            )
            await self._rewind(message, correlation_id)
            await self._backoff()
            return

        await self._commit(message, correlation_id)
        self._retry_delay = self._config.retry_initial_seconds
        self._state = EnumWorkerState.IDLE

    # =========================================================================
    # Message Processing
    # =========================================================================

    async def process_message(
        self, message: Any, correlation_id: UUID | None = None
    ) -> IterationResult:
        """Run PROCESSING, PERSISTING and PUBLISHING for one record.

        Store and publish failures are logged and reflected in the result;
        they never raise. Malformed records yield a result with no outcome.

        Args:
            message: Kafka ConsumerRecord with topic, partition, offset, value.
            correlation_id: Correlation ID for this processing attempt.
        """
        correlation_id = correlation_id or uuid4()

        self._state = EnumWorkerState.PROCESSING
        try:
            notification = ModelNotification.from_bytes(message.value)
        except NotificationDecodeError as e:
            await self.metrics.increment("messages_skipped")
            logger.warning(
                "Message skipped: malformed notification",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                    error=e.details.get("error", str(e)),
                ),
            )
            return IterationResult(outcome=None)

        logger.debug(
            "Processing notification",
            extra=self._log_extra(
                correlation_id=str(correlation_id),
                notification_id=notification.id,
                recipient=notification.recipient,
            ),
        )

        attempt = await self._policy.simulate(notification)
        outcome = ModelDeliveryOutcome.from_attempt(notification, attempt)
        await self.metrics.record_outcome(outcome.status)

        self._state = EnumWorkerState.PERSISTING
        stored = await self._persist(outcome, correlation_id)

        self._state = EnumWorkerState.PUBLISHING
        published = await self._publish(outcome, correlation_id)

        return IterationResult(outcome=outcome, stored=stored, published=published)

    async def _persist(self, outcome: ModelDeliveryOutcome, correlation_id: UUID) -> bool:
        try:
            await self._store.save(outcome)
        except OutcomeStoreError as e:
            await self.metrics.increment("store_errors")
            logger.error(
                "Failed to save delivery outcome",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    notification_id=outcome.notification_id,
                    error=str(e),
                ),
            )
            return False
        except Exception as e:
            await self.metrics.increment("store_errors")
            logger.exception(
                "Unexpected error saving delivery outcome",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    notification_id=outcome.notification_id,
                    error=str(e),
                ),
            )
            return False
        return True

    async def _publish(self, outcome: ModelDeliveryOutcome, correlation_id: UUID) -> bool:
        try:
            await self._publisher.publish(outcome)
        except CompletionPublishError as e:
            await self.metrics.increment("publish_errors")
            logger.error(
                "Failed to publish completion event",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    notification_id=outcome.notification_id,
                    error=str(e),
                ),
            )
            return False
        except Exception as e:
            await self.metrics.increment("publish_errors")
            logger.exception(
                "Unexpected error publishing completion event",
                extra=self._log_extra(
                    correlation_id=str(correlation_id),
                    notification_id=outcome.notification_id,
                    error=str(e),
                ),
            )
            return False
        return True

    # =========================================================================
    # Offsets
    # =========================================================================

    async def _commit(self, message: Any, correlation_id: UUID) -> None:
        """Advance the committed position past ``message``.

        A failed commit is logged and counted; the loop carries on and the
        record may be redelivered after a restart.
        """
        self._state = EnumWorkerState.COMMITTING
        consumer = self._require_consumer()
        tp = TopicPartition(message.topic, message.partition)
        try:
            await consumer.commit({tp: message.offset + 1})
        except KafkaError as e:
            await self.metrics.increment("commit_errors")
            logger.warning(
                "Failed to commit message",
                extra=self._offset_extra(message, correlation_id, e),
            )
            return
        except Exception as e:
            await self.metrics.increment("commit_errors")
            logger.exception(
                "Unexpected error committing message",
                extra=self._offset_extra(message, correlation_id, e),
            )
            return

        logger.debug(
            "Message committed",
            extra=self._log_extra(
                correlation_id=str(correlation_id),
                topic=message.topic,
                partition=message.partition,
                offset=message.offset,
            ),
        )

    async def _rewind(self, message: Any, correlation_id: UUID) -> None:
        """Seek back to ``message`` so it is fetched again."""
        consumer = self._require_consumer()
        tp = TopicPartition(message.topic, message.partition)
        try:
            consumer.seek(tp, message.offset)
        except KafkaError as e:
            await self.metrics.increment("commit_errors")
            logger.warning(
                "Failed to rewind partition",
                extra=self._offset_extra(message, correlation_id, e),
            )
            return
        except Exception as e:
            await self.metrics.increment("commit_errors")
            logger.exception(
                "Unexpected error rewinding partition",
                extra=self._offset_extra(message, correlation_id, e),
            )
            return
        await self.metrics.increment("rewinds")
        self._state = EnumWorkerState.IDLE

    def _offset_extra(
        self, message: Any, correlation_id: UUID, error: Exception
    ) -> dict[str, Any]:
        return self._log_extra(
            correlation_id=str(correlation_id),
            error_code=EnumDeliveryErrorCode.COMMIT_ERROR,
            topic=message.topic,
            partition=message.partition,
            offset=message.offset,
            error=str(error),
        )

    async def _backoff(self) -> None:
        """Sleep for the current retry delay, cut short by shutdown."""
        delay = self._retry_delay
        self._retry_delay = min(delay * 2, self._config.retry_max_seconds)
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=delay)

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict[str, object]:
        """Report worker state and metrics for monitoring."""
        metrics_snapshot = await self.metrics.snapshot()
        return {
            "healthy": self._started and self._running,
            "running": self._running,
            "state": self._state.value,
            "channel": self._channel.value,
            "worker_id": self._worker_id,
            "topic": self.topic,
            "group_id": self.group_id,
            "commit_policy": self._config.commit_policy.value,
            "metrics": metrics_snapshot,
        }


__all__ = [
    "ChannelWorker",
    "EnumWorkerState",
    "IterationResult",
    "WorkerMetrics",
]
