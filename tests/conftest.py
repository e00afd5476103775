# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Shared fixtures for delivery pipeline tests.

Provides in-memory stand-ins for the Kafka input stream, the outcome
store and the completion publisher so worker and supervisor behaviour
can be exercised without a broker or database:

    - FakeStream: single-partition topic with a committed read position
    - RecordingStore / RecordingPublisher: sinks that can be made to fail
    - FakeTime: virtual clock + sleep for the delivery simulator
"""

from __future__ import annotations

import asyncio
import json
import random
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest
from aiokafka import TopicPartition
from aiokafka.errors import KafkaConnectionError

from delivery_pipeline.consumers import ChannelWorker, ConfigChannelConsumer
from delivery_pipeline.errors import CompletionPublishError, OutcomeStoreError
from delivery_pipeline.models import EnumChannel, ModelDeliveryOutcome
from delivery_pipeline.policies import ConfigChannelPolicy, SimulatedDeliveryPolicy

# =============================================================================
# Fakes
# =============================================================================


@dataclass(frozen=True)
class FakeRecord:
    """Minimal ConsumerRecord: the attributes the worker reads."""

    topic: str
    partition: int
    offset: int
    value: bytes | None
    key: bytes | None = None


class FakeStream:
    """In-memory single-partition topic consumed by one group.

    ``position`` is the next offset getone() returns; ``committed`` is the
    group's committed offset. crash() rewinds position to committed, as a
    restarted consumer would.
    """

    def __init__(self, topic: str) -> None:
        self.topic = topic
        self.records: list[FakeRecord] = []
        self.position = 0
        self.committed = 0
        self.commits: list[int] = []
        self.started = False
        self.stopped = False
        self.fetch_failures = 0
        self.commit_failures = 0
        self.start_error: Exception | None = None
        self._new_data = asyncio.Event()

    def append(self, value: bytes | str | dict[str, Any] | None) -> FakeRecord:
        if isinstance(value, dict):
            value = json.dumps(value).encode("utf-8")
        elif isinstance(value, str):
            value = value.encode("utf-8")
        record = FakeRecord(
            topic=self.topic, partition=0, offset=len(self.records), value=value
        )
        self.records.append(record)
        self._new_data.set()
        return record

    def crash(self) -> None:
        self.position = self.committed

    async def start(self) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def stop(self) -> None:
        self.stopped = True

    async def getone(self) -> FakeRecord:
        if self.fetch_failures > 0:
            self.fetch_failures -= 1
            raise KafkaConnectionError("broker unreachable")
        while self.position >= len(self.records):
            self._new_data.clear()
            await self._new_data.wait()
        record = self.records[self.position]
        self.position += 1
        return record

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        if self.commit_failures > 0:
            self.commit_failures -= 1
            raise KafkaConnectionError("commit failed")
        offset = offsets[TopicPartition(self.topic, 0)]
        self.committed = offset
        self.commits.append(offset)

    def seek(self, tp: TopicPartition, offset: int) -> None:
        self.position = offset


class RecordingStore:
    """Outcome store keeping saved outcomes in a list."""

    def __init__(self) -> None:
        self.saved: list[ModelDeliveryOutcome] = []
        self.fail = False
        self.calls = 0

    async def save(self, outcome: ModelDeliveryOutcome) -> None:
        self.calls += 1
        if self.fail:
            raise OutcomeStoreError("database unavailable")
        self.saved.append(outcome)


class RecordingPublisher:
    """Completion publisher keeping published outcomes in a list."""

    def __init__(self) -> None:
        self.published: list[ModelDeliveryOutcome] = []
        self.fail = False
        self.calls = 0

    async def publish(self, outcome: ModelDeliveryOutcome) -> None:
        self.calls += 1
        if self.fail:
            raise CompletionPublishError("broker unavailable")
        self.published.append(outcome)


class FakeTime:
    """Virtual monotonic clock; sleep() advances it and yields once."""

    def __init__(self) -> None:
        self.now = 1000.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class GatedSleep:
    """Sleep that blocks until released, to hold a worker mid-delivery."""

    def __init__(self) -> None:
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, seconds: float) -> None:
        self.entered.set()
        await self.release.wait()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until true or fail after ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.001)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def consumer_config() -> ConfigChannelConsumer:
    """Consumer configuration with fast backoff."""
    return ConfigChannelConsumer(
        bootstrap_servers="localhost:9092",
        group_id_prefix="test-delivery",
        retry_initial_seconds=0.01,
        retry_max_seconds=0.02,
    )


@pytest.fixture
def email_policy_config() -> ConfigChannelPolicy:
    return ConfigChannelPolicy(
        min_latency_ms=50,
        max_latency_ms=200,
        failure_rate=0.0,
        failure_message="SMTP timeout",
    )


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def make_policy(fake_time: FakeTime) -> Callable[..., SimulatedDeliveryPolicy]:
    """Factory for policies running on virtual time with a seeded RNG."""

    def _make(
        channel: EnumChannel,
        config: ConfigChannelPolicy,
        seed: int = 42,
        sleep: Callable[[float], Any] | None = None,
    ) -> SimulatedDeliveryPolicy:
        return SimulatedDeliveryPolicy(
            channel=channel,
            config=config,
            rng=random.Random(seed),
            sleep=sleep or fake_time.sleep,
            clock=fake_time.clock,
        )

    return _make


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def email_stream(consumer_config: ConfigChannelConsumer) -> FakeStream:
    return FakeStream(consumer_config.topic_for(EnumChannel.EMAIL))


@pytest.fixture
def make_stream(consumer_config: ConfigChannelConsumer) -> Callable[[EnumChannel], FakeStream]:
    def _make(channel: EnumChannel) -> FakeStream:
        return FakeStream(consumer_config.topic_for(channel))

    return _make


@pytest.fixture
def email_worker(
    consumer_config: ConfigChannelConsumer,
    email_policy_config: ConfigChannelPolicy,
    make_policy: Callable[..., SimulatedDeliveryPolicy],
    store: RecordingStore,
    publisher: RecordingPublisher,
    email_stream: FakeStream,
) -> ChannelWorker:
    """Email worker wired to in-memory stream, store and publisher."""
    return ChannelWorker(
        channel=EnumChannel.EMAIL,
        config=consumer_config,
        policy=make_policy(EnumChannel.EMAIL, email_policy_config),
        store=store,
        publisher=publisher,
        consumer=email_stream,  # type: ignore[arg-type]
    )


def notification_payload(
    notification_id: str = "n1",
    channel: str = "email",
    recipient: str = "a@b.com",
    body: str = "hi",
    **extra: Any,
) -> dict[str, Any]:
    return {
        "id": notification_id,
        "channel": channel,
        "recipient": recipient,
        "body": body,
        **extra,
    }


@pytest.fixture
def payload() -> Callable[..., dict[str, Any]]:
    """Factory for notification payload dicts."""
    return notification_payload


@pytest.fixture
def waiter() -> Callable[..., Any]:
    """The wait_until helper as a fixture."""
    return wait_until


@pytest.fixture
def gated_sleep() -> GatedSleep:
    return GatedSleep()
