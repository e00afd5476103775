# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Simulated delivery for each channel.

A delivery policy turns a notification into a delivery attempt:

    1. Draw a delay uniformly from [min_latency_ms, max_latency_ms] and
       sleep for it inside the calling worker. The worker does nothing
       else meanwhile, so one message per channel is in flight at a time.
    2. Draw a sample from [0, 1); below failure_rate the attempt is FAILED
       with the configured failure_message, otherwise SENT.
    3. Report the measured duration of step 1 as latency_ms.

FAILED is a normal outcome value. ``simulate`` never raises for it.

There is one implementation, ``SimulatedDeliveryPolicy``; a channel
variant is an instance bound to that channel's ConfigChannelPolicy.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol, runtime_checkable

from delivery_pipeline.models import (
    EnumChannel,
    EnumDeliveryStatus,
    ModelDeliveryAttempt,
    ModelNotification,
)
from delivery_pipeline.policies.config import (
    ConfigChannelPolicy,
    ConfigDeliveryPolicies,
)

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
ClockFunc = Callable[[], float]


@runtime_checkable
class ProtocolDeliveryPolicy(Protocol):
    """Contract for a channel's delivery simulation."""

    @property
    def channel(self) -> EnumChannel:
        """Channel this policy simulates."""
        ...

    async def simulate(self, notification: ModelNotification) -> ModelDeliveryAttempt:
        """Simulate delivering one notification."""
        ...


class SimulatedDeliveryPolicy:
    """Delivery simulation driven by a ConfigChannelPolicy.

    Args:
        channel: Channel this instance serves.
        config: Latency bounds and failure characteristics.
        rng: Random source. A seeded ``random.Random`` makes draws
            reproducible.
        sleep: Coroutine used to wait out the drawn delay.
        clock: Monotonic clock in seconds used to measure the delay.

    Example:
        >>> policy = SimulatedDeliveryPolicy(EnumChannel.EMAIL, DEFAULT_EMAIL_POLICY)
        >>> attempt = await policy.simulate(notification)
    """

    def __init__(
        self,
        channel: EnumChannel,
        config: ConfigChannelPolicy,
        rng: random.Random | None = None,
        sleep: SleepFunc | None = None,
        clock: ClockFunc | None = None,
    ) -> None:
        self._channel = channel
        self._config = config
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    @property
    def channel(self) -> EnumChannel:
        return self._channel

    @property
    def config(self) -> ConfigChannelPolicy:
        return self._config

    def draw_delay_ms(self) -> int:
        """Draw a delay in milliseconds, inclusive of both bounds."""
        return self._rng.randint(
            self._config.min_latency_ms, self._config.max_latency_ms
        )

    async def simulate(self, notification: ModelNotification) -> ModelDeliveryAttempt:
        delay_ms = self.draw_delay_ms()

        started = self._clock()
        await self._sleep(delay_ms / 1000)
        elapsed_ms = int(round((self._clock() - started) * 1000))

        # Early wake-ups and scheduler jitter stay inside the configured bounds
        latency_ms = min(
            max(elapsed_ms, self._config.min_latency_ms), self._config.max_latency_ms
        )

        if self._rng.random() < self._config.failure_rate:
            logger.info(
                "Simulated delivery failed",
                extra={
                    "channel": self._channel.value,
                    "notification_id": notification.id,
                    "latency_ms": latency_ms,
                    "error": self._config.failure_message,
                },
            )
            return ModelDeliveryAttempt(
                status=EnumDeliveryStatus.FAILED,
                latency_ms=latency_ms,
                error_message=self._config.failure_message,
            )

        logger.info(
            "Simulated delivery sent",
            extra={
                "channel": self._channel.value,
                "notification_id": notification.id,
                "recipient": notification.recipient,
                "latency_ms": latency_ms,
            },
        )
        return ModelDeliveryAttempt(
            status=EnumDeliveryStatus.SENT,
            latency_ms=latency_ms,
        )


def build_delivery_policies(
    channels: Iterable[EnumChannel],
    config: ConfigDeliveryPolicies | None = None,
    rng: random.Random | None = None,
) -> dict[EnumChannel, ProtocolDeliveryPolicy]:
    """Select one policy per configured channel.

    Each policy gets its own random stream derived from ``rng`` so that
    channels do not share mutable state.
    """
    config = config or ConfigDeliveryPolicies()
    policies: dict[EnumChannel, ProtocolDeliveryPolicy] = {}
    for channel in channels:
        channel_rng = random.Random(rng.random()) if rng is not None else None
        policies[channel] = SimulatedDeliveryPolicy(
            channel=channel,
            config=config.for_channel(channel),
            rng=channel_rng,
        )
    return policies


__all__ = [
    "ProtocolDeliveryPolicy",
    "SimulatedDeliveryPolicy",
    "build_delivery_policies",
]
