# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Tests for SimulatedDeliveryPolicy.

Covers the simulation contract:
    - Status/error_message pairing
    - latency_ms bounds, measured from the clock rather than the draw
    - Observed failure fraction over a large sample
"""

from __future__ import annotations

import asyncio
import random
from typing import TYPE_CHECKING, Any

import pytest

from delivery_pipeline.models import (
    EnumChannel,
    EnumDeliveryStatus,
    ModelNotification,
)
from delivery_pipeline.policies import (
    DEFAULT_EMAIL_POLICY,
    ConfigChannelPolicy,
    ConfigDeliveryPolicies,
    ProtocolDeliveryPolicy,
    SimulatedDeliveryPolicy,
    build_delivery_policies,
)

if TYPE_CHECKING:
    from conftest import FakeTime


@pytest.fixture
def notification() -> ModelNotification:
    return ModelNotification(
        id="n1", channel=EnumChannel.EMAIL, recipient="a@b.com", body="hi"
    )


def policy_config(failure_rate: float, message: str = "SMTP timeout") -> ConfigChannelPolicy:
    return ConfigChannelPolicy(
        min_latency_ms=50,
        max_latency_ms=200,
        failure_rate=failure_rate,
        failure_message=message,
    )


class TestSimulate:
    """Tests for a single simulated attempt."""

    async def test_zero_failure_rate_always_sent(
        self, make_policy: Any, notification: ModelNotification
    ) -> None:
        policy = make_policy(EnumChannel.EMAIL, policy_config(0.0))

        for _ in range(50):
            attempt = await policy.simulate(notification)
            assert attempt.status == EnumDeliveryStatus.SENT
            assert attempt.error_message is None

    async def test_failure_rate_one_always_failed(
        self, make_policy: Any, notification: ModelNotification
    ) -> None:
        policy = make_policy(EnumChannel.EMAIL, policy_config(1.0))

        for _ in range(50):
            attempt = await policy.simulate(notification)
            assert attempt.status == EnumDeliveryStatus.FAILED
            assert attempt.error_message == "SMTP timeout"

    async def test_latency_is_measured_elapsed_time(
        self, make_policy: Any, fake_time: FakeTime, notification: ModelNotification
    ) -> None:
        policy = make_policy(EnumChannel.EMAIL, policy_config(0.0))

        attempt = await policy.simulate(notification)

        assert len(fake_time.sleeps) == 1
        assert attempt.latency_ms == round(fake_time.sleeps[0] * 1000)

    async def test_latency_within_bounds(
        self, make_policy: Any, notification: ModelNotification
    ) -> None:
        policy = make_policy(EnumChannel.EMAIL, policy_config(0.5))

        latencies = [(await policy.simulate(notification)).latency_ms for _ in range(500)]

        assert min(latencies) >= 50
        assert max(latencies) <= 200

    async def test_jitter_clamped_to_bounds(self, notification: ModelNotification) -> None:
        """A clock that overshoots still reports within the configured range."""
        ticks = iter([0.0, 5.0])
        policy = SimulatedDeliveryPolicy(
            EnumChannel.EMAIL,
            policy_config(0.0),
            rng=random.Random(1),
            sleep=lambda _: asyncio.sleep(0),
            clock=lambda: next(ticks),
        )

        attempt = await policy.simulate(notification)

        assert attempt.latency_ms == 200

    async def test_early_wakeup_clamped_to_minimum(
        self, notification: ModelNotification
    ) -> None:
        ticks = iter([0.0, 0.0])
        policy = SimulatedDeliveryPolicy(
            EnumChannel.EMAIL,
            policy_config(0.0),
            rng=random.Random(1),
            sleep=lambda _: asyncio.sleep(0),
            clock=lambda: next(ticks),
        )

        attempt = await policy.simulate(notification)

        assert attempt.latency_ms == 50

    async def test_real_sleep_stays_in_bounds(self, notification: ModelNotification) -> None:
        policy = SimulatedDeliveryPolicy(
            EnumChannel.PUSH,
            ConfigChannelPolicy(
                min_latency_ms=5,
                max_latency_ms=15,
                failure_rate=0.0,
                failure_message="device token invalid",
            ),
        )

        attempt = await policy.simulate(notification)

        assert 5 <= attempt.latency_ms <= 15

    def test_delay_draw_is_inclusive(self) -> None:
        policy = SimulatedDeliveryPolicy(
            EnumChannel.SMS,
            ConfigChannelPolicy(
                min_latency_ms=30,
                max_latency_ms=32,
                failure_rate=0.0,
                failure_message="carrier gateway unreachable",
            ),
            rng=random.Random(7),
        )

        draws = {policy.draw_delay_ms() for _ in range(200)}

        assert draws == {30, 31, 32}

    def test_fixed_latency_when_bounds_equal(self) -> None:
        policy = SimulatedDeliveryPolicy(
            EnumChannel.SMS,
            ConfigChannelPolicy(
                min_latency_ms=40,
                max_latency_ms=40,
                failure_rate=0.0,
                failure_message="x",
            ),
        )

        assert policy.draw_delay_ms() == 40


class TestFailureDistribution:
    """Observed FAILED fraction over many attempts."""

    @pytest.mark.parametrize("seed", [1, 2, 3])
    async def test_ten_percent_failure_rate(
        self, make_policy: Any, notification: ModelNotification, seed: int
    ) -> None:
        policy = make_policy(EnumChannel.EMAIL, policy_config(0.10), seed=seed)
        n = 10_000

        failed = 0
        for _ in range(n):
            attempt = await policy.simulate(notification)
            if attempt.status == EnumDeliveryStatus.FAILED:
                failed += 1

        assert 0.08 <= failed / n <= 0.12


class TestBuildPolicies:
    """Tests for build_delivery_policies."""

    def test_one_policy_per_channel(self) -> None:
        channels = [EnumChannel.EMAIL, EnumChannel.PUSH]

        policies = build_delivery_policies(channels)

        assert set(policies) == set(channels)
        for channel, policy in policies.items():
            assert isinstance(policy, ProtocolDeliveryPolicy)
            assert policy.channel == channel

    def test_channel_config_selected(self) -> None:
        config = ConfigDeliveryPolicies(
            sms=ConfigChannelPolicy(
                min_latency_ms=1,
                max_latency_ms=2,
                failure_rate=0.5,
                failure_message="carrier down",
            )
        )

        policies = build_delivery_policies([EnumChannel.SMS, EnumChannel.EMAIL], config)

        sms = policies[EnumChannel.SMS]
        email = policies[EnumChannel.EMAIL]
        assert isinstance(sms, SimulatedDeliveryPolicy)
        assert isinstance(email, SimulatedDeliveryPolicy)
        assert sms.config.failure_message == "carrier down"
        assert email.config == DEFAULT_EMAIL_POLICY

    def test_seeded_rng_is_reproducible(self) -> None:
        a = build_delivery_policies([EnumChannel.EMAIL], rng=random.Random(9))
        b = build_delivery_policies([EnumChannel.EMAIL], rng=random.Random(9))

        pa = a[EnumChannel.EMAIL]
        pb = b[EnumChannel.EMAIL]
        assert isinstance(pa, SimulatedDeliveryPolicy)
        assert isinstance(pb, SimulatedDeliveryPolicy)
        assert [pa.draw_delay_ms() for _ in range(10)] == [
            pb.draw_delay_ms() for _ in range(10)
        ]
