"""Per-channel delivery simulation.

Key Components:
    - ProtocolDeliveryPolicy: Contract a channel worker depends on
    - SimulatedDeliveryPolicy: Latency + failure-rate simulation
    - ConfigChannelPolicy: Bounds and failure characteristics of one channel
    - ConfigDeliveryPolicies: Policies for all channels, env-overridable
"""

from __future__ import annotations

from delivery_pipeline.policies.config import (
    DEFAULT_EMAIL_POLICY,
    DEFAULT_PUSH_POLICY,
    DEFAULT_SMS_POLICY,
    ConfigChannelPolicy,
    ConfigDeliveryPolicies,
)
from delivery_pipeline.policies.delivery_policy import (
    ProtocolDeliveryPolicy,
    SimulatedDeliveryPolicy,
    build_delivery_policies,
)

__all__ = [
    # Contract and implementation
    "ProtocolDeliveryPolicy",
    "SimulatedDeliveryPolicy",
    "build_delivery_policies",
    # Configuration
    "ConfigChannelPolicy",
    "ConfigDeliveryPolicies",
    "DEFAULT_EMAIL_POLICY",
    "DEFAULT_PUSH_POLICY",
    "DEFAULT_SMS_POLICY",
]
