"""Delivery pipeline - per-channel notification delivery workers.

One worker per channel (email, sms, push) consumes notification records,
simulates delivery with channel-specific latency and failure rate,
persists one outcome per attempt, and emits a completion event.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("delivery-pipeline")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
