"""Storage adapters for delivery outcomes.

This module provides the PostgreSQL outcome store shared by all channel
workers.
"""

from __future__ import annotations

from .config import ConfigOutcomeStorage
from .outcome_store import OutcomeStore, ProtocolOutcomeStore

__all__ = ["ConfigOutcomeStorage", "OutcomeStore", "ProtocolOutcomeStore"]
