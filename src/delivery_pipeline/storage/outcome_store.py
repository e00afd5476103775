# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""PostgreSQL storage adapter for delivery outcomes.

Appends one row per processing attempt. There is no upsert and no
idempotency key: a redelivered notification produces a second row with
the same notification_id.

Table Schema (created by ensure_schema):
    delivery_outcomes
        outcome_id       BIGSERIAL PRIMARY KEY
        notification_id  TEXT NOT NULL        (not unique)
        channel          TEXT NOT NULL
        recipient        TEXT NOT NULL
        status           TEXT NOT NULL        (SENT | FAILED)
        observed_at      TIMESTAMPTZ NOT NULL
        latency_ms       INTEGER NOT NULL     (>= 0)
        error_message    TEXT                 (set iff FAILED)

    Indexed on status, channel and observed_at for the query surface.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import asyncpg

from delivery_pipeline.errors import OutcomeStoreError
from delivery_pipeline.models import (
    EnumChannel,
    EnumDeliveryStatus,
    ModelDeliveryOutcome,
)
from delivery_pipeline.storage.config import ConfigOutcomeStorage

if TYPE_CHECKING:
    from asyncpg import Pool

logger = logging.getLogger(__name__)

_MAX_LIST_LIMIT = 1000


@runtime_checkable
class ProtocolOutcomeStore(Protocol):
    """Contract for persisting delivery outcomes.

    Implementations must be safe for concurrent use by every channel
    worker without caller-side locking.
    """

    async def save(self, outcome: ModelDeliveryOutcome) -> None:
        """Append one outcome.

        Raises:
            OutcomeStoreError: If the outcome could not be persisted.
        """
        ...


class OutcomeStore:
    """PostgreSQL storage for delivery outcomes.

    Thread Safety:
        Safe for concurrent callers. The asyncpg pool hands each call its
        own connection.

    Example:
        >>> config = ConfigOutcomeStorage(postgres_password=SecretStr("secret"))
        >>> store = OutcomeStore(config)
        >>> await store.initialize()
        >>> try:
        ...     await store.save(outcome)
        ... finally:
        ...     await store.close()
    """

    def __init__(self, config: ConfigOutcomeStorage) -> None:
        """Initialize store with configuration.

        Args:
            config: PostgreSQL connection configuration.
        """
        self._config = config
        self._table = config.table_name
        self._pool: Pool | None = None

    @property
    def is_initialized(self) -> bool:
        """Check if the store is initialized and ready for use."""
        return self._pool is not None

    async def initialize(self, create_schema: bool = True) -> None:
        """Initialize connection pool and (optionally) the schema.

        Must be called before any other operations.

        Raises:
            OutcomeStoreError: If the pool cannot be created.
        """
        if self._pool is not None:
            logger.warning("OutcomeStore already initialized, skipping")
            return

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self._config.dsn,
                min_size=self._config.pool_min_size,
                max_size=self._config.pool_max_size,
                command_timeout=self._config.query_timeout_seconds,
            )
        except (asyncpg.PostgresError, OSError) as e:
            raise OutcomeStoreError(
                "Failed to connect to outcome store",
                details={"dsn": self._config.dsn_safe, "error": str(e)},
            ) from e

        if create_schema:
            await self.ensure_schema()

        logger.info(
            "OutcomeStore initialized",
            extra={
                "dsn": self._config.dsn_safe,
                "table": self._table,
                "pool_min_size": self._config.pool_min_size,
                "pool_max_size": self._config.pool_max_size,
            },
        )

    async def close(self) -> None:
        """Close connection pool. Safe to call multiple times."""
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
            logger.info("OutcomeStore closed")

    def _require_pool(self) -> Pool:
        if self._pool is None:
            raise OutcomeStoreError(
                "OutcomeStore not initialized. Call initialize() first."
            )
        return self._pool

    async def ensure_schema(self) -> None:
        """Create the outcome table and its query indexes if missing."""
        pool = self._require_pool()
        table = self._table
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        outcome_id BIGSERIAL PRIMARY KEY,
                        notification_id TEXT NOT NULL,
                        channel TEXT NOT NULL,
                        recipient TEXT NOT NULL,
                        status TEXT NOT NULL,
                        observed_at TIMESTAMPTZ NOT NULL,
                        latency_ms INTEGER NOT NULL CHECK (latency_ms >= 0),
                        error_message TEXT
                    );
                    CREATE INDEX IF NOT EXISTS idx_{table}_status ON {table} (status);
                    CREATE INDEX IF NOT EXISTS idx_{table}_channel ON {table} (channel);
                    CREATE INDEX IF NOT EXISTS idx_{table}_observed_at
                        ON {table} (observed_at);
                    CREATE INDEX IF NOT EXISTS idx_{table}_notification_id
                        ON {table} (notification_id);
                    """
                )
        except (asyncpg.PostgresError, OSError) as e:
            raise OutcomeStoreError(
                "Failed to create outcome schema",
                details={"table": table, "error": str(e)},
            ) from e

    # =========================================================================
    # Public API
    # =========================================================================

    async def save(self, outcome: ModelDeliveryOutcome) -> None:
        """Append one outcome row.

        Raises:
            OutcomeStoreError: If not initialized or the insert fails.
        """
        pool = self._require_pool()

        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self._table} (
                        notification_id, channel, recipient, status,
                        observed_at, latency_ms, error_message
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                    """,
                    outcome.notification_id,
                    outcome.channel.value,
                    outcome.recipient,
                    outcome.status.value,
                    outcome.observed_at,
                    outcome.latency_ms,
                    outcome.error_message,
                )
        except (asyncpg.PostgresError, OSError, TimeoutError) as e:
            raise OutcomeStoreError(
                "Failed to save delivery outcome",
                details={
                    "notification_id": outcome.notification_id,
                    "channel": outcome.channel.value,
                    "error": str(e),
                },
            ) from e

        logger.debug(
            "Saved delivery outcome",
            extra={
                "notification_id": outcome.notification_id,
                "channel": outcome.channel.value,
                "status": outcome.status.value,
            },
        )

    async def list_outcomes(
        self,
        status: EnumDeliveryStatus | None = None,
        channel: EnumChannel | None = None,
        observed_from: datetime | None = None,
        observed_to: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ModelDeliveryOutcome]:
        """List outcomes with optional filters, newest first.

        Args:
            status: Filter by delivery status.
            channel: Filter by channel.
            observed_from: Inclusive lower bound on observed_at.
            observed_to: Exclusive upper bound on observed_at.
            limit: Maximum number of results (default 100, max 1000).
            offset: Number of results to skip (for pagination).

        Raises:
            OutcomeStoreError: If the query fails.
        """
        pool = self._require_pool()

        # Clamp limit to prevent excessive queries
        limit = max(0, min(limit, _MAX_LIST_LIMIT))
        offset = max(0, offset)

        conditions: list[str] = []
        params: list[Any] = []
        param_idx = 1

        if status is not None:
            conditions.append(f"status = ${param_idx}")
            params.append(status.value)
            param_idx += 1

        if channel is not None:
            conditions.append(f"channel = ${param_idx}")
            params.append(channel.value)
            param_idx += 1

        if observed_from is not None:
            conditions.append(f"observed_at >= ${param_idx}")
            params.append(observed_from)
            param_idx += 1

        if observed_to is not None:
            conditions.append(f"observed_at < ${param_idx}")
            params.append(observed_to)
            param_idx += 1

        where_clause = ""
        if conditions:
            where_clause = "WHERE " + " AND ".join(conditions)

        params.append(limit)
        params.append(offset)

        query = f"""
            SELECT
                notification_id, channel, recipient, status,
                observed_at, latency_ms, error_message
            FROM {self._table}
            {where_clause}
            ORDER BY observed_at DESC
            LIMIT ${param_idx} OFFSET ${param_idx + 1}
        """

        try:
            async with pool.acquire() as conn:
                rows = await conn.fetch(query, *params)
        except (asyncpg.PostgresError, OSError, TimeoutError) as e:
            raise OutcomeStoreError(
                "Failed to list delivery outcomes",
                details={"table": self._table, "error": str(e)},
            ) from e

        outcomes = [ModelDeliveryOutcome.model_validate(dict(row)) for row in rows]

        logger.debug(
            "Listed delivery outcomes",
            extra={
                "count": len(outcomes),
                "status_filter": status.value if status else None,
                "channel_filter": channel.value if channel else None,
                "limit": limit,
                "offset": offset,
            },
        )

        return outcomes

    async def count_by_notification(self, notification_id: str) -> int:
        """Number of stored attempts for one notification."""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                count = await conn.fetchval(
                    f"SELECT COUNT(*) FROM {self._table} WHERE notification_id = $1",
                    notification_id,
                )
        except (asyncpg.PostgresError, OSError, TimeoutError) as e:
            raise OutcomeStoreError(
                "Failed to count delivery outcomes",
                details={"notification_id": notification_id, "error": str(e)},
            ) from e
        return int(count or 0)


__all__ = ["OutcomeStore", "ProtocolOutcomeStore"]
