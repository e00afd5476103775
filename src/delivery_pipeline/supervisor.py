# SPDX-License-Identifier: MIT
# Copyright (c) 2025 OmniNode Team
"""Supervisor owning one channel worker per configured channel.

Bring-up is all-or-nothing: if any worker fails to start, the workers
that did start are closed again and WorkerStartupError propagates.

In steady state each worker runs in its own task. Workers handle their
own fetch/sink failures; a task that still dies is logged and does not
affect its siblings.

Shutdown is a single shared asyncio.Event. Workers observe it only at
their fetch boundary, so in-flight records always finish committing.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING

from delivery_pipeline.consumers import ChannelWorker, ConfigChannelConsumer
from delivery_pipeline.errors import WorkerStartupError
from delivery_pipeline.models import EnumChannel

if TYPE_CHECKING:
    from aiokafka import AIOKafkaConsumer

    from delivery_pipeline.policies import ProtocolDeliveryPolicy
    from delivery_pipeline.publisher import ProtocolCompletionPublisher
    from delivery_pipeline.storage import ProtocolOutcomeStore

logger = logging.getLogger(__name__)


class DeliverySupervisor:
    """Starts, runs and stops the channel workers as one unit.

    Example:
        >>> supervisor = DeliverySupervisor(
        ...     channels=[EnumChannel.EMAIL, EnumChannel.SMS],
        ...     consumer_config=ConfigChannelConsumer(),
        ...     policies=build_delivery_policies([EnumChannel.EMAIL, EnumChannel.SMS]),
        ...     store=store,
        ...     publisher=publisher,
        ... )
        >>> await supervisor.start()
        >>> await supervisor.run_until_shutdown()
    """

    def __init__(
        self,
        channels: Iterable[EnumChannel],
        consumer_config: ConfigChannelConsumer,
        policies: Mapping[EnumChannel, ProtocolDeliveryPolicy],
        store: ProtocolOutcomeStore,
        publisher: ProtocolCompletionPublisher,
        consumers: Mapping[EnumChannel, AIOKafkaConsumer] | None = None,
    ) -> None:
        """Build one worker per channel.

        Args:
            channels: Channels to serve. Each may appear once.
            consumer_config: Shared consumer configuration.
            policies: Delivery policy for every channel in ``channels``.
            store: Outcome store shared by all workers.
            publisher: Completion publisher shared by all workers.
            consumers: Optional pre-built consumers per channel.

        Raises:
            ValueError: If a channel repeats or lacks a policy.
        """
        channel_list = list(channels)
        if not channel_list:
            raise ValueError("At least one channel is required")
        if len(set(channel_list)) != len(channel_list):
            raise ValueError(f"Duplicate channels: {[c.value for c in channel_list]}")
        missing = [c.value for c in channel_list if c not in policies]
        if missing:
            raise ValueError(f"No delivery policy for channels: {missing}")

        consumers = consumers or {}
        self._shutdown_event = asyncio.Event()
        self._workers: dict[EnumChannel, ChannelWorker] = {
            channel: ChannelWorker(
                channel=channel,
                config=consumer_config,
                policy=policies[channel],
                store=store,
                publisher=publisher,
                shutdown_event=self._shutdown_event,
                consumer=consumers.get(channel),
            )
            for channel in channel_list
        }
        self._tasks: dict[EnumChannel, asyncio.Task[None]] = {}
        self._started = False
        self._stopped = asyncio.Event()

    @property
    def workers(self) -> Mapping[EnumChannel, ChannelWorker]:
        return self._workers

    @property
    def channels(self) -> list[EnumChannel]:
        return list(self._workers)

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._shutdown_event.is_set()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start every worker concurrently.

        Raises:
            WorkerStartupError: If any worker fails to start. Workers that
                did start are closed first.
        """
        if self._started:
            return

        workers = list(self._workers.values())
        results = await asyncio.gather(
            *(worker.start() for worker in workers),
            return_exceptions=True,
        )

        failures = {
            worker.channel.value: result
            for worker, result in zip(workers, results, strict=True)
            if isinstance(result, BaseException)
        }
        if failures:
            logger.error(
                "Channel worker bring-up failed, aborting",
                extra={
                    "failed_channels": sorted(failures),
                    "errors": {k: str(v) for k, v in failures.items()},
                },
            )
            await asyncio.gather(
                *(w.close() for w in workers if w.channel.value not in failures),
                return_exceptions=True,
            )
            first = next(iter(failures.values()))
            raise WorkerStartupError(
                "Failed to start channel workers",
                details={"failed_channels": sorted(failures)},
            ) from first

        self._started = True
        logger.info(
            "All channel workers started",
            extra={"channels": [c.value for c in self._workers]},
        )

    def run(self) -> None:
        """Spawn one task per worker. Requires start()."""
        if not self._started:
            raise RuntimeError("Supervisor not started. Call start() before run().")
        if self._tasks:
            return

        for channel, worker in self._workers.items():
            task = asyncio.create_task(worker.run(), name=f"worker-{channel.value}")
            task.add_done_callback(self._on_worker_done)
            self._tasks[channel] = task

    def _on_worker_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            logger.info("Worker task cancelled", extra={"task": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Worker task died",
                extra={"task": task.get_name(), "error": str(exc)},
                exc_info=exc,
            )

    async def shutdown(self) -> None:
        """Signal every worker and wait until all have stopped.

        In-flight records complete before their worker exits. Safe to call
        multiple times.
        """
        if self._stopped.is_set():
            return

        logger.info(
            "Shutting down channel workers",
            extra={"channels": [c.value for c in self._workers]},
        )
        self._shutdown_event.set()

        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

        await asyncio.gather(
            *(worker.close() for worker in self._workers.values()),
            return_exceptions=True,
        )
        self._stopped.set()
        logger.info("All channel workers stopped")

    async def wait_stopped(self) -> None:
        """Block until shutdown() has completed."""
        await self._stopped.wait()

    async def run_until_shutdown(self) -> None:
        """Run the workers until SIGTERM/SIGINT, then shut down.

        Also returns once every worker task has exited, so a process whose
        channels have all died does not sit idle.
        """
        self.run()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._signal_handler)

        signalled = asyncio.ensure_future(self._shutdown_event.wait())
        # asyncio.wait never cancels the worker tasks it watches
        workers_exited = asyncio.ensure_future(asyncio.wait(list(self._tasks.values())))
        try:
            await asyncio.wait(
                {signalled, workers_exited}, return_when=asyncio.FIRST_COMPLETED
            )
            if workers_exited.done() and not self._shutdown_event.is_set():
                logger.error(
                    "All channel workers exited, shutting down",
                    extra={"channels": [c.value for c in self._workers]},
                )
        finally:
            for waiter in (signalled, workers_exited):
                if not waiter.done():
                    waiter.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await waiter
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.shutdown()

    def _signal_handler(self) -> None:
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # =========================================================================
    # Health Check
    # =========================================================================

    async def health_check(self) -> dict[str, object]:
        """Aggregate health of every worker."""
        workers = {
            channel.value: await worker.health_check()
            for channel, worker in self._workers.items()
        }
        return {
            "healthy": all(w["healthy"] for w in workers.values()),
            "shutting_down": self._shutdown_event.is_set(),
            "workers": workers,
        }


__all__ = ["DeliverySupervisor"]
