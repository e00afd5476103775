"""Entry point for running the delivery service.

Usage:
    python -m delivery_pipeline run
    python -m delivery_pipeline run --channels email sms
    python -m delivery_pipeline init-db

Connection settings come from the environment (see the DELIVERY_CONSUMER_,
DELIVERY_PUBLISHER_, DELIVERY_STORAGE_ and DELIVERY_POLICY_ settings).
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from pydantic import ValidationError

from delivery_pipeline.consumers import ConfigChannelConsumer
from delivery_pipeline.errors import DeliveryPipelineError
from delivery_pipeline.models import EnumChannel
from delivery_pipeline.policies import ConfigDeliveryPolicies, build_delivery_policies
from delivery_pipeline.publisher import CompletionPublisher, ConfigCompletionPublisher
from delivery_pipeline.storage import ConfigOutcomeStorage, OutcomeStore
from delivery_pipeline.supervisor import DeliverySupervisor

logger = logging.getLogger(__name__)


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Multi-channel notification delivery service",
        prog="python -m delivery_pipeline",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run the channel workers")
    run_parser.add_argument(
        "--channels",
        nargs="+",
        type=EnumChannel.parse,
        default=None,
        help="Channels to serve (default: DELIVERY_CONSUMER_CHANNELS or all)",
    )

    sub.add_parser("init-db", help="Create the outcome table and indexes")

    return parser.parse_args(argv)


async def _run(channels: list[EnumChannel] | None) -> None:
    consumer_config = ConfigChannelConsumer()
    channels = channels or consumer_config.channels

    store = OutcomeStore(ConfigOutcomeStorage())  # type: ignore[call-arg]  # password from env
    publisher = CompletionPublisher(ConfigCompletionPublisher())

    await store.initialize()
    try:
        await publisher.start()
        try:
            supervisor = DeliverySupervisor(
                channels=channels,
                consumer_config=consumer_config,
                policies=build_delivery_policies(channels, ConfigDeliveryPolicies()),
                store=store,
                publisher=publisher,
            )
            await supervisor.start()
            logger.info(
                "Delivery service started",
                extra={"channels": [c.value for c in channels]},
            )
            await supervisor.run_until_shutdown()
        finally:
            await publisher.close()
    finally:
        await store.close()

    logger.info("Delivery service stopped")


async def _init_db() -> None:
    store = OutcomeStore(ConfigOutcomeStorage())  # type: ignore[call-arg]  # password from env
    await store.initialize(create_schema=True)
    await store.close()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    try:
        if args.command == "run":
            asyncio.run(_run(args.channels))
        elif args.command == "init-db":
            asyncio.run(_init_db())
        else:
            print(f"Unknown command: {args.command}", file=sys.stderr)
            return 1
    except DeliveryPipelineError as e:
        logger.error("Fatal: %s", e, extra={"details": e.details})
        return 1
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        return 1
    except KeyboardInterrupt:
        pass

    return 0


if __name__ == "__main__":
    sys.exit(main())
