#!/usr/bin/env python3
"""Webhook outbox worker entrypoint.

Runs the WebhookOutboxProcessor on its own, without the metrics server,
polling the outbox table and publishing partner webhooks to Kafka/Redpanda.
"""
import asyncio
import signal

import structlog

from transaction_engine.config import settings
from transaction_engine.infrastructure.database import Database
from transaction_engine.infrastructure.webhook_publisher import WebhookOutboxProcessor
from transaction_engine.logging import configure_logging


logger = structlog.get_logger()


async def main() -> None:
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    logger.info(
        "webhook_worker_starting",
        database_url=settings.database_url.split("@")[-1],
        redpanda_brokers=settings.redpanda_brokers,
        batch_size=settings.outbox_batch_size,
        poll_interval=settings.outbox_poll_interval_seconds,
    )

    database = Database(settings.database_url)
    processor = WebhookOutboxProcessor(database=database)

    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    processor_task = asyncio.create_task(processor.start())

    try:
        await shutdown_event.wait()
    finally:
        logger.info("initiating_graceful_shutdown")
        await processor.stop()
        processor_task.cancel()
        try:
            await processor_task
        except asyncio.CancelledError:
            pass
        await database.close()
        logger.info("webhook_worker_shutdown_complete")


if __name__ == "__main__":
    asyncio.run(main())
