import asyncio
import signal
from datetime import timedelta

import structlog

from transaction_engine.api.metrics_server import MetricsServer
from transaction_engine.application.engine import TransactionEngine
from transaction_engine.config import Settings, settings
from transaction_engine.infrastructure.audit import StoreAuditLogger
from transaction_engine.infrastructure.database import Database
from transaction_engine.infrastructure.gateway import build_payment_gateway
from transaction_engine.infrastructure.webhook_publisher import WebhookOutboxProcessor
from transaction_engine.logging import configure_logging


logger = structlog.get_logger()


def build_engine(database: Database, config: Settings = settings) -> TransactionEngine:
    """Wire the engine against PostgreSQL with the configured gateway strategy."""
    return TransactionEngine(
        uow_factory=database.unit_of_work,
        gateway=build_payment_gateway(config.payment_provider, config.gateway_latency_seconds),
        audit_logger=StoreAuditLogger(database.unit_of_work),
        stale_threshold=timedelta(seconds=config.stale_processing_threshold_seconds),
    )


async def main() -> None:
    configure_logging(
        level=settings.log_level,
        log_format=settings.log_format,
    )

    logger.info(
        "starting_transaction_engine_worker",
        metrics_port=settings.metrics_port,
        log_level=settings.log_level,
        metrics_enabled=settings.metrics_enabled,
        payment_provider=settings.payment_provider,
    )

    database = Database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )

    metrics_server: MetricsServer | None = None
    if settings.metrics_enabled:
        metrics_server = MetricsServer(
            host=settings.metrics_host,
            port=settings.metrics_port,
            health_check=database.ping,
        )
        await metrics_server.start()

    processor = WebhookOutboxProcessor(database=database)
    shutdown_event = asyncio.Event()

    def signal_handler() -> None:
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    processor_task = asyncio.create_task(processor.start())
    shutdown_task = asyncio.create_task(shutdown_event.wait())

    try:
        await asyncio.wait({processor_task, shutdown_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        logger.info("shutting_down")
        await processor.stop()
        for task in (processor_task, shutdown_task):
            task.cancel()
        await asyncio.gather(processor_task, shutdown_task, return_exceptions=True)
        if metrics_server:
            await metrics_server.stop()
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
