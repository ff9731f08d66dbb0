import asyncio
import json
import random
from datetime import UTC, datetime
from typing import Any

import structlog
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError

from transaction_engine.config import settings
from transaction_engine.domain.models import OutboxEvent
from transaction_engine.infrastructure.database import Database
from transaction_engine.infrastructure.metrics import (
    OUTBOX_EVENTS_FAILED,
    OUTBOX_EVENTS_PUBLISHED,
    OUTBOX_PENDING_EVENTS,
)
from transaction_engine.infrastructure.repositories.outbox import OutboxRepository


logger = structlog.get_logger()


def webhook_envelope(event: OutboxEvent) -> dict[str, Any]:
    """Message body delivered to the partner notification topic."""
    return {
        "webhook_id": event.id,
        "event_type": event.event_type,
        "partner_id": event.payload.get("partner_id"),
        "resource_type": event.aggregate_type,
        "resource_id": event.aggregate_id,
        "data": event.payload,
        "occurred_at": event.created_at.isoformat(),
    }


class WebhookOutboxProcessor:
    """
    Drains queued partner webhooks from the outbox table into Kafka/Redpanda.

    The engine writes a webhook row after each committed state change and
    never waits for delivery. Rows are claimed with ``FOR UPDATE SKIP LOCKED``,
    keyed by partner so a partner's webhooks stay ordered, retried until
    ``max_retries`` and then moved to the dead-letter topic. The worker stops
    after ``MAX_CONSECUTIVE_FAILURES`` failed batches in a row.
    """

    MAX_CONSECUTIVE_FAILURES = 10

    def __init__(
        self,
        database: Database,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
    ) -> None:
        self._database = database
        self._batch_size = batch_size or settings.outbox_batch_size
        self._poll_interval = poll_interval or settings.outbox_poll_interval_seconds
        self._max_retries = max_retries or settings.outbox_max_retries
        self._base_delay = base_delay or settings.outbox_base_delay_seconds
        self._max_delay = max_delay or settings.outbox_max_delay_seconds
        self._producer: AIOKafkaProducer | None = None
        self._running = False
        self._topic_prefix = f"{settings.kafka_topic_prefix}.webhooks"
        self._consecutive_failures = 0

    async def start(self) -> None:
        self._producer = AIOKafkaProducer(
            bootstrap_servers=settings.redpanda_brokers,
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda k: k.encode("utf-8") if k else None,
            acks="all",
            enable_idempotence=True,
        )
        await self._producer.start()
        self._running = True
        self._consecutive_failures = 0
        logger.info("webhook_processor_started", batch_size=self._batch_size, topic_prefix=self._topic_prefix)

        try:
            while self._running:
                try:
                    processed_count = await self._process_batch()
                    self._consecutive_failures = 0
                    if processed_count == 0:
                        await asyncio.sleep(self._poll_interval)
                except Exception as e:
                    self._consecutive_failures += 1
                    logger.error(
                        "webhook_processing_error",
                        error=str(e),
                        consecutive_failures=self._consecutive_failures,
                        exc_info=True,
                    )
                    if self._consecutive_failures >= self.MAX_CONSECUTIVE_FAILURES:
                        logger.critical(
                            "circuit_breaker_triggered",
                            consecutive_failures=self._consecutive_failures,
                            action="stopping_processor",
                        )
                        break
                    await asyncio.sleep(self._poll_interval)
        finally:
            await self.stop()

    async def stop(self) -> None:
        self._running = False
        if self._producer:
            await self._producer.stop()
            self._producer = None
        logger.info("webhook_processor_stopped")

    async def _process_batch(self) -> int:
        """Publish one batch of queued webhooks.

        Returns:
            Number of outbox rows handled in this batch.
        """
        async with self._database.session() as session:
            outbox_repo = OutboxRepository(session)
            events = await outbox_repo.get_unpublished(self._batch_size)

            if not events:
                OUTBOX_PENDING_EVENTS.set(0)
                return 0

            published_ids: list[str] = []
            dead_letters: list[OutboxEvent] = []

            for event in events:
                if event.retry_count >= self._max_retries:
                    dead_letters.append(event)
                    continue

                if await self._publish_event(event):
                    published_ids.append(event.id)
                else:
                    await self._handle_retry(event, outbox_repo)

            if published_ids:
                await outbox_repo.mark_published(published_ids)
                logger.info("webhook_batch_published", count=len(published_ids))

            if dead_letters:
                await self._send_to_dlq(dead_letters, outbox_repo)

            await session.commit()
            OUTBOX_PENDING_EVENTS.set(await outbox_repo.count_pending())

            return len(events)

    def _topic_for(self, event: OutboxEvent) -> str:
        return f"{self._topic_prefix}.{event.event_type.lower()}"

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """Publish a single webhook.

        Returns:
            True if published successfully, False otherwise.
        """
        if not self._producer:
            return False

        topic = self._topic_for(event)
        key = event.payload.get("partner_id") or event.aggregate_id

        try:
            await self._producer.send_and_wait(topic=topic, key=key, value=webhook_envelope(event))
        except KafkaError as e:
            OUTBOX_EVENTS_FAILED.labels(event_type=event.event_type).inc()
            logger.error(
                "webhook_publish_failed",
                event_id=event.id,
                topic=topic,
                error=str(e),
                retry_count=event.retry_count,
            )
            return False

        OUTBOX_EVENTS_PUBLISHED.labels(event_type=event.event_type).inc()
        logger.info(
            "webhook_published",
            event_id=event.id,
            topic=topic,
            resource_id=event.aggregate_id,
            event_type=event.event_type,
        )
        return True

    async def _handle_retry(self, event: OutboxEvent, outbox_repo: OutboxRepository) -> None:
        await outbox_repo.increment_retry_count(event.id)

        delay = self._calculate_backoff_delay(event.retry_count)
        logger.warning(
            "webhook_retry_scheduled",
            event_id=event.id,
            retry_count=event.retry_count + 1,
            next_delay_seconds=delay,
        )

    def _calculate_backoff_delay(self, retry_count: int) -> float:
        """Exponential backoff capped at ``max_delay``, plus up to 10% jitter."""
        delay: float = min(
            self._base_delay * (2**retry_count),
            self._max_delay,
        )
        jitter: float = random.uniform(0, delay * 0.1)
        return delay + jitter

    async def _send_to_dlq(self, events: list[OutboxEvent], outbox_repo: OutboxRepository) -> None:
        if not self._producer:
            return

        dlq_topic = f"{self._topic_prefix}.dlq"

        for event in events:
            try:
                await self._producer.send_and_wait(
                    topic=dlq_topic,
                    key=event.aggregate_id,
                    value={
                        **webhook_envelope(event),
                        "retry_count": event.retry_count,
                        "failed_at": datetime.now(UTC).isoformat(),
                        "error": "max_retries_exceeded",
                    },
                )
            except KafkaError as e:
                logger.error("webhook_dlq_publish_failed", event_id=event.id, error=str(e))
                continue

            await outbox_repo.mark_published([event.id])
            logger.warning(
                "webhook_sent_to_dlq",
                event_id=event.id,
                resource_id=event.aggregate_id,
                retry_count=event.retry_count,
            )
