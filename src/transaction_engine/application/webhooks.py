from typing import Any

import structlog

from transaction_engine.application.unit_of_work import AbstractUnitOfWork
from transaction_engine.domain.models import OutboxEvent
from transaction_engine.infrastructure.metrics import WEBHOOK_ENQUEUE_FAILURES_TOTAL


logger = structlog.get_logger()


async def enqueue_webhook(
    uow: AbstractUnitOfWork,
    event_type: str,
    aggregate_type: str,
    aggregate_id: str,
    payload: dict[str, Any],
) -> OutboxEvent | None:
    """Queue a partner notification after the state change has been committed.

    The event is written in its own commit; a failure is logged and counted
    but never propagates, so notification problems cannot alter the outcome
    of the operation that triggered them.
    """
    event = OutboxEvent.create(
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        event_type=event_type,
        payload=payload,
    )
    try:
        await uow.outbox.add(event)
        await uow.commit()
    except Exception as e:
        WEBHOOK_ENQUEUE_FAILURES_TOTAL.labels(event_type=event_type).inc()
        logger.warning(
            "webhook_enqueue_failed",
            event_type=event_type,
            aggregate_id=aggregate_id,
            error=str(e),
            exc_info=True,
        )
        await uow.rollback()
        return None
    logger.info("webhook_enqueued", event_id=event.id, event_type=event_type, aggregate_id=aggregate_id)
    return event
