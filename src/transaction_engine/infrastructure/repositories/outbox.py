import json
from typing import Any

from sqlalchemy import Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from transaction_engine.domain.models import OutboxEvent


def _to_event(row: Row[Any]) -> OutboxEvent:
    payload = row.payload
    if isinstance(payload, str):
        payload = json.loads(payload)
    return OutboxEvent(
        id=row.id,
        aggregate_type=row.aggregate_type,
        aggregate_id=row.aggregate_id,
        event_type=row.event_type,
        payload=payload,
        created_at=row.created_at,
        published_at=row.published_at,
        retry_count=row.retry_count,
    )


class OutboxRepository:
    """Webhook task queue backed by the ``outbox`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, event: OutboxEvent) -> None:
        await self._session.execute(
            text("""
                INSERT INTO outbox
                    (id, aggregate_type, aggregate_id, event_type, payload,
                     created_at, retry_count)
                VALUES
                    (:id, :aggregate_type, :aggregate_id, :event_type, CAST(:payload AS JSONB),
                     :created_at, :retry_count)
            """),
            {
                "id": event.id,
                "aggregate_type": event.aggregate_type,
                "aggregate_id": event.aggregate_id,
                "event_type": event.event_type,
                "payload": json.dumps(event.payload, default=str),
                "created_at": event.created_at,
                "retry_count": event.retry_count,
            },
        )

    async def get_unpublished(self, limit: int = 100) -> list[OutboxEvent]:
        result = await self._session.execute(
            text("""
                SELECT id, aggregate_type, aggregate_id, event_type, payload,
                       created_at, published_at, retry_count
                FROM outbox
                WHERE published_at IS NULL
                ORDER BY created_at
                LIMIT :limit
                FOR UPDATE SKIP LOCKED
            """),
            {"limit": limit},
        )
        return [_to_event(row) for row in result.fetchall()]

    async def count_pending(self) -> int:
        result = await self._session.execute(text("SELECT COUNT(*) FROM outbox WHERE published_at IS NULL"))
        return int(result.scalar_one())

    async def mark_published(self, event_ids: list[str]) -> None:
        if not event_ids:
            return
        await self._session.execute(
            text("""
                UPDATE outbox
                SET published_at = NOW()
                WHERE id = ANY(:ids)
            """),
            {"ids": event_ids},
        )

    async def increment_retry_count(self, event_id: str) -> None:
        await self._session.execute(
            text("""
                UPDATE outbox
                SET retry_count = retry_count + 1
                WHERE id = :id
            """),
            {"id": event_id},
        )
