import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from transaction_engine.domain.models import AuditRecord


class AuditRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(self, record: AuditRecord) -> None:
        await self._session.execute(
            text("""
                INSERT INTO audit_logs
                    (id, partner_id, action, resource_type, resource_id, changes, created_at)
                VALUES
                    (:id, :partner_id, :action, :resource_type, :resource_id,
                     CAST(:changes AS JSONB), :created_at)
            """),
            {
                "id": record.id,
                "partner_id": record.partner_id,
                "action": record.action,
                "resource_type": record.resource_type,
                "resource_id": record.resource_id,
                "changes": json.dumps(record.changes, default=str),
                "created_at": record.created_at,
            },
        )
