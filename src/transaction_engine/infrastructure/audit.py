from typing import Any

import structlog

from transaction_engine.application.unit_of_work import UnitOfWorkFactory
from transaction_engine.domain.models import AuditRecord


logger = structlog.get_logger()


class StoreAuditLogger:
    """Writes audit records to the ``audit_logs`` table in their own unit of work.

    Runs after the primary change has committed, so a failure here can never
    roll the change back.
    """

    def __init__(self, uow_factory: UnitOfWorkFactory) -> None:
        self._uow_factory = uow_factory

    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        partner_id: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> None:
        record = AuditRecord.create(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            partner_id=partner_id,
            changes=changes,
        )
        async with self._uow_factory() as uow:
            await uow.audit.add(record)
            await uow.commit()
        logger.info(
            "audit_recorded",
            audit_id=record.id,
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
        )
