from typing import Any

import structlog

from transaction_engine.application.ports import AuditLogger
from transaction_engine.infrastructure.metrics import AUDIT_FAILURES_TOTAL


logger = structlog.get_logger()


async def record_best_effort(
    audit_logger: AuditLogger | None,
    action: str,
    resource_type: str,
    resource_id: str,
    partner_id: str | None = None,
    changes: dict[str, Any] | None = None,
) -> None:
    """Record an audit entry without letting a failure reach the caller."""
    if audit_logger is None:
        return
    try:
        await audit_logger.record(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            partner_id=partner_id,
            changes=changes,
        )
    except Exception as e:
        AUDIT_FAILURES_TOTAL.labels(action=action).inc()
        logger.warning(
            "audit_record_failed",
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            error=str(e),
            exc_info=True,
        )
