from typing import Any

from sqlalchemy import Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from transaction_engine.domain.models import Money, Refund, RefundStatus


_COLUMNS = """
    id, transaction_id, amount_minor_units, currency, reason, status,
    provider_refund_id, error_code, error_message,
    created_at, updated_at, completed_at, deleted_at
"""


def _to_refund(row: Row[Any]) -> Refund:
    return Refund(
        id=row.id,
        transaction_id=row.transaction_id,
        amount=Money(row.amount_minor_units, row.currency),
        reason=row.reason,
        status=RefundStatus(row.status),
        provider_refund_id=row.provider_refund_id,
        error_code=row.error_code,
        error_message=row.error_message,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        deleted_at=row.deleted_at,
    )


class RefundRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, refund_id: str) -> Refund | None:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM refunds
                WHERE id = :id AND deleted_at IS NULL
            """),
            {"id": refund_id},
        )
        row = result.fetchone()
        return _to_refund(row) if row else None

    async def list_by_transaction(self, transaction_id: str) -> list[Refund]:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM refunds
                WHERE transaction_id = :transaction_id AND deleted_at IS NULL
                ORDER BY created_at
            """),
            {"transaction_id": transaction_id},
        )
        return [_to_refund(row) for row in result.fetchall()]

    async def sum_completed(self, transaction_id: str) -> int:
        result = await self._session.execute(
            text("""
                SELECT COALESCE(SUM(amount_minor_units), 0) AS total
                FROM refunds
                WHERE transaction_id = :transaction_id
                  AND status = 'completed'
                  AND deleted_at IS NULL
            """),
            {"transaction_id": transaction_id},
        )
        return int(result.scalar_one())

    async def add(self, refund: Refund) -> None:
        await self._session.execute(
            text("""
                INSERT INTO refunds
                    (id, transaction_id, amount_minor_units, currency, reason, status,
                     provider_refund_id, error_code, error_message,
                     created_at, updated_at, completed_at, deleted_at)
                VALUES
                    (:id, :transaction_id, :amount_minor_units, :currency, :reason, :status,
                     :provider_refund_id, :error_code, :error_message,
                     :created_at, :updated_at, :completed_at, :deleted_at)
            """),
            self._params(refund),
        )

    async def update(self, refund: Refund) -> None:
        await self._session.execute(
            text("""
                UPDATE refunds
                SET status = :status,
                    provider_refund_id = :provider_refund_id,
                    error_code = :error_code,
                    error_message = :error_message,
                    updated_at = :updated_at,
                    completed_at = :completed_at,
                    deleted_at = :deleted_at
                WHERE id = :id
            """),
            self._params(refund),
        )

    @staticmethod
    def _params(refund: Refund) -> dict[str, Any]:
        return {
            "id": refund.id,
            "transaction_id": refund.transaction_id,
            "amount_minor_units": refund.amount.amount_minor_units,
            "currency": refund.amount.currency,
            "reason": refund.reason,
            "status": refund.status.value,
            "provider_refund_id": refund.provider_refund_id,
            "error_code": refund.error_code,
            "error_message": refund.error_message,
            "created_at": refund.created_at,
            "updated_at": refund.updated_at,
            "completed_at": refund.completed_at,
            "deleted_at": refund.deleted_at,
        }
