import json
from typing import Any, cast

from sqlalchemy import CursorResult, Row, text
from sqlalchemy.ext.asyncio import AsyncSession

from transaction_engine.domain.exceptions import OptimisticLockError
from transaction_engine.domain.models import (
    Money,
    PaymentMethod,
    PaymentProvider,
    Transaction,
    TransactionStatus,
)


_COLUMNS = """
    id, partner_id, idempotency_key, amount_minor_units, currency,
    payment_method, provider, provider_transaction_id, customer_email,
    description, metadata, status, retry_count, error_code, error_message,
    refunded_amount_minor_units, version,
    created_at, updated_at, completed_at, failed_at, deleted_at
"""


def _to_transaction(row: Row[Any]) -> Transaction:
    metadata = row.metadata
    if isinstance(metadata, str):
        metadata = json.loads(metadata)
    return Transaction(
        id=row.id,
        partner_id=row.partner_id,
        idempotency_key=row.idempotency_key,
        amount=Money(row.amount_minor_units, row.currency),
        payment_method=PaymentMethod(row.payment_method),
        provider=PaymentProvider(row.provider),
        provider_transaction_id=row.provider_transaction_id,
        customer_email=row.customer_email,
        description=row.description,
        metadata=metadata,
        status=TransactionStatus(row.status),
        retry_count=row.retry_count,
        error_code=row.error_code,
        error_message=row.error_message,
        refunded_amount_minor_units=row.refunded_amount_minor_units,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        completed_at=row.completed_at,
        failed_at=row.failed_at,
        deleted_at=row.deleted_at,
    )


class TransactionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, transaction_id: str) -> Transaction | None:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM transactions
                WHERE id = :id AND deleted_at IS NULL
            """),
            {"id": transaction_id},
        )
        row = result.fetchone()
        return _to_transaction(row) if row else None

    async def get_for_update(self, transaction_id: str) -> Transaction | None:
        """Load a transaction and hold its row lock until the session commits or rolls back."""
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM transactions
                WHERE id = :id AND deleted_at IS NULL
                FOR UPDATE
            """),
            {"id": transaction_id},
        )
        row = result.fetchone()
        return _to_transaction(row) if row else None

    async def get_by_idempotency_key(self, partner_id: str, idempotency_key: str) -> Transaction | None:
        result = await self._session.execute(
            text(f"""
                SELECT {_COLUMNS}
                FROM transactions
                WHERE partner_id = :partner_id
                  AND idempotency_key = :idempotency_key
                  AND deleted_at IS NULL
            """),
            {"partner_id": partner_id, "idempotency_key": idempotency_key},
        )
        row = result.fetchone()
        return _to_transaction(row) if row else None

    async def add_if_absent(self, transaction: Transaction) -> bool:
        """Insert unless a live row already owns (partner_id, idempotency_key).

        Returns True when this call inserted the row. A concurrent insert with the
        same key blocks on the unique index until the other session finishes.
        """
        result = await self._session.execute(
            text("""
                INSERT INTO transactions
                    (id, partner_id, idempotency_key, amount_minor_units, currency,
                     payment_method, provider, provider_transaction_id, customer_email,
                     description, metadata, status, retry_count, error_code, error_message,
                     refunded_amount_minor_units, version,
                     created_at, updated_at, completed_at, failed_at, deleted_at)
                VALUES
                    (:id, :partner_id, :idempotency_key, :amount_minor_units, :currency,
                     :payment_method, :provider, :provider_transaction_id, :customer_email,
                     :description, CAST(:metadata AS JSONB), :status, :retry_count,
                     :error_code, :error_message,
                     :refunded_amount_minor_units, :version,
                     :created_at, :updated_at, :completed_at, :failed_at, :deleted_at)
                ON CONFLICT (partner_id, idempotency_key) WHERE deleted_at IS NULL
                DO NOTHING
                RETURNING id
            """),
            self._params(transaction),
        )
        return result.fetchone() is not None

    async def update(self, transaction: Transaction) -> None:
        result = cast(
            "CursorResult[Any]",
            await self._session.execute(
                text("""
                    UPDATE transactions
                    SET status = :status,
                        provider_transaction_id = :provider_transaction_id,
                        retry_count = :retry_count,
                        error_code = :error_code,
                        error_message = :error_message,
                        refunded_amount_minor_units = :refunded_amount_minor_units,
                        updated_at = :updated_at,
                        completed_at = :completed_at,
                        failed_at = :failed_at,
                        deleted_at = :deleted_at,
                        version = version + 1
                    WHERE id = :id AND version = :version
                """),
                self._params(transaction),
            ),
        )
        if (result.rowcount or 0) == 0:
            raise OptimisticLockError("Transaction", transaction.id)
        transaction.version += 1

    @staticmethod
    def _params(transaction: Transaction) -> dict[str, Any]:
        return {
            "id": transaction.id,
            "partner_id": transaction.partner_id,
            "idempotency_key": transaction.idempotency_key,
            "amount_minor_units": transaction.amount.amount_minor_units,
            "currency": transaction.amount.currency,
            "payment_method": transaction.payment_method.value,
            "provider": transaction.provider.value,
            "provider_transaction_id": transaction.provider_transaction_id,
            "customer_email": transaction.customer_email,
            "description": transaction.description,
            "metadata": json.dumps(transaction.metadata) if transaction.metadata is not None else None,
            "status": transaction.status.value,
            "retry_count": transaction.retry_count,
            "error_code": transaction.error_code,
            "error_message": transaction.error_message,
            "refunded_amount_minor_units": transaction.refunded_amount_minor_units,
            "version": transaction.version,
            "created_at": transaction.created_at,
            "updated_at": transaction.updated_at,
            "completed_at": transaction.completed_at,
            "failed_at": transaction.failed_at,
            "deleted_at": transaction.deleted_at,
        }
