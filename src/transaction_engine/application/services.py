from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import structlog

from transaction_engine.application.audit import record_best_effort
from transaction_engine.application.idempotency import IdempotencyGuard
from transaction_engine.application.ports import AuditLogger, Clock, PaymentGateway, system_clock
from transaction_engine.application.unit_of_work import AbstractUnitOfWork
from transaction_engine.application.webhooks import enqueue_webhook
from transaction_engine.domain.exceptions import (
    InvalidStateTransitionError,
    PaymentGatewayError,
    TransactionNotFoundError,
    UnauthorizedError,
)
from transaction_engine.domain.models import (
    Money,
    PaymentMethod,
    PaymentProvider,
    Transaction,
    TransactionStatus,
)
from transaction_engine.infrastructure.metrics import (
    TRANSACTIONS_CREATED_TOTAL,
    TRANSACTIONS_PROCESSED_TOTAL,
    track_duration,
)


logger = structlog.get_logger()


@dataclass
class CreateTransactionCommand:
    partner_id: str
    idempotency_key: str
    amount_minor_units: int
    currency: str
    payment_method: str
    provider: str
    customer_email: str
    description: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass
class CreateTransactionResult:
    transaction: Transaction
    created: bool


def transaction_payload(transaction: Transaction) -> dict[str, Any]:
    return {
        "transaction_id": transaction.id,
        "partner_id": transaction.partner_id,
        "status": transaction.status.value,
        "amount_minor_units": transaction.amount.amount_minor_units,
        "currency": transaction.amount.currency,
        "provider_transaction_id": transaction.provider_transaction_id,
    }


class TransactionService:
    def __init__(
        self,
        uow: AbstractUnitOfWork,
        gateway: PaymentGateway,
        audit_logger: AuditLogger | None = None,
        clock: Clock = system_clock,
    ) -> None:
        self.uow = uow
        self.gateway = gateway
        self.audit_logger = audit_logger
        self.clock = clock

    @track_duration("create_transaction")
    async def create_transaction(self, cmd: CreateTransactionCommand) -> CreateTransactionResult:
        log = logger.bind(partner_id=cmd.partner_id, idempotency_key=cmd.idempotency_key)

        def build() -> Transaction:
            return Transaction.create(
                partner_id=cmd.partner_id,
                idempotency_key=cmd.idempotency_key,
                amount=Money.create(cmd.amount_minor_units, cmd.currency),
                payment_method=PaymentMethod.parse(cmd.payment_method),
                provider=PaymentProvider.parse(cmd.provider),
                customer_email=cmd.customer_email,
                description=cmd.description,
                metadata=cmd.metadata,
                now=self.clock(),
            )

        async with self.uow:
            reservation = await IdempotencyGuard(self.uow).reserve(cmd.partner_id, cmd.idempotency_key, build)

        transaction = reservation.transaction
        if not reservation.created:
            TRANSACTIONS_CREATED_TOTAL.labels(outcome="replayed").inc()
            self._warn_on_body_mismatch(transaction, cmd, log)
            return CreateTransactionResult(transaction=transaction, created=False)

        TRANSACTIONS_CREATED_TOTAL.labels(outcome="created").inc()
        log.info(
            "transaction_created",
            transaction_id=transaction.id,
            amount_minor_units=transaction.amount.amount_minor_units,
            currency=transaction.amount.currency,
        )
        await record_best_effort(
            self.audit_logger,
            action="transaction_created",
            resource_type="transaction",
            resource_id=transaction.id,
            partner_id=transaction.partner_id,
            changes=transaction_payload(transaction),
        )
        return CreateTransactionResult(transaction=transaction, created=True)

    async def get_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self.uow:
            transaction = await self.uow.transactions.get(transaction_id)
        return self._ensure_owned(transaction, transaction_id, partner_id)

    @track_duration("process_transaction")
    async def process_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        """Send a pending transaction to the payment provider.

        The ``processing`` state is committed before the provider is called, and
        the outcome is always committed afterwards: a provider failure leaves the
        transaction ``failed`` with the error recorded, then re-raises.
        """
        log = logger.bind(transaction_id=transaction_id, partner_id=partner_id)

        async with self.uow:
            transaction = self._ensure_owned(
                await self.uow.transactions.get_for_update(transaction_id), transaction_id, partner_id
            )
            if transaction.status != TransactionStatus.PENDING:
                # failed transactions are retried via retry_transaction
                raise InvalidStateTransitionError(
                    "Transaction", transaction.id, transaction.status.value, TransactionStatus.PROCESSING.value
                )
            transaction.mark_as_processing(self.clock())
            await self.uow.transactions.update(transaction)
            await self.uow.commit()
            log.info("transaction_processing", step="1/2", retry_count=transaction.retry_count)

            return await self._charge(transaction, log)

    @track_duration("retry_transaction")
    async def retry_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        log = logger.bind(transaction_id=transaction_id, partner_id=partner_id)

        async with self.uow:
            transaction = self._ensure_owned(
                await self.uow.transactions.get_for_update(transaction_id), transaction_id, partner_id
            )
            if transaction.status != TransactionStatus.FAILED:
                raise InvalidStateTransitionError(
                    "Transaction", transaction.id, transaction.status.value, TransactionStatus.PROCESSING.value
                )
            now = self.clock()
            transaction.increment_retry_count(now)
            transaction.mark_as_processing(now)
            await self.uow.transactions.update(transaction)
            await self.uow.commit()
            log.info("transaction_retry", step="1/2", retry_count=transaction.retry_count)

            await record_best_effort(
                self.audit_logger,
                action="payment_retry",
                resource_type="transaction",
                resource_id=transaction.id,
                partner_id=transaction.partner_id,
                changes={"retry_count": transaction.retry_count},
            )
            return await self._charge(transaction, log)

    async def cancel_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self.uow:
            transaction = self._ensure_owned(
                await self.uow.transactions.get_for_update(transaction_id), transaction_id, partner_id
            )
            transaction.mark_as_cancelled(self.clock())
            await self.uow.transactions.update(transaction)
            await self.uow.commit()
            logger.info("transaction_cancelled", transaction_id=transaction.id, partner_id=partner_id)

            await record_best_effort(
                self.audit_logger,
                action="transaction_cancelled",
                resource_type="transaction",
                resource_id=transaction.id,
                partner_id=transaction.partner_id,
                changes={"status": transaction.status.value},
            )
            await enqueue_webhook(
                self.uow, "payment.cancelled", "Transaction", transaction.id, transaction_payload(transaction)
            )
            return transaction

    async def recover_stale_transaction(self, transaction_id: str, threshold: timedelta) -> Transaction:
        """Fail a transaction left in ``processing`` (e.g. after a crash) so it can be retried."""
        async with self.uow:
            transaction = await self.uow.transactions.get_for_update(transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)

            now = self.clock()
            if not transaction.is_stale(threshold, now):
                await self.uow.rollback()
                logger.info("transaction_not_stale", transaction_id=transaction_id, status=transaction.status.value)
                return transaction

            transaction.mark_as_failed(
                "PROCESSING_TIMEOUT",
                f"no provider outcome recorded within {int(threshold.total_seconds())}s",
                now,
            )
            await self.uow.transactions.update(transaction)
            await self.uow.commit()
            logger.warning("stale_transaction_recovered", transaction_id=transaction_id)

            await record_best_effort(
                self.audit_logger,
                action="payment_recovered",
                resource_type="transaction",
                resource_id=transaction.id,
                partner_id=transaction.partner_id,
                changes={"status": transaction.status.value, "error_code": transaction.error_code},
            )
            return transaction

    async def _charge(self, transaction: Transaction, log: structlog.stdlib.BoundLogger) -> Transaction:
        provider = self.gateway.provider_name
        try:
            provider_transaction_id = await self.gateway.process_payment(transaction)
        except Exception as e:
            error = e if isinstance(e, PaymentGatewayError) else PaymentGatewayError(provider, str(e))
            transaction.mark_as_failed("PAYMENT_FAILED", error.message, self.clock())
            await self.uow.transactions.update(transaction)
            await self.uow.commit()

            TRANSACTIONS_PROCESSED_TOTAL.labels(provider=provider, status="failed").inc()
            log.warning("transaction_failed", step="2/2", error=error.message)
            await record_best_effort(
                self.audit_logger,
                action="payment_failed",
                resource_type="transaction",
                resource_id=transaction.id,
                partner_id=transaction.partner_id,
                changes={"error": error.message, "status": transaction.status.value},
            )
            await enqueue_webhook(
                self.uow, "payment.failed", "Transaction", transaction.id, transaction_payload(transaction)
            )
            if error is e:
                raise
            raise error from e

        transaction.mark_as_completed(provider_transaction_id, self.clock())
        await self.uow.transactions.update(transaction)
        await self.uow.commit()

        TRANSACTIONS_PROCESSED_TOTAL.labels(provider=provider, status="completed").inc()
        log.info("transaction_completed", step="2/2", provider_transaction_id=provider_transaction_id)
        await record_best_effort(
            self.audit_logger,
            action="payment_completed",
            resource_type="transaction",
            resource_id=transaction.id,
            partner_id=transaction.partner_id,
            changes={"provider_transaction_id": provider_transaction_id, "status": transaction.status.value},
        )
        await enqueue_webhook(
            self.uow, "payment.completed", "Transaction", transaction.id, transaction_payload(transaction)
        )
        return transaction

    @staticmethod
    def _ensure_owned(transaction: Transaction | None, transaction_id: str, partner_id: str) -> Transaction:
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)
        if transaction.partner_id != partner_id:
            raise UnauthorizedError(partner_id, transaction_id)
        return transaction

    @staticmethod
    def _warn_on_body_mismatch(
        existing: Transaction,
        cmd: CreateTransactionCommand,
        log: structlog.stdlib.BoundLogger,
    ) -> None:
        # Replays are answered with the original row even if the body differs.
        mismatched = [
            name
            for name, matches in (
                ("amount", existing.amount.amount_minor_units == cmd.amount_minor_units),
                ("currency", existing.amount.currency == str(cmd.currency).strip().upper()),
                ("payment_method", existing.payment_method.value == str(cmd.payment_method).strip().lower()),
                ("provider", existing.provider.value == str(cmd.provider).strip().lower()),
                ("customer_email", existing.customer_email == cmd.customer_email),
            )
            if not matches
        ]
        if mismatched:
            log.warning("idempotency_body_mismatch", transaction_id=existing.id, fields=mismatched)
