import asyncio
import copy
from dataclasses import dataclass
from typing import Any

import structlog

from transaction_engine.application.audit import record_best_effort
from transaction_engine.application.ports import AuditLogger, Clock, PaymentGateway, system_clock
from transaction_engine.application.unit_of_work import AbstractUnitOfWork
from transaction_engine.application.webhooks import enqueue_webhook
from transaction_engine.domain.exceptions import (
    ConsistencyWarning,
    CurrencyMismatchError,
    DependencyError,
    DomainError,
    PaymentGatewayError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    RefundNotFoundError,
    RefundWindowExpiredError,
    TransactionNotFoundError,
    UnauthorizedError,
)
from transaction_engine.domain.models import (
    REFUND_WINDOW_DAYS,
    Money,
    Refund,
    Transaction,
    TransactionStatus,
)
from transaction_engine.infrastructure.metrics import (
    CONSISTENCY_WARNINGS_TOTAL,
    REFUND_REQUESTS_TOTAL,
    track_duration,
)


logger = structlog.get_logger()


@dataclass
class RequestRefundCommand:
    transaction_id: str
    partner_id: str
    amount_minor_units: int
    currency: str
    reason: str


def refund_payload(refund: Refund, transaction: Transaction) -> dict[str, Any]:
    return {
        "refund_id": refund.id,
        "transaction_id": transaction.id,
        "partner_id": transaction.partner_id,
        "status": refund.status.value,
        "amount_minor_units": refund.amount.amount_minor_units,
        "currency": refund.amount.currency,
        "provider_refund_id": refund.provider_refund_id,
        "transaction_status": transaction.status.value,
        "refunded_amount_minor_units": transaction.refunded_amount_minor_units,
    }


class RefundService:
    """Admits, executes and books refunds against a completed transaction.

    Admission runs under a row lock on the parent transaction that is held
    until the refund row is committed, so two refunds for the same
    transaction are validated one after the other against the committed
    refund total. The refund outcome is committed before the parent
    transaction's status and cached total are updated; a failure in that
    second step surfaces as ``ConsistencyWarning``.
    """

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

    @track_duration("request_refund")
    async def request_refund(self, cmd: RequestRefundCommand) -> Refund:
        try:
            refund = await self._request_refund(cmd)
        except ConsistencyWarning as e:
            REFUND_REQUESTS_TOTAL.labels(status="inconsistent", error_code=e.code).inc()
            raise
        except DependencyError as e:
            REFUND_REQUESTS_TOTAL.labels(status="failed", error_code=e.code).inc()
            raise
        except DomainError as e:
            REFUND_REQUESTS_TOTAL.labels(status="rejected", error_code=e.code).inc()
            raise
        REFUND_REQUESTS_TOTAL.labels(status="completed", error_code="").inc()
        return refund

    async def _request_refund(self, cmd: RequestRefundCommand) -> Refund:
        log = logger.bind(transaction_id=cmd.transaction_id, partner_id=cmd.partner_id)

        async with self.uow:
            transaction = await self.uow.transactions.get_for_update(cmd.transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(cmd.transaction_id)
            if transaction.partner_id != cmd.partner_id:
                raise UnauthorizedError(cmd.partner_id, cmd.transaction_id)

            now = self.clock()
            if transaction.status == TransactionStatus.REFUNDED:
                # nothing left to refund
                raise RefundAmountExceededError(transaction.id, cmd.amount_minor_units, 0)
            if not transaction.has_refundable_status():
                raise RefundNotAllowedError(transaction.id, transaction.status.value)
            if not transaction.is_within_refund_window(now):
                raise RefundWindowExpiredError(transaction.id, REFUND_WINDOW_DAYS)

            amount = Money.create(cmd.amount_minor_units, cmd.currency)
            total = transaction.amount.amount_minor_units
            if amount.amount_minor_units > total:
                raise RefundAmountExceededError(transaction.id, amount.amount_minor_units, total)

            already_refunded = await self.uow.refunds.sum_completed(transaction.id)
            available = total - already_refunded
            if already_refunded + amount.amount_minor_units > total:
                raise RefundAmountExceededError(transaction.id, amount.amount_minor_units, available)

            if amount.currency != transaction.amount.currency:
                raise CurrencyMismatchError(expected=transaction.amount.currency, actual=amount.currency)

            refund = Refund.create(transaction.id, amount, cmd.reason, now=now)
            await self.uow.refunds.add(refund)
            refund.mark_as_processing(now)
            await self.uow.refunds.update(refund)
            log = log.bind(refund_id=refund.id)
            log.info(
                "refund_admitted",
                step="1/3",
                amount_minor_units=amount.amount_minor_units,
                already_refunded=already_refunded,
            )

            attempt = copy.deepcopy(refund)
            try:
                provider_refund_id = await self.gateway.process_refund(refund, transaction)
            except asyncio.CancelledError:
                await asyncio.shield(
                    self._record_unfinished_refund(
                        attempt, transaction, "REFUND_INTERRUPTED", "refund cancelled while awaiting the provider"
                    )
                )
                raise
            except Exception as e:
                error = e if isinstance(e, PaymentGatewayError) else PaymentGatewayError(
                    self.gateway.provider_name, str(e)
                )
                refund.mark_as_failed(error.provider_code or "REFUND_FAILED", error.message, self.clock())
                await self.uow.refunds.update(refund)
                await self.uow.commit()

                log.warning("refund_failed", step="2/3", error=error.message)
                await record_best_effort(
                    self.audit_logger,
                    action="refund_failed",
                    resource_type="refund",
                    resource_id=refund.id,
                    partner_id=transaction.partner_id,
                    changes={"error": error.message, "status": refund.status.value},
                )
                if error is e:
                    raise
                raise error from e

            refund.mark_as_completed(provider_refund_id, self.clock())
            try:
                await self.uow.refunds.update(refund)
                await self.uow.commit()
            except (Exception, asyncio.CancelledError) as e:
                # the provider refunded but the completed row was lost
                await asyncio.shield(
                    self._record_unfinished_refund(
                        attempt,
                        transaction,
                        "REFUND_NOT_RECORDED",
                        f"provider refund {provider_refund_id} completed but was not recorded: {e!r}",
                        provider_refund_id,
                    )
                )
                raise
            log.info("refund_completed", step="2/3", provider_refund_id=provider_refund_id)

            try:
                transaction = await self._book_refund(transaction.id)
            except Exception as e:
                await self.uow.rollback()
                CONSISTENCY_WARNINGS_TOTAL.inc()
                log.error("refund_booking_failed", error=str(e), exc_info=True)
                await record_best_effort(
                    self.audit_logger,
                    action="refund_booking_failed",
                    resource_type="refund",
                    resource_id=refund.id,
                    partner_id=transaction.partner_id,
                    changes={**refund_payload(refund, transaction), "error": str(e)},
                )
                raise ConsistencyWarning(cmd.transaction_id, refund.id, e) from e

            log.info(
                "refund_booked",
                step="3/3",
                transaction_status=transaction.status.value,
                refunded_amount_minor_units=transaction.refunded_amount_minor_units,
            )
            await record_best_effort(
                self.audit_logger,
                action="refund_completed",
                resource_type="refund",
                resource_id=refund.id,
                partner_id=transaction.partner_id,
                changes=refund_payload(refund, transaction),
            )
            await enqueue_webhook(
                self.uow, "refund.completed", "Refund", refund.id, refund_payload(refund, transaction)
            )
            return refund

    async def _record_unfinished_refund(
        self,
        attempt: Refund,
        transaction: Transaction,
        error_code: str,
        error_message: str,
        provider_refund_id: str | None = None,
    ) -> None:
        """Persist an interrupted attempt as ``failed`` after its own writes were lost.

        ``attempt`` is the refund as admitted (``processing``). The original
        error is always re-raised by the caller, so a failure here is only
        logged.
        """
        await self.uow.rollback()
        attempt.mark_as_failed(error_code, error_message, self.clock())
        attempt.provider_refund_id = provider_refund_id
        try:
            await self.uow.refunds.add(attempt)
            await self.uow.commit()
        except Exception:
            logger.error(
                "refund_attempt_not_recorded",
                refund_id=attempt.id,
                transaction_id=attempt.transaction_id,
                provider_refund_id=provider_refund_id,
                exc_info=True,
            )
            return

        logger.warning(
            "refund_attempt_recorded_as_failed",
            refund_id=attempt.id,
            transaction_id=attempt.transaction_id,
            error_code=error_code,
        )
        await record_best_effort(
            self.audit_logger,
            action="refund_failed",
            resource_type="refund",
            resource_id=attempt.id,
            partner_id=transaction.partner_id,
            changes={
                "error": error_message,
                "status": attempt.status.value,
                "provider_refund_id": provider_refund_id,
            },
        )

    async def _book_refund(self, transaction_id: str) -> Transaction:
        """Recompute the refunded total and move the transaction to its refunded status."""
        transaction = await self.uow.transactions.get_for_update(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(transaction_id)

        refunded = await self.uow.refunds.sum_completed(transaction_id)
        is_partial = refunded < transaction.amount.amount_minor_units
        target = TransactionStatus.PARTIALLY_REFUNDED if is_partial else TransactionStatus.REFUNDED
        if transaction.status != target:
            transaction.mark_as_refunded(is_partial, self.clock())
        transaction.refunded_amount_minor_units = refunded
        await self.uow.transactions.update(transaction)
        await self.uow.commit()
        return transaction

    async def get_refund(self, refund_id: str, partner_id: str) -> Refund:
        async with self.uow:
            refund = await self.uow.refunds.get(refund_id)
            if refund is None:
                raise RefundNotFoundError(refund_id)
            transaction = await self.uow.transactions.get(refund.transaction_id)
        if transaction is None or transaction.partner_id != partner_id:
            raise UnauthorizedError(partner_id, refund_id)
        return refund

    async def list_refunds(self, transaction_id: str, partner_id: str) -> list[Refund]:
        async with self.uow:
            transaction = await self.uow.transactions.get(transaction_id)
            if transaction is None:
                raise TransactionNotFoundError(transaction_id)
            if transaction.partner_id != partner_id:
                raise UnauthorizedError(partner_id, transaction_id)
            return await self.uow.refunds.list_by_transaction(transaction_id)
