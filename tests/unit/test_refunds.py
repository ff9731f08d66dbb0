"""Unit tests for RefundService."""

from collections.abc import Callable
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from prometheus_client import REGISTRY

from tests.conftest import NOW, OTHER_PARTNER_ID, PARTNER_ID, FakePaymentGateway, FrozenClock
from transaction_engine.application.refunds import RefundService, RequestRefundCommand
from transaction_engine.domain.exceptions import (
    ConsistencyWarning,
    CurrencyMismatchError,
    OptimisticLockError,
    PaymentGatewayError,
    RefundAmountExceededError,
    RefundNotAllowedError,
    RefundNotFoundError,
    RefundWindowExpiredError,
    TransactionNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from transaction_engine.domain.models import (
    Money,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
)


@pytest.fixture
def service(
    mock_uow: AsyncMock,
    gateway: FakePaymentGateway,
    mock_audit_logger: AsyncMock,
    clock: FrozenClock,
) -> RefundService:
    return RefundService(mock_uow, gateway, mock_audit_logger, clock)


@pytest.fixture
def completed_transaction(
    mock_uow: AsyncMock,
    make_transaction: Callable[..., Transaction],
) -> Transaction:
    transaction = make_transaction(status=TransactionStatus.COMPLETED)
    mock_uow.transactions.get_for_update.return_value = transaction
    return transaction


def _command(transaction: Transaction, amount: int = 3000, **overrides: object) -> RequestRefundCommand:
    params: dict = {
        "transaction_id": transaction.id,
        "partner_id": PARTNER_ID,
        "amount_minor_units": amount,
        "currency": "USD",
        "reason": "customer request",
    }
    params.update(overrides)
    return RequestRefundCommand(**params)


def _stored_refund(mock_uow: AsyncMock) -> Refund:
    return mock_uow.refunds.update.call_args_list[-1].args[0]


class TestRequestRefund:
    """Happy paths of RefundService.request_refund."""

    @pytest.mark.asyncio
    async def test_partial_refund(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        mock_audit_logger: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.refunds.sum_completed.side_effect = [0, 3000]

        refund = await service.request_refund(_command(completed_transaction, 3000))

        assert refund.status == RefundStatus.COMPLETED
        assert refund.provider_refund_id == "re_0001"
        assert refund.amount == Money(3000, "USD")
        assert completed_transaction.status == TransactionStatus.PARTIALLY_REFUNDED
        assert completed_transaction.refunded_amount_minor_units == 3000
        assert completed_transaction.refundable_balance() == 7000
        mock_uow.refunds.add.assert_called_once()
        mock_uow.transactions.update.assert_called_once_with(completed_transaction)
        audit_call = mock_audit_logger.record.call_args
        assert audit_call.kwargs["action"] == "refund_completed"
        assert audit_call.kwargs["changes"]["transaction_status"] == "partially_refunded"
        assert mock_uow.outbox.add.call_args.args[0].event_type == "refund.completed"

    @pytest.mark.asyncio
    async def test_full_refund(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.refunds.sum_completed.side_effect = [0, 10000]

        await service.request_refund(_command(completed_transaction, 10000))

        assert completed_transaction.status == TransactionStatus.REFUNDED
        assert completed_transaction.refundable_balance() == 0

    @pytest.mark.asyncio
    async def test_final_partial_refund_moves_to_refunded(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        completed_transaction.status = TransactionStatus.PARTIALLY_REFUNDED
        completed_transaction.refunded_amount_minor_units = 3000
        mock_uow.refunds.sum_completed.side_effect = [3000, 10000]

        await service.request_refund(_command(completed_transaction, 7000))

        assert completed_transaction.status == TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_second_partial_refund_keeps_status(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        completed_transaction.status = TransactionStatus.PARTIALLY_REFUNDED
        mock_uow.refunds.sum_completed.side_effect = [3000, 5000]

        await service.request_refund(_command(completed_transaction, 2000))

        assert completed_transaction.status == TransactionStatus.PARTIALLY_REFUNDED
        assert completed_transaction.refunded_amount_minor_units == 5000

    @pytest.mark.asyncio
    async def test_refund_commit_precedes_transaction_update(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.refunds.sum_completed.side_effect = [0, 3000]
        order: list[str] = []
        mock_uow.commit.side_effect = lambda: order.append("commit")
        mock_uow.transactions.update.side_effect = lambda txn: order.append("update_transaction")

        await service.request_refund(_command(completed_transaction))

        # refund completed, transaction booked, webhook
        assert order == ["commit", "update_transaction", "commit", "commit"]

    @pytest.mark.asyncio
    async def test_refund_window_boundary_is_inclusive(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction(status=TransactionStatus.COMPLETED, completed_at=NOW - timedelta(days=90))
        mock_uow.transactions.get_for_update.return_value = transaction
        mock_uow.refunds.sum_completed.side_effect = [0, 1000]

        refund = await service.request_refund(_command(transaction, 1000))

        assert refund.is_completed


class TestRequestRefundRejections:
    """Validation and business-rule failures never write anything."""

    @pytest.fixture(autouse=True)
    def _assert_no_writes(self, mock_uow: AsyncMock, gateway: FakePaymentGateway):
        yield
        mock_uow.refunds.add.assert_not_called()
        mock_uow.commit.assert_not_called()
        assert gateway.refund_calls == []

    @pytest.mark.asyncio
    async def test_transaction_not_found(self, service: RefundService, make_transaction) -> None:
        with pytest.raises(TransactionNotFoundError):
            await service.request_refund(_command(make_transaction()))

    @pytest.mark.asyncio
    async def test_other_partner(self, service: RefundService, completed_transaction: Transaction) -> None:
        with pytest.raises(UnauthorizedError):
            await service.request_refund(_command(completed_transaction, partner_id=OTHER_PARTNER_ID))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status",
        [
            TransactionStatus.PENDING,
            TransactionStatus.PROCESSING,
            TransactionStatus.FAILED,
            TransactionStatus.CANCELLED,
        ],
    )
    async def test_status_not_refundable(
        self,
        service: RefundService,
        completed_transaction: Transaction,
        status: TransactionStatus,
    ) -> None:
        completed_transaction.status = status

        with pytest.raises(RefundNotAllowedError):
            await service.request_refund(_command(completed_transaction))

    @pytest.mark.asyncio
    async def test_fully_refunded_transaction_has_nothing_left(
        self,
        service: RefundService,
        completed_transaction: Transaction,
    ) -> None:
        completed_transaction.status = TransactionStatus.REFUNDED
        completed_transaction.refunded_amount_minor_units = 10000

        with pytest.raises(RefundAmountExceededError) as exc_info:
            await service.request_refund(_command(completed_transaction, 1))

        assert exc_info.value.available == 0

    @pytest.mark.asyncio
    async def test_window_expired_is_reported_distinctly(
        self,
        service: RefundService,
        completed_transaction: Transaction,
    ) -> None:
        completed_transaction.completed_at = NOW - timedelta(days=90, seconds=1)

        with pytest.raises(RefundWindowExpiredError) as exc_info:
            await service.request_refund(_command(completed_transaction))

        assert exc_info.value.code == "REFUND_WINDOW_EXPIRED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -500])
    async def test_invalid_amount(
        self,
        service: RefundService,
        completed_transaction: Transaction,
        amount: int,
    ) -> None:
        with pytest.raises(ValidationError):
            await service.request_refund(_command(completed_transaction, amount))

    @pytest.mark.asyncio
    async def test_amount_larger_than_transaction(
        self,
        service: RefundService,
        completed_transaction: Transaction,
    ) -> None:
        with pytest.raises(RefundAmountExceededError) as exc_info:
            await service.request_refund(_command(completed_transaction, 10001))

        assert exc_info.value.available == 10000

    @pytest.mark.asyncio
    async def test_cumulative_refunds_would_exceed_amount(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        completed_transaction.status = TransactionStatus.PARTIALLY_REFUNDED
        mock_uow.refunds.sum_completed.return_value = 6000

        with pytest.raises(RefundAmountExceededError) as exc_info:
            await service.request_refund(_command(completed_transaction, 6000))

        assert exc_info.value.requested == 6000
        assert exc_info.value.available == 4000

    @pytest.mark.asyncio
    async def test_currency_mismatch(
        self,
        service: RefundService,
        completed_transaction: Transaction,
    ) -> None:
        with pytest.raises(CurrencyMismatchError):
            await service.request_refund(_command(completed_transaction, currency="EUR"))

    @pytest.mark.asyncio
    async def test_rejections_are_counted(
        self,
        service: RefundService,
        completed_transaction: Transaction,
    ) -> None:
        labels = {"status": "rejected", "error_code": "REFUND_AMOUNT_EXCEEDED"}
        before = REGISTRY.get_sample_value("refund_requests_total", labels) or 0.0

        with pytest.raises(RefundAmountExceededError):
            await service.request_refund(_command(completed_transaction, 20000))

        assert REGISTRY.get_sample_value("refund_requests_total", labels) == before + 1


class TestRequestRefundFailures:
    """Failures after the refund row exists."""

    @pytest.mark.asyncio
    async def test_gateway_failure_records_failed_refund(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        gateway: FakePaymentGateway,
        mock_audit_logger: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        gateway.refund_failures.append(PaymentGatewayError("stripe", "insufficient balance", "balance_insufficient"))

        with pytest.raises(PaymentGatewayError):
            await service.request_refund(_command(completed_transaction))

        refund = _stored_refund(mock_uow)
        assert refund.status == RefundStatus.FAILED
        assert refund.error_code == "balance_insufficient"
        mock_uow.commit.assert_called_once()
        mock_uow.transactions.update.assert_not_called()
        assert completed_transaction.status == TransactionStatus.COMPLETED
        assert mock_audit_logger.record.call_args.kwargs["action"] == "refund_failed"
        mock_uow.outbox.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_unexpected_gateway_error_uses_generic_code(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        gateway: FakePaymentGateway,
        completed_transaction: Transaction,
    ) -> None:
        gateway.refund_failures.append(ConnectionError("reset by peer"))

        with pytest.raises(PaymentGatewayError) as exc_info:
            await service.request_refund(_command(completed_transaction))

        assert isinstance(exc_info.value.__cause__, ConnectionError)
        assert _stored_refund(mock_uow).error_code == "REFUND_FAILED"

    @pytest.mark.asyncio
    async def test_booking_failure_raises_consistency_warning(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        mock_audit_logger: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.refunds.sum_completed.side_effect = [0, 3000]
        mock_uow.transactions.update.side_effect = OptimisticLockError("Transaction", completed_transaction.id)
        before = REGISTRY.get_sample_value("consistency_warnings_total") or 0.0

        with pytest.raises(ConsistencyWarning) as exc_info:
            await service.request_refund(_command(completed_transaction))

        refund = _stored_refund(mock_uow)
        assert refund.status == RefundStatus.COMPLETED
        assert exc_info.value.refund_id == refund.id
        assert isinstance(exc_info.value.cause, OptimisticLockError)
        assert REGISTRY.get_sample_value("consistency_warnings_total") == before + 1
        audit = mock_audit_logger.record.call_args.kwargs
        assert audit["action"] == "refund_booking_failed"
        assert audit["resource_id"] == refund.id
        assert "Optimistic lock failed" in audit["changes"]["error"]
        mock_uow.outbox.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_lost_completion_commit_records_failed_refund(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        mock_audit_logger: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.commit.side_effect = [ConnectionError("connection lost"), None]

        with pytest.raises(ConnectionError, match="connection lost"):
            await service.request_refund(_command(completed_transaction))

        mock_uow.rollback.assert_called_once()
        failed = mock_uow.refunds.add.call_args_list[-1].args[0]
        assert failed.id == _stored_refund(mock_uow).id
        assert failed.status == RefundStatus.FAILED
        assert failed.error_code == "REFUND_NOT_RECORDED"
        assert failed.provider_refund_id == "re_0001"
        assert mock_uow.commit.call_count == 2
        assert mock_audit_logger.record.call_args.kwargs["action"] == "refund_failed"
        mock_uow.transactions.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_unrecordable_attempt_keeps_original_error(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        mock_audit_logger: AsyncMock,
        completed_transaction: Transaction,
    ) -> None:
        mock_uow.commit.side_effect = [ConnectionError("connection lost"), ConnectionError("still down")]

        with pytest.raises(ConnectionError, match="connection lost"):
            await service.request_refund(_command(completed_transaction))

        assert mock_uow.commit.call_count == 2
        mock_audit_logger.record.assert_not_called()


class TestRefundQueries:
    @pytest.mark.asyncio
    async def test_get_refund(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction(status=TransactionStatus.PARTIALLY_REFUNDED)
        refund = Refund.create(transaction.id, Money(1000, "USD"), "damaged item")
        mock_uow.refunds.get.return_value = refund
        mock_uow.transactions.get.return_value = transaction

        assert await service.get_refund(refund.id, PARTNER_ID) is refund

        with pytest.raises(UnauthorizedError):
            await service.get_refund(refund.id, OTHER_PARTNER_ID)

    @pytest.mark.asyncio
    async def test_get_missing_refund(self, service: RefundService) -> None:
        with pytest.raises(RefundNotFoundError):
            await service.get_refund("missing", PARTNER_ID)

    @pytest.mark.asyncio
    async def test_list_refunds(
        self,
        service: RefundService,
        mock_uow: AsyncMock,
        make_transaction: Callable[..., Transaction],
    ) -> None:
        transaction = make_transaction()
        refunds = [Refund.create(transaction.id, Money(1000, "USD"), "r1")]
        mock_uow.transactions.get.return_value = transaction
        mock_uow.refunds.list_by_transaction.return_value = refunds

        assert await service.list_refunds(transaction.id, PARTNER_ID) == refunds

        with pytest.raises(UnauthorizedError):
            await service.list_refunds(transaction.id, OTHER_PARTNER_ID)

        mock_uow.transactions.get.return_value = None
        with pytest.raises(TransactionNotFoundError):
            await service.list_refunds(transaction.id, PARTNER_ID)
