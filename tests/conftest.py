"""Shared pytest fixtures for transaction engine tests."""

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from transaction_engine.application.engine import TransactionEngine
from transaction_engine.application.unit_of_work import UnitOfWork
from transaction_engine.domain.models import (
    Money,
    PaymentMethod,
    PaymentProvider,
    Refund,
    Transaction,
    TransactionStatus,
)
from transaction_engine.infrastructure.audit import StoreAuditLogger
from transaction_engine.infrastructure.memory import InMemoryStore


PARTNER_ID = "01HPARTNER0000000000000001"
OTHER_PARTNER_ID = "01HPARTNER0000000000000002"

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakePaymentGateway:
    """Scriptable gateway: queue exceptions to make the next calls fail."""

    def __init__(self, provider_name: str = "stripe", refund_delay: float = 0.0) -> None:
        self._provider_name = provider_name
        self.refund_delay = refund_delay
        self.payment_failures: list[Exception] = []
        self.refund_failures: list[Exception] = []
        self.payment_calls: list[str] = []
        self.refund_calls: list[str] = []

    @property
    def provider_name(self) -> str:
        return self._provider_name

    async def process_payment(self, transaction: Transaction) -> str:
        self.payment_calls.append(transaction.id)
        if self.payment_failures:
            raise self.payment_failures.pop(0)
        return f"pay_{len(self.payment_calls):04d}"

    async def process_refund(self, refund: Refund, transaction: Transaction) -> str:
        self.refund_calls.append(refund.id)
        await asyncio.sleep(self.refund_delay)
        if self.refund_failures:
            raise self.refund_failures.pop(0)
        return f"re_{len(self.refund_calls):04d}"


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def mock_transaction_repository() -> AsyncMock:
    """Create mock TransactionRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.get_for_update = AsyncMock(return_value=None)
    repo.get_by_idempotency_key = AsyncMock(return_value=None)
    repo.add_if_absent = AsyncMock(return_value=True)
    repo.update = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_refund_repository() -> AsyncMock:
    """Create mock RefundRepository."""
    repo = AsyncMock()
    repo.get = AsyncMock(return_value=None)
    repo.list_by_transaction = AsyncMock(return_value=[])
    repo.sum_completed = AsyncMock(return_value=0)
    repo.add = AsyncMock(return_value=None)
    repo.update = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_outbox_repository() -> AsyncMock:
    """Create mock OutboxRepository."""
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=None)
    repo.get_unpublished = AsyncMock(return_value=[])
    repo.mark_published = AsyncMock(return_value=None)
    repo.increment_retry_count = AsyncMock(return_value=None)
    repo.count_pending = AsyncMock(return_value=0)
    return repo


@pytest.fixture
def mock_audit_repository() -> AsyncMock:
    repo = AsyncMock()
    repo.add = AsyncMock(return_value=None)
    return repo


@pytest.fixture
def mock_uow(
    mock_transaction_repository: AsyncMock,
    mock_refund_repository: AsyncMock,
    mock_outbox_repository: AsyncMock,
    mock_audit_repository: AsyncMock,
) -> AsyncMock:
    """Create mock Unit of Work with all repositories."""
    uow = AsyncMock(spec=UnitOfWork)
    uow.transactions = mock_transaction_repository
    uow.refunds = mock_refund_repository
    uow.outbox = mock_outbox_repository
    uow.audit = mock_audit_repository
    uow.commit = AsyncMock(return_value=None)
    uow.rollback = AsyncMock(return_value=None)

    # Configure async context manager
    uow.__aenter__ = AsyncMock(return_value=uow)
    uow.__aexit__ = AsyncMock(return_value=None)

    return uow


@pytest.fixture
def mock_audit_logger() -> AsyncMock:
    audit_logger = AsyncMock()
    audit_logger.record = AsyncMock(return_value=None)
    return audit_logger


@pytest.fixture
def make_transaction() -> Callable[..., Transaction]:
    """Build a transaction directly in the requested state."""

    def factory(
        status: TransactionStatus = TransactionStatus.PENDING,
        amount: int = 10000,
        currency: str = "USD",
        partner_id: str = PARTNER_ID,
        completed_at: datetime | None = None,
        **overrides: Any,
    ) -> Transaction:
        transaction = Transaction.create(
            partner_id=partner_id,
            idempotency_key=overrides.pop("idempotency_key", "order-1001"),
            amount=Money(amount, currency),
            payment_method=PaymentMethod.CARD,
            provider=PaymentProvider.STRIPE,
            customer_email="customer@example.com",
            now=NOW - timedelta(days=1),
        )
        transaction.status = status
        if completed_at is None and status in (
            TransactionStatus.COMPLETED,
            TransactionStatus.PARTIALLY_REFUNDED,
            TransactionStatus.REFUNDED,
        ):
            completed_at = NOW - timedelta(hours=1)
        transaction.completed_at = completed_at
        for name, value in overrides.items():
            setattr(transaction, name, value)
        return transaction

    return factory


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def engine(store: InMemoryStore, gateway: FakePaymentGateway, clock: FrozenClock) -> TransactionEngine:
    return TransactionEngine(
        uow_factory=store.unit_of_work,
        gateway=gateway,
        audit_logger=StoreAuditLogger(store.unit_of_work),
        clock=clock,
    )


@pytest.fixture
def mock_database() -> MagicMock:
    """Create a mock database whose session is an async context manager."""
    db = MagicMock()
    session_mock = AsyncMock()
    session_mock.__aenter__ = AsyncMock(return_value=session_mock)
    session_mock.__aexit__ = AsyncMock(return_value=None)
    db.session = MagicMock(return_value=session_mock)
    return db
