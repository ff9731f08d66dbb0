from abc import ABC, abstractmethod
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from types import TracebackType
from typing import Self

from sqlalchemy.ext.asyncio import AsyncSession

from transaction_engine.application.ports import (
    AuditStore,
    OutboxStore,
    RefundStore,
    TransactionStore,
)
from transaction_engine.infrastructure.repositories import (
    AuditRepository,
    OutboxRepository,
    RefundRepository,
    TransactionRepository,
)


class AbstractUnitOfWork(ABC):
    transactions: TransactionStore
    refunds: RefundStore
    outbox: OutboxStore
    audit: AuditStore

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if exc_type is not None:
            await self.rollback()

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...


class UnitOfWork(AbstractUnitOfWork):
    """Unit of work over a single SQLAlchemy session.

    Row locks taken with ``transactions.get_for_update`` live until the next
    ``commit`` or ``rollback``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session
        self.transactions = TransactionRepository(session)
        self.refunds = RefundRepository(session)
        self.outbox = OutboxRepository(session)
        self.audit = AuditRepository(session)

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


UnitOfWorkFactory = Callable[[], AbstractAsyncContextManager[AbstractUnitOfWork]]
