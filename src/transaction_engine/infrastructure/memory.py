"""In-memory store with the same atomicity guarantees as the PostgreSQL schema.

Used by the test-suite and for running the engine without a database:

- ``add_if_absent`` serializes on a per-(partner, key) lock held until the
  unit of work ends, the way a unique index blocks a second insert until the
  first session commits.
- ``get_for_update`` takes a per-transaction lock held until commit/rollback,
  mirroring ``SELECT ... FOR UPDATE``.
- Writes are staged per unit of work and only become visible on commit.

Single event loop only. Locks are ``asyncio.Lock`` instances created on
first use and discarded once no unit of work holds or waits for them.
"""

import asyncio
import copy
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from transaction_engine.application.unit_of_work import AbstractUnitOfWork
from transaction_engine.domain.exceptions import OptimisticLockError
from transaction_engine.domain.models import (
    AuditRecord,
    OutboxEvent,
    Refund,
    RefundStatus,
    Transaction,
)


class InMemoryStore:
    def __init__(self) -> None:
        self.transactions: dict[str, Transaction] = {}
        self.refunds: dict[str, Refund] = {}
        self.outbox: list[OutboxEvent] = []
        self.audit_logs: list[AuditRecord] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    async def acquire(self, resource_id: str) -> None:
        lock = self._locks.setdefault(resource_id, asyncio.Lock())
        self._lock_users[resource_id] = self._lock_users.get(resource_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(resource_id)
            raise

    def release(self, resource_id: str) -> None:
        self._locks[resource_id].release()
        self._forget(resource_id)

    def _forget(self, resource_id: str) -> None:
        # drop the lock once nobody holds or waits for it
        self._lock_users[resource_id] -= 1
        if self._lock_users[resource_id] == 0:
            del self._lock_users[resource_id]
            del self._locks[resource_id]

    def find_by_idempotency_key(self, partner_id: str, idempotency_key: str) -> Transaction | None:
        for transaction in self.transactions.values():
            if (
                transaction.partner_id == partner_id
                and transaction.idempotency_key == idempotency_key
                and not transaction.is_deleted
            ):
                return transaction
        return None

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncGenerator["InMemoryUnitOfWork", None]:
        uow = InMemoryUnitOfWork(self)
        try:
            yield uow
        finally:
            await uow.rollback()


class _TransactionRepository:
    def __init__(self, uow: "InMemoryUnitOfWork") -> None:
        self._uow = uow
        self._store = uow.store

    def _current(self, transaction_id: str) -> Transaction | None:
        transaction = self._uow.staged_transactions.get(transaction_id) or self._store.transactions.get(
            transaction_id
        )
        if transaction is None or transaction.is_deleted:
            return None
        return transaction

    async def get(self, transaction_id: str) -> Transaction | None:
        transaction = self._current(transaction_id)
        return copy.deepcopy(transaction) if transaction else None

    async def get_for_update(self, transaction_id: str) -> Transaction | None:
        await self._uow.acquire(f"transaction:{transaction_id}")
        return await self.get(transaction_id)

    async def get_by_idempotency_key(self, partner_id: str, idempotency_key: str) -> Transaction | None:
        for transaction in self._uow.staged_transactions.values():
            if transaction.partner_id == partner_id and transaction.idempotency_key == idempotency_key:
                return copy.deepcopy(transaction)
        transaction = self._store.find_by_idempotency_key(partner_id, idempotency_key)
        return copy.deepcopy(transaction) if transaction else None

    async def add_if_absent(self, transaction: Transaction) -> bool:
        await self._uow.acquire(f"idempotency:{transaction.partner_id}:{transaction.idempotency_key}")
        if await self.get_by_idempotency_key(transaction.partner_id, transaction.idempotency_key):
            return False
        self._uow.staged_transactions[transaction.id] = copy.deepcopy(transaction)
        return True

    async def update(self, transaction: Transaction) -> None:
        current = self._uow.staged_transactions.get(transaction.id) or self._store.transactions.get(transaction.id)
        if current is None or current.version != transaction.version:
            raise OptimisticLockError("Transaction", transaction.id)
        transaction.version += 1
        self._uow.staged_transactions[transaction.id] = copy.deepcopy(transaction)


class _RefundRepository:
    def __init__(self, uow: "InMemoryUnitOfWork") -> None:
        self._uow = uow
        self._store = uow.store

    def _visible(self) -> dict[str, Refund]:
        return {**self._store.refunds, **self._uow.staged_refunds}

    async def get(self, refund_id: str) -> Refund | None:
        refund = self._visible().get(refund_id)
        if refund is None or refund.deleted_at is not None:
            return None
        return copy.deepcopy(refund)

    async def list_by_transaction(self, transaction_id: str) -> list[Refund]:
        refunds = [
            refund
            for refund in self._visible().values()
            if refund.transaction_id == transaction_id and refund.deleted_at is None
        ]
        return [copy.deepcopy(refund) for refund in sorted(refunds, key=lambda r: r.created_at)]

    async def sum_completed(self, transaction_id: str) -> int:
        return sum(
            refund.amount.amount_minor_units
            for refund in self._visible().values()
            if refund.transaction_id == transaction_id
            and refund.status == RefundStatus.COMPLETED
            and refund.deleted_at is None
        )

    async def add(self, refund: Refund) -> None:
        self._uow.staged_refunds[refund.id] = copy.deepcopy(refund)

    async def update(self, refund: Refund) -> None:
        self._uow.staged_refunds[refund.id] = copy.deepcopy(refund)


class _OutboxRepository:
    def __init__(self, uow: "InMemoryUnitOfWork") -> None:
        self._uow = uow

    async def add(self, event: OutboxEvent) -> None:
        self._uow.staged_outbox.append(copy.deepcopy(event))


class _AuditRepository:
    def __init__(self, uow: "InMemoryUnitOfWork") -> None:
        self._uow = uow

    async def add(self, record: AuditRecord) -> None:
        self._uow.staged_audit.append(copy.deepcopy(record))


class InMemoryUnitOfWork(AbstractUnitOfWork):
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        self.staged_transactions: dict[str, Transaction] = {}
        self.staged_refunds: dict[str, Refund] = {}
        self.staged_outbox: list[OutboxEvent] = []
        self.staged_audit: list[AuditRecord] = []
        self._held: set[str] = set()
        self.transactions = _TransactionRepository(self)
        self.refunds = _RefundRepository(self)
        self.outbox = _OutboxRepository(self)
        self.audit = _AuditRepository(self)

    async def acquire(self, resource_id: str) -> None:
        if resource_id in self._held:
            return
        await self.store.acquire(resource_id)
        self._held.add(resource_id)

    async def commit(self) -> None:
        self.store.transactions.update(self.staged_transactions)
        self.store.refunds.update(self.staged_refunds)
        self.store.outbox.extend(self.staged_outbox)
        self.store.audit_logs.extend(self.staged_audit)
        self._reset()

    async def rollback(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.staged_transactions.clear()
        self.staged_refunds.clear()
        self.staged_outbox.clear()
        self.staged_audit.clear()
        for resource_id in self._held:
            self.store.release(resource_id)
        self._held.clear()
