from datetime import timedelta

from transaction_engine.application.ports import AuditLogger, Clock, PaymentGateway, system_clock
from transaction_engine.application.refunds import RefundService, RequestRefundCommand
from transaction_engine.application.services import (
    CreateTransactionCommand,
    CreateTransactionResult,
    TransactionService,
)
from transaction_engine.application.unit_of_work import AbstractUnitOfWork, UnitOfWorkFactory
from transaction_engine.domain.models import Refund, Transaction


DEFAULT_STALE_THRESHOLD = timedelta(minutes=5)


class TransactionEngine:
    """Entry point for the request layer.

    Each call runs in a fresh unit of work, so concurrent callers never share
    a session or its row locks. The payment gateway is injected rather than
    looked up, which lets callers (and tests) swap provider strategies.
    """

    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        gateway: PaymentGateway,
        audit_logger: AuditLogger | None = None,
        clock: Clock = system_clock,
        stale_threshold: timedelta = DEFAULT_STALE_THRESHOLD,
    ) -> None:
        self._uow_factory = uow_factory
        self._gateway = gateway
        self._audit_logger = audit_logger
        self._clock = clock
        self._stale_threshold = stale_threshold

    async def create_transaction(self, cmd: CreateTransactionCommand) -> CreateTransactionResult:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).create_transaction(cmd)

    async def get_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).get_transaction(transaction_id, partner_id)

    async def process_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).process_transaction(transaction_id, partner_id)

    async def retry_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).retry_transaction(transaction_id, partner_id)

    async def cancel_transaction(self, transaction_id: str, partner_id: str) -> Transaction:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).cancel_transaction(transaction_id, partner_id)

    async def recover_stale_transaction(self, transaction_id: str, threshold: timedelta | None = None) -> Transaction:
        async with self._uow_factory() as uow:
            return await self._transactions(uow).recover_stale_transaction(
                transaction_id, threshold or self._stale_threshold
            )

    async def request_refund(self, cmd: RequestRefundCommand) -> Refund:
        async with self._uow_factory() as uow:
            return await self._refunds(uow).request_refund(cmd)

    async def get_refund(self, refund_id: str, partner_id: str) -> Refund:
        async with self._uow_factory() as uow:
            return await self._refunds(uow).get_refund(refund_id, partner_id)

    async def list_refunds(self, transaction_id: str, partner_id: str) -> list[Refund]:
        async with self._uow_factory() as uow:
            return await self._refunds(uow).list_refunds(transaction_id, partner_id)

    def _transactions(self, uow: AbstractUnitOfWork) -> TransactionService:
        return TransactionService(uow, self._gateway, self._audit_logger, self._clock)

    def _refunds(self, uow: AbstractUnitOfWork) -> RefundService:
        return RefundService(uow, self._gateway, self._audit_logger, self._clock)
