"""Application layer - services and use cases."""

from transaction_engine.application.engine import TransactionEngine
from transaction_engine.application.idempotency import IdempotencyGuard, Reservation
from transaction_engine.application.refunds import RefundService, RequestRefundCommand
from transaction_engine.application.services import (
    CreateTransactionCommand,
    CreateTransactionResult,
    TransactionService,
)
from transaction_engine.application.unit_of_work import AbstractUnitOfWork, UnitOfWork


__all__ = [
    "AbstractUnitOfWork",
    "CreateTransactionCommand",
    "CreateTransactionResult",
    "IdempotencyGuard",
    "RefundService",
    "RequestRefundCommand",
    "Reservation",
    "TransactionEngine",
    "TransactionService",
    "UnitOfWork",
]
