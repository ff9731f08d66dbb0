"""Repository implementations."""

from transaction_engine.infrastructure.repositories.audit import AuditRepository
from transaction_engine.infrastructure.repositories.outbox import OutboxRepository
from transaction_engine.infrastructure.repositories.refund import RefundRepository
from transaction_engine.infrastructure.repositories.transaction import TransactionRepository


__all__ = [
    "AuditRepository",
    "OutboxRepository",
    "RefundRepository",
    "TransactionRepository",
]
