"""Domain layer - business entities and rules."""

from transaction_engine.domain.exceptions import (
    BusinessRuleError,
    ConsistencyWarning,
    CurrencyMismatchError,
    DependencyError,
    DomainError,
    InvalidStateTransitionError,
    MaxRetriesExceededError,
    NegativeResultError,
    NotFoundError,
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
    AuditRecord,
    Money,
    OutboxEvent,
    PaymentMethod,
    PaymentProvider,
    Refund,
    RefundStatus,
    Transaction,
    TransactionStatus,
)


__all__ = [
    "AuditRecord",
    "BusinessRuleError",
    "ConsistencyWarning",
    "CurrencyMismatchError",
    "DependencyError",
    "DomainError",
    "InvalidStateTransitionError",
    "MaxRetriesExceededError",
    "Money",
    "NegativeResultError",
    "NotFoundError",
    "OptimisticLockError",
    "OutboxEvent",
    "PaymentGatewayError",
    "PaymentMethod",
    "PaymentProvider",
    "Refund",
    "RefundAmountExceededError",
    "RefundNotAllowedError",
    "RefundNotFoundError",
    "RefundStatus",
    "RefundWindowExpiredError",
    "Transaction",
    "TransactionNotFoundError",
    "TransactionStatus",
    "UnauthorizedError",
    "ValidationError",
]
