class DomainError(Exception):
    """Base exception for domain errors.

    Every error carries a stable machine-readable ``code`` alongside the
    human-readable message so the request layer can map it to a response.
    """

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


class ValidationError(DomainError):
    """Raised when caller input (money, currency, required fields) is malformed."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class CurrencyMismatchError(ValidationError):
    """Raised when currencies don't match."""

    code = "CURRENCY_MISMATCH"

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__("currency", f"expected {expected}, got {actual}")


class NegativeResultError(ValidationError):
    """Raised when a subtraction would produce a negative amount."""

    code = "NEGATIVE_RESULT"

    def __init__(self, minuend: int, subtrahend: int) -> None:
        self.minuend = minuend
        self.subtrahend = subtrahend
        super().__init__("amount", f"{minuend} - {subtrahend} would be negative")


class NotFoundError(DomainError):
    code = "NOT_FOUND"


class TransactionNotFoundError(NotFoundError):
    """Raised when a transaction cannot be found or is soft-deleted."""

    code = "TRANSACTION_NOT_FOUND"

    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class RefundNotFoundError(NotFoundError):
    code = "REFUND_NOT_FOUND"

    def __init__(self, refund_id: str) -> None:
        self.refund_id = refund_id
        super().__init__(f"Refund {refund_id} not found")


class UnauthorizedError(DomainError):
    """Raised when a partner operates on a resource it does not own."""

    code = "UNAUTHORIZED"

    def __init__(self, partner_id: str, resource_id: str) -> None:
        self.partner_id = partner_id
        self.resource_id = resource_id
        super().__init__(f"Partner {partner_id} is not allowed to access {resource_id}")


class InvalidStateTransitionError(DomainError):
    """Raised when a lifecycle guard rejects a transition."""

    code = "INVALID_STATE_TRANSITION"

    def __init__(self, entity: str, entity_id: str, current: str, target: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(f"{entity} {entity_id} cannot move from {current} to {target}")


class BusinessRuleError(DomainError):
    code = "BUSINESS_RULE_VIOLATION"


class RefundNotAllowedError(BusinessRuleError):
    code = "REFUND_NOT_ALLOWED"

    def __init__(self, transaction_id: str, status: str) -> None:
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Refund not allowed for transaction {transaction_id} in status {status}")


class RefundWindowExpiredError(BusinessRuleError):
    code = "REFUND_WINDOW_EXPIRED"

    def __init__(self, transaction_id: str, window_days: int) -> None:
        self.transaction_id = transaction_id
        self.window_days = window_days
        super().__init__(f"Refund window of {window_days} days has expired for transaction {transaction_id}")


class RefundAmountExceededError(BusinessRuleError):
    code = "REFUND_AMOUNT_EXCEEDED"

    def __init__(self, transaction_id: str, requested: int, available: int) -> None:
        self.transaction_id = transaction_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Refund of {requested} exceeds refundable balance {available} for transaction {transaction_id}"
        )


class MaxRetriesExceededError(BusinessRuleError):
    code = "MAX_RETRIES_EXCEEDED"

    def __init__(self, transaction_id: str, max_retries: int) -> None:
        self.transaction_id = transaction_id
        self.max_retries = max_retries
        super().__init__(f"Transaction {transaction_id} has reached maximum retry attempts ({max_retries})")


class DependencyError(DomainError):
    """Raised when a collaborator (payment provider, store) fails. Retryable by the caller."""

    code = "DEPENDENCY_ERROR"


class PaymentGatewayError(DependencyError):
    code = "PAYMENT_GATEWAY_ERROR"

    def __init__(self, provider: str, message: str, provider_code: str | None = None) -> None:
        self.provider = provider
        self.provider_code = provider_code
        super().__init__(f"{provider}: {message}")


class OptimisticLockError(DependencyError):
    """Raised when optimistic locking conflict occurs."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: str) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"Optimistic lock failed for {entity} {entity_id}")


class ConsistencyWarning(DomainError):
    """Raised when a refund completed but the parent transaction could not be updated.

    The refund is durable; the transaction needs reconciliation.
    """

    code = "CONSISTENCY_WARNING"

    def __init__(self, transaction_id: str, refund_id: str, cause: Exception) -> None:
        self.transaction_id = transaction_id
        self.refund_id = refund_id
        self.cause = cause
        super().__init__(
            f"Refund {refund_id} completed but transaction {transaction_id} was not updated: {cause}"
        )
