from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from ulid import ULID

from transaction_engine.domain.exceptions import (
    CurrencyMismatchError,
    InvalidStateTransitionError,
    MaxRetriesExceededError,
    NegativeResultError,
    ValidationError,
)


MIN_AMOUNT_MINOR_UNITS = 1
MAX_AMOUNT_MINOR_UNITS = 100_000_00

# Currencies seeded as active in the currencies lookup table.
ACTIVE_CURRENCIES = frozenset({"USD", "EUR", "GBP", "JPY", "THB"})

MAX_RETRY_COUNT = 3
REFUND_WINDOW_DAYS = 90


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(ULID())


@dataclass(frozen=True)
class Money:
    """Exact amount in a currency's minor unit (cents for USD).

    Arithmetic never mixes currencies and never produces an amount outside
    ``[MIN_AMOUNT_MINOR_UNITS, MAX_AMOUNT_MINOR_UNITS]``; every operation
    returns a new instance.
    """

    amount_minor_units: int
    currency: str = "USD"

    def __post_init__(self) -> None:
        if isinstance(self.amount_minor_units, bool) or not isinstance(self.amount_minor_units, int):
            raise ValidationError("amount", "must be an integer number of minor units")
        if self.amount_minor_units < MIN_AMOUNT_MINOR_UNITS:
            raise ValidationError("amount", f"must be at least {MIN_AMOUNT_MINOR_UNITS}")
        if self.amount_minor_units > MAX_AMOUNT_MINOR_UNITS:
            raise ValidationError("amount", f"must not exceed {MAX_AMOUNT_MINOR_UNITS}")
        if self.currency not in ACTIVE_CURRENCIES:
            raise ValidationError("currency", f"{self.currency!r} is not an active currency")

    @classmethod
    def create(cls, amount_minor_units: int, currency: str) -> "Money":
        if not isinstance(currency, str) or not currency.strip():
            raise ValidationError("currency", "cannot be empty")
        return cls(amount_minor_units=amount_minor_units, currency=currency.strip().upper())

    def add(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        return Money(self.amount_minor_units + other.amount_minor_units, self.currency)

    def subtract(self, other: "Money") -> "Money":
        self._require_same_currency(other)
        result = self.amount_minor_units - other.amount_minor_units
        if result < 0:
            raise NegativeResultError(self.amount_minor_units, other.amount_minor_units)
        return Money(result, self.currency)

    def compare(self, other: "Money") -> int:
        self._require_same_currency(other)
        if self.amount_minor_units == other.amount_minor_units:
            return 0
        return 1 if self.amount_minor_units > other.amount_minor_units else -1

    def is_greater_than(self, other: "Money") -> bool:
        return self.compare(other) > 0

    def _require_same_currency(self, other: "Money") -> None:
        if self.currency != other.currency:
            raise CurrencyMismatchError(expected=self.currency, actual=other.currency)

    def __str__(self) -> str:
        return f"{self.amount_minor_units} {self.currency}"


class TransactionStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    CANCELLED = "cancelled"


class RefundStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentMethod(Enum):
    CARD = "card"
    BANK_TRANSFER = "bank_transfer"
    E_WALLET = "e_wallet"
    CRYPTO = "crypto"

    @classmethod
    def parse(cls, value: str) -> "PaymentMethod":
        try:
            return cls(value.strip().lower())
        except (AttributeError, ValueError):
            raise ValidationError("payment_method", f"invalid payment method {value!r}") from None


class PaymentProvider(Enum):
    STRIPE = "stripe"
    PAYPAL = "paypal"
    ADYEN = "adyen"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value: str) -> "PaymentProvider":
        try:
            return cls(value.strip().lower())
        except (AttributeError, ValueError):
            raise ValidationError("provider", f"invalid payment provider {value!r}") from None


REFUNDABLE_STATUSES = frozenset({TransactionStatus.COMPLETED, TransactionStatus.PARTIALLY_REFUNDED})


@dataclass
class Transaction:
    id: str
    partner_id: str
    idempotency_key: str
    amount: Money
    payment_method: PaymentMethod
    provider: PaymentProvider
    customer_email: str
    status: TransactionStatus = TransactionStatus.PENDING
    provider_transaction_id: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None
    retry_count: int = 0
    error_code: str | None = None
    error_message: str | None = None
    refunded_amount_minor_units: int = 0
    version: int = 1
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def create(
        cls,
        partner_id: str,
        idempotency_key: str,
        amount: Money,
        payment_method: PaymentMethod,
        provider: PaymentProvider,
        customer_email: str,
        description: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> "Transaction":
        if not partner_id:
            raise ValidationError("partner_id", "cannot be empty")
        if not idempotency_key or not idempotency_key.strip():
            raise ValidationError("idempotency_key", "cannot be empty")
        if len(idempotency_key) > 255:
            raise ValidationError("idempotency_key", "must be at most 255 characters")
        if not customer_email or "@" not in customer_email:
            raise ValidationError("customer_email", "must be a valid email address")

        now = now or _utcnow()
        return cls(
            id=_new_id(),
            partner_id=partner_id,
            idempotency_key=idempotency_key,
            amount=amount,
            payment_method=payment_method,
            provider=provider,
            customer_email=customer_email,
            description=description,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def mark_as_processing(self, now: datetime | None = None) -> None:
        if self.status not in (TransactionStatus.PENDING, TransactionStatus.FAILED):
            self._reject(TransactionStatus.PROCESSING)
        self.status = TransactionStatus.PROCESSING
        self.updated_at = now or _utcnow()

    def mark_as_completed(self, provider_transaction_id: str, now: datetime | None = None) -> None:
        if self.status != TransactionStatus.PROCESSING:
            self._reject(TransactionStatus.COMPLETED)
        now = now or _utcnow()
        self.status = TransactionStatus.COMPLETED
        self.provider_transaction_id = provider_transaction_id
        self.error_code = None
        self.error_message = None
        self.completed_at = now
        self.updated_at = now

    def mark_as_failed(self, error_code: str, error_message: str, now: datetime | None = None) -> None:
        if self.status != TransactionStatus.PROCESSING:
            self._reject(TransactionStatus.FAILED)
        now = now or _utcnow()
        self.status = TransactionStatus.FAILED
        self.error_code = error_code
        self.error_message = error_message
        self.failed_at = now
        self.updated_at = now

    def mark_as_cancelled(self, now: datetime | None = None) -> None:
        if self.status != TransactionStatus.PENDING:
            self._reject(TransactionStatus.CANCELLED)
        self.status = TransactionStatus.CANCELLED
        self.updated_at = now or _utcnow()

    def can_retry(self) -> bool:
        return self.retry_count < MAX_RETRY_COUNT

    def increment_retry_count(self, now: datetime | None = None) -> None:
        if not self.can_retry():
            raise MaxRetriesExceededError(self.id, MAX_RETRY_COUNT)
        self.retry_count += 1
        self.updated_at = now or _utcnow()

    def mark_as_refunded(self, is_partial: bool, now: datetime | None = None) -> None:
        target = TransactionStatus.PARTIALLY_REFUNDED if is_partial else TransactionStatus.REFUNDED
        # partially_refunded may only move forward to refunded
        allowed = self.status == TransactionStatus.COMPLETED or (
            self.status == TransactionStatus.PARTIALLY_REFUNDED and target == TransactionStatus.REFUNDED
        )
        if not allowed:
            self._reject(target)
        self.status = target
        self.updated_at = now or _utcnow()

    def has_refundable_status(self) -> bool:
        return self.status in REFUNDABLE_STATUSES

    def is_within_refund_window(self, now: datetime | None = None) -> bool:
        if self.completed_at is None:
            return False
        return (now or _utcnow()) - self.completed_at <= timedelta(days=REFUND_WINDOW_DAYS)

    def is_refundable(self, now: datetime | None = None) -> bool:
        return self.has_refundable_status() and self.is_within_refund_window(now)

    def refundable_balance(self) -> int:
        return self.amount.amount_minor_units - self.refunded_amount_minor_units

    def is_stale(self, threshold: timedelta, now: datetime | None = None) -> bool:
        """A transaction stuck in ``processing`` longer than ``threshold`` needs recovery."""
        if self.status != TransactionStatus.PROCESSING:
            return False
        return (now or _utcnow()) - self.updated_at > threshold

    def soft_delete(self, now: datetime | None = None) -> None:
        now = now or _utcnow()
        self.deleted_at = now
        self.updated_at = now

    def _reject(self, target: TransactionStatus) -> None:
        raise InvalidStateTransitionError("Transaction", self.id, self.status.value, target.value)


@dataclass
class Refund:
    id: str
    transaction_id: str
    amount: Money
    reason: str
    status: RefundStatus = RefundStatus.PENDING
    provider_refund_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    deleted_at: datetime | None = None

    @classmethod
    def create(
        cls,
        transaction_id: str,
        amount: Money,
        reason: str,
        now: datetime | None = None,
    ) -> "Refund":
        if not transaction_id:
            raise ValidationError("transaction_id", "cannot be empty")
        if not reason or not reason.strip():
            raise ValidationError("reason", "cannot be empty")
        now = now or _utcnow()
        return cls(
            id=_new_id(),
            transaction_id=transaction_id,
            amount=amount,
            reason=reason,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_completed(self) -> bool:
        return self.status == RefundStatus.COMPLETED

    @property
    def is_failed(self) -> bool:
        return self.status == RefundStatus.FAILED

    def mark_as_processing(self, now: datetime | None = None) -> None:
        if self.status != RefundStatus.PENDING:
            self._reject(RefundStatus.PROCESSING)
        self.status = RefundStatus.PROCESSING
        self.updated_at = now or _utcnow()

    def mark_as_completed(self, provider_refund_id: str, now: datetime | None = None) -> None:
        if self.status != RefundStatus.PROCESSING:
            self._reject(RefundStatus.COMPLETED)
        now = now or _utcnow()
        self.status = RefundStatus.COMPLETED
        self.provider_refund_id = provider_refund_id
        self.error_code = None
        self.error_message = None
        self.completed_at = now
        self.updated_at = now

    def mark_as_failed(self, error_code: str, error_message: str, now: datetime | None = None) -> None:
        if self.status not in (RefundStatus.PENDING, RefundStatus.PROCESSING):
            self._reject(RefundStatus.FAILED)
        self.status = RefundStatus.FAILED
        self.error_code = error_code
        self.error_message = error_message
        self.updated_at = now or _utcnow()

    def _reject(self, target: RefundStatus) -> None:
        raise InvalidStateTransitionError("Refund", self.id, self.status.value, target.value)


@dataclass
class AuditRecord:
    id: str
    action: str
    resource_type: str
    resource_id: str
    partner_id: str | None = None
    changes: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(
        cls,
        action: str,
        resource_type: str,
        resource_id: str,
        partner_id: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> "AuditRecord":
        return cls(
            id=_new_id(),
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            partner_id=partner_id,
            changes=changes or {},
        )


@dataclass
class OutboxEvent:
    id: str
    aggregate_type: str
    aggregate_id: str
    event_type: str
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=_utcnow)
    published_at: datetime | None = None
    retry_count: int = 0

    @classmethod
    def create(
        cls,
        aggregate_type: str,
        aggregate_id: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> "OutboxEvent":
        return cls(
            id=_new_id(),
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
            event_type=event_type,
            payload=payload,
        )
