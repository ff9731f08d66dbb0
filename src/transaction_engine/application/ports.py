"""Contracts the engine consumes from its collaborators."""

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any, Protocol

from transaction_engine.domain.models import AuditRecord, OutboxEvent, Refund, Transaction


Clock = Callable[[], datetime]


def system_clock() -> datetime:
    return datetime.now(UTC)


class TransactionStore(Protocol):
    async def get(self, transaction_id: str) -> Transaction | None: ...

    async def get_for_update(self, transaction_id: str) -> Transaction | None: ...

    async def get_by_idempotency_key(self, partner_id: str, idempotency_key: str) -> Transaction | None: ...

    async def add_if_absent(self, transaction: Transaction) -> bool: ...

    async def update(self, transaction: Transaction) -> None: ...


class RefundStore(Protocol):
    async def get(self, refund_id: str) -> Refund | None: ...

    async def list_by_transaction(self, transaction_id: str) -> list[Refund]: ...

    async def sum_completed(self, transaction_id: str) -> int: ...

    async def add(self, refund: Refund) -> None: ...

    async def update(self, refund: Refund) -> None: ...


class OutboxStore(Protocol):
    async def add(self, event: OutboxEvent) -> None: ...


class AuditStore(Protocol):
    async def add(self, record: AuditRecord) -> None: ...


class PaymentGateway(Protocol):
    """External payment provider. Implementations raise ``PaymentGatewayError`` on failure."""

    @property
    def provider_name(self) -> str: ...

    async def process_payment(self, transaction: Transaction) -> str: ...

    async def process_refund(self, refund: Refund, transaction: Transaction) -> str: ...


class AuditLogger(Protocol):
    async def record(
        self,
        action: str,
        resource_type: str,
        resource_id: str,
        partner_id: str | None = None,
        changes: dict[str, Any] | None = None,
    ) -> None: ...
