import asyncio

import structlog

from transaction_engine.domain.exceptions import ValidationError
from transaction_engine.domain.models import PaymentProvider, Refund, Transaction


logger = structlog.get_logger()


class MockPaymentGateway:
    """Simulated provider that approves every payment and refund.

    Stands in for the Stripe/PayPal/Adyen clients until real integrations
    exist. Provider ids follow ``mock_<provider>_<id prefix>``.
    """

    def __init__(self, provider: PaymentProvider, latency_seconds: float = 0.0) -> None:
        self._provider = provider
        self._latency_seconds = latency_seconds

    @property
    def provider_name(self) -> str:
        return self._provider.value

    async def process_payment(self, transaction: Transaction) -> str:
        if self._latency_seconds:
            await asyncio.sleep(self._latency_seconds)
        provider_transaction_id = f"mock_{self.provider_name}_{transaction.id[:8].lower()}"
        logger.debug(
            "mock_payment_processed",
            transaction_id=transaction.id,
            provider_transaction_id=provider_transaction_id,
        )
        return provider_transaction_id

    async def process_refund(self, refund: Refund, transaction: Transaction) -> str:
        if self._latency_seconds:
            await asyncio.sleep(self._latency_seconds)
        provider_refund_id = f"mock_refund_{self.provider_name}_{refund.id[:8].lower()}"
        logger.debug(
            "mock_refund_processed",
            transaction_id=transaction.id,
            refund_id=refund.id,
            provider_refund_id=provider_refund_id,
        )
        return provider_refund_id


def build_payment_gateway(provider: str, latency_seconds: float = 0.0) -> MockPaymentGateway:
    """Build the gateway strategy for ``provider``; unknown names fall back to ``manual``."""
    try:
        resolved = PaymentProvider.parse(provider)
    except ValidationError:
        resolved = PaymentProvider.MANUAL
    return MockPaymentGateway(resolved, latency_seconds=latency_seconds)
