"""Unit tests for metrics module."""

import asyncio
from unittest.mock import patch

import pytest

from transaction_engine.infrastructure.metrics import (
    AUDIT_FAILURES_TOTAL,
    OPERATION_DURATION_SECONDS,
    OUTBOX_EVENTS_FAILED,
    OUTBOX_EVENTS_PUBLISHED,
    OUTBOX_PENDING_EVENTS,
    REFUND_REQUESTS_TOTAL,
    TRANSACTIONS_CREATED_TOTAL,
    TRANSACTIONS_PROCESSED_TOTAL,
    WEBHOOK_ENQUEUE_FAILURES_TOTAL,
    track_duration,
)


class TestMetricDefinitions:
    """Tests for metric definitions."""

    def test_labels(self) -> None:
        assert TRANSACTIONS_CREATED_TOTAL._labelnames == ("outcome",)
        assert TRANSACTIONS_PROCESSED_TOTAL._labelnames == ("provider", "status")
        assert REFUND_REQUESTS_TOTAL._labelnames == ("status", "error_code")
        assert AUDIT_FAILURES_TOTAL._labelnames == ("action",)
        assert WEBHOOK_ENQUEUE_FAILURES_TOTAL._labelnames == ("event_type",)
        assert OUTBOX_EVENTS_PUBLISHED._labelnames == ("event_type",)
        assert OUTBOX_EVENTS_FAILED._labelnames == ("event_type",)
        assert OPERATION_DURATION_SECONDS._labelnames == ("operation",)

    def test_operation_duration_buckets(self) -> None:
        expected_buckets = [0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
        # prometheus_client appends +Inf
        assert list(OPERATION_DURATION_SECONDS._upper_bounds[:-1]) == expected_buckets

    def test_outbox_pending_events_is_gauge(self) -> None:
        OUTBOX_PENDING_EVENTS.set(3)
        OUTBOX_PENDING_EVENTS.set(0)


class TestTrackDuration:
    """Tests for the track_duration decorator."""

    @pytest.mark.asyncio
    async def test_returns_result_and_observes(self) -> None:
        with patch("transaction_engine.infrastructure.metrics.OPERATION_DURATION_SECONDS") as mock_histogram:

            @track_duration("request_refund")
            async def sample(x: int, y: int = 2) -> int:
                await asyncio.sleep(0.01)
                return x + y

            assert await sample(1, y=3) == 4

        mock_histogram.labels.assert_called_once_with(operation="request_refund")
        duration = mock_histogram.labels.return_value.observe.call_args[0][0]
        assert duration >= 0.01

    @pytest.mark.asyncio
    async def test_observes_on_exception(self) -> None:
        with patch("transaction_engine.infrastructure.metrics.OPERATION_DURATION_SECONDS") as mock_histogram:

            @track_duration("create_transaction")
            async def failing() -> None:
                raise ValueError("boom")

            with pytest.raises(ValueError, match="boom"):
                await failing()

        mock_histogram.labels.return_value.observe.assert_called_once()

    def test_preserves_metadata(self) -> None:
        @track_duration("process_transaction")
        async def documented() -> None:
            """Docstring survives."""

        assert documented.__name__ == "documented"
        assert documented.__doc__ == "Docstring survives."
