import time
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram


TRANSACTIONS_CREATED_TOTAL = Counter(
    "transactions_created_total",
    "Total number of create-transaction requests",
    ["outcome"],
)

TRANSACTIONS_PROCESSED_TOTAL = Counter(
    "transactions_processed_total",
    "Total number of transactions sent to the payment provider",
    ["provider", "status"],
)

REFUND_REQUESTS_TOTAL = Counter(
    "refund_requests_total",
    "Total number of refund requests",
    ["status", "error_code"],
)

CONSISTENCY_WARNINGS_TOTAL = Counter(
    "consistency_warnings_total",
    "Refunds completed without the parent transaction being updated",
)

AUDIT_FAILURES_TOTAL = Counter(
    "audit_failures_total",
    "Audit records that could not be written",
    ["action"],
)

WEBHOOK_ENQUEUE_FAILURES_TOTAL = Counter(
    "webhook_enqueue_failures_total",
    "Webhook tasks that could not be enqueued",
    ["event_type"],
)

OUTBOX_EVENTS_PUBLISHED = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)

OUTBOX_EVENTS_FAILED = Counter(
    "outbox_events_failed_total",
    "Total outbox events that failed to publish",
    ["event_type"],
)

OUTBOX_PENDING_EVENTS = Gauge(
    "outbox_pending_events",
    "Number of pending events in outbox",
)

OPERATION_DURATION_SECONDS = Histogram(
    "engine_operation_duration_seconds",
    "Duration of engine operations",
    ["operation"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)


P = ParamSpec("P")
R = TypeVar("R")


def track_duration(
    operation: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                OPERATION_DURATION_SECONDS.labels(operation=operation).observe(time.perf_counter() - start)

        return wrapper

    return decorator
