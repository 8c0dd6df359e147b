"""Aggregate webhook delivery reporting.

Summarizes the delivery log over a date range for operator dashboards.

Example:
    stats = compute_stats(registry, delivery_log)
    print(stats.success_rate, stats.webhooks_with_most_failures)

    performance = compute_performance(registry, delivery_log, start, end)
    for bucket in performance.time_series:
        print(bucket.date, bucket.total, bucket.failed)
"""

import math
from collections import defaultdict
from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta

import structlog
from pydantic import BaseModel, Field

from event_relay.webhooks.deliveries import DeliveryLog, DeliveryRecord
from event_relay.webhooks.manager import SubscriptionRegistry

logger = structlog.get_logger(__name__)

DEFAULT_RANGE_DAYS = 30
DAILY_BUCKET_MAX_DAYS = 60
TOP_FAILING_LIMIT = 5


class FailingSubscription(BaseModel):
    """A subscription surfaced for operator triage."""

    id: str
    url: str
    description: str
    failure_count: int
    last_error: str | None = None
    last_triggered_at: datetime | None = None


class EventTypeStats(BaseModel):
    """Delivery counts for one event type."""

    event_type: str
    count: int
    success_count: int


class WebhookStats(BaseModel):
    """Aggregate delivery statistics for a date range."""

    start_date: datetime
    end_date: datetime
    total_webhooks: int = 0
    active_webhooks: int = 0
    total_deliveries: int = 0
    successful_deliveries: int = 0
    failed_deliveries: int = 0
    success_rate: float = Field(default=0.0, description="Percentage, 2 decimals")
    avg_response_time: int = Field(default=0, description="Milliseconds, rounded")
    webhooks_with_most_failures: list[FailingSubscription] = Field(default_factory=list)
    event_type_stats: list[EventTypeStats] = Field(default_factory=list)


class PerformanceBucket(BaseModel):
    """Delivery counts for one day or week."""

    date: str = Field(..., description="ISO date the bucket starts on")
    total: int
    success: int
    failed: int
    avg_response_time: int


class SubscriptionPerformance(BaseModel):
    """Delivery counts for one subscription."""

    id: str
    url: str | None = None
    description: str | None = None
    total: int
    success: int
    failed: int
    success_rate: float
    avg_response_time: int


class WebhookPerformance(BaseModel):
    """Time-bucketed and per-subscription delivery performance."""

    start_date: datetime
    end_date: datetime
    granularity: str = Field(..., description="'day' or 'week'")
    time_series: list[PerformanceBucket] = Field(default_factory=list)
    subscriptions: list[SubscriptionPerformance] = Field(default_factory=list)


def resolve_range(
    start: datetime | None = None,
    end: datetime | None = None,
) -> tuple[datetime, datetime]:
    """Fill in a missing range end with now and a missing start with 30 days earlier."""
    end = end or datetime.now(UTC)
    start = start or end - timedelta(days=DEFAULT_RANGE_DAYS)
    if start.tzinfo is None:
        start = start.replace(tzinfo=UTC)
    if end.tzinfo is None:
        end = end.replace(tzinfo=UTC)
    return start, end


def bucket_granularity(start: datetime, end: datetime) -> str:
    """Daily buckets for ranges up to 60 days, weekly beyond."""
    seconds = (end - start).total_seconds()
    days = math.ceil(seconds / 86400)
    return "day" if days <= DAILY_BUCKET_MAX_DAYS else "week"


def _bucket_start(moment: datetime, granularity: str) -> date:
    day = moment.astimezone(UTC).date()
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    return day


def _success_rate(success: int, total: int) -> float:
    if total == 0:
        return 0.0
    return round(success / total * 100, 2)


def _avg_ms(records: Iterable[DeliveryRecord]) -> int:
    durations = [r.duration_ms for r in records]
    if not durations:
        return 0
    return round(sum(durations) / len(durations))


def compute_stats(
    registry: SubscriptionRegistry,
    delivery_log: DeliveryLog,
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    top_n: int = TOP_FAILING_LIMIT,
) -> WebhookStats:
    """Compute aggregate delivery statistics.

    Args:
        registry: Subscription registry.
        delivery_log: Delivery log to summarize.
        start: Range start (defaults to 30 days before end).
        end: Range end (defaults to now).
        top_n: Number of failing subscriptions to surface.

    Returns:
        WebhookStats for the range.
    """
    start, end = resolve_range(start, end)
    records = delivery_log.between(start, end)
    successful = sum(1 for r in records if r.success)

    per_type: dict[str, list[int]] = defaultdict(lambda: [0, 0])
    for record in records:
        counts = per_type[record.event_type]
        counts[0] += 1
        if record.success:
            counts[1] += 1

    event_type_stats = sorted(
        (
            EventTypeStats(event_type=t, count=c[0], success_count=c[1])
            for t, c in per_type.items()
        ),
        key=lambda s: s.count,
        reverse=True,
    )

    failing = sorted(
        (s for s in registry.list_all() if s.failure_count >= 1),
        key=lambda s: s.failure_count,
        reverse=True,
    )[:top_n]

    stats = WebhookStats(
        start_date=start,
        end_date=end,
        total_webhooks=registry.count(),
        active_webhooks=registry.count(active_only=True),
        total_deliveries=len(records),
        successful_deliveries=successful,
        failed_deliveries=len(records) - successful,
        success_rate=_success_rate(successful, len(records)),
        avg_response_time=_avg_ms(records),
        webhooks_with_most_failures=[
            FailingSubscription(
                id=s.id,
                url=str(s.url),
                description=s.description,
                failure_count=s.failure_count,
                last_error=s.last_error,
                last_triggered_at=s.last_triggered_at,
            )
            for s in failing
        ],
        event_type_stats=event_type_stats,
    )

    logger.debug(
        "webhook_stats_computed",
        total_deliveries=stats.total_deliveries,
        success_rate=stats.success_rate,
    )

    return stats


def compute_performance(
    registry: SubscriptionRegistry,
    delivery_log: DeliveryLog,
    start: datetime | None = None,
    end: datetime | None = None,
) -> WebhookPerformance:
    """Compute time-bucketed and per-subscription delivery performance.

    Args:
        registry: Subscription registry (for URL and description).
        delivery_log: Delivery log to summarize.
        start: Range start (defaults to 30 days before end).
        end: Range end (defaults to now).

    Returns:
        WebhookPerformance with buckets ordered oldest first and
        subscriptions ordered by delivery volume.
    """
    start, end = resolve_range(start, end)
    granularity = bucket_granularity(start, end)
    records = delivery_log.between(start, end)

    buckets: dict[date, list[DeliveryRecord]] = defaultdict(list)
    by_subscription: dict[str, list[DeliveryRecord]] = defaultdict(list)
    for record in records:
        buckets[_bucket_start(record.delivered_at, granularity)].append(record)
        by_subscription[record.subscription_id].append(record)

    time_series = []
    for bucket_date in sorted(buckets):
        bucket = buckets[bucket_date]
        success = sum(1 for r in bucket if r.success)
        time_series.append(
            PerformanceBucket(
                date=bucket_date.isoformat(),
                total=len(bucket),
                success=success,
                failed=len(bucket) - success,
                avg_response_time=_avg_ms(bucket),
            )
        )

    subscriptions = []
    for subscription_id, subscription_records in by_subscription.items():
        subscription = registry.get(subscription_id)
        success = sum(1 for r in subscription_records if r.success)
        total = len(subscription_records)
        subscriptions.append(
            SubscriptionPerformance(
                id=subscription_id,
                url=str(subscription.url) if subscription else None,
                description=subscription.description if subscription else None,
                total=total,
                success=success,
                failed=total - success,
                success_rate=_success_rate(success, total),
                avg_response_time=_avg_ms(subscription_records),
            )
        )
    subscriptions.sort(key=lambda s: s.total, reverse=True)

    return WebhookPerformance(
        start_date=start,
        end_date=end,
        granularity=granularity,
        time_series=time_series,
        subscriptions=subscriptions,
    )
