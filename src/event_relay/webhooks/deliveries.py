"""Append-only delivery log.

Every delivery attempt produces exactly one immutable DeliveryRecord.
Retries append new records; existing records are never modified.
"""

from __future__ import annotations

import math
import uuid
from datetime import UTC, datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

logger = structlog.get_logger(__name__)


class DeliveryRecord(BaseModel):
    """Record of a single webhook delivery attempt."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(
        default_factory=lambda: f"dlv_{uuid.uuid4().hex[:12]}",
        description="Unique delivery identifier",
    )
    subscription_id: str = Field(
        ..., description="Subscription the attempt was made for"
    )
    event_id: str = Field(
        ..., description="Event identifier, reused as idempotency key on replay"
    )
    event_type: str = Field(
        ..., description="Type of event"
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Envelope that was sent",
    )
    response_status: int | None = Field(
        default=None,
        description="HTTP response status code (None if no response)",
    )
    response_body: str | None = Field(
        default=None,
        description="Response body (truncated)",
    )
    duration_ms: int = Field(
        default=0,
        ge=0,
        description="Attempt duration in milliseconds",
    )
    success: bool = Field(
        ..., description="Whether the subscriber answered 2xx"
    )
    error_message: str | None = Field(
        default=None,
        description="Error message if failed",
    )
    delivered_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the attempt finished",
    )


class DeliveryPage(BaseModel):
    """One page of a subscription's audit log."""

    data: list[DeliveryRecord]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)


class DeliveryLog:
    """In-memory append-only store of delivery records."""

    def __init__(self) -> None:
        self._records: list[DeliveryRecord] = []
        self._by_id: dict[str, DeliveryRecord] = {}
        self._logger = logger.bind(component="delivery_log")

    def __len__(self) -> int:
        return len(self._records)

    def append(self, record: DeliveryRecord) -> DeliveryRecord:
        """Store a delivery record.

        Raises:
            ValueError: If a record with the same id was already written.
        """
        if record.id in self._by_id:
            raise ValueError(f"Delivery {record.id} already recorded")

        self._records.append(record)
        self._by_id[record.id] = record

        self._logger.debug(
            "delivery_recorded",
            delivery_id=record.id,
            subscription_id=record.subscription_id,
            success=record.success,
        )
        return record

    def get(self, delivery_id: str) -> DeliveryRecord | None:
        return self._by_id.get(delivery_id)

    def _newest_first(self, subscription_id: str | None = None) -> list[DeliveryRecord]:
        records = [
            r for r in reversed(self._records)
            if subscription_id is None or r.subscription_id == subscription_id
        ]
        # Stable sort keeps append order for equal timestamps
        records.sort(key=lambda r: r.delivered_at, reverse=True)
        return records

    def list_for_subscription(
        self,
        subscription_id: str,
        *,
        limit: int = 50,
        success: bool | None = None,
    ) -> list[DeliveryRecord]:
        """List deliveries for a subscription, most recent first.

        Args:
            subscription_id: Subscription identifier.
            limit: Maximum results.
            success: Filter by outcome.

        Returns:
            List of deliveries.
        """
        records = self._newest_first(subscription_id)
        if success is not None:
            records = [r for r in records if r.success == success]
        return records[:limit]

    def failed_for_subscription(self, subscription_id: str) -> list[DeliveryRecord]:
        """All failed deliveries for a subscription, most recent first."""
        return [r for r in self._newest_first(subscription_id) if not r.success]

    def page(self, subscription_id: str, *, page: int = 1, limit: int = 20) -> DeliveryPage:
        """Get one page of a subscription's deliveries, most recent first."""
        page = max(page, 1)
        limit = max(limit, 1)
        records = self._newest_first(subscription_id)
        offset = (page - 1) * limit
        return DeliveryPage(
            data=records[offset:offset + limit],
            total=len(records),
            page=page,
            limit=limit,
        )

    def between(self, start: datetime, end: datetime) -> list[DeliveryRecord]:
        """Deliveries with ``start <= delivered_at <= end``, oldest first."""
        return [r for r in self._records if start <= r.delivered_at <= end]


# Global delivery log instance
_delivery_log: DeliveryLog | None = None


def get_delivery_log() -> DeliveryLog:
    """Get the global delivery log.

    Returns:
        Singleton DeliveryLog.
    """
    global _delivery_log
    if _delivery_log is None:
        _delivery_log = DeliveryLog()
    return _delivery_log


def set_delivery_log(log: DeliveryLog) -> None:
    """Set the global delivery log.

    Useful for testing.
    """
    global _delivery_log
    _delivery_log = log
