"""Webhook event taxonomy and event models.

Business events are grouped into categories. Each category owns a fixed set
of specific event types plus exactly one umbrella type, so subscribers can
listen to a whole category or to a single event.
"""

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

# Subscription sentinel meaning "every event type"
ALL_EVENTS = "all"

# Fields the dispatcher adds on top of the business payload
ENVELOPE_FIELDS = frozenset({"event_type", "occurred_at"})


class EventCategory(str, Enum):
    """Business event categories."""

    INVESTMENT = "investment"
    KYC = "kyc"
    PROPERTY = "property"
    ROI = "roi"
    USER = "user"
    WALLET = "wallet"
    SYSTEM = "system"
    SECURITY = "security"


class WebhookEventType(str, Enum):
    """Supported webhook event types.

    Every category has its specific events and one ``*_event`` umbrella.
    """

    # Investment events
    INVESTMENT_CREATED = "investment_created"
    INVESTMENT_COMPLETED = "investment_completed"
    INVESTMENT_CANCELLED = "investment_cancelled"
    INVESTMENT_APPROVED = "investment_approved"
    INVESTMENT_DECLINED = "investment_declined"
    INVESTMENT_REFUNDED = "investment_refunded"
    INVESTMENT_EVENT = "investment_event"

    # KYC events
    KYC_SUBMITTED = "kyc_submitted"
    KYC_APPROVED = "kyc_approved"
    KYC_REJECTED = "kyc_rejected"
    KYC_UPDATED = "kyc_updated"
    KYC_EVENT = "kyc_event"

    # Property events
    PROPERTY_CREATED = "property_created"
    PROPERTY_UPDATED = "property_updated"
    PROPERTY_FUNDING_MILESTONE = "property_funding_milestone"
    PROPERTY_FULLY_FUNDED = "property_fully_funded"
    PROPERTY_CONSTRUCTION_UPDATE = "property_construction_update"
    PROPERTY_EVENT = "property_event"

    # ROI events
    ROI_CALCULATED = "roi_calculated"
    ROI_DISTRIBUTED = "roi_distributed"
    ROI_PAYOUT_FAILED = "roi_payout_failed"
    ROI_EVENT = "roi_event"

    # User events
    USER_REGISTERED = "user_registered"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_TIER_CHANGED = "user_tier_changed"
    USER_EVENT = "user_event"

    # Wallet events
    WALLET_CREATED = "wallet_created"
    WALLET_FUNDED = "wallet_funded"
    WALLET_WITHDRAWAL = "wallet_withdrawal"
    WALLET_TRANSFER = "wallet_transfer"
    TRANSACTION_PROCESSED = "transaction_processed"
    WALLET_EVENT = "wallet_event"

    # System events
    SYSTEM_ALERT = "system_alert"
    SYSTEM_MAINTENANCE = "system_maintenance"
    SYSTEM_EVENT = "system_event"

    # Security events
    SECURITY_ALERT = "security_alert"
    SUSPICIOUS_ACTIVITY = "suspicious_activity"
    SECURITY_EVENT = "security_event"

    # Uncategorized
    GENERAL = "general"


_E = WebhookEventType

CATEGORY_EVENTS: dict[EventCategory, frozenset[WebhookEventType]] = {
    EventCategory.INVESTMENT: frozenset({
        _E.INVESTMENT_CREATED,
        _E.INVESTMENT_COMPLETED,
        _E.INVESTMENT_CANCELLED,
        _E.INVESTMENT_APPROVED,
        _E.INVESTMENT_DECLINED,
        _E.INVESTMENT_REFUNDED,
    }),
    EventCategory.KYC: frozenset({
        _E.KYC_SUBMITTED,
        _E.KYC_APPROVED,
        _E.KYC_REJECTED,
        _E.KYC_UPDATED,
    }),
    EventCategory.PROPERTY: frozenset({
        _E.PROPERTY_CREATED,
        _E.PROPERTY_UPDATED,
        _E.PROPERTY_FUNDING_MILESTONE,
        _E.PROPERTY_FULLY_FUNDED,
        _E.PROPERTY_CONSTRUCTION_UPDATE,
    }),
    EventCategory.ROI: frozenset({
        _E.ROI_CALCULATED,
        _E.ROI_DISTRIBUTED,
        _E.ROI_PAYOUT_FAILED,
    }),
    EventCategory.USER: frozenset({
        _E.USER_REGISTERED,
        _E.USER_UPDATED,
        _E.USER_DELETED,
        _E.USER_LOGIN,
        _E.USER_LOGOUT,
        _E.USER_TIER_CHANGED,
    }),
    EventCategory.WALLET: frozenset({
        _E.WALLET_CREATED,
        _E.WALLET_FUNDED,
        _E.WALLET_WITHDRAWAL,
        _E.WALLET_TRANSFER,
        _E.TRANSACTION_PROCESSED,
    }),
    EventCategory.SYSTEM: frozenset({
        _E.SYSTEM_ALERT,
        _E.SYSTEM_MAINTENANCE,
    }),
    EventCategory.SECURITY: frozenset({
        _E.SECURITY_ALERT,
        _E.SUSPICIOUS_ACTIVITY,
    }),
}

CATEGORY_UMBRELLA: dict[EventCategory, WebhookEventType] = {
    EventCategory.INVESTMENT: _E.INVESTMENT_EVENT,
    EventCategory.KYC: _E.KYC_EVENT,
    EventCategory.PROPERTY: _E.PROPERTY_EVENT,
    EventCategory.ROI: _E.ROI_EVENT,
    EventCategory.USER: _E.USER_EVENT,
    EventCategory.WALLET: _E.WALLET_EVENT,
    EventCategory.SYSTEM: _E.SYSTEM_EVENT,
    EventCategory.SECURITY: _E.SECURITY_EVENT,
}


def category_of(event_type: WebhookEventType) -> EventCategory | None:
    """Get the category a specific or umbrella event type belongs to.

    Returns:
        The owning category, or None for uncategorized types.
    """
    for category, umbrella in CATEGORY_UMBRELLA.items():
        if event_type == umbrella or event_type in CATEGORY_EVENTS[category]:
            return category
    return None


def is_valid_event_filter(value: str) -> bool:
    """Check whether a string may appear in a subscription's event list."""
    if value == ALL_EVENTS:
        return True
    return value in WebhookEventType._value2member_map_


class SystemEvent(BaseModel):
    """A business event on its way to subscribers.

    Transient: it is never stored itself, only captured inside the delivery
    records it produces.
    """

    id: str = Field(
        default_factory=lambda: f"evt_{uuid.uuid4().hex[:12]}",
        description="Event identifier, sent as the idempotency key",
    )
    type: WebhookEventType = Field(
        ..., description="Event type used for subscription matching"
    )
    category: EventCategory | None = Field(
        default=None,
        description="Business category (derived from type when omitted)",
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Event-specific data",
    )
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When the event occurred",
    )

    def model_post_init(self, __context: Any) -> None:
        if self.category is None:
            self.category = category_of(self.type)

    @property
    def umbrella_type(self) -> WebhookEventType | None:
        """Umbrella event type of this event's category."""
        if self.category is None:
            return None
        return CATEGORY_UMBRELLA[self.category]

    def to_envelope(self) -> dict[str, Any]:
        """Build the JSON body actually transmitted to subscribers.

        Returns:
            Payload fields plus ``event_type`` and ISO-8601 ``occurred_at``.
        """
        return {
            **self.payload,
            "event_type": self.type.value,
            "occurred_at": self.occurred_at.isoformat(),
        }


def create_system_event(
    event_type: WebhookEventType,
    payload: dict[str, Any],
    *,
    event_id: str | None = None,
    occurred_at: datetime | None = None,
) -> SystemEvent:
    """Create a system event.

    Args:
        event_type: Type of event.
        payload: Event-specific data.
        event_id: Optional custom event ID (reused on replays).
        occurred_at: Optional custom timestamp.

    Returns:
        SystemEvent ready for dispatch.
    """
    event = SystemEvent(type=event_type, payload=payload)

    if event_id:
        event.id = event_id

    if occurred_at:
        event.occurred_at = occurred_at

    return event
