"""Webhook dispatch engine for external integrations.

This module provides:
- WebhookEventType / EventCategory: the business event taxonomy
- SubscriptionRegistry: registration and management of subscriptions
- WebhookDispatcher: concurrent signed delivery with health tracking
- DeliveryLog: append-only record of every delivery attempt
- EventEmitter: the business-facing emit() entry point
- HMAC signature generation and verification
"""

from event_relay.webhooks.deliveries import (
    DeliveryLog,
    DeliveryPage,
    DeliveryRecord,
    get_delivery_log,
    set_delivery_log,
)
from event_relay.webhooks.dispatcher import (
    RetryResult,
    WebhookDispatcher,
    get_webhook_dispatcher,
    set_webhook_dispatcher,
)
from event_relay.webhooks.emitter import (
    EmitResult,
    EventEmitter,
    get_event_emitter,
    set_event_emitter,
)
from event_relay.webhooks.events import (
    ALL_EVENTS,
    CATEGORY_EVENTS,
    CATEGORY_UMBRELLA,
    EventCategory,
    SystemEvent,
    WebhookEventType,
    create_system_event,
)
from event_relay.webhooks.manager import (
    Principal,
    SubscriptionRegistry,
    WebhookSubscription,
    get_subscription_registry,
    set_subscription_registry,
)
from event_relay.webhooks.security import (
    generate_secret,
    generate_signature,
    verify_from_headers,
    verify_signature,
)
from event_relay.webhooks.stats import compute_performance, compute_stats

__all__ = [
    # Events
    "ALL_EVENTS",
    "CATEGORY_EVENTS",
    "CATEGORY_UMBRELLA",
    "EventCategory",
    "SystemEvent",
    "WebhookEventType",
    "create_system_event",
    # Registry
    "Principal",
    "SubscriptionRegistry",
    "WebhookSubscription",
    "get_subscription_registry",
    "set_subscription_registry",
    # Delivery log
    "DeliveryLog",
    "DeliveryPage",
    "DeliveryRecord",
    "get_delivery_log",
    "set_delivery_log",
    # Dispatcher
    "RetryResult",
    "WebhookDispatcher",
    "get_webhook_dispatcher",
    "set_webhook_dispatcher",
    # Emitter
    "EmitResult",
    "EventEmitter",
    "get_event_emitter",
    "set_event_emitter",
    # Reporting
    "compute_performance",
    "compute_stats",
    # Security
    "generate_secret",
    "generate_signature",
    "verify_from_headers",
    "verify_signature",
]
