"""Business event emitter.

The single entry point the rest of the application uses to announce that
something happened. Emitting never raises: notification delivery health must
not affect the business operation that triggered it.

Example:
    emitter = get_event_emitter()

    result = await emitter.emit(
        EventCategory.KYC,
        WebhookEventType.KYC_APPROVED,
        {"user_id": "u-1"},
    )

    # Or through the category shortcuts
    result = await emitter.kyc.approved({"user_id": "u-1"})
    if not result.success:
        logger.warning("notification_failed", error=result.error)
"""

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

import structlog

from event_relay.config import settings
from event_relay.webhooks.dispatcher import WebhookDispatcher, get_webhook_dispatcher
from event_relay.webhooks.events import (
    CATEGORY_EVENTS,
    CATEGORY_UMBRELLA,
    EventCategory,
    WebhookEventType,
    create_system_event,
)

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class EmitResult:
    """Outcome of an emit call."""

    success: bool
    error: str | None = None


def enrich_payload(
    event_type: WebhookEventType,
    payload: dict[str, Any],
    environment: str,
) -> dict[str, Any]:
    """Add the standard fields every business event carries."""
    return {
        **payload,
        "event_type": event_type.value,
        "timestamp": datetime.now(UTC).isoformat(),
        "environment": environment,
    }


class CategoryEmitter:
    """Shortcut helpers for one category.

    ``emitter.kyc.approved(payload)`` emits ``kyc_approved``; names are the
    event type without its category prefix.
    """

    def __init__(self, emitter: "EventEmitter", category: EventCategory) -> None:
        self._emitter = emitter
        self._category = category
        prefix = f"{category.value}_"
        self._shortcuts = {
            event_type.value.removeprefix(prefix): event_type
            for event_type in CATEGORY_EVENTS[category]
        }

    @property
    def names(self) -> list[str]:
        return sorted(self._shortcuts)

    def __getattr__(self, name: str) -> Callable[..., Awaitable[EmitResult]]:
        if name.startswith("_") or name not in self._shortcuts:
            raise AttributeError(f"{self._category.value} has no event '{name}'")
        event_type = self._shortcuts[name]

        async def _emit(payload: dict[str, Any], **options: Any) -> EmitResult:
            return await self._emitter.emit(self._category, event_type, payload, **options)

        return _emit


class EventEmitter:
    """Turns business occurrences into webhook dispatches."""

    def __init__(
        self,
        dispatcher: WebhookDispatcher | None = None,
        *,
        environment: str | None = None,
    ) -> None:
        """Initialize the emitter.

        Args:
            dispatcher: Webhook dispatcher (uses global if not provided).
            environment: Deployment tag added to payloads.
        """
        self._dispatcher = dispatcher or get_webhook_dispatcher()
        self._environment = environment or settings.ENVIRONMENT
        self._logger = logger.bind(component="event_emitter")

        self.investment = CategoryEmitter(self, EventCategory.INVESTMENT)
        self.kyc = CategoryEmitter(self, EventCategory.KYC)
        self.property = CategoryEmitter(self, EventCategory.PROPERTY)
        self.roi = CategoryEmitter(self, EventCategory.ROI)
        self.user = CategoryEmitter(self, EventCategory.USER)
        self.wallet = CategoryEmitter(self, EventCategory.WALLET)
        self.system = CategoryEmitter(self, EventCategory.SYSTEM)
        self.security = CategoryEmitter(self, EventCategory.SECURITY)

    async def emit(
        self,
        category: EventCategory,
        event_type: WebhookEventType,
        payload: dict[str, Any],
        *,
        trigger_category_event: bool = True,
        idempotency_key: str | None = None,
        wait: bool = True,
    ) -> EmitResult:
        """Emit a business event.

        Dispatches the specific event and then, unless disabled, the
        category's umbrella event carrying ``specific_event_type``.

        Args:
            category: Business category.
            event_type: Specific event type within the category.
            payload: Event data.
            trigger_category_event: Also dispatch the umbrella event.
            idempotency_key: Stable id for the specific event's deliveries.
            wait: Wait for deliveries to settle.

        Returns:
            EmitResult; failures are reported here, never raised.
        """
        try:
            event_type = WebhookEventType(event_type)
            category = EventCategory(category)

            self._logger.info(
                "business_event_triggered",
                category=category.value,
                event_type=event_type.value,
                idempotency_key=idempotency_key,
                payload_size=len(json.dumps(payload, default=str)),
            )

            if event_type not in CATEGORY_EVENTS[category]:
                raise ValueError(
                    f"Event type '{event_type.value}' does not belong to category "
                    f"'{category.value}'"
                )

            enriched = enrich_payload(event_type, payload, self._environment)

            specific = create_system_event(event_type, enriched, event_id=idempotency_key)
            await self._dispatcher.dispatch(specific, wait=wait)

            if trigger_category_event:
                umbrella_type = CATEGORY_UMBRELLA[category]
                umbrella = create_system_event(
                    umbrella_type,
                    {
                        **enriched,
                        "event_type": umbrella_type.value,
                        "specific_event_type": event_type.value,
                    },
                    event_id=f"{idempotency_key}-category" if idempotency_key else None,
                )
                await self._dispatcher.dispatch(umbrella, wait=wait)

            self._logger.info(
                "business_event_completed",
                category=category.value,
                event_type=event_type.value,
            )
            return EmitResult(success=True)

        except Exception as e:
            self._logger.error(
                "business_event_failed",
                category=getattr(category, "value", category),
                event_type=getattr(event_type, "value", event_type),
                error=str(e),
                exc_info=True,
            )
            return EmitResult(success=False, error=str(e))


# Global emitter instance
_emitter: EventEmitter | None = None


def get_event_emitter() -> EventEmitter:
    """Get the global event emitter.

    Returns:
        Singleton EventEmitter.
    """
    global _emitter
    if _emitter is None:
        _emitter = EventEmitter()
    return _emitter


def set_event_emitter(emitter: EventEmitter | None) -> None:
    """Set the global event emitter.

    Useful for testing.
    """
    global _emitter
    _emitter = emitter
