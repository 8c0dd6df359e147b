"""Webhook subscription registry.

Provides storage and management of webhook subscriptions, restricted to the
subscription owner or an administrator, plus the health bookkeeping the
dispatcher performs after every delivery attempt.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog
from pydantic import BaseModel, Field, HttpUrl, ValidationError

from event_relay.config import settings
from event_relay.errors import (
    InvalidSubscriptionError,
    PermissionDeniedError,
    SubscriptionNotFoundError,
)
from event_relay.webhooks.events import ALL_EVENTS, WebhookEventType, is_valid_event_filter
from event_relay.webhooks.security import generate_secret

logger = structlog.get_logger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Principal:
    """The caller on whose behalf a registry operation runs.

    Supplied by the surrounding authentication layer.
    """

    user_id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    def can_manage(self, subscription: WebhookSubscription) -> bool:
        """Owners manage their own subscriptions; admins manage all."""
        return self.is_admin or subscription.owner_id == self.user_id


class WebhookSubscription(BaseModel):
    """A registered webhook subscription."""

    id: str = Field(
        default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}",
        description="Unique subscription identifier",
    )
    owner_id: str | None = Field(
        default=None,
        description="Owning user (None = platform-wide)",
    )
    url: HttpUrl = Field(
        ..., description="Webhook endpoint URL"
    )
    events: list[str] = Field(
        ..., description="Subscribed event types, or the 'all' sentinel"
    )
    secret: str = Field(
        ..., description="Secret key for HMAC signature"
    )
    description: str = Field(
        default="",
        description="Human-readable description",
    )
    is_active: bool = Field(
        default=True,
        description="Whether the subscription receives deliveries",
    )

    # Health
    failure_count: int = Field(
        default=0,
        ge=0,
        description="Consecutive failed deliveries",
    )
    last_error: str | None = Field(
        default=None,
        description="Error text of the most recent failure",
    )
    last_triggered_at: datetime | None = Field(
        default=None,
        description="Last delivery attempt",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When subscription was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        description="When subscription was last updated",
    )

    def should_receive_event(self, event_type: WebhookEventType | str) -> bool:
        """Check if this subscription matches an event type.

        Args:
            event_type: Event type to check.

        Returns:
            True for an exact match or the 'all' sentinel.
        """
        value = event_type.value if isinstance(event_type, WebhookEventType) else event_type
        return ALL_EVENTS in self.events or value in self.events

    def record_success(self) -> None:
        """Reset health after a successful delivery."""
        self.failure_count = 0
        self.last_error = None
        self.last_triggered_at = datetime.now(UTC)

    def record_failure(self, error: str) -> None:
        """Count a failed delivery."""
        self.failure_count += 1
        self.last_error = error
        self.last_triggered_at = datetime.now(UTC)


# Global registry instance
_registry: SubscriptionRegistry | None = None


class SubscriptionRegistry:
    """Manages webhook subscriptions.

    Provides CRUD operations restricted to owners and administrators, and
    lookups used by the dispatcher.
    """

    def __init__(self, *, secret_min_length: int | None = None) -> None:
        """Initialize the registry.

        Args:
            secret_min_length: Minimum accepted secret length.
        """
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._secret_min_length = (
            secret_min_length
            if secret_min_length is not None
            else settings.WEBHOOK_SECRET_MIN_LENGTH
        )
        self._logger = logger.bind(component="subscription_registry")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_events(self, events: list[str]) -> list[str]:
        if not events:
            raise InvalidSubscriptionError(
                "At least one event must be specified", field="events"
            )
        unknown = [e for e in events if not is_valid_event_filter(e)]
        if unknown:
            raise InvalidSubscriptionError(
                f"Unknown event types: {', '.join(unknown)}", field="events"
            )
        # Preserve order, drop duplicates
        return list(dict.fromkeys(events))

    def _validate_secret(self, secret: str) -> str:
        if len(secret) < self._secret_min_length:
            raise InvalidSubscriptionError(
                f"Secret must be at least {self._secret_min_length} characters long",
                field="secret",
            )
        return secret

    def _authorize(self, subscription_id: str, principal: Principal) -> WebhookSubscription:
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError(subscription_id)
        if not principal.can_manage(subscription):
            self._logger.warning(
                "subscription_access_denied",
                subscription_id=subscription_id,
                user_id=principal.user_id,
            )
            raise PermissionDeniedError(user_id=principal.user_id)
        return subscription

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(
        self,
        principal: Principal,
        *,
        url: str,
        events: list[str],
        secret: str,
        description: str = "",
        is_active: bool = True,
        owner_id: str | None = None,
    ) -> WebhookSubscription:
        """Register a new subscription.

        Non-admins always own what they create. Admins may create on behalf
        of a user via ``owner_id``; without one the subscription is
        platform-wide.

        Raises:
            InvalidSubscriptionError: If url, events or secret are invalid.
        """
        if principal.is_admin:
            owner = owner_id
        else:
            owner = principal.user_id

        try:
            subscription = WebhookSubscription(
                owner_id=owner,
                url=url,  # type: ignore[arg-type]
                events=self._validate_events(events),
                secret=self._validate_secret(secret),
                description=description,
                is_active=is_active,
            )
        except ValidationError as e:
            raise InvalidSubscriptionError("Must be a valid URL", field="url") from e

        self._subscriptions[subscription.id] = subscription

        self._logger.info(
            "subscription_created",
            subscription_id=subscription.id,
            owner_id=owner,
            url=str(subscription.url),
            event_count=len(subscription.events),
        )

        return subscription

    def get(self, subscription_id: str) -> WebhookSubscription | None:
        """Get a subscription by ID without an ownership check.

        Args:
            subscription_id: Subscription identifier.

        Returns:
            Subscription if found, None otherwise.
        """
        return self._subscriptions.get(subscription_id)

    def get_for(self, subscription_id: str, principal: Principal) -> WebhookSubscription:
        """Get a subscription the principal may manage.

        Raises:
            SubscriptionNotFoundError: If it does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
        """
        return self._authorize(subscription_id, principal)

    def list_all(
        self,
        principal: Principal | None = None,
        *,
        active_only: bool = False,
        event_type: WebhookEventType | str | None = None,
    ) -> list[WebhookSubscription]:
        """List subscriptions visible to a principal.

        Args:
            principal: Caller; None or an admin sees everything.
            active_only: Only return active subscriptions.
            event_type: Filter by event type subscription.

        Returns:
            List of matching subscriptions.
        """
        subscriptions = list(self._subscriptions.values())

        if principal is not None and not principal.is_admin:
            subscriptions = [s for s in subscriptions if s.owner_id == principal.user_id]

        if active_only:
            subscriptions = [s for s in subscriptions if s.is_active]

        if event_type:
            subscriptions = [s for s in subscriptions if s.should_receive_event(event_type)]

        return subscriptions

    def count(self, *, active_only: bool = False) -> int:
        if active_only:
            return sum(1 for s in self._subscriptions.values() if s.is_active)
        return len(self._subscriptions)

    def update(
        self,
        subscription_id: str,
        principal: Principal,
        *,
        url: str | None = None,
        events: list[str] | None = None,
        description: str | None = None,
        is_active: bool | None = None,
        secret: str | None = None,
    ) -> WebhookSubscription:
        """Update a subscription.

        Changing ``url`` or ``events`` leaves the failure counter untouched.

        Raises:
            SubscriptionNotFoundError: If it does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
            InvalidSubscriptionError: If a new value is invalid.
        """
        subscription = self._authorize(subscription_id, principal)

        changes: dict[str, object] = {}
        if url is not None:
            changes["url"] = url
        if events is not None:
            changes["events"] = self._validate_events(events)
        if description is not None:
            changes["description"] = description
        if is_active is not None:
            changes["is_active"] = is_active
        if secret is not None:
            changes["secret"] = self._validate_secret(secret)

        try:
            # Validate through the model before mutating the stored copy
            updated = WebhookSubscription.model_validate(
                {**subscription.model_dump(), **changes, "updated_at": datetime.now(UTC)}
            )
        except ValidationError as e:
            raise InvalidSubscriptionError("Must be a valid URL", field="url") from e

        for field_name in changes:
            setattr(subscription, field_name, getattr(updated, field_name))
        subscription.updated_at = updated.updated_at

        self._logger.info(
            "subscription_updated",
            subscription_id=subscription_id,
            fields=sorted(changes),
        )

        return subscription

    def delete(self, subscription_id: str, principal: Principal) -> None:
        """Delete a subscription.

        Raises:
            SubscriptionNotFoundError: If it does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
        """
        self._authorize(subscription_id, principal)
        del self._subscriptions[subscription_id]
        self._logger.info("subscription_deleted", subscription_id=subscription_id)

    def rotate_secret(
        self,
        subscription_id: str,
        principal: Principal,
        *,
        length: int | None = None,
    ) -> WebhookSubscription:
        """Replace a subscription's secret with a freshly generated one.

        The new secret takes effect immediately; deliveries already signed
        with the old secret are not re-signed.

        Raises:
            SubscriptionNotFoundError: If it does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
        """
        subscription = self._authorize(subscription_id, principal)
        subscription.secret = generate_secret(length or settings.WEBHOOK_SECRET_LENGTH)
        subscription.updated_at = datetime.now(UTC)

        self._logger.info("subscription_secret_rotated", subscription_id=subscription_id)

        return subscription

    # ------------------------------------------------------------------
    # Dispatcher hooks
    # ------------------------------------------------------------------

    def get_subscriptions_for_event(
        self, event_type: WebhookEventType | str
    ) -> list[WebhookSubscription]:
        """Get all active subscriptions that should receive an event type.

        Args:
            event_type: Event type.

        Returns:
            Active subscriptions matching exactly or via 'all'.
        """
        return [
            subscription
            for subscription in self._subscriptions.values()
            if subscription.is_active and subscription.should_receive_event(event_type)
        ]

    def record_delivery_result(
        self,
        subscription_id: str,
        *,
        success: bool,
        error: str | None = None,
    ) -> WebhookSubscription | None:
        """Update subscription health after a delivery attempt.

        A subscription deleted while its delivery was in flight stays deleted.

        Returns:
            The updated subscription, or None if it no longer exists.
        """
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            self._logger.debug(
                "delivery_result_for_deleted_subscription",
                subscription_id=subscription_id,
            )
            return None

        if success:
            subscription.record_success()
        else:
            subscription.record_failure(error or "Unknown error")
        return subscription

    def reset_failures(self, subscription_id: str) -> WebhookSubscription | None:
        """Clear failure count and last error."""
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            return None
        subscription.failure_count = 0
        subscription.last_error = None
        return subscription


def get_subscription_registry() -> SubscriptionRegistry:
    """Get the global subscription registry instance.

    Returns:
        Singleton SubscriptionRegistry.
    """
    global _registry
    if _registry is None:
        _registry = SubscriptionRegistry()
    return _registry


def set_subscription_registry(registry: SubscriptionRegistry) -> None:
    """Set the global subscription registry instance.

    Useful for testing.

    Args:
        registry: SubscriptionRegistry instance.
    """
    global _registry
    _registry = registry
