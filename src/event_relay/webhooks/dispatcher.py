"""Webhook event dispatcher.

Matches an event to active subscriptions and delivers a signed envelope to
each of them concurrently. Every attempt is written to the delivery log and
updates the subscription's health. One subscriber failing never affects
delivery to the others.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from event_relay.config import settings
from event_relay.webhooks.deliveries import DeliveryLog, DeliveryRecord, get_delivery_log
from event_relay.webhooks.events import (
    ENVELOPE_FIELDS,
    SystemEvent,
    WebhookEventType,
    create_system_event,
)
from event_relay.webhooks.manager import (
    Principal,
    SubscriptionRegistry,
    WebhookSubscription,
    get_subscription_registry,
)
from event_relay.webhooks.security import canonical_json, create_signature_headers

logger = structlog.get_logger(__name__)

# Type for event listeners
EventListener = Callable[[SystemEvent], Awaitable[None] | None]


@dataclass
class RetryResult:
    """Outcome of replaying a subscription's failed deliveries."""

    subscription_id: str
    retried: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0


def is_success_status(status_code: int) -> bool:
    return 200 <= status_code < 300


class WebhookDispatcher:
    """Dispatches events to subscribed webhook endpoints.

    Features:
    - Concurrent fan-out with a hard per-delivery timeout
    - HMAC signature and idempotency key on every delivery
    - Append-only delivery log, one record per attempt
    - Subscription health tracking (failure count, last error)
    - Event listeners for local handling
    """

    def __init__(
        self,
        registry: SubscriptionRegistry | None = None,
        delivery_log: DeliveryLog | None = None,
        *,
        delivery_timeout: float | None = None,
        max_concurrent_deliveries: int | None = None,
        user_agent: str | None = None,
        response_body_limit: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            registry: Subscription registry (uses global if not provided).
            delivery_log: Delivery log (uses global if not provided).
            delivery_timeout: Hard timeout per delivery in seconds.
            max_concurrent_deliveries: Max concurrent delivery requests.
            user_agent: User agent identifying the platform.
            response_body_limit: Characters of response body to keep.
            transport: Optional httpx transport (used by tests).
        """
        self._registry = registry if registry is not None else get_subscription_registry()
        self._log = delivery_log if delivery_log is not None else get_delivery_log()
        self._delivery_timeout = delivery_timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self._max_concurrent = max_concurrent_deliveries or settings.WEBHOOK_MAX_CONCURRENT
        self._semaphore = asyncio.Semaphore(self._max_concurrent)
        self._user_agent = user_agent or settings.WEBHOOK_USER_AGENT
        self._body_limit = response_body_limit or settings.WEBHOOK_RESPONSE_BODY_LIMIT
        self._transport = transport
        self._listeners: list[EventListener] = []
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._logger = logger.bind(component="webhook_dispatcher")

    @property
    def registry(self) -> SubscriptionRegistry:
        return self._registry

    @property
    def delivery_log(self) -> DeliveryLog:
        return self._log

    def add_listener(self, listener: EventListener) -> None:
        """Add a local event listener.

        Listeners are called for every dispatched event, useful for local
        processing in addition to webhooks.

        Args:
            listener: Async or sync function to call with events.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: EventListener) -> None:
        """Remove a local event listener.

        Args:
            listener: Listener to remove.
        """
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._delivery_timeout, transport=self._transport)

    async def dispatch(
        self,
        event: SystemEvent,
        *,
        wait: bool = True,
    ) -> list[DeliveryRecord]:
        """Dispatch an event to all matching active subscriptions.

        Args:
            event: Event to send.
            wait: If True, wait until every delivery has settled. Otherwise
                deliveries run as tracked background tasks.

        Returns:
            Delivery records created (empty when not waiting).
        """
        self._logger.info(
            "dispatching_event",
            event_id=event.id,
            event_type=event.type.value,
        )

        await self._notify_listeners(event)

        subscriptions = self._registry.get_subscriptions_for_event(event.type)

        if not subscriptions:
            self._logger.debug(
                "no_subscriptions_matched",
                event_type=event.type.value,
            )
            return []

        if not wait:
            task = asyncio.create_task(self._fan_out(event, subscriptions))
            self._background_tasks.add(task)
            task.add_done_callback(self._background_tasks.discard)
            return []

        return await self._fan_out(event, subscriptions)

    async def dispatch_event(
        self,
        event_type: WebhookEventType,
        payload: dict[str, Any],
        *,
        wait: bool = True,
    ) -> list[DeliveryRecord]:
        """Convenience method to dispatch by event type and payload.

        Args:
            event_type: Type of event.
            payload: Event payload.
            wait: If True, wait for deliveries.

        Returns:
            List of delivery records.
        """
        event = SystemEvent(type=event_type, payload=payload)
        return await self.dispatch(event, wait=wait)

    async def _notify_listeners(self, event: SystemEvent) -> None:
        """Notify local event listeners.

        Args:
            event: Event to notify about.
        """
        for listener in self._listeners:
            try:
                result = listener(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                self._logger.warning(
                    "listener_error",
                    event_id=event.id,
                    error=str(e),
                )

    async def _fan_out(
        self,
        event: SystemEvent,
        subscriptions: list[WebhookSubscription],
    ) -> list[DeliveryRecord]:
        envelope = event.to_envelope()

        async with self._client() as client:
            results = await asyncio.gather(
                *(self._deliver(client, s, event, envelope) for s in subscriptions),
                return_exceptions=True,
            )

        records: list[DeliveryRecord] = []
        for subscription, result in zip(subscriptions, results, strict=True):
            if isinstance(result, BaseException):
                self._logger.error(
                    "delivery_branch_crashed",
                    event_id=event.id,
                    subscription_id=subscription.id,
                    error=str(result),
                )
                continue
            records.append(result)

        self._logger.info(
            "event_dispatched",
            event_id=event.id,
            subscription_count=len(subscriptions),
            success_count=sum(1 for r in records if r.success),
        )

        return records

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        subscription: WebhookSubscription,
        event: SystemEvent,
        envelope: dict[str, Any],
    ) -> DeliveryRecord:
        """Make a single delivery attempt and record its outcome.

        Args:
            client: Shared HTTP client for this fan-out.
            subscription: Target subscription.
            event: Event being delivered.
            envelope: Body to send.

        Returns:
            The delivery record written to the log.
        """
        body = canonical_json(envelope)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self._user_agent,
            **create_signature_headers(
                envelope,
                subscription.secret,
                event_type=event.type.value,
                idempotency_key=event.id,
            ),
        }

        self._logger.debug(
            "attempting_delivery",
            subscription_id=subscription.id,
            event_id=event.id,
            url=str(subscription.url),
        )

        response_status: int | None = None
        response_body: str | None = None
        error_message: str | None = None
        success = False

        start = time.monotonic()
        try:
            async with self._semaphore:
                response = await asyncio.wait_for(
                    client.post(str(subscription.url), content=body, headers=headers),
                    timeout=self._delivery_timeout,
                )

            response_status = response.status_code
            response_body = response.text[: self._body_limit] if response.text else None
            success = is_success_status(response.status_code)
            if not success:
                error_message = f"HTTP {response.status_code}"
                self._logger.warning(
                    "delivery_non_success_response",
                    subscription_id=subscription.id,
                    status_code=response.status_code,
                )

        except (TimeoutError, httpx.TimeoutException):
            error_message = f"Request timeout after {self._delivery_timeout * 1000:.0f}ms"
            self._logger.warning(
                "delivery_timeout",
                subscription_id=subscription.id,
                timeout=self._delivery_timeout,
            )

        except httpx.ConnectError as e:
            error_message = f"Connection error: {e}"
            self._logger.warning(
                "delivery_connection_error",
                subscription_id=subscription.id,
                error=str(e),
            )

        except Exception as e:
            error_message = str(e) or type(e).__name__
            self._logger.warning(
                "delivery_unexpected_error",
                subscription_id=subscription.id,
                error=error_message,
            )

        duration_ms = int((time.monotonic() - start) * 1000)

        record = self._log.append(
            DeliveryRecord(
                subscription_id=subscription.id,
                event_id=event.id,
                event_type=event.type.value,
                payload=envelope,
                response_status=response_status,
                response_body=response_body,
                duration_ms=duration_ms,
                success=success,
                error_message=error_message,
            )
        )
        self._registry.record_delivery_result(
            subscription.id, success=success, error=error_message
        )

        if success:
            self._logger.info(
                "delivery_success",
                delivery_id=record.id,
                subscription_id=subscription.id,
                status_code=response_status,
                duration_ms=duration_ms,
            )

        return record

    async def retry_failed(
        self,
        subscription_id: str,
        principal: Principal,
    ) -> RetryResult:
        """Replay every failed delivery of a subscription.

        Each failed record is re-sent as a fresh event with its original type,
        payload and idempotency key to this subscription only, producing new
        delivery records. Other subscribers of the event are not re-sent to. The
        subscription's failure count and last error are then reset. Replays
        stop as soon as the subscription is deleted or deactivated.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
        """
        self._registry.get_for(subscription_id, principal)
        failed = self._log.failed_for_subscription(subscription_id)
        result = RetryResult(subscription_id=subscription_id)

        if not failed:
            return result

        self._logger.info(
            "retrying_failed_deliveries",
            subscription_id=subscription_id,
            count=len(failed),
        )

        async with self._client() as client:
            outcomes = await asyncio.gather(
                *(self._replay(client, record) for record in failed),
                return_exceptions=True,
            )

        for outcome in outcomes:
            if outcome is None:
                result.skipped += 1
            elif isinstance(outcome, BaseException):
                result.retried += 1
                result.failed += 1
            else:
                result.retried += 1
                if outcome.success:
                    result.succeeded += 1
                else:
                    result.failed += 1

        self._registry.reset_failures(subscription_id)

        self._logger.info(
            "failed_deliveries_retried",
            subscription_id=subscription_id,
            retried=result.retried,
            succeeded=result.succeeded,
            skipped=result.skipped,
        )

        return result

    async def _replay(
        self,
        client: httpx.AsyncClient,
        record: DeliveryRecord,
    ) -> DeliveryRecord | None:
        subscription = self._registry.get(record.subscription_id)
        if subscription is None or not subscription.is_active:
            return None

        payload = {k: v for k, v in record.payload.items() if k not in ENVELOPE_FIELDS}
        event = create_system_event(
            WebhookEventType(record.event_type),
            payload,
            event_id=record.event_id,
        )
        return await self._deliver(client, subscription, event, event.to_envelope())

    async def send_test_event(self, subscription_id: str, principal: Principal) -> DeliveryRecord:
        """Send a test event to one subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist.
            PermissionDeniedError: If the principal is not owner or admin.
        """
        subscription = self._registry.get_for(subscription_id, principal)

        test_event = SystemEvent(
            type=WebhookEventType.GENERAL,
            payload={
                "test": True,
                "message": "This is a test webhook delivery",
                "webhook_id": subscription_id,
            },
        )
        test_event.id = f"test_{test_event.id}"

        async with self._client() as client:
            return await self._deliver(client, subscription, test_event, test_event.to_envelope())

    async def shutdown(self) -> None:
        """Wait for background deliveries to finish."""
        if self._background_tasks:
            self._logger.info(
                "waiting_for_pending_deliveries",
                count=len(self._background_tasks),
            )
            await asyncio.gather(*self._background_tasks, return_exceptions=True)


# Global dispatcher instance
_dispatcher: WebhookDispatcher | None = None


def get_webhook_dispatcher() -> WebhookDispatcher:
    """Get the global webhook dispatcher.

    Returns:
        Singleton WebhookDispatcher.
    """
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher()
    return _dispatcher


def set_webhook_dispatcher(dispatcher: WebhookDispatcher | None) -> None:
    """Set the global webhook dispatcher.

    Useful for testing.

    Args:
        dispatcher: WebhookDispatcher instance, or None to reset.
    """
    global _dispatcher
    _dispatcher = dispatcher
