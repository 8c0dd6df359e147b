"""Webhook management API endpoints.

Provides REST API for managing webhook subscriptions, viewing delivery
history, and the administrative operations (stats, retries, secret
rotation, audit logs).

The caller is identified by the ``X-User-Id`` and ``X-User-Role`` headers set
by the authentication layer in front of this service.
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field

from event_relay.config import settings
from event_relay.webhooks.deliveries import DeliveryRecord, get_delivery_log
from event_relay.webhooks.dispatcher import get_webhook_dispatcher
from event_relay.webhooks.manager import (
    Principal,
    WebhookSubscription,
    get_subscription_registry,
)
from event_relay.webhooks.security import generate_secret, verify_signature
from event_relay.webhooks.stats import (
    WebhookPerformance,
    WebhookStats,
    compute_performance,
    compute_stats,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])
admin_router = APIRouter(prefix="/admin/webhooks", tags=["Webhook Administration"])


# ============================================================================
# Dependencies
# ============================================================================


def get_principal(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default="user"),
) -> Principal:
    """Build the calling principal from authentication headers."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return Principal(user_id=x_user_id, role=x_user_role)


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    """Reject callers without the admin role."""
    if not principal.is_admin:
        raise HTTPException(status_code=403, detail="Administrator access required")
    return principal


# ============================================================================
# Request Models
# ============================================================================


class WebhookCreateRequest(BaseModel):
    """Request to create a new webhook subscription."""

    url: str = Field(
        ..., description="Webhook endpoint URL"
    )
    events: list[str] = Field(
        ..., description="Event types to subscribe to, or ['all']"
    )
    secret: str | None = Field(
        default=None,
        description="Signing secret (generated when omitted)",
    )
    description: str = Field(
        default="",
        description="Human-readable description",
    )
    is_active: bool = Field(
        default=True,
        description="Whether the subscription receives deliveries",
    )
    owner_id: str | None = Field(
        default=None,
        description="Owner to create on behalf of (admins only)",
    )


class WebhookUpdateRequest(BaseModel):
    """Request to update a webhook subscription."""

    url: str | None = Field(
        default=None, description="New URL"
    )
    events: list[str] | None = Field(
        default=None, description="New event subscriptions"
    )
    description: str | None = Field(
        default=None, description="New description"
    )
    is_active: bool | None = Field(
        default=None, description="Enable/disable subscription"
    )
    secret: str | None = Field(
        default=None, description="New signing secret"
    )


class VerifySignatureRequest(BaseModel):
    """Payload/signature pair to check against a subscription's secret."""

    payload: dict[str, Any] | str = Field(
        ..., description="Payload as received (object or raw JSON string)"
    )
    signature: str = Field(
        ..., description="Hex signature from the X-Webhook-Signature header"
    )


# ============================================================================
# Response Models
# ============================================================================


class WebhookResponse(BaseModel):
    """Webhook subscription details response."""

    id: str
    owner_id: str | None
    url: str
    events: list[str]
    description: str
    is_active: bool
    failure_count: int
    last_error: str | None
    last_triggered_at: str | None
    created_at: str
    updated_at: str
    secret: str | None = None

    @classmethod
    def from_subscription(
        cls,
        subscription: WebhookSubscription,
        *,
        include_secret: bool = False,
    ) -> "WebhookResponse":
        """Create response from a subscription; the secret is shown on request only."""
        return cls(
            id=subscription.id,
            owner_id=subscription.owner_id,
            url=str(subscription.url),
            events=subscription.events,
            description=subscription.description,
            is_active=subscription.is_active,
            failure_count=subscription.failure_count,
            last_error=subscription.last_error,
            last_triggered_at=subscription.last_triggered_at.isoformat()
            if subscription.last_triggered_at
            else None,
            created_at=subscription.created_at.isoformat(),
            updated_at=subscription.updated_at.isoformat(),
            secret=subscription.secret if include_secret else None,
        )


class DeliveryResponse(BaseModel):
    """Webhook delivery record response."""

    id: str
    subscription_id: str
    event_id: str
    event_type: str
    payload: dict[str, Any]
    response_status: int | None
    response_body: str | None
    duration_ms: int
    success: bool
    error_message: str | None
    delivered_at: str

    @classmethod
    def from_record(cls, record: DeliveryRecord) -> "DeliveryResponse":
        """Create response from a DeliveryRecord."""
        return cls(
            id=record.id,
            subscription_id=record.subscription_id,
            event_id=record.event_id,
            event_type=record.event_type,
            payload=record.payload,
            response_status=record.response_status,
            response_body=record.response_body,
            duration_ms=record.duration_ms,
            success=record.success,
            error_message=record.error_message,
            delivered_at=record.delivered_at.isoformat(),
        )


class TestWebhookResponse(BaseModel):
    """Response from test webhook endpoint."""

    success: bool
    delivery_id: str
    response_status: int | None
    error_message: str | None


class VerifySignatureResponse(BaseModel):
    """Result of a signature check."""

    valid: bool


class RetryResponse(BaseModel):
    """Result of retrying a subscription's failed deliveries."""

    success: bool
    message: str
    retried: int
    succeeded: int
    failed: int
    skipped: int


class Pagination(BaseModel):
    """Pagination block of a paged listing."""

    total: int
    page: int
    limit: int
    pages: int


class AuditLogResponse(BaseModel):
    """One page of a subscription's delivery audit log."""

    data: list[DeliveryResponse]
    pagination: Pagination


# ============================================================================
# Subscription Endpoints
# ============================================================================


@router.post(
    "",
    response_model=WebhookResponse,
    responses={
        201: {"description": "Webhook created"},
        422: {"description": "Invalid subscription"},
    },
    status_code=201,
)
async def create_webhook(
    request: WebhookCreateRequest,
    principal: Principal = Depends(get_principal),
) -> WebhookResponse:
    """Register a new webhook subscription.

    The response is the only place the secret is returned besides rotation.
    """
    registry = get_subscription_registry()

    subscription = registry.create(
        principal,
        url=request.url,
        events=request.events,
        secret=request.secret or generate_secret(settings.WEBHOOK_SECRET_LENGTH),
        description=request.description,
        is_active=request.is_active,
        owner_id=request.owner_id,
    )

    return WebhookResponse.from_subscription(subscription, include_secret=True)


@router.get(
    "",
    response_model=list[WebhookResponse],
)
async def list_webhooks(
    active_only: bool = False,
    event_type: str | None = None,
    principal: Principal = Depends(get_principal),
) -> list[WebhookResponse]:
    """List subscriptions: the caller's own, or all of them for admins."""
    registry = get_subscription_registry()
    subscriptions = registry.list_all(principal, active_only=active_only, event_type=event_type)
    return [WebhookResponse.from_subscription(s) for s in subscriptions]


@router.get(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        403: {"description": "Not owner or admin"},
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
) -> WebhookResponse:
    """Get webhook details by ID."""
    subscription = get_subscription_registry().get_for(webhook_id, principal)
    return WebhookResponse.from_subscription(subscription)


@router.patch(
    "/{webhook_id}",
    response_model=WebhookResponse,
    responses={
        403: {"description": "Not owner or admin"},
        404: {"description": "Webhook not found"},
        422: {"description": "Invalid subscription"},
    },
)
async def update_webhook(
    webhook_id: str,
    request: WebhookUpdateRequest,
    principal: Principal = Depends(get_principal),
) -> WebhookResponse:
    """Update a webhook subscription."""
    updated = get_subscription_registry().update(
        webhook_id,
        principal,
        url=request.url,
        events=request.events,
        description=request.description,
        is_active=request.is_active,
        secret=request.secret,
    )
    return WebhookResponse.from_subscription(updated)


@router.delete(
    "/{webhook_id}",
    responses={
        204: {"description": "Webhook deleted"},
        403: {"description": "Not owner or admin"},
        404: {"description": "Webhook not found"},
    },
    status_code=204,
)
async def delete_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
) -> None:
    """Delete a webhook subscription."""
    get_subscription_registry().delete(webhook_id, principal)


@router.get(
    "/{webhook_id}/deliveries",
    response_model=list[DeliveryResponse],
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def list_webhook_deliveries(
    webhook_id: str,
    limit: int = Query(default=50, ge=1),
    success: bool | None = None,
    principal: Principal = Depends(get_principal),
) -> list[DeliveryResponse]:
    """List delivery attempts for a webhook, most recent first."""
    get_subscription_registry().get_for(webhook_id, principal)

    records = get_delivery_log().list_for_subscription(
        webhook_id,
        limit=min(limit, settings.WEBHOOK_DELIVERY_PAGE_LIMIT),
        success=success,
    )
    return [DeliveryResponse.from_record(r) for r in records]


@router.post(
    "/{webhook_id}/verify",
    response_model=VerifySignatureResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def verify_webhook_signature(
    webhook_id: str,
    request: VerifySignatureRequest,
    principal: Principal = Depends(get_principal),
) -> VerifySignatureResponse:
    """Check a payload/signature pair against the subscription's current secret."""
    subscription = get_subscription_registry().get_for(webhook_id, principal)
    valid = verify_signature(request.payload, request.signature, subscription.secret)
    return VerifySignatureResponse(valid=valid)


@router.post(
    "/{webhook_id}/test",
    response_model=TestWebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def test_webhook(
    webhook_id: str,
    principal: Principal = Depends(get_principal),
) -> TestWebhookResponse:
    """Send a test event to a webhook.

    Sends a ``general`` event with a sample payload to verify the endpoint
    is reachable and accepts signed deliveries.
    """
    delivery = await get_webhook_dispatcher().send_test_event(webhook_id, principal)

    logger.info(
        "webhook_tested",
        webhook_id=webhook_id,
        delivery_id=delivery.id,
        success=delivery.success,
    )

    return TestWebhookResponse(
        success=delivery.success,
        delivery_id=delivery.id,
        response_status=delivery.response_status,
        error_message=delivery.error_message,
    )


# ============================================================================
# Admin Endpoints
# ============================================================================


@admin_router.get("/stats", response_model=WebhookStats)
async def get_webhook_stats(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    _admin: Principal = Depends(require_admin),
) -> WebhookStats:
    """Aggregate delivery statistics (defaults to the last 30 days)."""
    return compute_stats(
        get_subscription_registry(),
        get_delivery_log(),
        start_date,
        end_date,
    )


@admin_router.get("/performance", response_model=WebhookPerformance)
async def get_webhook_performance(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    _admin: Principal = Depends(require_admin),
) -> WebhookPerformance:
    """Daily (or weekly, beyond 60 days) delivery performance."""
    return compute_performance(
        get_subscription_registry(),
        get_delivery_log(),
        start_date,
        end_date,
    )


@admin_router.post(
    "/{webhook_id}/retry",
    response_model=RetryResponse,
    responses={
        404: {"description": "Webhook or failed deliveries not found"},
    },
)
async def retry_failed_deliveries(
    webhook_id: str,
    admin: Principal = Depends(require_admin),
) -> RetryResponse:
    """Re-send every failed delivery of a webhook."""
    result = await get_webhook_dispatcher().retry_failed(webhook_id, admin)

    if result.retried == 0 and result.skipped == 0:
        raise HTTPException(
            status_code=404,
            detail="No failed deliveries found for this webhook",
        )

    return RetryResponse(
        success=True,
        message=f"Retried {result.retried} failed webhook deliveries",
        retried=result.retried,
        succeeded=result.succeeded,
        failed=result.failed,
        skipped=result.skipped,
    )


@admin_router.post(
    "/{webhook_id}/rotate-secret",
    response_model=WebhookResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def rotate_webhook_secret(
    webhook_id: str,
    admin: Principal = Depends(require_admin),
) -> WebhookResponse:
    """Replace a webhook's secret; the old one stops verifying immediately."""
    subscription = get_subscription_registry().rotate_secret(webhook_id, admin)
    return WebhookResponse.from_subscription(subscription, include_secret=True)


@admin_router.get(
    "/{webhook_id}/audit-logs",
    response_model=AuditLogResponse,
    responses={
        404: {"description": "Webhook not found"},
    },
)
async def get_webhook_audit_logs(
    webhook_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1),
    admin: Principal = Depends(require_admin),
) -> AuditLogResponse:
    """Paginated delivery history of a webhook."""
    get_subscription_registry().get_for(webhook_id, admin)

    result = get_delivery_log().page(
        webhook_id,
        page=page,
        limit=min(limit, settings.WEBHOOK_DELIVERY_PAGE_LIMIT),
    )

    return AuditLogResponse(
        data=[DeliveryResponse.from_record(r) for r in result.data],
        pagination=Pagination(
            total=result.total,
            page=result.page,
            limit=result.limit,
            pages=result.pages,
        ),
    )
