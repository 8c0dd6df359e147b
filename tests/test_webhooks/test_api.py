"""Tests for webhook API endpoints."""

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from event_relay.api.app import create_app
from event_relay.webhooks.deliveries import DeliveryLog, DeliveryRecord, set_delivery_log
from event_relay.webhooks.dispatcher import WebhookDispatcher, set_webhook_dispatcher
from event_relay.webhooks.manager import (
    Principal,
    SubscriptionRegistry,
    set_subscription_registry,
)
from event_relay.webhooks.security import generate_signature

USER = {"X-User-Id": "alice"}
OTHER = {"X-User-Id": "mallory"}
ADMIN = {"X-User-Id": "root", "X-User-Role": "admin"}

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create and set test subscription registry."""
    reg = SubscriptionRegistry(secret_min_length=10)
    set_subscription_registry(reg)
    return reg


@pytest.fixture
def delivery_log():
    """Create and set test delivery log."""
    log = DeliveryLog()
    set_delivery_log(log)
    return log


@pytest.fixture
def endpoint_status():
    """Mutable status the fake subscriber answers with."""
    return {"code": 200}


@pytest.fixture
def dispatcher(registry, delivery_log, endpoint_status):
    """Create and set a dispatcher that never leaves the process."""
    disp = WebhookDispatcher(
        registry,
        delivery_log,
        transport=httpx.MockTransport(lambda r: httpx.Response(endpoint_status["code"])),
    )
    set_webhook_dispatcher(disp)
    yield disp
    set_webhook_dispatcher(None)


@pytest.fixture
def client(dispatcher):  # noqa: ARG001
    """Create test client (dispatcher fixture wires the globals)."""
    app = create_app(setup_logging=False)
    return TestClient(app)


@pytest.fixture
def sample_webhook(registry):
    """Create a subscription owned by alice."""
    return registry.create(
        Principal(user_id="alice"),
        url="https://example.com/webhook",
        events=["kyc_approved"],
        secret="alice-secret-123",
        description="Test webhook",
    )


def add_delivery(log, subscription_id, *, success, minutes=0):
    return log.append(
        DeliveryRecord(
            subscription_id=subscription_id,
            event_id=f"evt_{minutes}",
            event_type="kyc_approved",
            payload={"user_id": "u1", "event_type": "kyc_approved"},
            success=success,
            response_status=200 if success else 500,
            error_message=None if success else "HTTP 500",
            delivered_at=datetime.now(UTC) - timedelta(minutes=60 - minutes),
        )
    )


# ============================================================================
# Authentication Tests
# ============================================================================


class TestAuthentication:
    """Tests for caller identification."""

    def test_missing_user_header(self, client):
        """Test that anonymous calls are rejected."""
        response = client.get("/webhooks")

        assert response.status_code == 401
        assert response.json()["error"] == "Authentication required"

    def test_admin_routes_require_admin(self, client):
        """Test that regular users cannot reach admin routes."""
        response = client.get("/admin/webhooks/stats", headers=USER)

        assert response.status_code == 403


# ============================================================================
# Subscription CRUD Tests
# ============================================================================


class TestCreateWebhook:
    """Tests for POST /webhooks endpoint."""

    def test_create_webhook(self, client):
        """Test creating a new webhook."""
        response = client.post(
            "/webhooks",
            headers=USER,
            json={
                "url": "https://example.com/webhook",
                "events": ["kyc_approved", "wallet_funded"],
                "secret": "my-own-secret-value",
                "description": "Test webhook",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["id"].startswith("wh_")
        assert data["owner_id"] == "alice"
        assert data["events"] == ["kyc_approved", "wallet_funded"]
        assert data["is_active"] is True
        assert data["failure_count"] == 0
        assert data["secret"] == "my-own-secret-value"

    def test_secret_generated_when_omitted(self, client):
        """Test that a strong secret is generated."""
        response = client.post(
            "/webhooks",
            headers=USER,
            json={"url": "https://example.com/webhook", "events": ["all"]},
        )

        assert response.status_code == 201
        assert len(response.json()["secret"]) == 32

    @pytest.mark.parametrize(
        "body",
        [
            {"url": "not a url", "events": ["all"]},
            {"url": "https://example.com/h", "events": []},
            {"url": "https://example.com/h", "events": ["made_up"]},
            {"url": "https://example.com/h", "events": ["all"], "secret": "short"},
        ],
    )
    def test_invalid_subscription(self, client, body):
        """Test validation failures map to 422."""
        response = client.post("/webhooks", headers=USER, json=body)

        assert response.status_code == 422
        assert "field" in response.json()["detail"]


class TestReadWebhooks:
    """Tests for listing and fetching webhooks."""

    def test_list_scoped_to_owner(self, client, registry, sample_webhook):
        """Test that users only see their own subscriptions."""
        registry.create(
            Principal(user_id="mallory"),
            url="https://evil.example.com/h",
            events=["all"],
            secret="0123456789",
        )

        mine = client.get("/webhooks", headers=USER).json()
        everything = client.get("/webhooks", headers=ADMIN).json()

        assert [w["id"] for w in mine] == [sample_webhook.id]
        assert len(everything) == 2

    def test_secret_hidden_on_read(self, client, sample_webhook):
        """Test that secrets are not echoed back."""
        response = client.get(f"/webhooks/{sample_webhook.id}", headers=USER)

        assert response.status_code == 200
        assert response.json()["secret"] is None

    def test_other_user_forbidden(self, client, sample_webhook):
        """Test that non-owners get 403."""
        response = client.get(f"/webhooks/{sample_webhook.id}", headers=OTHER)

        assert response.status_code == 403

    def test_not_found(self, client):
        """Test unknown webhook id."""
        response = client.get("/webhooks/wh_missing", headers=USER)

        assert response.status_code == 404
        assert response.json()["detail"]["subscription_id"] == "wh_missing"


class TestUpdateDeleteWebhook:
    """Tests for PATCH and DELETE /webhooks/{id}."""

    def test_update(self, client, sample_webhook):
        """Test partial update."""
        response = client.patch(
            f"/webhooks/{sample_webhook.id}",
            headers=USER,
            json={"is_active": False, "description": "paused"},
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False
        assert response.json()["description"] == "paused"
        assert response.json()["url"] == "https://example.com/webhook"

    def test_update_forbidden(self, client, sample_webhook):
        """Test that another user cannot update."""
        response = client.patch(
            f"/webhooks/{sample_webhook.id}", headers=OTHER, json={"is_active": False}
        )

        assert response.status_code == 403
        assert sample_webhook.is_active is True

    def test_delete(self, client, registry, sample_webhook):
        """Test deletion."""
        response = client.delete(f"/webhooks/{sample_webhook.id}", headers=USER)

        assert response.status_code == 204
        assert registry.get(sample_webhook.id) is None


# ============================================================================
# Delivery / Verify / Test Endpoint Tests
# ============================================================================


class TestDeliveriesEndpoint:
    """Tests for GET /webhooks/{id}/deliveries."""

    def test_list_deliveries(self, client, delivery_log, sample_webhook):
        """Test listing and filtering deliveries."""
        add_delivery(delivery_log, sample_webhook.id, success=True, minutes=1)
        add_delivery(delivery_log, sample_webhook.id, success=False, minutes=2)

        all_items = client.get(
            f"/webhooks/{sample_webhook.id}/deliveries", headers=USER
        ).json()
        failed = client.get(
            f"/webhooks/{sample_webhook.id}/deliveries",
            headers=USER,
            params={"success": "false"},
        ).json()

        assert [d["success"] for d in all_items] == [False, True]
        assert len(failed) == 1
        assert failed[0]["error_message"] == "HTTP 500"


class TestVerifyEndpoint:
    """Tests for POST /webhooks/{id}/verify."""

    def test_valid_signature(self, client, sample_webhook):
        """Test a signature made with the subscription secret."""
        payload = {"user_id": "u1", "event_type": "kyc_approved"}
        signature = generate_signature(payload, sample_webhook.secret)

        response = client.post(
            f"/webhooks/{sample_webhook.id}/verify",
            headers=USER,
            json={"payload": payload, "signature": signature},
        )

        assert response.json() == {"valid": True}

    def test_invalid_signature(self, client, sample_webhook):
        """Test a signature made with another secret."""
        payload = {"user_id": "u1"}

        response = client.post(
            f"/webhooks/{sample_webhook.id}/verify",
            headers=USER,
            json={"payload": payload, "signature": generate_signature(payload, "wrong-secret")},
        )

        assert response.json() == {"valid": False}


class TestTestEndpoint:
    """Tests for POST /webhooks/{id}/test."""

    def test_send_test_event(self, client, delivery_log, sample_webhook):
        """Test that a test delivery is made and recorded."""
        response = client.post(f"/webhooks/{sample_webhook.id}/test", headers=USER)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["response_status"] == 200
        assert delivery_log.get(data["delivery_id"]).event_type == "general"

    def test_failed_test_event(self, client, endpoint_status, sample_webhook):
        """Test that subscriber errors are reported, not raised."""
        endpoint_status["code"] = 503

        data = client.post(f"/webhooks/{sample_webhook.id}/test", headers=USER).json()

        assert data["success"] is False
        assert data["error_message"] == "HTTP 503"


# ============================================================================
# Admin Endpoint Tests
# ============================================================================


class TestAdminStats:
    """Tests for admin reporting endpoints."""

    def test_stats(self, client, delivery_log, sample_webhook):
        """Test aggregate stats over the default range."""
        add_delivery(delivery_log, sample_webhook.id, success=True, minutes=1)
        add_delivery(delivery_log, sample_webhook.id, success=False, minutes=2)

        data = client.get("/admin/webhooks/stats", headers=ADMIN).json()

        assert data["total_webhooks"] == 1
        assert data["total_deliveries"] == 2
        assert data["success_rate"] == 50.0

    def test_performance(self, client, delivery_log, sample_webhook):
        """Test performance report granularity."""
        add_delivery(delivery_log, sample_webhook.id, success=True)
        start = (datetime.now(UTC) - timedelta(days=90)).isoformat()

        data = client.get(
            "/admin/webhooks/performance", headers=ADMIN, params={"start_date": start}
        ).json()

        assert data["granularity"] == "week"
        assert data["subscriptions"][0]["id"] == sample_webhook.id


class TestAdminRetry:
    """Tests for POST /admin/webhooks/{id}/retry."""

    def test_retry(self, client, delivery_log, sample_webhook):
        """Test replaying failed deliveries."""
        sample_webhook.record_failure("HTTP 500")
        add_delivery(delivery_log, sample_webhook.id, success=False)

        response = client.post(f"/admin/webhooks/{sample_webhook.id}/retry", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["retried"] == 1
        assert data["succeeded"] == 1
        assert sample_webhook.failure_count == 0

    def test_retry_nothing_failed(self, client, sample_webhook):
        """Test 404 when there is nothing to retry."""
        response = client.post(f"/admin/webhooks/{sample_webhook.id}/retry", headers=ADMIN)

        assert response.status_code == 404
        assert response.json()["error"] == "No failed deliveries found for this webhook"


class TestAdminSecretAndAudit:
    """Tests for secret rotation and audit logs."""

    def test_rotate_secret(self, client, sample_webhook):
        """Test that rotation returns the new secret once."""
        old_secret = sample_webhook.secret

        response = client.post(
            f"/admin/webhooks/{sample_webhook.id}/rotate-secret", headers=ADMIN
        )

        assert response.status_code == 200
        assert response.json()["secret"] == sample_webhook.secret
        assert sample_webhook.secret != old_secret

    def test_audit_logs_paginated(self, client, delivery_log, sample_webhook):
        """Test audit log pagination block."""
        for minute in range(5):
            add_delivery(delivery_log, sample_webhook.id, success=True, minutes=minute)

        data = client.get(
            f"/admin/webhooks/{sample_webhook.id}/audit-logs",
            headers=ADMIN,
            params={"page": 2, "limit": 2},
        ).json()

        assert data["pagination"] == {"total": 5, "page": 2, "limit": 2, "pages": 3}
        assert [d["event_id"] for d in data["data"]] == ["evt_2", "evt_1"]

    def test_audit_logs_unknown_webhook(self, client):
        """Test 404 for unknown webhook."""
        response = client.get("/admin/webhooks/wh_missing/audit-logs", headers=ADMIN)

        assert response.status_code == 404
