"""Tests for webhook subscription registry."""

import pytest

from event_relay.errors import (
    InvalidSubscriptionError,
    PermissionDeniedError,
    SubscriptionNotFoundError,
)
from event_relay.webhooks.events import WebhookEventType
from event_relay.webhooks.manager import (
    Principal,
    SubscriptionRegistry,
    WebhookSubscription,
    get_subscription_registry,
    set_subscription_registry,
)
from event_relay.webhooks.security import generate_signature, verify_signature

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def registry():
    """Create a fresh registry for each test."""
    return SubscriptionRegistry(secret_min_length=10)


@pytest.fixture
def alice():
    return Principal(user_id="alice")


@pytest.fixture
def bob():
    return Principal(user_id="bob")


@pytest.fixture
def admin():
    return Principal(user_id="root", role="admin")


@pytest.fixture
def subscription(registry, alice):
    """A subscription owned by alice."""
    return registry.create(
        alice,
        url="https://example.com/hooks",
        events=["kyc_approved", "wallet_funded"],
        secret="a-long-enough-secret",
        description="alice hook",
    )


# ============================================================================
# WebhookSubscription Tests
# ============================================================================


class TestWebhookSubscription:
    """Tests for WebhookSubscription model."""

    def test_should_receive_exact_match(self):
        """Test exact event type matching."""
        sub = WebhookSubscription(
            url="https://example.com/h", events=["kyc_approved"], secret="x" * 12
        )

        assert sub.should_receive_event(WebhookEventType.KYC_APPROVED)
        assert sub.should_receive_event("kyc_approved")
        assert not sub.should_receive_event(WebhookEventType.KYC_REJECTED)

    def test_all_sentinel_matches_everything(self):
        """Test that 'all' receives every type."""
        sub = WebhookSubscription(url="https://example.com/h", events=["all"], secret="x" * 12)

        assert all(sub.should_receive_event(t) for t in WebhookEventType)

    def test_health_counters(self):
        """Test failure counting and reset on success."""
        sub = WebhookSubscription(url="https://example.com/h", events=["all"], secret="x" * 12)

        sub.record_failure("HTTP 500")
        sub.record_failure("HTTP 502")
        assert sub.failure_count == 2
        assert sub.last_error == "HTTP 502"
        assert sub.last_triggered_at is not None

        sub.record_success()
        assert sub.failure_count == 0
        assert sub.last_error is None


# ============================================================================
# Create Tests
# ============================================================================


class TestCreate:
    """Tests for subscription creation."""

    def test_create_sets_owner(self, registry, alice):
        """Test that non-admins always own their subscriptions."""
        sub = registry.create(
            alice,
            url="https://example.com/h",
            events=["all"],
            secret="0123456789",
            owner_id="someone-else",
        )

        assert sub.owner_id == "alice"
        assert sub.id.startswith("wh_")
        assert sub.failure_count == 0
        assert registry.get(sub.id) is sub

    def test_admin_may_create_platform_wide(self, registry, admin):
        """Test that admin-created subscriptions without owner are platform-wide."""
        sub = registry.create(
            admin, url="https://example.com/h", events=["all"], secret="0123456789"
        )

        assert sub.owner_id is None

    def test_admin_may_create_for_user(self, registry, admin):
        """Test that admins may assign an owner."""
        sub = registry.create(
            admin,
            url="https://example.com/h",
            events=["all"],
            secret="0123456789",
            owner_id="bob",
        )

        assert sub.owner_id == "bob"

    def test_duplicate_events_collapsed(self, registry, alice):
        """Test that repeated event names are stored once."""
        sub = registry.create(
            alice,
            url="https://example.com/h",
            events=["kyc_approved", "kyc_approved", "user_login"],
            secret="0123456789",
        )

        assert sub.events == ["kyc_approved", "user_login"]

    @pytest.mark.parametrize(
        ("kwargs", "field"),
        [
            ({"url": "not-a-url"}, "url"),
            ({"events": []}, "events"),
            ({"events": ["made_up_event"]}, "events"),
            ({"secret": "short"}, "secret"),
        ],
    )
    def test_invalid_input_rejected(self, registry, alice, kwargs, field):
        """Test validation of url, events and secret."""
        params = {
            "url": "https://example.com/h",
            "events": ["all"],
            "secret": "0123456789",
            **kwargs,
        }

        with pytest.raises(InvalidSubscriptionError) as exc_info:
            registry.create(alice, **params)

        assert exc_info.value.details["field"] == field
        assert registry.count() == 0


# ============================================================================
# Access Control Tests
# ============================================================================


class TestAccessControl:
    """Tests for owner/admin restrictions."""

    def test_owner_can_read(self, registry, subscription, alice):
        """Test that the owner can fetch their subscription."""
        assert registry.get_for(subscription.id, alice) is subscription

    def test_other_user_denied(self, registry, subscription, bob):
        """Test that another user cannot read, update or delete."""
        with pytest.raises(PermissionDeniedError):
            registry.get_for(subscription.id, bob)
        with pytest.raises(PermissionDeniedError):
            registry.update(subscription.id, bob, description="hijack")
        with pytest.raises(PermissionDeniedError):
            registry.delete(subscription.id, bob)

        assert subscription.description == "alice hook"

    def test_admin_can_manage_any(self, registry, subscription, admin):
        """Test that admins bypass ownership."""
        registry.update(subscription.id, admin, is_active=False)

        assert subscription.is_active is False

    def test_missing_subscription(self, registry, alice):
        """Test not-found error."""
        with pytest.raises(SubscriptionNotFoundError):
            registry.get_for("wh_missing", alice)

    def test_list_scoped_to_owner(self, registry, subscription, alice, bob, admin):
        """Test that listing only returns visible subscriptions."""
        registry.create(bob, url="https://example.com/b", events=["all"], secret="0123456789")

        assert [s.id for s in registry.list_all(alice)] == [subscription.id]
        assert len(registry.list_all(bob)) == 1
        assert len(registry.list_all(admin)) == 2
        assert len(registry.list_all()) == 2


# ============================================================================
# Update / Delete Tests
# ============================================================================


class TestUpdate:
    """Tests for subscription updates."""

    def test_update_fields(self, registry, subscription, alice):
        """Test updating several fields at once."""
        before = subscription.updated_at

        updated = registry.update(
            subscription.id,
            alice,
            url="https://example.com/new",
            events=["all"],
            description="changed",
        )

        assert str(updated.url) == "https://example.com/new"
        assert updated.events == ["all"]
        assert updated.description == "changed"
        assert updated.updated_at >= before

    def test_update_keeps_failure_count(self, registry, subscription, alice):
        """Test that changing url or events does not reset health."""
        registry.record_delivery_result(subscription.id, success=False, error="HTTP 500")
        registry.record_delivery_result(subscription.id, success=False, error="HTTP 500")

        registry.update(subscription.id, alice, url="https://example.com/other", events=["all"])

        assert subscription.failure_count == 2
        assert subscription.last_error == "HTTP 500"

    def test_invalid_update_leaves_subscription_intact(self, registry, subscription, alice):
        """Test that a rejected update changes nothing."""
        with pytest.raises(InvalidSubscriptionError):
            registry.update(subscription.id, alice, url="nope", description="changed")

        assert str(subscription.url) == "https://example.com/hooks"
        assert subscription.description == "alice hook"

    def test_delete(self, registry, subscription, alice):
        """Test deleting a subscription."""
        registry.delete(subscription.id, alice)

        assert registry.get(subscription.id) is None
        with pytest.raises(SubscriptionNotFoundError):
            registry.delete(subscription.id, alice)

    def test_rotate_secret(self, registry, subscription, alice):
        """Test secret rotation produces a fresh secret."""
        old_secret = subscription.secret

        rotated = registry.rotate_secret(subscription.id, alice, length=40)

        assert rotated.secret != old_secret
        assert len(rotated.secret) == 40

    def test_old_signature_fails_after_rotation(self, registry, subscription, alice):
        """Test that payloads signed with the previous secret stop verifying."""
        payload = {"user_id": "u1", "event_type": "kyc_approved"}
        old_signature = generate_signature(payload, subscription.secret)

        registry.rotate_secret(subscription.id, alice)

        assert verify_signature(payload, old_signature, subscription.secret) is False


# ============================================================================
# Dispatcher Hook Tests
# ============================================================================


class TestDispatcherHooks:
    """Tests for lookups and health bookkeeping."""

    def test_subscriptions_for_event(self, registry, subscription, alice):
        """Test that only active matching subscriptions are returned."""
        catch_all = registry.create(
            alice, url="https://example.com/all", events=["all"], secret="0123456789"
        )
        registry.create(
            alice,
            url="https://example.com/off",
            events=["all"],
            secret="0123456789",
            is_active=False,
        )

        matching = registry.get_subscriptions_for_event(WebhookEventType.KYC_APPROVED)

        assert {s.id for s in matching} == {subscription.id, catch_all.id}
        assert registry.get_subscriptions_for_event("user_login") == [catch_all]

    def test_record_result_for_deleted_subscription(self, registry, subscription, alice):
        """Test that results for deleted subscriptions are dropped."""
        registry.delete(subscription.id, alice)

        assert registry.record_delivery_result(subscription.id, success=True) is None
        assert registry.get(subscription.id) is None

    def test_reset_failures(self, registry, subscription):
        """Test clearing failure state."""
        registry.record_delivery_result(subscription.id, success=False, error="boom")

        registry.reset_failures(subscription.id)

        assert subscription.failure_count == 0
        assert subscription.last_error is None
        assert registry.reset_failures("wh_missing") is None


class TestGlobalRegistry:
    """Tests for the global registry accessors."""

    def test_set_and_get(self):
        """Test replacing the global registry."""
        custom = SubscriptionRegistry()
        set_subscription_registry(custom)

        assert get_subscription_registry() is custom
