"""Tests for the business event emitter."""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from event_relay.webhooks.deliveries import DeliveryLog
from event_relay.webhooks.dispatcher import WebhookDispatcher
from event_relay.webhooks.emitter import (
    EmitResult,
    EventEmitter,
    enrich_payload,
    get_event_emitter,
    set_event_emitter,
)
from event_relay.webhooks.events import EventCategory, WebhookEventType
from event_relay.webhooks.manager import Principal, SubscriptionRegistry

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def mock_dispatcher():
    """Dispatcher double capturing dispatched events."""
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=[])
    return dispatcher


@pytest.fixture
def emitter(mock_dispatcher):
    return EventEmitter(mock_dispatcher, environment="test")


def dispatched_events(mock_dispatcher):
    return [c.args[0] for c in mock_dispatcher.dispatch.await_args_list]


# ============================================================================
# Tests
# ============================================================================


class TestEnrichPayload:
    """Tests for enrich_payload."""

    def test_adds_standard_fields(self):
        """Test event type, timestamp and environment are added."""
        enriched = enrich_payload(WebhookEventType.KYC_APPROVED, {"user_id": "u1"}, "prod")

        assert enriched["user_id"] == "u1"
        assert enriched["event_type"] == "kyc_approved"
        assert enriched["environment"] == "prod"
        assert "timestamp" in enriched


class TestEmit:
    """Tests for EventEmitter.emit."""

    @pytest.mark.asyncio
    async def test_specific_then_umbrella(self, emitter, mock_dispatcher):
        """Test that kyc_approved dispatches two events."""
        result = await emitter.emit(
            EventCategory.KYC, WebhookEventType.KYC_APPROVED, {"user_id": "u1"}
        )

        assert result == EmitResult(success=True)
        specific, umbrella = dispatched_events(mock_dispatcher)
        assert specific.type == WebhookEventType.KYC_APPROVED
        assert specific.payload["environment"] == "test"
        assert umbrella.type == WebhookEventType.KYC_EVENT
        assert umbrella.payload["specific_event_type"] == "kyc_approved"
        assert umbrella.payload["event_type"] == "kyc_event"
        assert umbrella.payload["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_umbrella_can_be_disabled(self, emitter, mock_dispatcher):
        """Test trigger_category_event=False."""
        await emitter.emit(
            EventCategory.WALLET,
            WebhookEventType.WALLET_FUNDED,
            {},
            trigger_category_event=False,
        )

        assert mock_dispatcher.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_idempotency_key_used_as_event_id(self, emitter, mock_dispatcher):
        """Test that the caller's key becomes the event id."""
        await emitter.emit(
            EventCategory.ROI,
            WebhookEventType.ROI_DISTRIBUTED,
            {},
            idempotency_key="roi-2024-05",
        )

        specific, umbrella = dispatched_events(mock_dispatcher)
        assert specific.id == "roi-2024-05"
        assert umbrella.id == "roi-2024-05-category"

    @pytest.mark.asyncio
    async def test_wait_forwarded(self, emitter, mock_dispatcher):
        """Test that the wait flag reaches the dispatcher."""
        await emitter.emit(
            EventCategory.USER, WebhookEventType.USER_LOGIN, {}, wait=False
        )

        for call in mock_dispatcher.dispatch.await_args_list:
            assert call.kwargs["wait"] is False

    @pytest.mark.asyncio
    async def test_dispatch_error_reported_not_raised(self, emitter, mock_dispatcher):
        """Test that dispatcher failures become a failed result."""
        mock_dispatcher.dispatch.side_effect = RuntimeError("registry unavailable")

        result = await emitter.emit(
            EventCategory.KYC, WebhookEventType.KYC_REJECTED, {}
        )

        assert result.success is False
        assert result.error == "registry unavailable"

    @pytest.mark.asyncio
    async def test_type_outside_category(self, emitter, mock_dispatcher):
        """Test that mismatched category and type fail without dispatching."""
        result = await emitter.emit(
            EventCategory.KYC, WebhookEventType.WALLET_FUNDED, {}
        )

        assert result.success is False
        assert "does not belong" in result.error
        mock_dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_category(self, emitter, mock_dispatcher):
        """Test that an invalid category value fails cleanly."""
        result = await emitter.emit("crypto", WebhookEventType.WALLET_FUNDED, {})

        assert result.success is False
        mock_dispatcher.dispatch.assert_not_awaited()


class TestCategoryShortcuts:
    """Tests for per-category helper methods."""

    @pytest.mark.asyncio
    async def test_shortcut_emits(self, emitter, mock_dispatcher):
        """Test emitter.kyc.approved."""
        result = await emitter.kyc.approved({"user_id": "u1"})

        assert result.success is True
        assert dispatched_events(mock_dispatcher)[0].type == WebhookEventType.KYC_APPROVED

    @pytest.mark.asyncio
    async def test_shortcut_accepts_options(self, emitter, mock_dispatcher):
        """Test that shortcut options are forwarded."""
        await emitter.wallet.transaction_processed({}, trigger_category_event=False)

        assert mock_dispatcher.dispatch.await_count == 1

    def test_shortcut_names(self, emitter):
        """Test shortcut names strip the category prefix."""
        assert emitter.kyc.names == ["approved", "rejected", "submitted", "updated"]
        assert "fully_funded" in emitter.property.names

    def test_unknown_shortcut(self, emitter):
        """Test that unknown names raise AttributeError."""
        with pytest.raises(AttributeError):
            emitter.kyc.exploded  # noqa: B018


class TestGlobalEmitter:
    """Tests for the global emitter accessors."""

    def test_set_and_get(self, emitter):
        """Test replacing the global emitter."""
        set_event_emitter(emitter)
        try:
            assert get_event_emitter() is emitter
        finally:
            set_event_emitter(None)


class TestEmitDelivery:
    """End-to-end emit through a real dispatcher."""

    @pytest.mark.asyncio
    async def test_kyc_approved_reaches_broad_and_narrow_subscribers(self) -> None:
        """Test that one emit yields a specific and an umbrella delivery."""
        registry = SubscriptionRegistry(secret_min_length=10)
        owner = Principal(user_id="owner-1")
        both = registry.create(
            owner,
            url="https://both.example.com/h",
            events=["kyc_approved", "kyc_event"],
            secret="0123456789",
        )
        narrow = registry.create(
            owner, url="https://narrow.example.com/h", events=["kyc_approved"], secret="0123456789"
        )
        delivery_log = DeliveryLog()
        dispatcher = WebhookDispatcher(
            registry,
            delivery_log,
            transport=httpx.MockTransport(lambda r: httpx.Response(200)),
        )
        emitter = EventEmitter(dispatcher, environment="test")

        result = await emitter.kyc.approved({"user_id": "u1"})

        assert result.success is True
        assert sorted(
            r.event_type for r in delivery_log.list_for_subscription(both.id)
        ) == ["kyc_approved", "kyc_event"]
        assert len(delivery_log.list_for_subscription(narrow.id)) == 1
