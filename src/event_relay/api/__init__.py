"""HTTP API for webhook administration."""

from event_relay.api.app import create_app
from event_relay.api.webhooks import admin_router, router

__all__ = ["admin_router", "create_app", "router"]
