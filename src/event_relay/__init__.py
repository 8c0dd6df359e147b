"""Event relay: webhook dispatch and resilient outbound requests."""

__version__ = "0.1.0"
