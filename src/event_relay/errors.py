"""Exception hierarchy for the event relay.

Exception Hierarchy:
    RelayError (base)
    ├── SubscriptionNotFoundError - Unknown webhook subscription
    ├── PermissionDeniedError - Caller may not manage the subscription
    ├── InvalidSubscriptionError - Subscription data failed validation
    ├── RequestError - Transport failure or non-2xx response
    │   └── RequestTimeoutError - A single attempt exceeded its timeout
    ├── CircuitOpenError - Request rejected by admission control
    └── RequestCancelledError - Request aborted by the caller
"""

from typing import Any


class RelayError(Exception):
    """Base exception for all event relay errors.

    Attributes:
        message: Human-readable error message.
        details: Additional error details.
        recoverable: Whether retrying later may succeed.
    """

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        recoverable: bool = True,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


# ============================================================================
# Subscription errors
# ============================================================================


class SubscriptionNotFoundError(RelayError):
    """Raised when a webhook subscription does not exist."""

    def __init__(self, subscription_id: str) -> None:
        super().__init__(
            f"Webhook {subscription_id} not found",
            details={"subscription_id": subscription_id},
            recoverable=False,
        )
        self.subscription_id = subscription_id


class PermissionDeniedError(RelayError):
    """Raised when a caller is neither the owner nor an administrator."""

    def __init__(self, message: str = "Unauthorized", *, user_id: str | None = None) -> None:
        super().__init__(message, details={"user_id": user_id}, recoverable=False)
        self.user_id = user_id


class InvalidSubscriptionError(RelayError):
    """Raised when subscription fields fail validation."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message, details={"field": field}, recoverable=False)
        self.field = field


# ============================================================================
# Outbound request errors
# ============================================================================


class RequestError(RelayError):
    """Terminal transport or HTTP error from the resilient client.

    Attributes:
        status_code: HTTP status, or None when no response was received.
        url: Request URL.
        service: Breaker service name the request was scoped to.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        url: str | None = None,
        service: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details, recoverable=True)
        self.status_code = status_code
        self.url = url
        self.service = service

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        base = super().to_dict()
        base.update(
            {"status_code": self.status_code, "url": self.url, "service": self.service}
        )
        return base


class RequestTimeoutError(RequestError):
    """A single request attempt exceeded its timeout."""

    def __init__(
        self,
        timeout_seconds: float,
        *,
        url: str | None = None,
        service: str | None = None,
    ) -> None:
        super().__init__(
            f"Request timeout after {timeout_seconds * 1000:.0f}ms",
            url=url,
            service=service,
            details={"timeout_seconds": timeout_seconds},
        )
        self.timeout_seconds = timeout_seconds


class CircuitOpenError(RelayError):
    """Raised when the circuit for a service is open and the call is rejected."""

    def __init__(self, service: str, recovery_time: float) -> None:
        super().__init__(
            f"Circuit is open for service {service}. Recovery in {recovery_time:.1f}s",
            details={"service": service, "recovery_time": recovery_time},
            recoverable=True,
        )
        self.service = service
        self.recovery_time = recovery_time


class RequestCancelledError(RelayError):
    """Raised when an in-flight request is aborted."""

    def __init__(self, url: str | None = None) -> None:
        super().__init__("Request was cancelled", details={"url": url}, recoverable=True)
        self.url = url
