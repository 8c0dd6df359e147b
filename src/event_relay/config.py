"""Application configuration settings.

This module provides centralized configuration management using environment
variables with sensible defaults.
"""

import os
from dataclasses import dataclass


def _get_bool_env(name: str, default: bool = False) -> bool:
    """Get a boolean value from environment variable.

    Args:
        name: Environment variable name.
        default: Default value if not set.

    Returns:
        Boolean value from environment.
    """
    value = os.getenv(name, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    if value in ("false", "0", "no", "off"):
        return False
    return default


def _get_float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _get_int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        ENVIRONMENT: Deployment environment tag added to every event.
        APP_VERSION: Platform version reported in the webhook user agent.
        LOG_LEVEL: Logging level.
        LOG_JSON: Render logs as JSON lines instead of console output.
        WEBHOOK_TIMEOUT_SECONDS: Hard timeout for a single webhook delivery.
        WEBHOOK_USER_AGENT: User agent sent with every webhook delivery.
        WEBHOOK_MAX_CONCURRENT: Max simultaneous outbound deliveries.
        WEBHOOK_SECRET_MIN_LENGTH: Minimum accepted subscription secret length.
        WEBHOOK_SECRET_LENGTH: Length of generated (rotated) secrets.
        WEBHOOK_RESPONSE_BODY_LIMIT: Response body characters kept per delivery.
        WEBHOOK_DELIVERY_PAGE_LIMIT: Cap on deliveries returned per listing.
        CLIENT_BASE_URL: Base URL for relative resilient client requests.
        CLIENT_RETRIES: Retries after the first attempt.
        CLIENT_MIN_RETRY_DELAY: Base backoff delay in seconds.
        CLIENT_MAX_RETRY_DELAY: Backoff ceiling in seconds.
        CLIENT_BACKOFF_FACTOR: Exponential backoff factor.
        CLIENT_TIMEOUT: Per-attempt timeout in seconds.
        CLIENT_CANCEL_IN_FLIGHT: New calls abort the call still in flight.
        CIRCUIT_ENABLED: Consult the circuit breaker before requests.
        CIRCUIT_FAILURE_THRESHOLD: Failures before a service circuit opens.
        CIRCUIT_RESET_TIMEOUT: Seconds an open circuit waits before probing.
        CIRCUIT_STORAGE_KEY: Key the breaker state is persisted under.
        CIRCUIT_STATE_BACKEND: memory, file, sqlite or redis.
        CIRCUIT_STATE_PATH: File used by the file and sqlite backends.
        REDIS_URL: Redis connection URL for the redis backend.
    """

    ENVIRONMENT: str = "development"
    APP_VERSION: str = "1.0"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Webhook delivery
    WEBHOOK_TIMEOUT_SECONDS: float = 5.0
    WEBHOOK_USER_AGENT: str = "InvestmentPlatform-Webhook/1.0"
    WEBHOOK_MAX_CONCURRENT: int = 10
    WEBHOOK_SECRET_MIN_LENGTH: int = 10
    WEBHOOK_SECRET_LENGTH: int = 32
    WEBHOOK_RESPONSE_BODY_LIMIT: int = 1000
    WEBHOOK_DELIVERY_PAGE_LIMIT: int = 100

    # Resilient client
    CLIENT_BASE_URL: str = ""
    CLIENT_RETRIES: int = 3
    CLIENT_MIN_RETRY_DELAY: float = 1.0
    CLIENT_MAX_RETRY_DELAY: float = 5.0
    CLIENT_BACKOFF_FACTOR: float = 2.0
    CLIENT_TIMEOUT: float = 10.0
    CLIENT_CANCEL_IN_FLIGHT: bool = True

    # Circuit breaker
    CIRCUIT_ENABLED: bool = True
    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RESET_TIMEOUT: float = 30.0
    CIRCUIT_STORAGE_KEY: str = "api-circuit-state"
    CIRCUIT_STATE_BACKEND: str = "memory"
    CIRCUIT_STATE_PATH: str = "data/circuit_state.json"
    REDIS_URL: str = "redis://localhost:6379"

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables.

        Returns:
            Settings instance populated from environment.
        """
        app_version = os.getenv("APP_VERSION", "1.0")
        return cls(
            ENVIRONMENT=os.getenv("ENVIRONMENT", "development"),
            APP_VERSION=app_version,
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
            LOG_JSON=_get_bool_env("LOG_JSON", default=False),
            WEBHOOK_TIMEOUT_SECONDS=_get_float_env("WEBHOOK_TIMEOUT_SECONDS", 5.0),
            WEBHOOK_USER_AGENT=os.getenv(
                "WEBHOOK_USER_AGENT", f"InvestmentPlatform-Webhook/{app_version}"
            ),
            WEBHOOK_MAX_CONCURRENT=_get_int_env("WEBHOOK_MAX_CONCURRENT", 10),
            WEBHOOK_SECRET_MIN_LENGTH=_get_int_env("WEBHOOK_SECRET_MIN_LENGTH", 10),
            WEBHOOK_SECRET_LENGTH=_get_int_env("WEBHOOK_SECRET_LENGTH", 32),
            WEBHOOK_RESPONSE_BODY_LIMIT=_get_int_env("WEBHOOK_RESPONSE_BODY_LIMIT", 1000),
            WEBHOOK_DELIVERY_PAGE_LIMIT=_get_int_env("WEBHOOK_DELIVERY_PAGE_LIMIT", 100),
            CLIENT_BASE_URL=os.getenv("CLIENT_BASE_URL", ""),
            CLIENT_RETRIES=_get_int_env("CLIENT_RETRIES", 3),
            CLIENT_MIN_RETRY_DELAY=_get_float_env("CLIENT_MIN_RETRY_DELAY", 1.0),
            CLIENT_MAX_RETRY_DELAY=_get_float_env("CLIENT_MAX_RETRY_DELAY", 5.0),
            CLIENT_BACKOFF_FACTOR=_get_float_env("CLIENT_BACKOFF_FACTOR", 2.0),
            CLIENT_TIMEOUT=_get_float_env("CLIENT_TIMEOUT", 10.0),
            CLIENT_CANCEL_IN_FLIGHT=_get_bool_env("CLIENT_CANCEL_IN_FLIGHT", default=True),
            CIRCUIT_ENABLED=_get_bool_env("CIRCUIT_ENABLED", default=True),
            CIRCUIT_FAILURE_THRESHOLD=_get_int_env("CIRCUIT_FAILURE_THRESHOLD", 5),
            CIRCUIT_RESET_TIMEOUT=_get_float_env("CIRCUIT_RESET_TIMEOUT", 30.0),
            CIRCUIT_STORAGE_KEY=os.getenv("CIRCUIT_STORAGE_KEY", "api-circuit-state"),
            CIRCUIT_STATE_BACKEND=os.getenv("CIRCUIT_STATE_BACKEND", "memory"),
            CIRCUIT_STATE_PATH=os.getenv("CIRCUIT_STATE_PATH", "data/circuit_state.json"),
            REDIS_URL=os.getenv("REDIS_URL", "redis://localhost:6379"),
        )


# Global settings instance
settings = Settings.from_env()
