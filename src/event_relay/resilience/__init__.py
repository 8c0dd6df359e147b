"""Resilience for outbound calls.

This module provides:
- CircuitBreaker: per-service and global circuits with persisted state
- State stores: in-memory, JSON file, SQLite and Redis backends
- ResilientClient: retries, backoff, timeouts and cancellation over httpx
"""

from event_relay.resilience.circuit_breaker import (
    GLOBAL_SCOPE,
    BreakerState,
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
    ServiceCircuit,
)
from event_relay.resilience.client import (
    RETRYABLE_STATUS_CODES,
    ClientConfig,
    ResilientClient,
    compute_backoff,
    parse_response,
    service_name_from_path,
)
from event_relay.resilience.state_store import (
    InMemoryStateStore,
    JsonFileStateStore,
    RedisStateStore,
    SQLiteStateStore,
    StateStore,
    create_state_store,
)

__all__ = [
    # Circuit breaker
    "GLOBAL_SCOPE",
    "BreakerState",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "ServiceCircuit",
    # State stores
    "InMemoryStateStore",
    "JsonFileStateStore",
    "RedisStateStore",
    "SQLiteStateStore",
    "StateStore",
    "create_state_store",
    # Client
    "RETRYABLE_STATUS_CODES",
    "ClientConfig",
    "ResilientClient",
    "compute_backoff",
    "parse_response",
    "service_name_from_path",
]
