"""Circuit breaker with per-service and global scopes.

This module implements the circuit breaker pattern to stop retry storms
against dependencies that are already failing.

Circuit States:
- CLOSED: Normal operation, requests pass through
- OPEN: Service is failing, requests are rejected immediately
- HALF_OPEN: Testing recovery, a single probe request is allowed

Each service has its own circuit. A global circuit sits above them and opens
when failures across all services add up to twice the per-service threshold;
while it is open every service fails fast.

Recovery is observed, not scheduled: an OPEN circuit becomes HALF_OPEN the
next time it is consulted after its deadline, never from a background timer.
Every state mutation is persisted through a StateStore, so state survives
process restarts.
"""

import asyncio
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from event_relay.config import Settings, settings
from event_relay.errors import CircuitOpenError
from event_relay.resilience.state_store import StateStore, create_state_store

logger = structlog.get_logger(__name__)

# Scope name used for the global circuit in listeners and status
GLOBAL_SCOPE = "*"

# Listener signature: (scope, old_state, new_state)
StateListener = Callable[[str, "CircuitState", "CircuitState"], Awaitable[None] | None]
Clock = Callable[[], datetime]


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Configuration for the circuit breaker.

    Attributes:
        enabled: Whether the breaker is consulted at all.
        failure_threshold: Failures before a service circuit opens.
        reset_timeout: Seconds an open circuit waits before probing.
        storage_key: Key state is persisted under.
        aggregate_multiplier: Global circuit opens at threshold times this.
    """

    enabled: bool = True
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    storage_key: str = "api-circuit-state"
    aggregate_multiplier: int = 2

    @property
    def aggregate_threshold(self) -> int:
        return self.failure_threshold * self.aggregate_multiplier

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "CircuitBreakerConfig":
        config = config or settings
        return cls(
            enabled=config.CIRCUIT_ENABLED,
            failure_threshold=config.CIRCUIT_FAILURE_THRESHOLD,
            reset_timeout=config.CIRCUIT_RESET_TIMEOUT,
            storage_key=config.CIRCUIT_STORAGE_KEY,
        )


def _dt_to_str(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt_from_str(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass
class ServiceCircuit:
    """Circuit for one logical service."""

    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_success: datetime | None = None
    last_failure: datetime | None = None
    last_error: str | None = None
    next_attempt_time: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "last_success": _dt_to_str(self.last_success),
            "last_failure": _dt_to_str(self.last_failure),
            "last_error": self.last_error,
            "next_attempt_time": _dt_to_str(self.next_attempt_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ServiceCircuit":
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failures=max(0, int(data.get("failures", 0))),
            last_success=_dt_from_str(data.get("last_success")),
            last_failure=_dt_from_str(data.get("last_failure")),
            last_error=data.get("last_error"),
            next_attempt_time=_dt_from_str(data.get("next_attempt_time")),
        )


@dataclass
class BreakerState:
    """Complete persisted breaker state: the global circuit plus every service."""

    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    next_attempt_time: datetime | None = None
    services: dict[str, ServiceCircuit] = field(default_factory=dict)
    last_updated: datetime | None = None

    @property
    def aggregate_failures(self) -> int:
        return sum(s.failures for s in self.services.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "next_attempt_time": _dt_to_str(self.next_attempt_time),
            "services": {name: s.to_dict() for name, s in self.services.items()},
            "last_updated": _dt_to_str(self.last_updated),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BreakerState":
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failures=max(0, int(data.get("failures", 0))),
            next_attempt_time=_dt_from_str(data.get("next_attempt_time")),
            services={
                name: ServiceCircuit.from_dict(entry)
                for name, entry in (data.get("services") or {}).items()
            },
            last_updated=_dt_from_str(data.get("last_updated")),
        )


def _deadline_passed(deadline: datetime | None, now: datetime) -> bool:
    return deadline is None or deadline <= now


class CircuitBreaker:
    """Persisted circuit breaker shared by every call of one client.

    Example:
        breaker = CircuitBreaker(store=JsonFileStateStore("data/circuit.json"))
        await breaker.load()

        await breaker.acquire("users")  # raises CircuitOpenError when open
        try:
            result = await call_users_service()
        except Exception as e:
            await breaker.record_failure("users", e)
            raise
        await breaker.record_success("users")
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        store: StateStore | None = None,
        *,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the circuit breaker.

        Args:
            config: Breaker configuration (defaults from settings).
            store: Persistence backend (selected by CIRCUIT_STATE_BACKEND if
                not provided).
            clock: Returns the current aware datetime; injectable for tests.
        """
        self.config = config or CircuitBreakerConfig.from_settings()
        self._store = store if store is not None else create_state_store()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._state = BreakerState()
        self._loaded = False
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._save_lock = asyncio.Lock()
        # scope -> service whose request holds the half-open probe
        self._probes: dict[str, str] = {}
        self._listeners: list[StateListener] = []
        self._logger = logger.bind(component="circuit_breaker")

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def snapshot(self) -> BreakerState:
        """A detached copy of the current state."""
        return BreakerState.from_dict(self._state.to_dict())

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: StateListener) -> None:
        """Register a callback for state changes.

        Args:
            listener: Called with (scope, old_state, new_state); scope is a
                service name or GLOBAL_SCOPE.
        """
        self._listeners.append(listener)

    def remove_listener(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _notify(self, transitions: list[tuple[str, CircuitState, CircuitState]]) -> None:
        for scope, old_state, new_state in transitions:
            self._logger.info(
                "circuit_state_changed",
                scope=scope,
                from_state=old_state.value,
                to_state=new_state.value,
            )
            for listener in self._listeners:
                try:
                    result = listener(scope, old_state, new_state)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    self._logger.warning(
                        "circuit_listener_error",
                        scope=scope,
                        error=str(e),
                    )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> BreakerState:
        """Load persisted state, resurrecting expired OPEN circuits as HALF_OPEN.

        Unreadable state is discarded and the breaker starts closed.
        """
        try:
            data = await self._store.load(self.config.storage_key)
        except Exception as e:
            self._logger.warning("circuit_state_load_failed", error=str(e))
            data = None

        if data:
            try:
                self._state = BreakerState.from_dict(data)
            except (ValueError, TypeError, KeyError) as e:
                self._logger.warning("circuit_state_invalid", error=str(e))
                self._state = BreakerState()

        self._loaded = True

        now = self._clock()
        transitions = self._resurrect(GLOBAL_SCOPE, now)
        for service in list(self._state.services):
            transitions += self._resurrect(service, now)
        if transitions:
            await self._commit(transitions)

        self._logger.info(
            "circuit_state_loaded",
            state=self._state.state.value,
            service_count=len(self._state.services),
        )
        return self._state

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.load()

    async def _save(self) -> None:
        async with self._save_lock:
            self._state.last_updated = self._clock()
            try:
                await self._store.save(self.config.storage_key, self._state.to_dict())
            except Exception as e:
                self._logger.error("circuit_state_save_failed", error=str(e))

    async def _commit(self, transitions: list[tuple[str, CircuitState, CircuitState]]) -> None:
        await self._save()
        await self._notify(transitions)

    # ------------------------------------------------------------------
    # State queries
    # ------------------------------------------------------------------

    def _effective(self, state: CircuitState, deadline: datetime | None) -> CircuitState:
        if state == CircuitState.OPEN and _deadline_passed(deadline, self._clock()):
            return CircuitState.HALF_OPEN
        return state

    def global_state(self) -> CircuitState:
        """Current global state, reporting an expired OPEN as HALF_OPEN."""
        return self._effective(self._state.state, self._state.next_attempt_time)

    def state_of(self, service: str) -> CircuitState:
        """Current state of one service's circuit."""
        circuit = self._state.services.get(service)
        if circuit is None:
            return CircuitState.CLOSED
        return self._effective(circuit.state, circuit.next_attempt_time)

    def failure_count(self, service: str | None = None) -> int:
        """Failure count of a service, or of the global circuit when omitted."""
        if service is None:
            return self._state.failures
        circuit = self._state.services.get(service)
        return circuit.failures if circuit else 0

    def is_open(self, service: str) -> bool:
        """Check whether calls to a service must fail fast.

        True while the global circuit is OPEN with its deadline ahead, else
        while the service's own circuit is. Once a deadline passes this
        returns False without any timer firing.
        """
        if not self.enabled:
            return False

        now = self._clock()
        if self._state.state == CircuitState.OPEN and not _deadline_passed(
            self._state.next_attempt_time, now
        ):
            return True

        circuit = self._state.services.get(service)
        if circuit and circuit.state == CircuitState.OPEN and not _deadline_passed(
            circuit.next_attempt_time, now
        ):
            return True

        return False

    def _recovery_time(self, deadline: datetime | None) -> float:
        if deadline is None:
            return 0.0
        return max(0.0, (deadline - self._clock()).total_seconds())

    # ------------------------------------------------------------------
    # Transitions (synchronous; callers persist afterwards)
    # ------------------------------------------------------------------

    def _resurrect(self, scope: str, now: datetime) -> list[tuple[str, CircuitState, CircuitState]]:
        if scope == GLOBAL_SCOPE:
            if self._state.state == CircuitState.OPEN and _deadline_passed(
                self._state.next_attempt_time, now
            ):
                self._state.state = CircuitState.HALF_OPEN
                return [(GLOBAL_SCOPE, CircuitState.OPEN, CircuitState.HALF_OPEN)]
            return []

        circuit = self._state.services.get(scope)
        if circuit and circuit.state == CircuitState.OPEN and _deadline_passed(
            circuit.next_attempt_time, now
        ):
            circuit.state = CircuitState.HALF_OPEN
            return [(scope, CircuitState.OPEN, CircuitState.HALF_OPEN)]
        return []

    def _release_probes(self, service: str) -> None:
        for scope in [s for s, holder in self._probes.items() if holder == service]:
            del self._probes[scope]

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def acquire(self, service: str) -> None:
        """Admit a request to a service or reject it.

        While a circuit is HALF_OPEN only one probe request is admitted; the
        probe slot is released by record_success, record_failure or release.

        Raises:
            CircuitOpenError: If the global or service circuit rejects the call.
        """
        if not self.enabled:
            return

        await self._ensure_loaded()

        async with self._locks[service]:
            now = self._clock()

            if self._state.state == CircuitState.OPEN and not _deadline_passed(
                self._state.next_attempt_time, now
            ):
                raise CircuitOpenError(
                    service, self._recovery_time(self._state.next_attempt_time)
                )

            circuit = self._state.services.get(service)
            if circuit and circuit.state == CircuitState.OPEN and not _deadline_passed(
                circuit.next_attempt_time, now
            ):
                raise CircuitOpenError(service, self._recovery_time(circuit.next_attempt_time))

            transitions = self._resurrect(GLOBAL_SCOPE, now) + self._resurrect(service, now)

            probe_scopes = []
            if self._state.state == CircuitState.HALF_OPEN:
                probe_scopes.append(GLOBAL_SCOPE)
            if circuit and circuit.state == CircuitState.HALF_OPEN:
                probe_scopes.append(service)

            if any(scope in self._probes for scope in probe_scopes):
                if transitions:
                    await self._commit(transitions)
                self._logger.debug("circuit_probe_in_flight", service=service)
                raise CircuitOpenError(service, 0.0)

            for scope in probe_scopes:
                self._probes[scope] = service
                self._logger.debug("circuit_half_open_probe", scope=scope, service=service)

            if transitions:
                await self._commit(transitions)

    def release(self, service: str) -> None:
        """Give back a probe slot without recording an outcome (e.g. on cancel)."""
        self._release_probes(service)

    async def record_success(self, service: str) -> None:
        """Record a successful call.

        Closes the service circuit and resets its failure count. A HALF_OPEN
        global circuit closes too.
        """
        if not self.enabled:
            return

        await self._ensure_loaded()

        async with self._locks[service]:
            now = self._clock()
            transitions = []

            circuit = self._state.services.setdefault(service, ServiceCircuit())
            old_state = self._effective(circuit.state, circuit.next_attempt_time)
            circuit.state = CircuitState.CLOSED
            circuit.failures = 0
            circuit.last_success = now
            circuit.last_error = None
            circuit.next_attempt_time = None
            if old_state != CircuitState.CLOSED:
                transitions.append((service, old_state, CircuitState.CLOSED))

            if self.global_state() == CircuitState.HALF_OPEN:
                transitions.append((GLOBAL_SCOPE, CircuitState.HALF_OPEN, CircuitState.CLOSED))
                self._state.state = CircuitState.CLOSED
                self._state.failures = 0
                self._state.next_attempt_time = None

            self._release_probes(service)
            await self._commit(transitions)

    async def record_failure(self, service: str, error: BaseException | str) -> None:
        """Record a failed call.

        The service circuit opens at the failure threshold, or immediately
        when the failure was a HALF_OPEN probe. The global circuit opens when
        failures across all services reach the aggregate threshold, or
        immediately when it was HALF_OPEN.
        """
        if not self.enabled:
            return

        await self._ensure_loaded()

        async with self._locks[service]:
            now = self._clock()
            deadline = now + timedelta(seconds=self.config.reset_timeout)
            transitions = []

            circuit = self._state.services.setdefault(service, ServiceCircuit())
            circuit.failures += 1
            circuit.last_failure = now
            circuit.last_error = str(error)[:500]

            service_state = self._effective(circuit.state, circuit.next_attempt_time)
            if service_state == CircuitState.HALF_OPEN or (
                service_state == CircuitState.CLOSED
                and circuit.failures >= self.config.failure_threshold
            ):
                transitions.append((service, service_state, CircuitState.OPEN))
                circuit.state = CircuitState.OPEN
                circuit.next_attempt_time = deadline

            self._state.failures += 1
            global_state = self._effective(self._state.state, self._state.next_attempt_time)
            if global_state == CircuitState.HALF_OPEN or (
                global_state == CircuitState.CLOSED
                and self._state.aggregate_failures >= self.config.aggregate_threshold
            ):
                transitions.append((GLOBAL_SCOPE, global_state, CircuitState.OPEN))
                self._state.state = CircuitState.OPEN
                self._state.next_attempt_time = deadline

            self._logger.warning(
                "circuit_failure_recorded",
                service=service,
                failure_count=circuit.failures,
                aggregate_failures=self._state.aggregate_failures,
                threshold=self.config.failure_threshold,
                error=circuit.last_error,
            )

            self._release_probes(service)
            await self._commit(transitions)

    async def reset(self) -> None:
        """Reset every circuit to CLOSED and persist the empty state."""
        transitions = []
        if self._state.state != CircuitState.CLOSED:
            transitions.append((GLOBAL_SCOPE, self._state.state, CircuitState.CLOSED))
        for name, circuit in self._state.services.items():
            if circuit.state != CircuitState.CLOSED:
                transitions.append((name, circuit.state, CircuitState.CLOSED))

        self._state = BreakerState()
        self._probes.clear()
        self._loaded = True

        self._logger.info("circuit_breaker_reset")
        await self._commit(transitions)

    def get_status(self) -> dict[str, Any]:
        """Get current circuit breaker status for observability."""
        return {
            "enabled": self.enabled,
            "state": self.global_state().value,
            "failures": self._state.failures,
            "aggregate_failures": self._state.aggregate_failures,
            "failure_threshold": self.config.failure_threshold,
            "reset_timeout": self.config.reset_timeout,
            "time_until_recovery": self._recovery_time(self._state.next_attempt_time)
            if self._state.state == CircuitState.OPEN
            else 0.0,
            "services": {
                name: {
                    **circuit.to_dict(),
                    "state": self.state_of(name).value,
                    "time_until_recovery": self._recovery_time(circuit.next_attempt_time)
                    if circuit.state == CircuitState.OPEN
                    else 0.0,
                }
                for name, circuit in self._state.services.items()
            },
        }
