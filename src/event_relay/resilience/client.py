"""Resilient HTTP client.

Wraps outbound calls with:
- Admission control through the circuit breaker (fail fast when open)
- Per-attempt timeouts
- Retries with exponential backoff and jitter for retryable failures
- Cancellation of in-flight calls

Example:
    async with ResilientClient(ClientConfig(base_url="https://api.internal")) as client:
        try:
            user = await client.get("/users/42")
        except CircuitOpenError:
            user = cached_user  # degrade gracefully
"""

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from event_relay.config import Settings, settings
from event_relay.errors import (
    CircuitOpenError,
    RequestCancelledError,
    RequestError,
    RequestTimeoutError,
)
from event_relay.resilience.circuit_breaker import CircuitBreaker

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# Share of the exponential delay the jitter window spans
JITTER_RATIO = 0.3

ServiceNameStrategy = Callable[[str], str]


def service_name_from_path(url: str) -> str:
    """Default breaker scoping: the first non-empty path segment.

    ``/users/42`` and ``https://host/users/42`` both map to ``users``;
    a bare root maps to ``default``.
    """
    path = httpx.URL(url).path
    segments = [segment for segment in path.split("/") if segment]
    return segments[0] if segments else "default"


def compute_backoff(
    attempt: int,
    *,
    min_delay: float,
    max_delay: float,
    factor: float,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the next attempt, in seconds.

    ``min(max_delay, min_delay * factor ** attempt)`` widened by symmetric
    jitter of up to 30% of that value, so the result lands roughly within
    +/-15% of the exponential curve. Never exceeds ``max_delay``.
    """
    delay = min(max_delay, min_delay * factor**attempt)
    jitter = delay * JITTER_RATIO
    return max(0.0, min(max_delay, delay - jitter / 2 + rng() * jitter))


@dataclass
class ClientConfig:
    """Configuration for the resilient client.

    Attributes:
        base_url: Prefix for relative URLs.
        retries: Retries after the first attempt.
        min_retry_delay: Base backoff delay in seconds.
        max_retry_delay: Backoff ceiling in seconds.
        backoff_factor: Exponential backoff factor.
        timeout: Per-attempt timeout in seconds.
        headers: Headers sent with every request.
        retryable_status_codes: Statuses worth retrying.
        cancel_in_flight: A new call aborts calls still in flight.
    """

    base_url: str = ""
    retries: int = 3
    min_retry_delay: float = 1.0
    max_retry_delay: float = 5.0
    backoff_factor: float = 2.0
    timeout: float = 10.0
    headers: dict[str, str] = field(
        default_factory=lambda: {"Content-Type": "application/json"}
    )
    retryable_status_codes: frozenset[int] = RETRYABLE_STATUS_CODES
    cancel_in_flight: bool = True

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ClientConfig":
        config = config or settings
        return cls(
            base_url=config.CLIENT_BASE_URL,
            retries=config.CLIENT_RETRIES,
            min_retry_delay=config.CLIENT_MIN_RETRY_DELAY,
            max_retry_delay=config.CLIENT_MAX_RETRY_DELAY,
            backoff_factor=config.CLIENT_BACKOFF_FACTOR,
            timeout=config.CLIENT_TIMEOUT,
            cancel_in_flight=config.CLIENT_CANCEL_IN_FLIGHT,
        )


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return f"HTTP error {response.status_code}: {response.reason_phrase}"


def parse_response(response: httpx.Response) -> Any:
    """Parse by content type: JSON, text, or the raw response."""
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    if "text/" in content_type:
        return response.text
    return response


class ResilientClient:
    """HTTP client that consults a circuit breaker and retries with backoff."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        breaker: CircuitBreaker | None = None,
        *,
        service_name: ServiceNameStrategy = service_name_from_path,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration (defaults from settings).
            breaker: Circuit breaker (one backed by the configured state
                store if not provided).
            service_name: Maps a request URL to a breaker service name.
            transport: Optional httpx transport (used by tests).
            sleep: Coroutine used to wait between attempts.
        """
        self.config = config or ClientConfig.from_settings()
        self.breaker = breaker or CircuitBreaker()
        self._service_name = service_name
        self._sleep = sleep
        self._http = httpx.AsyncClient(timeout=self.config.timeout, transport=transport)
        # task -> breaker service it was admitted for
        self._in_flight: dict[asyncio.Task[Any], str] = {}
        self._logger = logger.bind(component="resilient_client")

    async def __aenter__(self) -> "ResilientClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Cancel in-flight calls and close the underlying HTTP client."""
        self.cancel()
        await self._http.aclose()

    def build_url(self, url: str) -> str:
        """Join a relative URL onto the configured base URL."""
        if url.startswith(("http://", "https://")) or not self.config.base_url:
            return url
        base = self.config.base_url.rstrip("/")
        if url.startswith("/"):
            return f"{base}{url}"
        return f"{base}/{url}"

    def cancel(self) -> None:
        """Abort every call currently in flight on this client.

        Probe slots held by the aborted calls are freed before this returns,
        so a call started right after can be admitted to a half-open circuit.
        """
        for task, service in list(self._in_flight.items()):
            if task.done():
                continue
            task.cancel()
            del self._in_flight[task]
            self.breaker.release(service)

    async def reset_breaker(self) -> None:
        """Close every circuit and clear failure counts."""
        await self.breaker.reset()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request(
        self,
        method: str,
        url: str,
        *,
        data: Any = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        retries: int | None = None,
        timeout: float | None = None,
    ) -> Any:
        """Make a request with breaker admission, retries and timeouts.

        Args:
            method: HTTP method.
            url: Absolute URL or path relative to base_url.
            data: JSON body.
            params: Query parameters.
            headers: Headers merged over the defaults.
            retries: Override retries for this call.
            timeout: Override per-attempt timeout for this call.

        Returns:
            Parsed JSON, text, or the raw httpx.Response.

        Raises:
            CircuitOpenError: The breaker rejected the call; nothing was sent.
            RequestError: Terminal HTTP or transport failure.
            RequestTimeoutError: The last attempt timed out.
            RequestCancelledError: The call was aborted via cancel().
        """
        service = self._service_name(url)
        full_url = self.build_url(url)

        if self.config.cancel_in_flight:
            # Latest call wins on a shared client instance
            self.cancel()

        try:
            await self.breaker.acquire(service)
        except CircuitOpenError:
            self._logger.warning(
                "request_rejected_circuit_open",
                service=service,
                method=method,
                url=full_url,
            )
            raise

        task = asyncio.create_task(
            self._execute(
                method,
                full_url,
                service,
                data=data,
                params=params,
                headers={**self.config.headers, **(headers or {})},
                retries=self.config.retries if retries is None else retries,
                timeout=timeout or self.config.timeout,
            )
        )
        self._in_flight[task] = service

        try:
            return await task
        except asyncio.CancelledError:
            # cancel() already released the slot of calls it aborted
            if self._in_flight.pop(task, None) is not None:
                self.breaker.release(service)
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                # Our own caller was cancelled; propagate untouched
                task.cancel()
                raise
            self._logger.info("request_cancelled", service=service, url=full_url)
            raise RequestCancelledError(full_url) from None
        finally:
            self._in_flight.pop(task, None)

    def _is_retryable(self, exc: BaseException) -> bool:
        if not isinstance(exc, RequestError):
            return False
        return exc.status_code is None or exc.status_code in self.config.retryable_status_codes

    def _counts_as_failure(self, exc: RequestError) -> bool:
        status = exc.status_code
        return status is None or status >= 500 or status in self.config.retryable_status_codes

    def _wait(self, retry_state: RetryCallState) -> float:
        return compute_backoff(
            retry_state.attempt_number,
            min_delay=self.config.min_retry_delay,
            max_delay=self.config.max_retry_delay,
            factor=self.config.backoff_factor,
        )

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        self._logger.info(
            "request_retry_scheduled",
            attempt=retry_state.attempt_number,
            delay=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=str(exc) if exc else None,
        )

    async def _execute(
        self,
        method: str,
        url: str,
        service: str,
        *,
        data: Any,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        retries: int,
        timeout: float,
    ) -> Any:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retries + 1),
                wait=self._wait,
                retry=retry_if_exception(self._is_retryable),
                before_sleep=self._log_retry,
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    response = await self._send(
                        method,
                        url,
                        service,
                        data=data,
                        params=params,
                        headers=headers,
                        timeout=timeout,
                    )

        except RequestError as e:
            if self._counts_as_failure(e):
                await self.breaker.record_failure(service, e)
            else:
                self.breaker.release(service)
            self._logger.warning(
                "request_failed",
                service=service,
                method=method,
                url=url,
                status_code=e.status_code,
                error=e.message,
            )
            raise

        except Exception:
            self.breaker.release(service)
            raise

        await self.breaker.record_success(service)
        return parse_response(response)

    async def _send(
        self,
        method: str,
        url: str,
        service: str,
        *,
        data: Any,
        params: dict[str, Any] | None,
        headers: dict[str, str],
        timeout: float,
    ) -> httpx.Response:
        """Make a single attempt, raising RequestError on any failure."""
        try:
            response = await asyncio.wait_for(
                self._http.request(
                    method, url, json=data, params=params, headers=headers, timeout=timeout
                ),
                timeout=timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as e:
            raise RequestTimeoutError(timeout, url=url, service=service) from e
        except httpx.TransportError as e:
            raise RequestError(
                f"Network error: {e}", url=url, service=service
            ) from e

        if not response.is_success:
            raise RequestError(
                _error_message(response),
                status_code=response.status_code,
                url=url,
                service=service,
            )

        return response

    async def get(self, url: str, **options: Any) -> Any:
        return await self.request("GET", url, **options)

    async def post(self, url: str, data: Any = None, **options: Any) -> Any:
        return await self.request("POST", url, data=data, **options)

    async def put(self, url: str, data: Any = None, **options: Any) -> Any:
        return await self.request("PUT", url, data=data, **options)

    async def patch(self, url: str, data: Any = None, **options: Any) -> Any:
        return await self.request("PATCH", url, data=data, **options)

    async def delete(self, url: str, **options: Any) -> Any:
        return await self.request("DELETE", url, **options)
