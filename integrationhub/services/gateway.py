from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from integrationhub.core.config import get_settings
from integrationhub.core.errors import (
    CircuitBreakerError,
    GatewayError,
    GatewayTimeoutError,
    RateLimitError,
)
from integrationhub.services.redaction import sanitize_metadata
from integrationhub.services.resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    FastStore,
    RateLimitPolicy,
    RetryPolicy,
    SlidingWindowRateLimiter,
    get_resilience_redis,
    retry_async,
)
from integrationhub.services.telemetry import increment_counter, record_connector_call


logger = logging.getLogger(__name__)

_BODY_PREVIEW_CHARS = 500


@dataclass(frozen=True)
class BasicAuth:
    username: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class ApiKeyAuth:
    api_key: str = field(repr=False)
    header_name: str = "X-API-Key"


AuthConfig = BasicAuth | ApiKeyAuth


@dataclass(frozen=True)
class OutboundRequest:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    # None falls back to gateway settings.
    timeout_ms: int | None = None
    # Total attempts including the first request.
    max_retries: int | None = None
    # Wall-clock cap across all attempts and backoff sleeps.
    budget_ms: int | None = None
    auth: AuthConfig | None = None
    rate_limit: RateLimitPolicy | None = None
    circuit: CircuitBreakerConfig | None = None


@dataclass(frozen=True)
class GatewayResponse:
    status_code: int
    headers: dict[str, str]
    data: Any
    duration_ms: float
    attempts: int


def _elapsed_ms(start: float) -> float:
    return round((time.monotonic() - start) * 1000.0, 2)


def _target(url: str) -> str:
    # Log scheme/host/path only; userinfo and query strings may carry secrets.
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError):
        return "<invalid-url>"
    return f"{parsed.scheme}://{parsed.host}{parsed.path}"


def _response_data(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _is_retryable(exc: Exception) -> bool:
    # Network errors, timeouts and 5xx are transient; 4xx never retries.
    if isinstance(exc, GatewayTimeoutError):
        return True
    if isinstance(exc, GatewayError):
        return bool(exc.details.get("network")) or exc.status_code >= 500
    return False


class OutboundGateway:
    def __init__(
        self,
        *,
        store: FastStore | None,
        client: httpx.AsyncClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] | None = None,
        circuit_config: CircuitBreakerConfig | None = None,
        rate_limit_policy: RateLimitPolicy | None = None,
    ) -> None:
        self._store = store
        self._client = client
        self._owns_client = client is None
        self._transport = transport
        self._sleep = sleep
        self._clock = clock or time.time
        self._circuit_config = circuit_config or CircuitBreakerConfig.from_settings()
        self._rate_limit_policy = rate_limit_policy or RateLimitPolicy.from_settings()
        self._limiter = SlidingWindowRateLimiter(store, clock=self._clock)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def breaker(self, connector_id: str, config: CircuitBreakerConfig | None = None) -> CircuitBreaker:
        return CircuitBreaker(
            connector_id,
            store=self._store,
            config=config or self._circuit_config,
            clock=self._clock,
        )

    async def send(self, connector_id: str, tenant_id: str, request: OutboundRequest) -> GatewayResponse:
        # Rate limit, circuit check, dispatch with retry, then record the outcome on the breaker.
        settings = get_settings()
        start = time.monotonic()
        breaker = self.breaker(connector_id, request.circuit)
        snapshot = await breaker.load()
        try:
            # The half-open trial call bypasses the window so recovery is never starved.
            if not breaker.cooldown_elapsed(snapshot):
                policy = request.rate_limit or self._rate_limit_policy
                decision = await self._limiter.acquire(connector_id, policy)
                if not decision.allowed:
                    increment_counter("gateway_rate_limited_total")
                    raise RateLimitError(
                        f"rate limit exceeded for connector {connector_id}",
                        connector_id=connector_id,
                        details={
                            "limit": decision.limit,
                            "window_ms": decision.window_ms,
                            "retry_after_ms": decision.retry_after_ms,
                        },
                    )
            await breaker.before_call(snapshot)
        except (RateLimitError, CircuitBreakerError) as exc:
            exc.duration_ms = _elapsed_ms(start)
            logger.warning(
                "gateway_request_rejected connector=%s tenant=%s reason=%s",
                connector_id,
                tenant_id,
                type(exc).__name__,
            )
            raise

        timeout_ms = request.timeout_ms or settings.gateway_timeout_ms
        policy = RetryPolicy(
            max_attempts=request.max_retries or settings.gateway_max_retries,
            backoff_base_ms=settings.gateway_backoff_base_ms,
        )
        attempts = 0
        deadline = start + request.budget_ms / 1000.0 if request.budget_ms else None

        def _remaining_ms() -> float:
            if deadline is None:
                return float("inf")
            return (deadline - time.monotonic()) * 1000.0

        async def _attempt(attempt: int) -> httpx.Response:
            nonlocal attempts
            attempts = attempt
            remaining = _remaining_ms()
            if remaining <= 0:
                raise GatewayTimeoutError(
                    f"time budget of {request.budget_ms}ms exhausted",
                    connector_id=connector_id,
                    duration_ms=_elapsed_ms(start),
                    details={"timeout_ms": timeout_ms, "budget_ms": request.budget_ms},
                )
            attempt_timeout_ms = int(min(timeout_ms, max(remaining, 1)))
            return await self._dispatch(connector_id, request, timeout_ms=attempt_timeout_ms, start=start)

        def _on_retry(attempt: int, exc: Exception, delay_ms: int) -> None:
            logger.info(
                "gateway_retry connector=%s attempt=%s delay_ms=%s error=%s",
                connector_id,
                attempt,
                delay_ms,
                type(exc).__name__,
            )

        try:
            response = await retry_async(
                _attempt,
                policy=policy,
                retryable=_is_retryable,
                sleep=self._sleep,
                on_retry=_on_retry,
                remaining_ms=_remaining_ms if deadline is not None else None,
            )
        except GatewayError as exc:
            # Every failed send counts, 4xx included; only retries distinguish them.
            exc.duration_ms = _elapsed_ms(start)
            exc.details.setdefault("attempts", attempts)
            await breaker.record_failure()
            record_connector_call(connector_id=connector_id, latency_ms=exc.duration_ms, success=False)
            logger.warning(
                "gateway_request_failed connector=%s tenant=%s target=%s status=%s attempts=%s duration_ms=%.1f",
                connector_id,
                tenant_id,
                _target(request.url),
                exc.status_code,
                attempts,
                exc.duration_ms,
            )
            raise
        except BaseException as exc:
            # Cancelled or crashed mid-call: count it and free the HALF_OPEN slot.
            await asyncio.shield(breaker.record_failure())
            record_connector_call(connector_id=connector_id, latency_ms=_elapsed_ms(start), success=False)
            logger.warning(
                "gateway_request_aborted connector=%s tenant=%s attempts=%s error=%s",
                connector_id,
                tenant_id,
                attempts,
                type(exc).__name__,
            )
            raise

        duration_ms = _elapsed_ms(start)
        await breaker.record_success()
        record_connector_call(connector_id=connector_id, latency_ms=duration_ms, success=True)
        logger.info(
            "gateway_request_completed connector=%s tenant=%s status=%s attempts=%s duration_ms=%.1f",
            connector_id,
            tenant_id,
            response.status_code,
            attempts,
            duration_ms,
        )
        return GatewayResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            data=_response_data(response),
            duration_ms=duration_ms,
            attempts=attempts,
        )

    async def _dispatch(
        self,
        connector_id: str,
        request: OutboundRequest,
        *,
        timeout_ms: int,
        start: float,
    ) -> httpx.Response:
        headers = dict(request.headers)
        auth: httpx.Auth | None = None
        if isinstance(request.auth, BasicAuth):
            auth = httpx.BasicAuth(request.auth.username, request.auth.password)
        elif isinstance(request.auth, ApiKeyAuth):
            headers[request.auth.header_name] = request.auth.api_key
        kwargs: dict[str, Any] = {"headers": headers}
        if isinstance(request.body, (bytes, str)):
            kwargs["content"] = request.body
        elif request.body is not None:
            kwargs["json"] = request.body
        if auth is not None:
            kwargs["auth"] = auth
        timeout_s = timeout_ms / 1000.0
        try:
            response = await asyncio.wait_for(
                self._http().request(request.method.upper(), request.url, timeout=timeout_s, **kwargs),
                timeout=timeout_s,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise GatewayTimeoutError(
                f"request timed out after {timeout_ms}ms",
                connector_id=connector_id,
                duration_ms=_elapsed_ms(start),
                details={"timeout_ms": timeout_ms},
            ) from exc
        except httpx.HTTPError as exc:
            raise GatewayError(
                f"network error: {type(exc).__name__}",
                connector_id=connector_id,
                duration_ms=_elapsed_ms(start),
                details={"network": True, "reason": type(exc).__name__},
            ) from exc
        if response.status_code >= 400:
            preview = response.text[:_BODY_PREVIEW_CHARS] if response.content else ""
            raise GatewayError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                connector_id=connector_id,
                status_code=response.status_code,
                duration_ms=_elapsed_ms(start),
                details={"response_body": sanitize_metadata(preview)},
            )
        return response

    async def get_circuit_state(self, connector_id: str) -> dict[str, Any]:
        snapshot = await self.breaker(connector_id).load()
        return {
            "connector_id": connector_id,
            "state": snapshot.state.value,
            "failures": snapshot.failures,
            "last_failure_at": snapshot.last_failure_at,
            "opened_at": snapshot.opened_at,
            "trial_in_flight": snapshot.trial_in_flight,
        }

    async def reset_circuit(self, connector_id: str) -> None:
        await self.breaker(connector_id).reset()

    async def get_rate_limit_status(
        self,
        connector_id: str,
        policy: RateLimitPolicy | None = None,
    ) -> dict[str, Any]:
        decision = await self._limiter.status(connector_id, policy or self._rate_limit_policy)
        return {
            "connector_id": connector_id,
            "count": decision.count,
            "limit": decision.limit,
            "remaining": decision.remaining,
            "window_ms": decision.window_ms,
        }


async def build_gateway(**kwargs: Any) -> OutboundGateway:
    # Production wiring: shared Redis state, settings-driven defaults.
    store = await get_resilience_redis()
    return OutboundGateway(store=store, **kwargs)
