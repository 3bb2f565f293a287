from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol
from uuid import uuid4

from redis.asyncio import Redis

from integrationhub.core.config import get_settings
from integrationhub.core.errors import CircuitBreakerError
from integrationhub.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


class FastStore(Protocol):
    """Subset of the redis.asyncio command surface used for shared gateway state."""

    async def get(self, name: str) -> Any: ...

    async def set(self, name: str, value: str, ex: int | None = None) -> Any: ...

    async def delete(self, *names: str) -> Any: ...

    async def zadd(self, name: str, mapping: dict[str, float]) -> Any: ...

    async def zcard(self, name: str) -> int: ...

    async def zremrangebyscore(self, name: str, min: float, max: float) -> Any: ...

    async def expire(self, name: str, time: int) -> Any: ...


_redis_pool: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_resilience_redis() -> Redis | None:
    # Reuse one Redis client per event loop for breaker and rate-limit state.
    settings = get_settings()
    try:
        current_loop = asyncio.get_running_loop()
    except RuntimeError:
        return None
    global _redis_pool, _redis_loop
    if _redis_pool is not None and _redis_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            try:
                _redis_pool = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
                _redis_loop = current_loop
            except Exception as exc:  # noqa: BLE001 - gateway state fails open without Redis
                logger.warning("resilience_redis_unavailable", exc_info=exc)
                return None
    return _redis_pool


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def exponential_backoff_ms(attempt: int, *, base_ms: int, cap_ms: int | None = None) -> int:
    # Delay after the given attempt: base, 2*base, 4*base, ...
    delay = int(base_ms * (2 ** max(attempt - 1, 0)))
    if cap_ms is not None:
        delay = min(delay, cap_ms)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_base_ms: int


async def retry_async(
    func: Callable[[int], Awaitable[Any]],
    *,
    policy: RetryPolicy,
    retryable: Callable[[Exception], bool],
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Callable[[int, Exception, int], None] | None = None,
    remaining_ms: Callable[[], float] | None = None,
) -> Any:
    # Run func(attempt) until it succeeds, a non-retryable error occurs, or attempts run out.
    # remaining_ms, when given, stops retrying once the backoff would outlast the caller's budget.
    attempt = 1
    while True:
        try:
            return await func(attempt)
        except Exception as exc:  # noqa: BLE001 - caller maps the final failure
            if attempt >= max(policy.max_attempts, 1) or not retryable(exc):
                raise
            delay_ms = exponential_backoff_ms(attempt, base_ms=policy.backoff_base_ms)
            if remaining_ms is not None and remaining_ms() <= delay_ms:
                raise
            increment_counter("gateway_retries_total")
            if on_retry is not None:
                on_retry(attempt, exc, delay_ms)
            await sleep(delay_ms / 1000.0)
            attempt += 1


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int
    cooldown_seconds: int
    state_ttl_seconds: int
    key_prefix: str = "circuit"

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        settings = get_settings()
        return cls(
            failure_threshold=settings.cb_failure_threshold,
            cooldown_seconds=settings.cb_cooldown_seconds,
            state_ttl_seconds=settings.cb_state_ttl_seconds,
            key_prefix=settings.cb_key_prefix,
        )


@dataclass
class CircuitSnapshot:
    # Serialized as JSON under circuit:{connector_id}; absence means CLOSED.
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure_at: int | None = None
    opened_at: int | None = None
    trial_in_flight: bool = False

    def to_json(self) -> str:
        payload = asdict(self)
        payload["state"] = self.state.value
        return json.dumps(payload)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "CircuitSnapshot":
        data = json.loads(raw)
        return cls(
            state=CircuitState(data.get("state", CircuitState.CLOSED.value)),
            failures=int(data.get("failures", 0)),
            last_failure_at=data.get("last_failure_at"),
            opened_at=data.get("opened_at"),
            trial_in_flight=bool(data.get("trial_in_flight", False)),
        )


class CircuitBreaker:
    def __init__(
        self,
        connector_id: str,
        *,
        store: FastStore | None,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._connector_id = connector_id
        self._store = store
        self._config = config or CircuitBreakerConfig.from_settings()
        self._clock = clock or time.time

    @property
    def connector_id(self) -> str:
        return self._connector_id

    @property
    def key(self) -> str:
        return f"{self._config.key_prefix}:{self._connector_id}"

    async def load(self) -> CircuitSnapshot:
        # Shared-store failures read as CLOSED so calls are allowed through.
        if self._store is None:
            return CircuitSnapshot()
        try:
            raw = await self._store.get(self.key)
        except Exception as exc:  # noqa: BLE001 - breaker fails open
            logger.warning("circuit_breaker_degraded connector=%s op=load", self._connector_id, exc_info=exc)
            return CircuitSnapshot()
        if not raw:
            return CircuitSnapshot()
        try:
            return CircuitSnapshot.from_json(raw)
        except (ValueError, TypeError) as exc:
            logger.warning("circuit_breaker_state_corrupt connector=%s", self._connector_id, exc_info=exc)
            return CircuitSnapshot()

    async def _save(self, snapshot: CircuitSnapshot) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(self.key, snapshot.to_json(), ex=self._config.state_ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - breaker fails open
            logger.warning("circuit_breaker_degraded connector=%s op=save", self._connector_id, exc_info=exc)

    def _transition(self, previous: CircuitState, target: CircuitState) -> None:
        if previous == target:
            return
        logger.warning(
            "circuit_breaker_transition connector=%s from=%s to=%s",
            self._connector_id,
            previous.value,
            target.value,
        )
        increment_counter(f"circuit_breaker_transition_total.{target.value.lower()}")
        if target == CircuitState.OPEN:
            increment_counter("circuit_breaker_open_total")
        state_value = {CircuitState.CLOSED: 0.0, CircuitState.HALF_OPEN: 0.5, CircuitState.OPEN: 1.0}[target]
        set_gauge(f"circuit_breaker_state.{self._connector_id}", state_value)

    def cooldown_elapsed(self, snapshot: CircuitSnapshot) -> bool:
        if snapshot.state != CircuitState.OPEN or snapshot.opened_at is None:
            return False
        return _now_ms(self._clock) - snapshot.opened_at >= self._config.cooldown_seconds * 1000

    def _open_error(self, snapshot: CircuitSnapshot) -> CircuitBreakerError:
        retry_after_ms = None
        if snapshot.opened_at is not None:
            retry_after_ms = max(
                0, snapshot.opened_at + self._config.cooldown_seconds * 1000 - _now_ms(self._clock)
            )
        return CircuitBreakerError(
            f"circuit open for connector {self._connector_id}",
            connector_id=self._connector_id,
            details={"state": snapshot.state.value, "failures": snapshot.failures, "retry_after_ms": retry_after_ms},
        )

    async def before_call(self, snapshot: CircuitSnapshot | None = None) -> CircuitSnapshot:
        # Reject while OPEN; after cooldown hand out exactly one HALF_OPEN trial call.
        if snapshot is None:
            snapshot = await self.load()
        if snapshot.state == CircuitState.OPEN:
            if not self.cooldown_elapsed(snapshot):
                raise self._open_error(snapshot)
            self._transition(snapshot.state, CircuitState.HALF_OPEN)
            snapshot = CircuitSnapshot(
                state=CircuitState.HALF_OPEN,
                failures=snapshot.failures,
                last_failure_at=snapshot.last_failure_at,
                opened_at=snapshot.opened_at,
                trial_in_flight=True,
            )
            await self._save(snapshot)
            return snapshot
        if snapshot.state == CircuitState.HALF_OPEN:
            if snapshot.trial_in_flight:
                raise self._open_error(snapshot)
            snapshot.trial_in_flight = True
            await self._save(snapshot)
        return snapshot

    async def record_success(self) -> None:
        # Success deletes the key; absence reads as CLOSED.
        if self._store is None:
            return
        snapshot = await self.load()
        self._transition(snapshot.state, CircuitState.CLOSED)
        try:
            await self._store.delete(self.key)
        except Exception as exc:  # noqa: BLE001 - breaker fails open
            logger.warning("circuit_breaker_degraded connector=%s op=reset", self._connector_id, exc_info=exc)

    async def record_failure(self) -> CircuitSnapshot:
        snapshot = await self.load()
        now_ms = _now_ms(self._clock)
        failures = snapshot.failures + 1
        if snapshot.state == CircuitState.OPEN:
            # Late failure from a call admitted before the circuit opened.
            updated = CircuitSnapshot(
                state=CircuitState.OPEN,
                failures=failures,
                last_failure_at=now_ms,
                opened_at=snapshot.opened_at or now_ms,
            )
        elif snapshot.state == CircuitState.HALF_OPEN or failures >= self._config.failure_threshold:
            self._transition(snapshot.state, CircuitState.OPEN)
            updated = CircuitSnapshot(
                state=CircuitState.OPEN,
                failures=failures,
                last_failure_at=now_ms,
                opened_at=now_ms,
            )
        else:
            updated = CircuitSnapshot(
                state=snapshot.state,
                failures=failures,
                last_failure_at=now_ms,
                opened_at=snapshot.opened_at,
            )
        await self._save(updated)
        return updated

    async def reset(self) -> None:
        if self._store is None:
            return
        await self._store.delete(self.key)
        logger.info("circuit_breaker_reset connector=%s", self._connector_id)


@dataclass(frozen=True)
class RateLimitPolicy:
    max_requests: int
    window_ms: int

    @classmethod
    def from_settings(cls) -> "RateLimitPolicy":
        settings = get_settings()
        return cls(max_requests=settings.rl_max_requests, window_ms=settings.rl_window_ms)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    count: int
    limit: int
    remaining: int
    window_ms: int
    retry_after_ms: int = 0
    degraded: bool = False


class SlidingWindowRateLimiter:
    def __init__(
        self,
        store: FastStore | None,
        *,
        key_prefix: str | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._key_prefix = key_prefix or get_settings().rl_key_prefix
        self._clock = clock or time.time

    def key(self, connector_id: str) -> str:
        return f"{self._key_prefix}:{connector_id}"

    def _degraded(self, policy: RateLimitPolicy) -> RateLimitDecision:
        return RateLimitDecision(
            allowed=True,
            count=0,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            window_ms=policy.window_ms,
            degraded=True,
        )

    async def acquire(self, connector_id: str, policy: RateLimitPolicy) -> RateLimitDecision:
        # Prune the window, count, and record this request only when admitted.
        if self._store is None:
            return self._degraded(policy)
        key = self.key(connector_id)
        now_ms = _now_ms(self._clock)
        window_start = now_ms - policy.window_ms
        try:
            await self._store.zremrangebyscore(key, 0, window_start)
            count = int(await self._store.zcard(key))
            if count >= policy.max_requests:
                return RateLimitDecision(
                    allowed=False,
                    count=count,
                    limit=policy.max_requests,
                    remaining=0,
                    window_ms=policy.window_ms,
                    retry_after_ms=policy.window_ms,
                )
            await self._store.zadd(key, {f"{now_ms}-{uuid4().hex[:12]}": now_ms})
            await self._store.expire(key, max(1, math.ceil(policy.window_ms / 1000)))
        except Exception as exc:  # noqa: BLE001 - rate limiting fails open
            logger.warning("rate_limit_degraded connector=%s", connector_id, exc_info=exc)
            return self._degraded(policy)
        count += 1
        return RateLimitDecision(
            allowed=True,
            count=count,
            limit=policy.max_requests,
            remaining=max(policy.max_requests - count, 0),
            window_ms=policy.window_ms,
        )

    async def status(self, connector_id: str, policy: RateLimitPolicy) -> RateLimitDecision:
        if self._store is None:
            return self._degraded(policy)
        key = self.key(connector_id)
        window_start = _now_ms(self._clock) - policy.window_ms
        await self._store.zremrangebyscore(key, 0, window_start)
        count = int(await self._store.zcard(key))
        return RateLimitDecision(
            allowed=count < policy.max_requests,
            count=count,
            limit=policy.max_requests,
            remaining=max(policy.max_requests - count, 0),
            window_ms=policy.window_ms,
        )


def _calculate_tokens(*, tokens: float, last_ms: int, now_ms: int, rate: float, burst: int) -> float:
    # Refill tokens based on elapsed time while enforcing burst capacity.
    if now_ms < last_ms:
        last_ms = now_ms
    delta_s = (now_ms - last_ms) / 1000.0
    return min(float(burst), tokens + (delta_s * rate))


def _retry_after_ms(tokens: float, *, rate: float, cost: int = 1) -> int:
    if tokens >= cost:
        return 0
    if rate <= 0:
        return 1000
    return int(math.ceil(((cost - tokens) / rate) * 1000))


@dataclass
class JobRateLimiter:
    """Process-local token bucket that caps how fast a worker starts jobs."""

    rate: float
    burst: int
    clock: Callable[[], float] = time.monotonic
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    _tokens: float | None = field(default=None, init=False)
    _last_ms: int | None = field(default=None, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)

    def try_acquire(self) -> int:
        # Returns 0 when a token was taken, else the wait in milliseconds.
        now_ms = _now_ms(self.clock)
        tokens = float(self.burst) if self._tokens is None else self._tokens
        last_ms = now_ms if self._last_ms is None else self._last_ms
        tokens = _calculate_tokens(tokens=tokens, last_ms=last_ms, now_ms=now_ms, rate=self.rate, burst=self.burst)
        self._last_ms = now_ms
        wait_ms = _retry_after_ms(tokens, rate=self.rate)
        if wait_ms == 0:
            tokens -= 1
        self._tokens = tokens
        return wait_ms

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                wait_ms = self.try_acquire()
                if wait_ms == 0:
                    return
                await self.sleep(wait_ms / 1000.0)
