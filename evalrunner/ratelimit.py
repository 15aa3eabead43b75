"""Admission control: rate limits, quotas and concurrency caps.

All state is in memory and keyed by an opaque identifier (usually an API key
or a pattern name). Checks return ``False`` on rejection and record a
violation; ``acquire`` is the raising variant. The limiter never retries on
its own; callers decide what a rejection means.
"""
import asyncio
import calendar
import logging
import math
import time
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from . import metrics
from .config import ADAPTIVE_INTERVAL_SECONDS
from .errors import AdmissionRejected
from .events import EventBus

logger = logging.getLogger(__name__)

MAX_VIOLATIONS = 10000


class RateLimitStrategy(str, Enum):
    SLIDING_WINDOW = "sliding-window"
    FIXED_WINDOW = "fixed-window"
    TOKEN_BUCKET = "token-bucket"
    LEAKY_BUCKET = "leaky-bucket"


class ViolationType(str, Enum):
    REQUEST_LIMIT = "request-limit"
    TOKEN_LIMIT = "token-limit"
    CONCURRENT_LIMIT = "concurrent-limit"
    QUOTA_EXCEEDED = "quota-exceeded"


class QuotaPeriod(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    MONTHLY = "monthly"


class RateLimitConfig(BaseModel):
    window_ms: int
    max_requests: int
    max_tokens: Optional[int] = None
    max_concurrent: Optional[int] = None
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING_WINDOW


class QuotaLimit(BaseModel):
    requests: int
    tokens: int
    evaluations: int


class QuotaConfig(BaseModel):
    daily: QuotaLimit
    hourly: Optional[QuotaLimit] = None
    monthly: Optional[QuotaLimit] = None
    per_pattern: Dict[str, QuotaLimit] = Field(default_factory=dict)

    def periods(self):
        for period in (QuotaPeriod.HOURLY, QuotaPeriod.DAILY, QuotaPeriod.MONTHLY):
            limit = getattr(self, period.value)
            if limit is not None:
                yield period, limit


class AdaptiveConfig(BaseModel):
    enabled: bool = True
    min_requests: int = 10
    max_requests: int = 100
    adjustment_factor: float = 0.1
    error_threshold: float = 0.2
    success_threshold: float = 0.95
    adjustment_interval_seconds: float = ADAPTIVE_INTERVAL_SECONDS


class RateLimitState(BaseModel):
    requests: float = 0
    tokens: float = 0
    concurrent: int = 0
    window_start: float
    last_request: float
    violations: int = 0


class QuotaUsage(BaseModel):
    period: QuotaPeriod
    requests: int = 0
    tokens: int = 0
    evaluations: int = 0
    limit: QuotaLimit
    reset_at: float

    @property
    def remaining(self) -> QuotaLimit:
        return QuotaLimit(
            requests=self.limit.requests - self.requests,
            tokens=self.limit.tokens - self.tokens,
            evaluations=self.limit.evaluations - self.evaluations,
        )

    def would_exceed(self, token_cost: int) -> bool:
        return (
            self.requests + 1 > self.limit.requests
            or self.tokens + token_cost > self.limit.tokens
            or self.evaluations + 1 > self.limit.evaluations
        )

    def consume(self, token_cost: int) -> None:
        self.requests += 1
        self.tokens += token_cost
        self.evaluations += 1


class RateLimitViolation(BaseModel):
    timestamp: float
    type: ViolationType
    limit: float
    attempted: float
    pattern: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TokenBucket(BaseModel):
    tokens: float
    capacity: float
    refill_rate: float
    last_refill: float


def next_reset(period: QuotaPeriod, now: float) -> float:
    """Start of the next hour, day or month (UTC) after ``now``."""
    dt = datetime.fromtimestamp(now, tz=timezone.utc)
    if period == QuotaPeriod.HOURLY:
        nxt = dt.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    elif period == QuotaPeriod.DAILY:
        nxt = dt.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    else:
        days = calendar.monthrange(dt.year, dt.month)[1]
        nxt = dt.replace(day=1, hour=0, minute=0, second=0, microsecond=0) + timedelta(days=days)
    return nxt.timestamp()


class RateLimiter:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        adaptive: Optional[AdaptiveConfig] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.events = events
        self.adaptive = adaptive or AdaptiveConfig()
        self._clock = clock
        self._sleep = sleep
        self._states: Dict[str, RateLimitState] = {}
        self._buckets: Dict[str, TokenBucket] = {}
        self._quota_usage: Dict[str, Dict[QuotaPeriod, QuotaUsage]] = {}
        self._violations: List[RateLimitViolation] = []
        self._current_limits: Dict[str, int] = {}
        self._performance: Dict[str, Dict[str, int]] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------
    async def check_rate_limit(self, identifier: str, config: RateLimitConfig, token_cost: int = 0) -> bool:
        now = self._clock()
        if config.strategy == RateLimitStrategy.SLIDING_WINDOW:
            return self._check_sliding_window(identifier, config, now, token_cost)
        if config.strategy == RateLimitStrategy.FIXED_WINDOW:
            return self._check_fixed_window(identifier, config, now, token_cost)
        if config.strategy in (RateLimitStrategy.TOKEN_BUCKET, RateLimitStrategy.LEAKY_BUCKET):
            # leaky bucket shares the token bucket implementation
            return self._check_token_bucket(identifier, config, now, token_cost)
        raise ValueError(f"unknown rate limit strategy: {config.strategy}")

    async def acquire(self, identifier: str, config: RateLimitConfig, token_cost: int = 0) -> None:
        if not await self.check_rate_limit(identifier, config, token_cost):
            last = self._violations[-1] if self._violations else None
            raise AdmissionRejected(f"rate limit exceeded for {identifier}", violation=last)

    async def wait_for_rate_limit(
        self, identifier: str, config: RateLimitConfig, token_cost: int = 0, max_attempts: int = 10
    ) -> None:
        for attempt in range(max_attempts):
            if await self.check_rate_limit(identifier, config, token_cost):
                return
            await self._sleep(min(1.0 * (2 ** attempt), 30.0))
        raise AdmissionRejected(f"rate limit exceeded after {max_attempts} attempts for {identifier}")

    def _check_sliding_window(self, identifier, config, now, token_cost) -> bool:
        state = self._get_state(identifier, now)
        window = config.window_ms / 1000.0
        if state.window_start < now - window:
            windows_passed = (now - state.window_start) / window
            state.requests = max(0, state.requests - math.floor(windows_passed * config.max_requests))
            state.tokens = max(0, state.tokens - math.floor(windows_passed * (config.max_tokens or 0)))
            state.window_start = now - window
        return self._admit(identifier, state, config, now, token_cost, "sliding-window")

    def _check_fixed_window(self, identifier, config, now, token_cost) -> bool:
        state = self._get_state(identifier, now)
        if now - state.window_start >= config.window_ms / 1000.0:
            state.requests = 0
            state.tokens = 0
            state.window_start = now
        return self._admit(identifier, state, config, now, token_cost, "fixed-window")

    def _admit(self, identifier, state: RateLimitState, config, now, token_cost, strategy) -> bool:
        limit = self.effective_limit(identifier, config.max_requests)
        if state.requests >= limit:
            state.violations += 1
            self._record_violation(
                ViolationType.REQUEST_LIMIT,
                limit=limit,
                attempted=state.requests + 1,
                metadata={"identifier": identifier, "strategy": strategy},
            )
            return False
        if config.max_tokens and state.tokens + token_cost > config.max_tokens:
            state.violations += 1
            self._record_violation(
                ViolationType.TOKEN_LIMIT,
                limit=config.max_tokens,
                attempted=state.tokens + token_cost,
                metadata={"identifier": identifier, "strategy": strategy},
            )
            return False
        state.requests += 1
        state.tokens += token_cost
        state.last_request = now
        return True

    def _check_token_bucket(self, identifier, config, now, token_cost) -> bool:
        bucket = self._buckets.get(identifier)
        if bucket is None:
            bucket = TokenBucket(
                tokens=config.max_requests,
                capacity=config.max_requests,
                refill_rate=config.max_requests / (config.window_ms / 1000.0),
                last_refill=now,
            )
            self._buckets[identifier] = bucket
        elapsed = max(0.0, now - bucket.last_refill)
        bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
        bucket.last_refill = now

        required = max(1, token_cost)
        if bucket.tokens < required:
            self._record_violation(
                ViolationType.REQUEST_LIMIT,
                limit=bucket.capacity,
                attempted=required,
                metadata={"identifier": identifier, "strategy": config.strategy.value, "available": bucket.tokens},
            )
            return False
        bucket.tokens -= required
        return True

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------
    async def check_quota(self, identifier: str, pattern: str, config: QuotaConfig, token_cost: int = 0) -> bool:
        now = self._clock()
        usage_map = self._quota_usage.setdefault(identifier, {})
        pattern = getattr(pattern, "value", pattern)

        checked = []
        for period, limit in config.periods():
            usage = self._get_usage(usage_map, period, limit, now)
            if usage.would_exceed(token_cost):
                self._record_violation(
                    ViolationType.QUOTA_EXCEEDED,
                    limit=limit.requests,
                    attempted=usage.requests + 1,
                    pattern=pattern,
                    metadata={"identifier": identifier, "period": period.value},
                )
                return False
            checked.append(usage)

        pattern_limit = config.per_pattern.get(pattern)
        if pattern_limit is not None:
            pattern_map = self._quota_usage.setdefault(f"{identifier}:{pattern}", {})
            usage = self._get_usage(pattern_map, QuotaPeriod.DAILY, pattern_limit, now)
            if usage.would_exceed(token_cost):
                self._record_violation(
                    ViolationType.QUOTA_EXCEEDED,
                    limit=pattern_limit.requests,
                    attempted=usage.requests + 1,
                    pattern=pattern,
                    metadata={"identifier": identifier, "pattern_quota": True},
                )
                return False
            checked.append(usage)

        for usage in checked:
            usage.consume(token_cost)
        return True

    def _get_usage(self, usage_map, period: QuotaPeriod, limit: QuotaLimit, now: float) -> QuotaUsage:
        usage = usage_map.get(period)
        if usage is None:
            usage = QuotaUsage(period=period, limit=limit, reset_at=next_reset(period, now))
            usage_map[period] = usage
        elif now >= usage.reset_at:
            usage.requests = usage.tokens = usage.evaluations = 0
            usage.reset_at = next_reset(period, now)
        usage.limit = limit
        return usage

    # ------------------------------------------------------------------
    # Concurrency
    # ------------------------------------------------------------------
    async def track_concurrent(self, identifier: str, operation: Callable[[], Awaitable[Any]], max_concurrent: int):
        state = self._get_state(identifier, self._clock())
        if state.concurrent >= max_concurrent:
            violation = self._record_violation(
                ViolationType.CONCURRENT_LIMIT,
                limit=max_concurrent,
                attempted=state.concurrent + 1,
                metadata={"identifier": identifier},
            )
            raise AdmissionRejected(
                f"concurrent limit exceeded for {identifier}: {state.concurrent}/{max_concurrent}",
                violation=violation,
            )
        state.concurrent += 1
        try:
            return await operation()
        finally:
            state.concurrent -= 1

    # ------------------------------------------------------------------
    # Adaptive limits
    # ------------------------------------------------------------------
    def effective_limit(self, identifier: str, base_limit: int) -> int:
        if not self.adaptive.enabled:
            return base_limit
        return self._current_limits.setdefault(identifier, base_limit)

    def record_outcome(self, identifier: str, success: bool) -> None:
        perf = self._performance.setdefault(identifier, {"requests": 0, "errors": 0})
        perf["requests"] += 1
        if not success:
            perf["errors"] += 1

    def adjust_limits(self) -> Dict[str, int]:
        """One adaptive pass. Returns the identifiers whose limit changed."""
        changed = {}
        cfg = self.adaptive
        for identifier, limit in list(self._current_limits.items()):
            perf = self._performance.get(identifier)
            if not perf or not perf["requests"]:
                continue
            error_rate = perf["errors"] / perf["requests"]
            success_rate = 1 - error_rate

            new_limit = limit
            if error_rate > cfg.error_threshold:
                new_limit = max(cfg.min_requests, math.floor(limit * (1 - cfg.adjustment_factor)))
            elif success_rate > cfg.success_threshold:
                new_limit = min(cfg.max_requests, math.ceil(limit * (1 + cfg.adjustment_factor)))

            if new_limit != limit:
                self._current_limits[identifier] = new_limit
                changed[identifier] = new_limit
                logger.info("adjusted rate limit for %s: %s -> %s", identifier, limit, new_limit)
                self._emit("ratelimit.adjusted", {"identifier": identifier, "old_limit": limit, "new_limit": new_limit})
            self._performance[identifier] = {"requests": 0, "errors": 0}
        return changed

    async def start(self) -> None:
        if self._running or not self.adaptive.enabled:
            return
        self._running = True
        self._task = asyncio.create_task(self._adaptive_loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _adaptive_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.adaptive.adjustment_interval_seconds)
            try:
                self.adjust_limits()
            except Exception:
                logger.exception("adaptive rate limit adjustment failed")

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def violations(self, since: Optional[float] = None) -> List[RateLimitViolation]:
        if since is not None:
            return [v for v in self._violations if v.timestamp >= since]
        return list(self._violations)

    def get_state(self, identifier: str) -> Optional[RateLimitState]:
        return self._states.get(identifier)

    def get_quota_usage(self, identifier: str) -> Optional[Dict[QuotaPeriod, QuotaUsage]]:
        return self._quota_usage.get(identifier)

    def reset_rate_limit(self, identifier: str) -> None:
        self._states.pop(identifier, None)
        self._buckets.pop(identifier, None)
        logger.info("rate limit reset for %s", identifier)

    def reset_quota(self, identifier: str, period: Optional[QuotaPeriod] = None) -> None:
        usage_map = self._quota_usage.get(identifier)
        if usage_map is None:
            return
        if period is not None:
            usage_map.pop(period, None)
        else:
            del self._quota_usage[identifier]
        logger.info("quota reset for %s %s", identifier, period.value if period else "all periods")

    def _get_state(self, identifier: str, now: float) -> RateLimitState:
        state = self._states.get(identifier)
        if state is None:
            state = RateLimitState(window_start=now, last_request=now)
            self._states[identifier] = state
        return state

    def _record_violation(self, vtype: ViolationType, **fields) -> RateLimitViolation:
        violation = RateLimitViolation(timestamp=self._clock(), type=vtype, **fields)
        self._violations.append(violation)
        if len(self._violations) > MAX_VIOLATIONS:
            self._violations.pop(0)
        metrics.ratelimit_violations_total.labels(type=vtype.value).inc()
        logger.warning("rate limit violation %s: %s", vtype.value, violation.metadata)
        self._emit("ratelimit.violation", violation)
        return violation

    def _emit(self, name: str, payload: Any) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
