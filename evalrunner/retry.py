"""Retry with backoff and per-resource circuit breakers."""
import asyncio
import logging
import random
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict

from . import metrics
from .errors import CircuitOpenError, ExhaustedRetriesError
from .events import EventBus

logger = logging.getLogger(__name__)

Operation = Callable[[], Awaitable[Any]]


class RetryConfig(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 30000
    factor: float = 2.0
    jitter: bool = True
    retry_condition: Optional[Callable[[BaseException], bool]] = None
    on_retry: Optional[Callable[[BaseException, int], None]] = None


class RetryResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    success: bool
    result: Any = None
    error: Optional[BaseException] = None
    attempts: int
    total_duration_ms: float


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = 5
    reset_timeout_ms: float = 60000
    half_open_max_attempts: int = 3


class CircuitBreaker(BaseModel):
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    last_failure_time: float = 0.0
    half_open_attempts: int = 0
    config: CircuitBreakerConfig


def backoff_delay_ms(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> float:
    delay = min(config.initial_delay_ms * (config.factor ** (attempt - 1)), config.max_delay_ms)
    if config.jitter:
        # +/-5%
        delay += delay * 0.1 * (rng() - 0.5)
    return round(delay)


class RetryService:
    def __init__(
        self,
        events: Optional[EventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.events = events
        self._clock = clock
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreaker] = {}

    async def execute_with_retry(self, operation: Operation, config: Optional[RetryConfig] = None) -> RetryResult:
        """Run ``operation`` until it succeeds or the attempt budget is spent.

        Never raises for operation errors; the outcome is reported in the
        returned ``RetryResult``.
        """
        config = config or RetryConfig()
        start = self._clock()
        last_error: Optional[BaseException] = None
        attempt = 0

        while attempt < config.max_attempts:
            attempt += 1
            try:
                result = await operation()
                return RetryResult(
                    success=True,
                    result=result,
                    attempts=attempt,
                    total_duration_ms=(self._clock() - start) * 1000,
                )
            except Exception as exc:
                last_error = exc
                if config.retry_condition is not None and not config.retry_condition(exc):
                    break
                if attempt >= config.max_attempts:
                    break

                delay = backoff_delay_ms(attempt, config)
                logger.debug("retry attempt %s/%s after %sms: %s", attempt, config.max_attempts, delay, exc)
                if config.on_retry is not None:
                    config.on_retry(exc, attempt)
                self._emit(
                    "retry.attempt",
                    {"attempt": attempt, "max_attempts": config.max_attempts, "delay_ms": delay, "error": str(exc)},
                )
                await self._sleep(delay / 1000.0)

        return RetryResult(
            success=False,
            error=last_error,
            attempts=attempt,
            total_duration_ms=(self._clock() - start) * 1000,
        )

    async def retry_with_backoff(
        self,
        operation: Operation,
        max_retries: int = 3,
        base_delay_ms: float = 1000,
        max_delay_ms: float = 60000,
        should_retry: Optional[Callable[[BaseException, int], bool]] = None,
    ) -> Any:
        for attempt in range(max_retries + 1):
            try:
                return await operation()
            except Exception as exc:
                if attempt == max_retries or (should_retry is not None and not should_retry(exc, attempt)):
                    raise
                delay = min(base_delay_ms * (2 ** attempt), max_delay_ms)
                delay += random.random() * delay * 0.1
                logger.debug("retrying after %.0fms (attempt %s/%s)", delay, attempt + 1, max_retries)
                await self._sleep(delay / 1000.0)

    def retryable(self, operation: Operation, config: Optional[RetryConfig] = None) -> Operation:
        """Wrap ``operation`` so exhausting its retries raises ``ExhaustedRetriesError``."""

        async def _run():
            outcome = await self.execute_with_retry(operation, config)
            if not outcome.success:
                raise ExhaustedRetriesError(outcome.attempts, outcome.error) from outcome.error
            return outcome.result

        return _run

    async def execute_with_circuit_breaker(
        self, key: str, operation: Operation, config: Optional[CircuitBreakerConfig] = None
    ) -> Any:
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(config=config or CircuitBreakerConfig())
            self._breakers[key] = breaker

        if breaker.state == CircuitState.OPEN:
            if (self._clock() - breaker.last_failure_time) * 1000 < breaker.config.reset_timeout_ms:
                raise CircuitOpenError(key)
            breaker.state = CircuitState.HALF_OPEN
            breaker.half_open_attempts = 0
            self._transition(key, CircuitState.HALF_OPEN)

        try:
            result = await operation()
        except Exception:
            breaker.failures += 1
            breaker.last_failure_time = self._clock()
            if breaker.state == CircuitState.HALF_OPEN:
                breaker.state = CircuitState.OPEN
                logger.warning("circuit breaker for %s reopened after half-open failure", key)
                self._transition(key, CircuitState.OPEN, reason="half-open-failure")
            elif breaker.failures >= breaker.config.failure_threshold:
                breaker.state = CircuitState.OPEN
                logger.warning("circuit breaker for %s opened after %s failures", key, breaker.failures)
                self._transition(key, CircuitState.OPEN, reason="threshold-exceeded")
            raise

        if breaker.state == CircuitState.HALF_OPEN:
            breaker.half_open_attempts += 1
            if breaker.half_open_attempts >= breaker.config.half_open_max_attempts:
                breaker.state = CircuitState.CLOSED
                breaker.failures = 0
                logger.info("circuit breaker for %s is now closed", key)
                self._transition(key, CircuitState.CLOSED)
        else:
            breaker.failures = 0
        return result

    def get_breaker_state(self, key: str) -> Optional[CircuitState]:
        breaker = self._breakers.get(key)
        return breaker.state if breaker else None

    def get_breaker(self, key: str) -> Optional[CircuitBreaker]:
        return self._breakers.get(key)

    def reset_breaker(self, key: str) -> bool:
        breaker = self._breakers.get(key)
        if breaker is None:
            return False
        breaker.state = CircuitState.CLOSED
        breaker.failures = 0
        breaker.half_open_attempts = 0
        logger.info("circuit breaker for %s manually reset", key)
        self._emit("circuitbreaker.reset", {"key": key})
        return True

    def _transition(self, key: str, state: CircuitState, reason: Optional[str] = None) -> None:
        metrics.circuit_breaker_transitions_total.labels(state=state.value).inc()
        name = {
            CircuitState.OPEN: "circuitbreaker.opened",
            CircuitState.HALF_OPEN: "circuitbreaker.half_open",
            CircuitState.CLOSED: "circuitbreaker.closed",
        }[state]
        payload = {"key": key}
        if reason:
            payload["reason"] = reason
        self._emit(name, payload)

    def _emit(self, name: str, payload: Any) -> None:
        if self.events is not None:
            self.events.publish(name, payload)
