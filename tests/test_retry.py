import pytest

from evalrunner.errors import CircuitOpenError, ExhaustedRetriesError, TransientFailure
from evalrunner.retry import (
    CircuitBreakerConfig,
    CircuitState,
    RetryConfig,
    RetryService,
    backoff_delay_ms,
)


class Flaky:
    """Fails ``failures`` times, then returns ``value``."""

    def __init__(self, failures, value="ok", exc=TransientFailure):
        self.failures = failures
        self.value = value
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return self.value


@pytest.mark.asyncio
async def test_execute_with_retry_succeeds_on_third_attempt(clock, sleeper):
    service = RetryService(clock=clock, sleep=sleeper)
    op = Flaky(failures=2)

    outcome = await service.execute_with_retry(op, RetryConfig(max_attempts=3, jitter=False))

    assert outcome.success is True
    assert outcome.attempts == 3
    assert outcome.result == "ok"
    assert sleeper.calls == [1.0, 2.0]
    assert outcome.total_duration_ms == pytest.approx(3000)


@pytest.mark.asyncio
async def test_execute_with_retry_reports_last_error(clock, sleeper):
    service = RetryService(clock=clock, sleep=sleeper)
    op = Flaky(failures=10)

    outcome = await service.execute_with_retry(op, RetryConfig(max_attempts=3, jitter=False))

    assert outcome.success is False
    assert outcome.attempts == 3
    assert str(outcome.error) == "failure 3"
    # no sleep after the final attempt
    assert len(sleeper.calls) == 2


@pytest.mark.asyncio
async def test_retry_condition_stops_early(clock, sleeper):
    service = RetryService(clock=clock, sleep=sleeper)
    op = Flaky(failures=10, exc=ValueError)
    config = RetryConfig(max_attempts=5, retry_condition=lambda exc: not isinstance(exc, ValueError))

    outcome = await service.execute_with_retry(op, config)

    assert outcome.success is False
    assert outcome.attempts == 1
    assert sleeper.calls == []


@pytest.mark.asyncio
async def test_on_retry_hook_and_events(clock, sleeper, events):
    service = RetryService(events, clock=clock, sleep=sleeper)
    sub = events.subscribe("retry.attempt")
    seen = []
    config = RetryConfig(max_attempts=3, jitter=False, on_retry=lambda exc, attempt: seen.append(attempt))

    await service.execute_with_retry(Flaky(failures=2), config)

    assert seen == [1, 2]
    assert [e.payload["delay_ms"] for e in sub.drain()] == [1000, 2000]


def test_backoff_delay_is_capped_and_jittered():
    config = RetryConfig(initial_delay_ms=1000, max_delay_ms=5000, factor=2.0, jitter=True)

    assert backoff_delay_ms(1, config, rng=lambda: 1.0) == 1050
    assert backoff_delay_ms(1, config, rng=lambda: 0.0) == 950
    assert backoff_delay_ms(10, config, rng=lambda: 0.5) == 5000


@pytest.mark.asyncio
async def test_retryable_wrapper_raises_when_exhausted(clock, sleeper):
    service = RetryService(clock=clock, sleep=sleeper)
    wrapped = service.retryable(Flaky(failures=5), RetryConfig(max_attempts=2, jitter=False))

    with pytest.raises(ExhaustedRetriesError) as exc_info:
        await wrapped()
    assert exc_info.value.attempts == 2


@pytest.mark.asyncio
async def test_retry_with_backoff_reraises_after_budget(clock, sleeper):
    service = RetryService(clock=clock, sleep=sleeper)
    op = Flaky(failures=10)

    with pytest.raises(TransientFailure):
        await service.retry_with_backoff(op, max_retries=2, base_delay_ms=1000)

    assert op.calls == 3
    assert len(sleeper.calls) == 2
    assert 1.0 <= sleeper.calls[0] <= 1.1
    assert 2.0 <= sleeper.calls[1] <= 2.2


@pytest.mark.asyncio
async def test_circuit_opens_exactly_at_threshold(clock, events):
    service = RetryService(events, clock=clock)
    sub = events.subscribe("circuitbreaker.*")
    config = CircuitBreakerConfig(failure_threshold=3, reset_timeout_ms=60000)
    op = Flaky(failures=100)

    for expected_failures in (1, 2):
        with pytest.raises(TransientFailure):
            await service.execute_with_circuit_breaker("engine", op, config)
        assert service.get_breaker_state("engine") == CircuitState.CLOSED
        assert service.get_breaker("engine").failures == expected_failures

    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", op, config)
    assert service.get_breaker_state("engine") == CircuitState.OPEN

    opened = sub.drain()
    assert [e.name for e in opened] == ["circuitbreaker.opened"]
    assert opened[0].payload == {"key": "engine", "reason": "threshold-exceeded"}


@pytest.mark.asyncio
async def test_open_circuit_rejects_without_calling_until_timeout(clock):
    service = RetryService(clock=clock)
    config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=60000, half_open_max_attempts=2)
    failing = Flaky(failures=1)

    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", failing, config)

    clock.advance(59)
    with pytest.raises(CircuitOpenError):
        await service.execute_with_circuit_breaker("engine", failing, config)
    assert failing.calls == 1

    clock.advance(2)
    assert await service.execute_with_circuit_breaker("engine", failing, config) == "ok"
    assert service.get_breaker_state("engine") == CircuitState.HALF_OPEN
    assert await service.execute_with_circuit_breaker("engine", failing, config) == "ok"
    assert service.get_breaker_state("engine") == CircuitState.CLOSED
    assert service.get_breaker("engine").failures == 0


@pytest.mark.asyncio
async def test_half_open_failure_reopens(clock):
    service = RetryService(clock=clock)
    config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_ms=1000)
    op = Flaky(failures=100)

    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", op, config)
    clock.advance(2)
    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", op, config)

    assert service.get_breaker_state("engine") == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await service.execute_with_circuit_breaker("engine", op, config)


@pytest.mark.asyncio
async def test_success_clears_failure_count_while_closed(clock):
    service = RetryService(clock=clock)
    config = CircuitBreakerConfig(failure_threshold=2)

    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", Flaky(failures=1), config)
    await service.execute_with_circuit_breaker("engine", Flaky(failures=0), config)

    assert service.get_breaker("engine").failures == 0
    assert service.get_breaker_state("engine") == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_reset_breaker(clock):
    service = RetryService(clock=clock)
    config = CircuitBreakerConfig(failure_threshold=1)
    with pytest.raises(TransientFailure):
        await service.execute_with_circuit_breaker("engine", Flaky(failures=1), config)

    assert service.reset_breaker("engine") is True
    assert service.get_breaker_state("engine") == CircuitState.CLOSED
    assert service.reset_breaker("unknown") is False
