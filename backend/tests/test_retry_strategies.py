"""Tests for workflow retry strategies and the step attempt runner."""

import asyncio
import pytest

from app.config import Settings
from core.exceptions import HandlerError, StepTimeoutError
from workflow.retry_strategies import (
    RetryStrategy,
    RetryPolicy,
    RETRY_PRESETS,
    StepAttemptRunner,
)


async def no_sleep(delay):
    return None


# ─── RetryStrategy creation ───

@pytest.mark.unit
class TestRetryStrategyCreation:
    def test_none_strategy(self):
        s = RetryStrategy.none()
        assert s.policy == RetryPolicy.NONE
        assert s.max_retries == 0

    def test_fixed_strategy(self):
        s = RetryStrategy.fixed(max_retries=3, delay=5.0)
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == 5.0
        assert s.jitter is False

    def test_exponential_strategy(self):
        s = RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 5
        assert s.jitter is False

    def test_linear_strategy(self):
        s = RetryStrategy.linear(max_retries=4, base_delay=2.0)
        assert s.policy == RetryPolicy.LINEAR
        assert s.base_delay == 2.0

    def test_from_dict(self):
        config = {
            'policy': 'exponential',
            'max_retries': 7,
            'base_delay': 0.5,
            'max_delay': 120.0,
            'jitter': True,
        }
        s = RetryStrategy.from_dict(config)
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 7
        assert s.base_delay == 0.5
        assert s.jitter is True

    def test_from_dict_falls_back_to_defaults(self):
        defaults = RetryStrategy.linear(max_retries=5, base_delay=3.0)
        s = RetryStrategy.from_dict({'max_retries': 1}, defaults=defaults)
        assert s.policy == RetryPolicy.LINEAR
        assert s.max_retries == 1
        assert s.base_delay == 3.0


# ─── Per-step strategy ───

@pytest.mark.unit
class TestForStep:
    def settings(self):
        return Settings(ENGINE_RETRY_BASE_DELAY=0.25, ENGINE_RETRY_BACKOFF_MULTIPLIER=3.0, ENGINE_RETRY_MAX_DELAY=9.0)

    def test_defaults_from_settings(self):
        s = RetryStrategy.for_step(2, None, self.settings())
        assert s.policy == RetryPolicy.EXPONENTIAL
        assert s.max_retries == 2
        assert s.compute_delay(1) == 0.25
        assert s.compute_delay(2) == 0.75
        assert s.max_delay == 9.0

    def test_step_policy_overrides_defaults(self):
        s = RetryStrategy.for_step(2, {'policy': 'fixed', 'base_delay': 4.0}, self.settings())
        assert s.policy == RetryPolicy.FIXED
        assert s.compute_delay(2) == 4.0
        assert s.max_retries == 2

    def test_policy_retry_budget_wins_when_given(self):
        s = RetryStrategy.for_step(2, {'max_retries': 5}, self.settings())
        assert s.max_retries == 5

    def test_preset_supplies_delays(self):
        s = RetryStrategy.for_step(1, {'preset': 'database'}, self.settings())
        assert s.policy == RetryPolicy.FIXED
        assert s.base_delay == 2.0
        assert s.max_retries == 1

    def test_preset_is_not_mutated(self):
        RetryStrategy.for_step(9, {'preset': 'conservative'}, self.settings())
        assert RETRY_PRESETS['conservative'].max_retries == 3


# ─── Delay computation ───

@pytest.mark.unit
class TestDelayComputation:
    def test_none_delay(self):
        s = RetryStrategy.none()
        assert s.compute_delay(1) == 0.0

    def test_fixed_delay(self):
        s = RetryStrategy.fixed(delay=5.0)
        assert s.compute_delay(1) == 5.0
        assert s.compute_delay(3) == 5.0

    def test_exponential_delay_no_jitter(self):
        s = RetryStrategy.exponential(base_delay=1.0, jitter=False)
        assert s.compute_delay(1) == 1.0
        assert s.compute_delay(2) == 2.0
        assert s.compute_delay(3) == 4.0
        assert s.compute_delay(4) == 8.0

    def test_linear_delay(self):
        s = RetryStrategy.linear(base_delay=2.0)
        assert s.compute_delay(1) == 2.0
        assert s.compute_delay(2) == 4.0
        assert s.compute_delay(3) == 6.0

    def test_max_delay_cap(self):
        s = RetryStrategy.exponential(base_delay=10.0, max_delay=30.0, jitter=False)
        assert s.compute_delay(5) == 30.0  # 10 * 16 = 160, capped at 30

    def test_exponential_with_jitter_in_range(self):
        s = RetryStrategy.exponential(base_delay=10.0, jitter=True, max_delay=100.0)
        for _ in range(50):
            delay = s.compute_delay(1)
            # base=10, jitter_range=0.5 → between 5 and 15
            assert 5.0 <= delay <= 15.0


# ─── Should retry ───

@pytest.mark.unit
class TestShouldRetry:
    def test_none_never_retries(self):
        s = RetryStrategy.none()
        assert s.should_retry(1) is False

    def test_exceeds_max_retries(self):
        s = RetryStrategy.fixed(max_retries=3)
        assert s.should_retry(3) is False
        assert s.should_retry(2) is True

    def test_no_error_always_retries(self):
        s = RetryStrategy.fixed(max_retries=5)
        assert s.should_retry(1, None) is True

    def test_handler_error_follows_retryable_flag(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, HandlerError("flaky")) is True
        assert s.should_retry(1, HandlerError("bad config", retryable=False)) is False

    def test_step_timeout_follows_retry_on_timeout(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, StepTimeoutError(100)) is True
        s.retry_on_timeout = False
        assert s.should_retry(1, StepTimeoutError(100)) is False

    def test_timeout_error_retried(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, TimeoutError("timeout")) is True

    def test_connection_error_retried(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, ConnectionError("refused")) is True

    def test_specific_retryable_errors(self):
        s = RetryStrategy.exponential()
        s.retryable_errors = ['ValueError']
        assert s.should_retry(1, ValueError("bad")) is True
        assert s.should_retry(1, TypeError("wrong")) is False

    def test_transient_indicator_in_message(self):
        s = RetryStrategy.exponential()
        assert s.should_retry(1, Exception("HTTP 503 Service Unavailable")) is True
        assert s.should_retry(1, Exception("HTTP 429 Too Many Requests")) is True


# ─── Presets ───

@pytest.mark.unit
class TestPresets:
    def test_all_presets_exist(self):
        expected = {'none', 'conservative', 'aggressive', 'external_call', 'agent_invocation', 'database'}
        assert set(RETRY_PRESETS.keys()) == expected

    def test_presets_are_valid(self):
        for name, strategy in RETRY_PRESETS.items():
            assert isinstance(strategy, RetryStrategy)
            assert strategy.max_retries >= 0


# ─── Step attempt runner ───

@pytest.mark.unit
class TestStepAttemptRunner:
    async def test_success_first_attempt(self):
        calls = []

        async def func(attempt):
            calls.append(attempt)
            return 42

        runner = StepAttemptRunner(RetryStrategy.fixed(max_retries=3, delay=0.0), timeout_ms=1000, sleep=no_sleep)
        outcome = await runner.run(func)

        assert outcome.success is True
        assert outcome.result == 42
        assert outcome.attempts == 1
        assert calls == [1]

    async def test_retries_until_success(self):
        async def func(attempt):
            if attempt < 3:
                raise HandlerError(f"failed {attempt}")
            return "ok"

        runner = StepAttemptRunner(RetryStrategy.fixed(max_retries=5, delay=0.0), timeout_ms=None, sleep=no_sleep)
        outcome = await runner.run(func)

        assert outcome.success is True
        assert outcome.attempts == 3

    async def test_exhausts_budget(self):
        async def func(attempt):
            raise HandlerError("always")

        runner = StepAttemptRunner(RetryStrategy.fixed(max_retries=2, delay=0.0), timeout_ms=None, sleep=no_sleep)
        outcome = await runner.run(func)

        assert outcome.success is False
        assert outcome.attempts == 3
        assert str(outcome.error) == "always"
        assert runner.max_attempts == 3

    async def test_non_retryable_stops_immediately(self):
        async def func(attempt):
            raise HandlerError("bad input", retryable=False)

        runner = StepAttemptRunner(RetryStrategy.fixed(max_retries=5, delay=0.0), timeout_ms=None, sleep=no_sleep)
        outcome = await runner.run(func)

        assert outcome.attempts == 1
        assert outcome.success is False

    async def test_timeout_counts_as_failed_attempt(self):
        async def func(attempt):
            await asyncio.sleep(10)

        runner = StepAttemptRunner(RetryStrategy.fixed(max_retries=1, delay=0.0), timeout_ms=20, sleep=no_sleep)
        outcome = await runner.run(func)

        assert outcome.success is False
        assert outcome.attempts == 2
        assert outcome.timed_out is True
        assert isinstance(outcome.error, StepTimeoutError)

    async def test_unexpected_exception_is_wrapped(self):
        async def func(attempt):
            raise KeyError("missing")

        runner = StepAttemptRunner(RetryStrategy.none(), timeout_ms=None, sleep=no_sleep)
        outcome = await runner.run(func)

        assert isinstance(outcome.error, HandlerError)
        assert outcome.attempts == 1

    async def test_callbacks_see_every_attempt(self):
        events = []

        async def on_start(attempt):
            events.append(("start", attempt))

        async def on_end(attempt, result, error, is_final):
            events.append(("end", attempt, error is None, is_final))

        async def func(attempt):
            if attempt == 1:
                raise HandlerError("first fails")
            return "ok"

        runner = StepAttemptRunner(
            RetryStrategy.fixed(max_retries=2, delay=0.0),
            timeout_ms=None,
            on_attempt_start=on_start,
            on_attempt_end=on_end,
            sleep=no_sleep,
        )
        await runner.run(func)

        assert events == [
            ("start", 1),
            ("end", 1, False, False),
            ("start", 2),
            ("end", 2, True, True),
        ]

    async def test_sleeps_computed_delay_between_attempts(self):
        delays = []

        async def record_sleep(delay):
            delays.append(delay)

        async def func(attempt):
            raise HandlerError("fail")

        runner = StepAttemptRunner(
            RetryStrategy.exponential(max_retries=3, base_delay=1.0),
            timeout_ms=None,
            sleep=record_sleep,
        )
        await runner.run(func)

        assert delays == [1.0, 2.0, 4.0]
