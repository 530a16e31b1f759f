"""Retry and timeout control for step execution.

Provides configurable retry policies for workflow steps:
- Fixed delay
- Exponential backoff (configurable multiplier, optional jitter)
- Linear backoff
- Per-attempt timeout racing via ``StepAttemptRunner``

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=1.0)
    runner = StepAttemptRunner(strategy, timeout_ms=30_000)
    outcome = await runner.run(lambda attempt: handler.run(data, ctx))
"""

import asyncio
import logging
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from core.exceptions import HandlerError, StepTimeoutError

logger = logging.getLogger(__name__)


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Configurable retry strategy for workflow step execution.

    ``max_retries`` counts retries, so a step runs at most
    ``max_retries + 1`` times.
    """
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: bool = False
    jitter_range: float = 0.5
    retryable_errors: list[str] = field(default_factory=list)
    retry_on_timeout: bool = True

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 1.0,
        backoff_multiplier: float = 2.0,
        max_delay: float = 60.0,
        jitter: bool = False,
    ) -> 'RetryStrategy':
        """Exponential backoff: base_delay * multiplier ** (attempt - 1)."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            backoff_multiplier=backoff_multiplier,
            max_delay=max_delay,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 3,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
        )

    @classmethod
    def from_dict(cls, config: dict, defaults: Optional['RetryStrategy'] = None) -> 'RetryStrategy':
        """Create strategy from a step ``retry_policy`` dict.

        Keys missing from ``config`` fall back to ``defaults`` (or the
        dataclass defaults).
        """
        base = defaults or cls(policy=RetryPolicy.EXPONENTIAL)
        return cls(
            policy=RetryPolicy(config.get('policy', base.policy.value)),
            max_retries=config.get('max_retries', base.max_retries),
            base_delay=config.get('base_delay', base.base_delay),
            backoff_multiplier=config.get('backoff_multiplier', base.backoff_multiplier),
            max_delay=config.get('max_delay', base.max_delay),
            jitter=config.get('jitter', base.jitter),
            jitter_range=config.get('jitter_range', base.jitter_range),
            retryable_errors=config.get('retryable_errors', list(base.retryable_errors)),
            retry_on_timeout=config.get('retry_on_timeout', base.retry_on_timeout),
        )

    @classmethod
    def for_step(
        cls,
        max_retries: int,
        retry_policy: Optional[dict],
        settings,
    ) -> 'RetryStrategy':
        """Strategy for one step: settings defaults, then the step's overrides.

        ``retry_policy`` may name one of RETRY_PRESETS under ``preset``; its
        other keys override the preset. The retry budget stays ``max_retries``
        unless the policy sets its own.
        """
        defaults = cls.exponential(
            max_retries=max_retries,
            base_delay=settings.ENGINE_RETRY_BASE_DELAY,
            backoff_multiplier=settings.ENGINE_RETRY_BACKOFF_MULTIPLIER,
            max_delay=settings.ENGINE_RETRY_MAX_DELAY,
        )
        if not retry_policy:
            return defaults
        if retry_policy.get('preset'):
            defaults = replace(RETRY_PRESETS[retry_policy['preset']])
        strategy = cls.from_dict(retry_policy, defaults=defaults)
        if 'max_retries' not in retry_policy:
            strategy.max_retries = max_retries
        return strategy

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay after a given failed attempt (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (self.backoff_multiplier ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = min(max(0.0, delay), self.max_delay)

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Determine if another attempt is allowed after ``attempt`` failures."""
        if self.policy == RetryPolicy.NONE:
            return False

        if attempt >= self.max_retries:
            return False

        if error is None:
            return True

        if isinstance(error, StepTimeoutError):
            return self.retry_on_timeout
        if isinstance(error, HandlerError):
            return error.retryable

        error_name = type(error).__name__
        if self.retryable_errors:
            return error_name in self.retryable_errors

        timeout_errors = {'TimeoutError', 'ConnectTimeout', 'ReadTimeout'}
        connection_errors = {'ConnectionError', 'ConnectionRefusedError', 'ConnectionResetError', 'ConnectError'}
        if self.retry_on_timeout and error_name in timeout_errors:
            return True
        if error_name in connection_errors:
            return True

        transient_indicators = ['timeout', 'connection', 'temporary', '503', '429', '502', '504']
        error_str = str(error).lower()
        return any(ind in error_str for ind in transient_indicators)


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'conservative': RetryStrategy.exponential(max_retries=3, base_delay=2.0, max_delay=30.0),
    'aggressive': RetryStrategy.exponential(max_retries=7, base_delay=0.5, max_delay=120.0),
    'external_call': RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0, jitter=True),
    'agent_invocation': RetryStrategy.exponential(max_retries=3, base_delay=5.0, max_delay=120.0, jitter=True),
    'database': RetryStrategy.fixed(max_retries=3, delay=2.0),
}


# ─── Attempt runner ───


@dataclass
class AttemptOutcome:
    """Final outcome of running one step through its retry budget."""
    success: bool
    attempts: int
    result: Any = None
    error: Optional[Exception] = None

    @property
    def timed_out(self) -> bool:
        return isinstance(self.error, StepTimeoutError)


AttemptStart = Callable[[int], Awaitable[None]]
AttemptEnd = Callable[[int, Any, Optional[Exception], bool], Awaitable[None]]


class StepAttemptRunner:
    """Runs a step callable through its retry budget.

    Each attempt races the callable against ``timeout_ms`` with
    ``asyncio.wait_for``; a timeout counts as a failed attempt. The
    ``on_attempt_start`` / ``on_attempt_end`` callbacks let the caller
    persist one record per attempt. ``on_attempt_end`` receives
    ``(attempt, result, error, is_final)``.
    """

    def __init__(
        self,
        strategy: RetryStrategy,
        timeout_ms: Optional[int],
        on_attempt_start: Optional[AttemptStart] = None,
        on_attempt_end: Optional[AttemptEnd] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.strategy = strategy
        self.timeout_ms = timeout_ms
        self._on_start = on_attempt_start
        self._on_end = on_attempt_end
        self._sleep = sleep

    @property
    def max_attempts(self) -> int:
        if self.strategy.policy == RetryPolicy.NONE:
            return 1
        return self.strategy.max_retries + 1

    async def run(self, func: Callable[[int], Awaitable[Any]]) -> AttemptOutcome:
        attempt = 0
        while True:
            attempt += 1
            if self._on_start:
                await self._on_start(attempt)

            try:
                result = await self._run_once(func, attempt)
            except (HandlerError, StepTimeoutError) as e:
                error = e
            except Exception as e:
                error = HandlerError(str(e) or type(e).__name__, detail=repr(e))
            else:
                if self._on_end:
                    await self._on_end(attempt, result, None, True)
                return AttemptOutcome(success=True, attempts=attempt, result=result)

            final = not self.strategy.should_retry(attempt, error)
            if self._on_end:
                await self._on_end(attempt, None, error, final)
            if final:
                return AttemptOutcome(success=False, attempts=attempt, error=error)

            delay = self.strategy.compute_delay(attempt)
            logger.info(
                "Retrying step attempt %d after %s (delay %.3fs)",
                attempt, type(error).__name__, delay,
            )
            await self._sleep(delay)

    async def _run_once(self, func: Callable[[int], Awaitable[Any]], attempt: int) -> Any:
        if not self.timeout_ms:
            return await func(attempt)
        try:
            return await asyncio.wait_for(func(attempt), timeout=self.timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise StepTimeoutError(self.timeout_ms)

