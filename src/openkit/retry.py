"""Retry controller with jittered exponential backoff."""

from __future__ import annotations

import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import ClassVar

from loguru import logger

from openkit.cancellation import CancellationToken
from openkit.classifier import classify_exception
from openkit.errors import ClassifiedError, ErrorKind, RequestCancelledError, RetryFailedError

type Operation[T] = Callable[[], Awaitable[T]]
type RetryCallback = Callable[[int, float, ClassifiedError], Awaitable[None] | None]
type SuccessCallback = Callable[[int], Awaitable[None] | None]
type Classifier = Callable[[BaseException], ClassifiedError | None]


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff configuration. Supplied by the caller and never mutated."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: tuple[float, float] = (0.8, 1.2)

    DEFAULT: ClassVar[RetryPolicy]
    RATE_LIMIT_OPTIMIZED: ClassVar[RetryPolicy]
    NO_RETRY: ClassVar[RetryPolicy]

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be >= 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        low, high = self.jitter
        if not 0 < low <= high:
            raise ValueError("jitter must be a band 0 < low <= high")

    def backoff(self, attempt: int, *, rng: random.Random | None = None) -> float:
        """Delay before retry number ``attempt`` (1-based): ``min(base * multiplier^(attempt-1) * jitter, max)``."""
        factor = (rng or random).uniform(*self.jitter)
        raw = self.base_delay * self.multiplier ** max(0, attempt - 1) * factor
        return min(raw, self.max_delay)

    def delay_for(self, attempt: int, error: ClassifiedError, *, rng: random.Random | None = None) -> float:
        """Backoff raised to the server's ``Retry-After`` when that is larger, capped at ``max_delay``."""
        delay = self.backoff(attempt, rng=rng)
        if error.retry_after is not None:
            delay = max(delay, error.retry_after)
        return min(delay, self.max_delay)


RetryPolicy.DEFAULT = RetryPolicy()
RetryPolicy.RATE_LIMIT_OPTIMIZED = RetryPolicy(max_attempts=5, base_delay=2.0, max_delay=120.0, jitter=(0.8, 1.2))
RetryPolicy.NO_RETRY = RetryPolicy(max_attempts=1)


async def _notify(callback: Callable[..., Awaitable[None] | None] | None, *args: object) -> None:
    if callback is None:
        return
    result = callback(*args)
    if result is not None:
        await result


async def perform[T](
    operation: Operation[T],
    policy: RetryPolicy = RetryPolicy.DEFAULT,
    *,
    token: CancellationToken | None = None,
    on_retry: RetryCallback | None = None,
    on_success: SuccessCallback | None = None,
    classify: Classifier = classify_exception,
    rng: random.Random | None = None,
) -> T:
    """Run ``operation`` until it succeeds, fails with a non-retryable error, or attempts run out.

    Failures the classifier does not recognise propagate unchanged. Recognised failures surface
    as :class:`RetryFailedError` carrying the last classification and the number of attempts.
    Cancellation surfaces as :class:`RequestCancelledError`, checked before every attempt and
    during every backoff wait.
    """
    token = token or CancellationToken()
    attempt = 0
    while True:
        token.raise_if_cancelled()
        attempt += 1
        try:
            result = await operation()
        except RequestCancelledError:
            raise
        except Exception as exc:
            error = classify(exc)
            if error is None:
                raise
            if error.kind is ErrorKind.CANCELLED:
                raise RequestCancelledError(error) from exc
            if not error.retryable or attempt >= policy.max_attempts:
                logger.warning(
                    "retry.giveup kind={} attempts={} retryable={}",
                    error.kind.value,
                    attempt,
                    error.retryable,
                )
                raise RetryFailedError(error, attempts=attempt) from exc

            delay = policy.delay_for(attempt, error, rng=rng)
            logger.info(
                "retry.scheduled kind={} attempt={}/{} delay={:.2f}",
                error.kind.value,
                attempt,
                policy.max_attempts,
                delay,
            )
            await _notify(on_retry, attempt, delay, error)
            await token.sleep(delay)
            continue

        if attempt > 1:
            logger.info("retry.recovered attempts={}", attempt)
            await _notify(on_success, attempt)
        return result
