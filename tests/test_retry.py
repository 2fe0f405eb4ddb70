from __future__ import annotations

import asyncio
import random

import pytest

from openkit.cancellation import CancellationToken
from openkit.errors import ClassifiedError, ErrorKind, RequestCancelledError, RequestFailedError, RetryFailedError
from openkit.retry import RetryPolicy, perform

NO_WAIT = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


def failure(kind: ErrorKind, **kwargs: object) -> RequestFailedError:
    return RequestFailedError(ClassifiedError.of(kind, **kwargs))


class Flaky:
    def __init__(self, *outcomes: BaseException | str) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.mark.asyncio
async def test_recovers_after_retryable_failures() -> None:
    operation = Flaky(failure(ErrorKind.RATE_LIMIT_EXCEEDED), failure(ErrorKind.RATE_LIMIT_EXCEEDED), "ok")
    retries: list[tuple[int, ErrorKind]] = []
    successes: list[int] = []

    result = await perform(
        operation,
        NO_WAIT,
        on_retry=lambda attempt, delay, error: retries.append((attempt, error.kind)),
        on_success=successes.append,
    )

    assert result == "ok"
    assert operation.calls == 3
    assert retries == [(1, ErrorKind.RATE_LIMIT_EXCEEDED), (2, ErrorKind.RATE_LIMIT_EXCEEDED)]
    assert successes == [3]


@pytest.mark.asyncio
async def test_first_try_success_does_not_report_recovery() -> None:
    successes: list[int] = []

    assert await perform(Flaky("ok"), NO_WAIT, on_success=successes.append) == "ok"
    assert successes == []


@pytest.mark.asyncio
async def test_non_retryable_failure_makes_exactly_one_attempt() -> None:
    operation = Flaky(failure(ErrorKind.AUTHENTICATION_FAILED, status=401), "never")
    retries: list[int] = []

    with pytest.raises(RetryFailedError) as exc_info:
        await perform(operation, RetryPolicy(max_attempts=5), on_retry=lambda *args: retries.append(args[0]))

    assert operation.calls == 1
    assert retries == []
    assert exc_info.value.attempts == 1
    assert exc_info.value.kind is ErrorKind.AUTHENTICATION_FAILED


@pytest.mark.asyncio
async def test_exhausted_attempts_report_count_and_last_error() -> None:
    operation = Flaky(
        failure(ErrorKind.SERVER_ERROR, status=500),
        failure(ErrorKind.SERVER_ERROR, status=502),
        failure(ErrorKind.SERVER_ERROR, status=503),
    )

    with pytest.raises(RetryFailedError) as exc_info:
        await perform(operation, NO_WAIT)

    assert operation.calls == 3
    assert exc_info.value.attempts == 3
    assert exc_info.value.error.status == 503
    assert "after 3 attempts" in str(exc_info.value)


@pytest.mark.asyncio
async def test_async_retry_callback_is_awaited() -> None:
    seen: list[float] = []

    async def on_retry(attempt: int, delay: float, error: ClassifiedError) -> None:
        seen.append(delay)

    await perform(Flaky(failure(ErrorKind.TIMED_OUT), "ok"), NO_WAIT, on_retry=on_retry)

    assert seen == [0.0]


@pytest.mark.asyncio
async def test_unrecognised_exceptions_propagate_unchanged() -> None:
    operation = Flaky(KeyError("boom"), "never")

    with pytest.raises(KeyError):
        await perform(operation, NO_WAIT)

    assert operation.calls == 1


def test_backoff_grows_and_is_capped() -> None:
    policy = RetryPolicy(max_attempts=10, base_delay=1.0, max_delay=10.0, multiplier=2.0, jitter=(1.0, 1.0))

    assert [policy.backoff(attempt) for attempt in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_jittered_backoff_stays_in_band_and_under_cap() -> None:
    policy = RetryPolicy(max_attempts=8, base_delay=1.0, max_delay=20.0)
    rng = random.Random(3)

    for attempt in range(1, 9):
        delays = [policy.backoff(attempt, rng=rng) for _ in range(200)]
        nominal = 1.0 * 2.0 ** (attempt - 1)
        assert all(delay <= 20.0 for delay in delays)
        assert all(min(nominal * 0.8, 20.0) <= delay <= min(nominal * 1.2, 20.0) for delay in delays)


def test_retry_after_raises_delay_but_never_past_the_cap() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=30.0, jitter=(1.0, 1.0))

    assert policy.delay_for(1, ClassifiedError.of(ErrorKind.RATE_LIMIT_EXCEEDED, retry_after=12.0)) == 12.0
    assert policy.delay_for(1, ClassifiedError.of(ErrorKind.RATE_LIMIT_EXCEEDED, retry_after=300.0)) == 30.0
    assert policy.delay_for(3, ClassifiedError.of(ErrorKind.SERVER_ERROR)) == 4.0


def test_presets_and_validation() -> None:
    assert RetryPolicy.DEFAULT == RetryPolicy(max_attempts=3, base_delay=1.0, max_delay=60.0)
    assert RetryPolicy.RATE_LIMIT_OPTIMIZED.max_attempts == 5
    assert RetryPolicy.RATE_LIMIT_OPTIMIZED.max_delay == 120.0
    assert RetryPolicy.NO_RETRY.max_attempts == 1

    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay=5.0, max_delay=1.0)
    with pytest.raises(ValueError):
        RetryPolicy(jitter=(1.5, 1.0))


@pytest.mark.asyncio
async def test_cancel_during_backoff_aborts_immediately() -> None:
    token = CancellationToken()
    operation = Flaky(failure(ErrorKind.SERVER_ERROR), "never")
    policy = RetryPolicy(max_attempts=3, base_delay=30.0, max_delay=30.0)

    async def cancel_soon(attempt: int, delay: float, error: ClassifiedError) -> None:
        asyncio.get_running_loop().call_later(0.01, token.cancel, "user")

    loop = asyncio.get_running_loop()
    started = loop.time()
    with pytest.raises(RequestCancelledError) as exc_info:
        await perform(operation, policy, token=token, on_retry=cancel_soon)

    assert loop.time() - started < 5.0
    assert operation.calls == 1
    assert exc_info.value.kind is ErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_cancelled_token_prevents_any_attempt() -> None:
    token = CancellationToken()
    token.cancel()
    operation = Flaky("never")

    with pytest.raises(RequestCancelledError):
        await perform(operation, NO_WAIT, token=token)

    assert operation.calls == 0
