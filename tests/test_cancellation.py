from __future__ import annotations

import asyncio

import pytest

from openkit.cancellation import CancellationToken, gather
from openkit.errors import ErrorKind, RequestCancelledError


def test_cancel_is_one_way_and_keeps_first_reason() -> None:
    token = CancellationToken()
    assert not token.cancelled

    token.cancel("first")
    token.cancel("second")

    assert token.cancelled
    assert token.reason == "first"
    with pytest.raises(RequestCancelledError) as exc_info:
        token.raise_if_cancelled()
    assert exc_info.value.kind is ErrorKind.CANCELLED
    assert exc_info.value.error.technical_detail == "first"


@pytest.mark.asyncio
async def test_sleep_completes_when_not_cancelled() -> None:
    await CancellationToken().sleep(0.01)


@pytest.mark.asyncio
async def test_run_cancels_the_awaited_work() -> None:
    token = CancellationToken()
    work_cancelled = asyncio.Event()

    async def slow() -> str:
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            work_cancelled.set()
            raise
        return "late"

    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(RequestCancelledError):
        await token.run(slow())

    assert work_cancelled.is_set()


@pytest.mark.asyncio
async def test_run_returns_result_when_work_finishes_first() -> None:
    async def quick() -> int:
        return 7

    assert await CancellationToken().run(quick()) == 7


@pytest.mark.asyncio
async def test_outer_task_cancellation_is_not_converted() -> None:
    token = CancellationToken()
    task = asyncio.ensure_future(token.run(asyncio.sleep(30)))
    await asyncio.sleep(0)

    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_gather_stops_all_sub_operations_on_cancel() -> None:
    token = CancellationToken()
    stopped: list[str] = []

    async def worker(name: str) -> str:
        try:
            await asyncio.sleep(30)
        finally:
            stopped.append(name)
        return name

    asyncio.get_running_loop().call_later(0.01, token.cancel)
    with pytest.raises(RequestCancelledError):
        await gather(token, worker("a"), worker("b"))

    assert sorted(stopped) == ["a", "b"]


@pytest.mark.asyncio
async def test_gather_returns_results_in_order() -> None:
    async def value(number: int) -> int:
        await asyncio.sleep(0.01 * (3 - number))
        return number

    assert await gather(CancellationToken(), value(1), value(2), value(3)) == [1, 2, 3]
