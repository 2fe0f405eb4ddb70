"""Cooperative cancellation shared by one call chain."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from contextlib import suppress

from loguru import logger

from openkit.errors import ClassifiedError, ErrorKind, RequestCancelledError


class CancellationToken:
    """One-way cancel flag. A cancelled token stays cancelled; create a new one per call."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.debug("cancellation.requested reason={}", reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise self._error()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds, raising ``RequestCancelledError`` as soon as the token fires."""
        self.raise_if_cancelled()
        if delay > 0:
            with suppress(TimeoutError):
                await asyncio.wait_for(self._event.wait(), timeout=delay)
        self.raise_if_cancelled()

    async def run[T](self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case the work is cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self._error()
        fut = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        waiter.add_done_callback(lambda _: fut.cancel())
        try:
            return await fut
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if self._event.is_set() and (task is None or not task.cancelling()):
                raise self._error() from None
            raise
        finally:
            waiter.cancel()

    def _error(self) -> RequestCancelledError:
        return RequestCancelledError(ClassifiedError.of(ErrorKind.CANCELLED, technical_detail=self._reason))


async def gather[T](token: CancellationToken, *awaitables: Awaitable[T]) -> list[T]:
    """Run sub-operations of one call concurrently; all of them stop when the token fires or one fails."""
    token.raise_if_cancelled()
    tasks = [asyncio.ensure_future(awaitable) for awaitable in awaitables]
    try:
        return await token.run(asyncio.gather(*tasks))
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.wait(pending)
