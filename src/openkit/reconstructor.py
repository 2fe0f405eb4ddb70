"""Fold typed deltas into progressively complete results."""

from __future__ import annotations

from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

from openkit.cancellation import CancellationToken
from openkit.config import DecodeFailurePolicy
from openkit.errors import ClassifiedError, ErrorKind, ProtocolViolationError, RequestFailedError
from openkit.events import (
    Delta,
    DeltaField,
    DeltaMapper,
    EndpointFamily,
    Ignored,
    ItemAdded,
    ItemDelta,
    ItemDone,
    ItemType,
    ResponseDone,
    ResponseStarted,
    StreamFailure,
    Usage,
)
from openkit.sse import DecodedFrame, Frame, MalformedFrame


class ItemState(StrEnum):
    PENDING = "pending"
    STREAMING = "streaming"
    DONE = "done"


class OutputItem:
    """Mutable fold state of one item. Lives only inside a :class:`Reconstructor`."""

    def __init__(self, added: ItemAdded) -> None:
        self.item_id = added.item_id
        self.item_type = added.item_type
        self.wire_type = added.wire_type
        self.name = added.name
        self.call_id = added.call_id
        self.state = ItemState.PENDING
        self.status: str | None = None
        self._text: list[str] = []
        self._arguments: list[str] = []

    def append(self, field: DeltaField, fragment: str) -> None:
        if field is DeltaField.ARGUMENTS:
            self._arguments.append(fragment)
        else:
            self._text.append(fragment)
        self.state = ItemState.STREAMING

    @property
    def text(self) -> str:
        return "".join(self._text)

    @property
    def arguments(self) -> str:
        return "".join(self._arguments)

    def snapshot(self) -> ItemSnapshot:
        return ItemSnapshot(
            item_id=self.item_id,
            item_type=self.item_type,
            state=self.state,
            text=self.text,
            arguments=self.arguments,
            name=self.name,
            call_id=self.call_id,
            wire_type=self.wire_type,
            status=self.status,
        )


@dataclass(frozen=True)
class ItemSnapshot:
    item_id: str
    item_type: ItemType
    state: ItemState
    text: str = ""
    arguments: str = ""
    name: str | None = None
    call_id: str | None = None
    wire_type: str | None = None
    status: str | None = None

    @property
    def done(self) -> bool:
        return self.state is ItemState.DONE


@dataclass(frozen=True)
class AccumulatedResult:
    """Point-in-time view of one call's output. Items keep first-seen order."""

    response_id: str | None = None
    model: str | None = None
    status: str | None = None
    items: tuple[ItemSnapshot, ...] = ()
    usage: Usage | None = None
    done: bool = False

    @property
    def text(self) -> str:
        """Concatenated text of every message item."""
        return "".join(item.text for item in self.items if item.item_type is ItemType.MESSAGE)

    @property
    def reasoning(self) -> str:
        return "".join(item.text for item in self.items if item.item_type is ItemType.REASONING)

    @property
    def tool_calls(self) -> list[ItemSnapshot]:
        return [item for item in self.items if item.item_type is ItemType.TOOL_CALL]

    def item(self, item_id: str) -> ItemSnapshot | None:
        for item in self.items:
            if item.item_id == item_id:
                return item
        return None


class Reconstructor:
    """One streaming session's fold.

    Every delta is validated against the current state before anything is
    mutated, so a protocol violation leaves all items exactly as they were.
    """

    def __init__(self, mapper: DeltaMapper) -> None:
        self._mapper = mapper
        self._items: dict[str, OutputItem] = {}
        self._response_id: str | None = None
        self._model: str | None = None
        self._status: str | None = None
        self._usage: Usage | None = None
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def apply(self, frame: Frame) -> bool:
        """Apply one frame. Returns whether externally visible state changed."""
        return self.apply_all(self._mapper.map(frame))

    def finish(self) -> bool:
        """Apply whatever the mapper still holds at end of stream."""
        return self.apply_all(self._mapper.finish())

    def apply_all(self, deltas: Iterable[Delta]) -> bool:
        changed = False
        for delta in deltas:
            changed = self.apply_delta(delta) or changed
        return changed

    def apply_delta(self, delta: Delta) -> bool:
        match delta:
            case ResponseStarted(response_id=response_id, model=model, status=status):
                self._response_id = response_id or self._response_id
                self._model = model or self._model
                self._status = status or self._status
                return True
            case ItemAdded(item_id=item_id):
                if item_id in self._items:
                    raise ProtocolViolationError(f"item {item_id!r} added twice", item_id=item_id)
                self._items[item_id] = OutputItem(delta)
                return True
            case ItemDelta(item_id=item_id, field=field, fragment=fragment):
                item = self._open_item(item_id, "delta")
                item.append(field, fragment)
                return True
            case ItemDone(item_id=item_id):
                item = self._open_item(item_id, "done")
                self._cross_check(item, delta)
                item.state = ItemState.DONE
                item.status = delta.status
                return True
            case ResponseDone(usage=usage, status=status, response_id=response_id, model=model):
                self._usage = usage or self._usage
                self._status = status or "completed"
                self._response_id = response_id or self._response_id
                self._model = model or self._model
                self._done = True
                return True
            case StreamFailure(error=error):
                raise RequestFailedError(error)
            case Ignored(kind=kind):
                logger.trace("reconstructor.ignored kind={}", kind)
                return False
            case _:
                return False

    def _open_item(self, item_id: str, what: str) -> OutputItem:
        item = self._items.get(item_id)
        if item is None:
            raise ProtocolViolationError(f"{what} for unknown item {item_id!r}", item_id=item_id)
        if item.state is ItemState.DONE:
            raise ProtocolViolationError(f"{what} for item {item_id!r} after it was done", item_id=item_id)
        return item

    @staticmethod
    def _cross_check(item: OutputItem, done: ItemDone) -> None:
        if done.text is not None and item.text and done.text != item.text:
            logger.warning("reconstructor.mismatch item={} field=text", item.item_id)
        if done.arguments is not None and item.arguments and done.arguments != item.arguments:
            logger.warning("reconstructor.mismatch item={} field=arguments", item.item_id)

    def snapshot(self) -> AccumulatedResult:
        return AccumulatedResult(
            response_id=self._response_id,
            model=self._model,
            status=self._status,
            items=tuple(item.snapshot() for item in self._items.values()),
            usage=self._usage,
            done=self._done,
        )


def _malformed(frame: MalformedFrame, policy: DecodeFailurePolicy) -> None:
    if policy is DecodeFailurePolicy.SKIP:
        logger.warning("reconstructor.skip_malformed event={} error={}", frame.event, frame.error)
        return
    raise RequestFailedError(
        ClassifiedError.of(ErrorKind.DECODING_FAILED, technical_detail=f"malformed frame: {frame.error}")
    )


async def reconstruct(
    frames: AsyncIterable[DecodedFrame],
    mapper: DeltaMapper,
    *,
    decode_failure_policy: DecodeFailurePolicy = DecodeFailurePolicy.FATAL,
    token: CancellationToken | None = None,
) -> AsyncIterator[AccumulatedResult]:
    """Yield a snapshot after every frame that changes visible state, then the final state once more if needed."""
    token = token or CancellationToken()
    reconstructor = Reconstructor(mapper)
    emitted = False
    iterator = aiter(frames)
    try:
        async for frame in iterator:
            token.raise_if_cancelled()
            if isinstance(frame, MalformedFrame):
                _malformed(frame, decode_failure_policy)
                continue
            if reconstructor.apply(frame):
                emitted = True
                yield reconstructor.snapshot()
        token.raise_if_cancelled()
        if reconstructor.finish() or not emitted:
            yield reconstructor.snapshot()
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


def reconstruct_complete(body: Any, family: EndpointFamily = EndpointFamily.RESPONSES) -> AccumulatedResult:
    """Fold a complete, non-streamed body into the same terminal shape a stream produces."""
    reconstructor = Reconstructor(family.new_mapper())
    reconstructor.apply_all(family.complete_deltas(body))
    return reconstructor.snapshot()
