"""Typed stream deltas and the per-endpoint mappers that produce them from frames."""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from openkit.classifier import classify_stream_error
from openkit.errors import ClassifiedError
from openkit.jsonvalue import JSONObject, as_object, get_int, get_list, get_object, get_str
from openkit.sse import Frame


class EventKind(StrEnum):
    """Known event kinds. Anything else parses to ``UNKNOWN``."""

    RESPONSE_CREATED = "response.created"
    RESPONSE_IN_PROGRESS = "response.in_progress"
    RESPONSE_COMPLETED = "response.completed"
    RESPONSE_FAILED = "response.failed"
    RESPONSE_INCOMPLETE = "response.incomplete"
    OUTPUT_ITEM_ADDED = "response.output_item.added"
    OUTPUT_ITEM_DONE = "response.output_item.done"
    CONTENT_PART_ADDED = "response.content_part.added"
    CONTENT_PART_DONE = "response.content_part.done"
    OUTPUT_TEXT_DELTA = "response.output_text.delta"
    OUTPUT_TEXT_DONE = "response.output_text.done"
    REFUSAL_DELTA = "response.refusal.delta"
    REFUSAL_DONE = "response.refusal.done"
    FUNCTION_CALL_ARGUMENTS_DELTA = "response.function_call_arguments.delta"
    FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"
    REASONING_SUMMARY_TEXT_DELTA = "response.reasoning_summary_text.delta"
    REASONING_SUMMARY_TEXT_DONE = "response.reasoning_summary_text.done"
    ERROR = "error"
    CHAT_COMPLETION_CHUNK = "chat.completion.chunk"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> EventKind:
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


class ItemType(StrEnum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    REASONING = "reasoning"
    OTHER = "other"

    @classmethod
    def from_wire(cls, value: str | None) -> ItemType:
        match value:
            case "message":
                return cls.MESSAGE
            case "function_call" | "custom_tool_call" | "tool_call" | "mcp_call" | "function":
                return cls.TOOL_CALL
            case "reasoning":
                return cls.REASONING
            case _:
                return cls.OTHER


class DeltaField(StrEnum):
    TEXT = "text"
    ARGUMENTS = "arguments"


@dataclass(frozen=True)
class Usage:
    """Aggregate token counters reported at the end of a response."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int | None = None
    reasoning_tokens: int | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> Usage | None:
        """Read either the Responses shape (``input_tokens``) or the chat shape (``prompt_tokens``)."""
        data = as_object(payload)
        if not data:
            return None
        input_tokens = get_int(data, "input_tokens")
        if input_tokens is None:
            input_tokens = get_int(data, "prompt_tokens")
        output_tokens = get_int(data, "output_tokens")
        if output_tokens is None:
            output_tokens = get_int(data, "completion_tokens")
        input_details = get_object(data, "input_tokens_details") or get_object(data, "prompt_tokens_details")
        output_details = get_object(data, "output_tokens_details") or get_object(data, "completion_tokens_details")
        total = get_int(data, "total_tokens")
        return cls(
            input_tokens=input_tokens or 0,
            output_tokens=output_tokens or 0,
            total_tokens=total if total is not None else (input_tokens or 0) + (output_tokens or 0),
            cached_tokens=get_int(input_details, "cached_tokens"),
            reasoning_tokens=get_int(output_details, "reasoning_tokens"),
        )


@dataclass(frozen=True)
class ResponseStarted:
    response_id: str | None
    model: str | None
    status: str | None = None


@dataclass(frozen=True)
class ItemAdded:
    item_id: str
    item_type: ItemType
    wire_type: str | None = None
    name: str | None = None
    call_id: str | None = None


@dataclass(frozen=True)
class ItemDelta:
    item_id: str
    field: DeltaField
    fragment: str


@dataclass(frozen=True)
class ItemDone:
    """Closes an item. ``text`` and ``arguments`` are the server's own view, advisory only."""

    item_id: str
    text: str | None = None
    arguments: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class ResponseDone:
    usage: Usage | None
    status: str | None = None
    response_id: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class StreamFailure:
    error: ClassifiedError


@dataclass(frozen=True)
class Ignored:
    kind: str


type Delta = ResponseStarted | ItemAdded | ItemDelta | ItemDone | ResponseDone | StreamFailure | Ignored


class DeltaMapper(Protocol):
    """Interprets the frames of one endpoint family. One instance per stream."""

    def map(self, frame: Frame) -> list[Delta]: ...

    def finish(self) -> list[Delta]: ...


def _message_text(item: Any) -> str | None:
    content = as_object(item).get("content")
    match content:
        case str():
            return content
        case list():
            parts = [get_str(part, "text") for part in content if get_str(part, "type") in {"output_text", "refusal"}]
            return "".join(part for part in parts if part) if parts else None
        case _:
            return None


def _reasoning_text(item: Any) -> str | None:
    parts = [get_str(part, "text") for part in get_list(item, "summary")]
    texts = [part for part in parts if part]
    return "".join(texts) if texts else None


def _item_added(item: JSONObject, fallback_id: str) -> ItemAdded:
    wire_type = get_str(item, "type")
    return ItemAdded(
        item_id=get_str(item, "id") or fallback_id,
        item_type=ItemType.from_wire(wire_type),
        wire_type=wire_type,
        name=get_str(item, "name"),
        call_id=get_str(item, "call_id"),
    )


def _item_done(item: JSONObject, fallback_id: str) -> ItemDone:
    item_type = ItemType.from_wire(get_str(item, "type"))
    text = _reasoning_text(item) if item_type is ItemType.REASONING else _message_text(item)
    return ItemDone(
        item_id=get_str(item, "id") or fallback_id,
        text=text,
        arguments=get_str(item, "arguments"),
        status=get_str(item, "status"),
    )


class ResponsesDeltaMapper:
    """Maps ``response.*`` events of the Responses API."""

    def map(self, frame: Frame) -> list[Delta]:
        data = as_object(frame.data)
        kind = EventKind.parse(frame.kind)
        match kind:
            case EventKind.RESPONSE_CREATED | EventKind.RESPONSE_IN_PROGRESS:
                response = get_object(data, "response")
                return [ResponseStarted(get_str(response, "id"), get_str(response, "model"), get_str(response, "status"))]
            case EventKind.OUTPUT_ITEM_ADDED:
                fallback = f"item_{get_int(data, 'output_index') or 0}"
                return [_item_added(get_object(data, "item") or {}, fallback)]
            case EventKind.OUTPUT_TEXT_DELTA | EventKind.REFUSAL_DELTA | EventKind.REASONING_SUMMARY_TEXT_DELTA:
                return [ItemDelta(get_str(data, "item_id", ""), DeltaField.TEXT, get_str(data, "delta", ""))]
            case EventKind.FUNCTION_CALL_ARGUMENTS_DELTA:
                return [ItemDelta(get_str(data, "item_id", ""), DeltaField.ARGUMENTS, get_str(data, "delta", ""))]
            case EventKind.OUTPUT_ITEM_DONE:
                fallback = f"item_{get_int(data, 'output_index') or 0}"
                return [_item_done(get_object(data, "item") or {}, fallback)]
            case EventKind.RESPONSE_COMPLETED | EventKind.RESPONSE_INCOMPLETE:
                response = get_object(data, "response")
                return [
                    ResponseDone(
                        usage=Usage.from_payload(get_object(response, "usage")),
                        status=get_str(response, "status"),
                        response_id=get_str(response, "id"),
                        model=get_str(response, "model"),
                    )
                ]
            case EventKind.RESPONSE_FAILED | EventKind.ERROR:
                return [StreamFailure(classify_stream_error(data))]
            case _:
                return [Ignored(frame.kind)]

    def finish(self) -> list[Delta]:
        return []


class ChatCompletionDeltaMapper:
    """Maps chat-completion chunks. Gives each choice and tool call a stable item id."""

    def __init__(self) -> None:
        self._started = False
        self._response_id: str | None = None
        self._model: str | None = None
        self._usage: Usage | None = None
        self._messages: dict[int, str] = {}
        self._reasoning: dict[int, str] = {}
        self._tools: dict[tuple[int, int], str] = {}
        self._open: dict[int, list[str]] = {}
        self._finish_seen = False
        self._finished = False

    def map(self, frame: Frame) -> list[Delta]:
        data = as_object(frame.data)
        if get_object(data, "error") is not None:
            return [StreamFailure(classify_stream_error(data))]

        deltas: list[Delta] = []
        if not self._started:
            self._started = True
            self._response_id = get_str(data, "id")
            self._model = get_str(data, "model")
            deltas.append(ResponseStarted(self._response_id, self._model, "in_progress"))

        for choice in get_list(data, "choices"):
            deltas.extend(self._map_choice(as_object(choice)))

        usage = Usage.from_payload(get_object(data, "usage"))
        if usage is not None:
            self._usage = usage
        return deltas or [Ignored(frame.kind)]

    def _map_choice(self, choice: JSONObject) -> list[Delta]:
        index = get_int(choice, "index") or 0
        delta = get_object(choice, "delta") or {}
        deltas: list[Delta] = []

        reasoning = get_str(delta, "reasoning_content") or get_str(delta, "reasoning")
        if reasoning:
            item_id = self._reasoning.get(index)
            if item_id is None:
                item_id = self._reasoning[index] = f"choice_{index}_reasoning"
                deltas.append(self._open_item(index, ItemAdded(item_id, ItemType.REASONING, "reasoning")))
            deltas.append(ItemDelta(item_id, DeltaField.TEXT, reasoning))

        content = get_str(delta, "content")
        if content:
            item_id = self._messages.get(index)
            if item_id is None:
                item_id = self._messages[index] = f"choice_{index}"
                deltas.append(self._open_item(index, ItemAdded(item_id, ItemType.MESSAGE, "message")))
            deltas.append(ItemDelta(item_id, DeltaField.TEXT, content))

        for position, call in enumerate(get_list(delta, "tool_calls")):
            call_index = get_int(call, "index")
            key = (index, call_index if call_index is not None else position)
            function = get_object(call, "function")
            item_id = self._tools.get(key)
            if item_id is None:
                call_id = get_str(call, "id") or f"call_{key[0]}_{key[1]}"
                item_id = self._tools[key] = call_id
                added = ItemAdded(item_id, ItemType.TOOL_CALL, "function_call", get_str(function, "name"), call_id)
                deltas.append(self._open_item(index, added))
            arguments = get_str(function, "arguments")
            if arguments:
                deltas.append(ItemDelta(item_id, DeltaField.ARGUMENTS, arguments))

        finish_reason = get_str(choice, "finish_reason")
        if finish_reason:
            self._finish_seen = True
            deltas.extend(ItemDone(item_id, status=finish_reason) for item_id in self._open.pop(index, []))
        return deltas

    def _open_item(self, choice_index: int, added: ItemAdded) -> ItemAdded:
        self._open.setdefault(choice_index, []).append(added.item_id)
        return added

    def finish(self) -> list[Delta]:
        if self._finished:
            return []
        self._finished = True
        if self._open or not self._finish_seen:
            # No finish_reason for some choice: the stream was cut short.
            open_items = [item_id for index in sorted(self._open) for item_id in self._open[index]]
            logger.warning("chat.truncated response_id={} open={}", self._response_id, open_items)
            return []
        return [ResponseDone(self._usage, "completed", self._response_id, self._model)]


def complete_response_deltas(body: Any) -> list[Delta]:
    """Express a complete Responses object as the deltas a stream would have carried."""
    data = as_object(body)
    deltas: list[Delta] = [ResponseStarted(get_str(data, "id"), get_str(data, "model"), get_str(data, "status"))]
    for position, raw in enumerate(get_list(data, "output")):
        item = as_object(raw)
        added = _item_added(item, f"item_{position}")
        done = _item_done(item, added.item_id)
        deltas.append(added)
        if done.text:
            deltas.append(ItemDelta(added.item_id, DeltaField.TEXT, done.text))
        if done.arguments:
            deltas.append(ItemDelta(added.item_id, DeltaField.ARGUMENTS, done.arguments))
        deltas.append(done)
    if get_object(data, "error") is not None:
        deltas.append(StreamFailure(classify_stream_error(data)))
    deltas.append(
        ResponseDone(
            Usage.from_payload(get_object(data, "usage")),
            get_str(data, "status"),
            get_str(data, "id"),
            get_str(data, "model"),
        )
    )
    return deltas


def complete_chat_deltas(body: Any) -> list[Delta]:
    """Express a complete chat completion as the deltas a stream would have carried."""
    data = as_object(body)
    deltas: list[Delta] = [ResponseStarted(get_str(data, "id"), get_str(data, "model"), "in_progress")]
    for raw in get_list(data, "choices"):
        choice = as_object(raw)
        index = get_int(choice, "index") or 0
        message = get_object(choice, "message") or {}
        finish_reason = get_str(choice, "finish_reason")
        reasoning = get_str(message, "reasoning_content") or get_str(message, "reasoning")
        if reasoning:
            item_id = f"choice_{index}_reasoning"
            deltas += [
                ItemAdded(item_id, ItemType.REASONING, "reasoning"),
                ItemDelta(item_id, DeltaField.TEXT, reasoning),
                ItemDone(item_id, text=reasoning, status=finish_reason),
            ]
        content = get_str(message, "content")
        if content:
            item_id = f"choice_{index}"
            deltas += [
                ItemAdded(item_id, ItemType.MESSAGE, "message"),
                ItemDelta(item_id, DeltaField.TEXT, content),
                ItemDone(item_id, text=content, status=finish_reason),
            ]
        for position, call in enumerate(get_list(message, "tool_calls")):
            function = get_object(call, "function")
            call_id = get_str(call, "id") or f"call_{index}_{position}"
            arguments = get_str(function, "arguments") or ""
            deltas.append(ItemAdded(call_id, ItemType.TOOL_CALL, "function_call", get_str(function, "name"), call_id))
            if arguments:
                deltas.append(ItemDelta(call_id, DeltaField.ARGUMENTS, arguments))
            deltas.append(ItemDone(call_id, arguments=arguments, status=finish_reason))
    deltas.append(ResponseDone(Usage.from_payload(get_object(data, "usage")), "completed", get_str(data, "id"), get_str(data, "model")))
    return deltas


class EndpointFamily(StrEnum):
    """Endpoint families that share the framing and fold but differ in delta shape."""

    RESPONSES = "responses"
    CHAT_COMPLETIONS = "chat_completions"

    def new_mapper(self) -> DeltaMapper:
        if self is EndpointFamily.RESPONSES:
            return ResponsesDeltaMapper()
        return ChatCompletionDeltaMapper()

    def complete_deltas(self, body: Any) -> list[Delta]:
        if self is EndpointFamily.RESPONSES:
            return complete_response_deltas(body)
        return complete_chat_deltas(body)
