"""Server-sent event framing: bytes in, decoded frames out."""

from __future__ import annotations

import codecs
import json
import re
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass

from openkit.cancellation import CancellationToken
from openkit.errors import ClassifiedError, ErrorKind, RequestFailedError
from openkit.jsonvalue import JSONValue, get_str, loads

DONE_SENTINEL = "[DONE]"
DEFAULT_KIND = "message"

_EOL = re.compile(r"[\r\n]")


@dataclass(frozen=True)
class Frame:
    """One decoded event: a kind tag plus its parsed JSON payload."""

    kind: str
    data: JSONValue
    event_id: str | None = None


@dataclass(frozen=True)
class MalformedFrame:
    """A well-framed event whose payload is not valid JSON."""

    raw: str
    error: str
    event: str | None = None
    event_id: str | None = None


type DecodedFrame = Frame | MalformedFrame


class FrameDecoder:
    """Incremental decoder; feed it reads of any size and collect complete frames."""

    def __init__(self) -> None:
        self._utf8 = codecs.getincrementaldecoder("utf-8")()
        self._buffer = ""
        self._data: list[str] = []
        self._event: str | None = None
        self._event_id: str | None = None
        self.finished = False

    def feed(self, chunk: bytes) -> list[DecodedFrame]:
        if self.finished:
            return []
        self._buffer += self._utf8.decode(chunk)
        return self._drain(final=False)

    def close(self) -> list[DecodedFrame]:
        """Flush at end of stream. A pending frame that was never blank-line terminated is still dispatched."""
        if self.finished:
            return []
        self._buffer += self._utf8.decode(b"", final=True)
        frames = self._drain(final=True)
        if not self.finished:
            if self._buffer:
                self._process_line(self._buffer)
                self._buffer = ""
            frame = self._dispatch()
            if frame is not None:
                frames.append(frame)
        self.finished = True
        return frames

    def _drain(self, *, final: bool) -> list[DecodedFrame]:
        frames: list[DecodedFrame] = []
        while not self.finished:
            line = self._next_line(final=final)
            if line is None:
                break
            frame = self._process_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def _next_line(self, *, final: bool) -> str | None:
        match = _EOL.search(self._buffer)
        if match is None:
            return None
        index = match.start()
        end = index + 1
        if self._buffer[index] == "\r":
            if end == len(self._buffer) and not final:
                # CR may be the first half of a CRLF split across reads.
                return None
            if self._buffer[end : end + 1] == "\n":
                end += 1
        line = self._buffer[:index]
        self._buffer = self._buffer[end:]
        return line

    def _process_line(self, line: str) -> DecodedFrame | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, separator, value = line.partition(":")
        if separator and value.startswith(" "):
            value = value[1:]
        match name:
            case "data":
                self._data.append(value)
            case "event":
                self._event = value
            case "id" if "\0" not in value:
                self._event_id = value
            case _:
                pass
        return None

    def _dispatch(self) -> DecodedFrame | None:
        data, event, event_id = self._data, self._event, self._event_id
        self._data, self._event, self._event_id = [], None, None
        if not data:
            return None
        payload = "\n".join(data)
        if payload.strip() == DONE_SENTINEL:
            self.finished = True
            self._buffer = ""
            return None
        try:
            parsed = loads(payload)
        except json.JSONDecodeError as exc:
            return MalformedFrame(raw=payload, error=str(exc), event=event, event_id=event_id)
        kind = event or get_str(parsed, "type") or DEFAULT_KIND
        return Frame(kind=kind, data=parsed, event_id=event_id)


def decode_all(chunks: Iterable[bytes]) -> list[DecodedFrame]:
    """Decode an already-available sequence of reads."""
    decoder = FrameDecoder()
    frames: list[DecodedFrame] = []
    for chunk in chunks:
        frames.extend(decoder.feed(chunk))
        if decoder.finished:
            break
    frames.extend(decoder.close())
    return frames


async def decode_frames(
    chunks: AsyncIterable[bytes], token: CancellationToken | None = None
) -> AsyncIterator[DecodedFrame]:
    """Lazily decode a byte stream. Ends at the terminator or when the stream closes."""
    token = token or CancellationToken()
    decoder = FrameDecoder()
    iterator = aiter(chunks)
    try:
        while not decoder.finished:
            token.raise_if_cancelled()
            try:
                chunk = await anext(iterator)
            except StopAsyncIteration:
                break
            for frame in decoder.feed(chunk):
                token.raise_if_cancelled()
                yield frame
        for frame in decoder.close():
            token.raise_if_cancelled()
            yield frame
    except UnicodeDecodeError as exc:
        raise RequestFailedError(
            ClassifiedError.of(ErrorKind.DECODING_FAILED, technical_detail=f"stream is not UTF-8: {exc}")
        ) from exc
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()
