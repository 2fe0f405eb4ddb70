from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator, Iterable
from typing import Any

import httpx

from openkit.client import OpenKitClient
from openkit.config import Settings
from openkit.retry import RetryPolicy

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)
SSE_HEADERS = {"content-type": "text/event-stream"}


def sse_event(payload: dict[str, Any], *, event: str | None = None) -> bytes:
    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(payload)}")
    return ("\n".join(lines) + "\n\n").encode("utf-8")


def sse_body(*payloads: dict[str, Any], done: bool = True) -> bytes:
    body = b"".join(sse_event(payload, event=payload.get("type")) for payload in payloads)
    if done:
        body += b"data: [DONE]\n\n"
    return body


class ChunkStream(httpx.AsyncByteStream):
    """Response body delivered in the given reads, optionally hanging after the last one."""

    def __init__(self, chunks: Iterable[bytes], *, hang: bool = False) -> None:
        self.chunks = list(chunks)
        self.hang = hang
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk
        if self.hang:
            await asyncio.Event().wait()

    async def aclose(self) -> None:
        self.closed = True


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "api_key": "sk-test",
        "base_url": "https://api.test/v1",
        "organization": "org-test",
        "project": "proj-test",
    }
    values.update(overrides)
    return Settings(**values)


def make_client(handler: Any, *, policy: RetryPolicy = FAST_RETRY, **overrides: Any) -> OpenKitClient:
    return OpenKitClient(make_settings(**overrides), policy=policy, http_transport=httpx.MockTransport(handler))


async def chunks_of(*chunks: bytes) -> AsyncIterator[bytes]:
    for chunk in chunks:
        yield chunk


def hello_stream() -> list[dict[str, Any]]:
    return [
        {"type": "response.created", "response": {"id": "resp_1", "model": "gpt-test", "status": "in_progress"}},
        {"type": "response.output_item.added", "output_index": 0, "item": {"id": "1", "type": "message"}},
        {"type": "response.output_text.delta", "item_id": "1", "delta": "Hel"},
        {"type": "response.output_text.delta", "item_id": "1", "delta": "lo"},
        {
            "type": "response.output_item.done",
            "output_index": 0,
            "item": {"id": "1", "type": "message", "content": [{"type": "output_text", "text": "Hello"}]},
        },
        {
            "type": "response.completed",
            "response": {
                "id": "resp_1",
                "model": "gpt-test",
                "status": "completed",
                "usage": {"input_tokens": 3, "output_tokens": 2, "total_tokens": 5},
            },
        },
    ]
