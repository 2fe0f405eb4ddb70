"""High-level client: retry-wrapped calls and streamed reconstruction."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from contextlib import AsyncExitStack, aclosing
from types import TracebackType

import httpx
from loguru import logger

from openkit.cancellation import CancellationToken
from openkit.config import DecodeFailurePolicy, Settings, get_settings
from openkit.endpoints import ChatEndpoint, FilesEndpoint, ResponsesEndpoint
from openkit.errors import ClassifiedError, ErrorKind, RequestFailedError
from openkit.events import DeltaMapper, EndpointFamily
from openkit.jsonvalue import JSONValue
from openkit.reconstructor import AccumulatedResult, reconstruct, reconstruct_complete
from openkit.retry import RetryCallback, RetryPolicy, perform
from openkit.sse import decode_frames
from openkit.transport import ByteStream, FilePart, RequestEnvelope, Transport


class OpenKitClient:
    """Owns one transport and applies the configured retry and decode policies to every call.

    Use it as an async context manager so the underlying HTTP client is closed::

        async with OpenKitClient() as client:
            result = await client.responses.create({"model": "gpt-4o-mini", "input": "hi"})
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: Transport | None = None,
        policy: RetryPolicy | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.transport = transport or Transport.from_settings(self.settings, http_transport=http_transport)
        self.policy = policy or self.settings.retry_policy()
        self.decode_failure_policy = self.settings.decode_failure_policy

    async def __aenter__(self) -> OpenKitClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.transport.aclose()

    @property
    def responses(self) -> ResponsesEndpoint:
        return ResponsesEndpoint(self)

    @property
    def chat(self) -> ChatEndpoint:
        return ChatEndpoint(self)

    @property
    def files(self) -> FilesEndpoint:
        return FilesEndpoint(self)

    async def execute(
        self,
        envelope: RequestEnvelope,
        *,
        token: CancellationToken | None = None,
        policy: RetryPolicy | None = None,
        on_retry: RetryCallback | None = None,
    ) -> JSONValue:
        """Send a buffered request with retries and return its parsed JSON body."""
        token = token or CancellationToken()
        response = await perform(
            lambda: self.transport.send(envelope, token),
            policy or self.policy,
            token=token,
            on_retry=on_retry,
        )
        if not response.content:
            return None
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise RequestFailedError(
                ClassifiedError.of(ErrorKind.DECODING_FAILED, status=response.status_code, technical_detail=str(exc))
            ) from exc

    async def upload(
        self,
        path: str,
        fields: Mapping[str, str],
        files: Mapping[str, FilePart],
        *,
        token: CancellationToken | None = None,
        policy: RetryPolicy | None = None,
        on_retry: RetryCallback | None = None,
    ) -> JSONValue:
        """Send a multipart form with retries and return its parsed JSON body."""
        envelope = RequestEnvelope.multipart(path, fields, files)
        logger.debug("client.upload path={} files={}", path, sorted(files))
        return await self.execute(envelope, token=token, policy=policy, on_retry=on_retry)

    async def respond(
        self,
        envelope: RequestEnvelope,
        family: EndpointFamily = EndpointFamily.RESPONSES,
        *,
        token: CancellationToken | None = None,
        policy: RetryPolicy | None = None,
        on_retry: RetryCallback | None = None,
    ) -> AccumulatedResult:
        """Non-streaming call folded into one terminal result."""
        body = await self.execute(envelope, token=token, policy=policy, on_retry=on_retry)
        return reconstruct_complete(body, family)

    async def stream(
        self,
        envelope: RequestEnvelope,
        mapper: DeltaMapper | EndpointFamily = EndpointFamily.RESPONSES,
        *,
        token: CancellationToken | None = None,
        policy: RetryPolicy | None = None,
        on_retry: RetryCallback | None = None,
        decode_failure_policy: DecodeFailurePolicy | None = None,
    ) -> AsyncIterator[AccumulatedResult]:
        """Stream snapshots of a call.

        Only opening the stream is retried; once bytes flow, failures propagate. Closing the
        returned iterator early, an error, or cancellation all release the connection before
        control returns to the caller.
        """
        token = token or CancellationToken()
        if isinstance(mapper, EndpointFamily):
            mapper = mapper.new_mapper()

        async with AsyncExitStack() as stack:

            async def open_stream() -> ByteStream:
                return await stack.enter_async_context(self.transport.open_stream(envelope, token))

            body = await perform(open_stream, policy or self.policy, token=token, on_retry=on_retry)
            logger.debug("client.stream.opened status={}", body.status_code)
            snapshots = reconstruct(
                decode_frames(body, token),
                mapper,
                decode_failure_policy=decode_failure_policy or self.decode_failure_policy,
                token=token,
            )
            async with aclosing(snapshots):
                async for snapshot in snapshots:
                    yield snapshot
