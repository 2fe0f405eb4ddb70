"""HTTP transport: request envelopes, header scoping, buffered and streamed responses."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

import httpx
from loguru import logger

from openkit.cancellation import CancellationToken
from openkit.classifier import classify_exception, classify_status
from openkit.config import DEFAULT_BASE_URL, DEFAULT_USER_AGENT, Settings
from openkit.errors import ClassifiedError, ErrorKind, RequestFailedError

EVENT_STREAM = "text/event-stream"

# filename, content, content type
type FilePart = tuple[str, bytes, str]


@dataclass(frozen=True)
class RequestEnvelope:
    """One HTTP call as built by an endpoint façade. Borrowed by the transport for one invocation."""

    method: str
    path: str
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes | None = None
    timeout: float | None = None
    stream: bool = False
    form: Mapping[str, str] | None = None
    files: Mapping[str, FilePart] | None = None

    @classmethod
    def from_json(
        cls,
        path: str,
        body: Mapping[str, Any] | None = None,
        *,
        method: str = "POST",
        stream: bool = False,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> RequestEnvelope:
        raw: bytes | None = None
        if body is not None:
            payload = dict(body)
            if stream:
                payload["stream"] = True
            try:
                raw = json.dumps(payload, ensure_ascii=False, allow_nan=False).encode("utf-8")
            except (TypeError, ValueError) as exc:
                raise RequestFailedError(
                    ClassifiedError.of(ErrorKind.INVALID_PAYLOAD, technical_detail=f"request body: {exc}")
                ) from exc
        return cls(method=method, path=path, headers=dict(headers or {}), body=raw, timeout=timeout, stream=stream)

    @classmethod
    def multipart(
        cls,
        path: str,
        fields: Mapping[str, str],
        files: Mapping[str, FilePart],
        *,
        timeout: float | None = None,
    ) -> RequestEnvelope:
        """A POST sent as ``multipart/form-data``; the boundary is chosen when the request is built."""
        if not files:
            raise RequestFailedError(
                ClassifiedError.of(ErrorKind.INVALID_PAYLOAD, technical_detail="multipart request without files")
            )
        return cls(method="POST", path=path, timeout=timeout, form=dict(fields), files=dict(files))

    @classmethod
    def get(cls, path: str, *, timeout: float | None = None) -> RequestEnvelope:
        return cls(method="GET", path=path, timeout=timeout)

    @classmethod
    def delete(cls, path: str, *, timeout: float | None = None) -> RequestEnvelope:
        return cls(method="DELETE", path=path, timeout=timeout)


def _wrap(exc: httpx.HTTPError) -> RequestFailedError:
    error = classify_exception(exc)
    if error is None:
        error = ClassifiedError.of(ErrorKind.SERVER_ERROR, technical_detail=f"{type(exc).__name__}: {exc}")
    return RequestFailedError(error)


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await anext(chunks)
    except StopAsyncIteration:
        return None


class ByteStream:
    """Readable body of a streamed response. Checks the token before, and races it during, every read."""

    def __init__(self, response: httpx.Response, token: CancellationToken) -> None:
        self._response = response
        self._token = token
        self.bytes_read = 0

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> httpx.Headers:
        return self._response.headers

    async def __aiter__(self) -> AsyncIterator[bytes]:
        chunks = self._response.aiter_bytes()
        try:
            while True:
                self._token.raise_if_cancelled()
                try:
                    chunk = await self._token.run(_next_chunk(chunks))
                except httpx.HTTPError as exc:
                    raise _wrap(exc) from exc
                if chunk is None:
                    return
                self.bytes_read += len(chunk)
                yield chunk
        finally:
            await chunks.aclose()


class Transport:
    """Issues requests against the API with bearer auth and organization/project scoping."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str = DEFAULT_BASE_URL,
        organization: str | None = None,
        project: str | None = None,
        timeout: float = 60.0,
        user_agent: str = DEFAULT_USER_AGENT,
        client: httpx.AsyncClient | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._organization = organization
        self._project = project
        self._timeout = timeout
        self._user_agent = user_agent
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(transport=http_transport, timeout=timeout)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client: httpx.AsyncClient | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> Transport:
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            project=settings.project,
            timeout=settings.timeout_seconds,
            user_agent=settings.user_agent,
            client=client,
            http_transport=http_transport,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def build_url(self, path: str) -> httpx.URL:
        raw = path if "://" in path else f"{self._base_url.rstrip('/')}/{path.lstrip('/')}"
        try:
            url = httpx.URL(raw)
        except httpx.InvalidURL as exc:
            raise RequestFailedError(ClassifiedError.of(ErrorKind.INVALID_REQUEST_URL, technical_detail=str(exc))) from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise RequestFailedError(
                ClassifiedError.of(ErrorKind.INVALID_REQUEST_URL, technical_detail=f"unusable URL: {raw}")
            )
        return url

    def build_headers(self, envelope: RequestEnvelope) -> dict[str, str]:
        headers = {"User-Agent": self._user_agent}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        if self._project:
            headers["OpenAI-Project"] = self._project
        if envelope.body is not None:
            headers["Content-Type"] = "application/json"
        if envelope.stream:
            headers["Accept"] = EVENT_STREAM
        headers.update(envelope.headers)
        return headers

    def _build_request(self, envelope: RequestEnvelope) -> httpx.Request:
        return self._client.build_request(
            envelope.method,
            self.build_url(envelope.path),
            headers=self.build_headers(envelope),
            content=envelope.body,
            data=envelope.form,
            files=envelope.files,
            timeout=envelope.timeout if envelope.timeout is not None else self._timeout,
        )

    async def send(self, envelope: RequestEnvelope, token: CancellationToken | None = None) -> httpx.Response:
        """Send a request and return the fully read response. Non-success statuses raise."""
        token = token or CancellationToken()
        request = self._build_request(envelope)
        logger.debug("transport.request method={} url={}", request.method, request.url)
        try:
            response = await token.run(self._client.send(request))
        except httpx.HTTPError as exc:
            raise _wrap(exc) from exc
        logger.debug("transport.response status={} bytes={}", response.status_code, len(response.content))
        if not response.is_success:
            raise RequestFailedError(classify_status(response.status_code, response.content, response.headers))
        return response

    @asynccontextmanager
    async def open_stream(
        self, envelope: RequestEnvelope, token: CancellationToken | None = None
    ) -> AsyncIterator[ByteStream]:
        """Open a streamed response. The connection is released when the block exits, however it exits."""
        token = token or CancellationToken()
        request = self._build_request(envelope)
        logger.debug("transport.stream.open method={} url={}", request.method, request.url)
        try:
            response = await token.run(self._client.send(request, stream=True))
        except httpx.HTTPError as exc:
            raise _wrap(exc) from exc

        stream = ByteStream(response, token)
        try:
            if not response.is_success:
                try:
                    body = await response.aread()
                except httpx.HTTPError:
                    body = b""
                raise RequestFailedError(classify_status(response.status_code, body, response.headers))
            content_type = response.headers.get("content-type", "")
            if content_type.startswith("application/json"):
                raise RequestFailedError(
                    ClassifiedError.of(
                        ErrorKind.STREAMING_UNSUPPORTED,
                        status=response.status_code,
                        technical_detail=f"expected {EVENT_STREAM}, got {content_type}",
                    )
                )
            yield stream
        finally:
            await response.aclose()
            logger.debug("transport.stream.closed status={} bytes={}", response.status_code, stream.bytes_read)
