"""Thin endpoint façades: build an envelope, hand it to the client."""

from __future__ import annotations

from collections.abc import AsyncIterator, Mapping
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from openkit.cancellation import CancellationToken
from openkit.config import DecodeFailurePolicy
from openkit.errors import ClassifiedError, ErrorKind, RequestFailedError
from openkit.events import EndpointFamily
from openkit.jsonvalue import JSONValue
from openkit.reconstructor import AccumulatedResult
from openkit.transport import RequestEnvelope

if TYPE_CHECKING:
    from openkit.client import OpenKitClient


def _object_path(prefix: str, object_id: str, *suffix: str) -> str:
    if not object_id.strip():
        raise RequestFailedError(
            ClassifiedError.of(ErrorKind.INVALID_REQUEST_URL, technical_detail=f"empty id for {prefix}")
        )
    return "/".join((prefix, quote(object_id, safe=""), *suffix))


class ResponsesEndpoint:
    """``/responses``: create, stream, retrieve, delete and cancel model responses."""

    path = "responses"

    def __init__(self, client: OpenKitClient) -> None:
        self._client = client

    async def create(
        self, request: Mapping[str, Any], *, token: CancellationToken | None = None
    ) -> AccumulatedResult:
        envelope = RequestEnvelope.from_json(self.path, request)
        return await self._client.respond(envelope, EndpointFamily.RESPONSES, token=token)

    def stream(
        self,
        request: Mapping[str, Any],
        *,
        token: CancellationToken | None = None,
        decode_failure_policy: DecodeFailurePolicy | None = None,
    ) -> AsyncIterator[AccumulatedResult]:
        envelope = RequestEnvelope.from_json(self.path, request, stream=True)
        return self._client.stream(
            envelope,
            EndpointFamily.RESPONSES,
            token=token,
            decode_failure_policy=decode_failure_policy,
        )

    async def retrieve(self, response_id: str, *, token: CancellationToken | None = None) -> AccumulatedResult:
        envelope = RequestEnvelope.get(_object_path(self.path, response_id))
        return await self._client.respond(envelope, EndpointFamily.RESPONSES, token=token)

    async def delete(self, response_id: str, *, token: CancellationToken | None = None) -> JSONValue:
        envelope = RequestEnvelope.delete(_object_path(self.path, response_id))
        return await self._client.execute(envelope, token=token)

    async def cancel(self, response_id: str, *, token: CancellationToken | None = None) -> AccumulatedResult:
        """Cancel a background response on the server."""
        envelope = RequestEnvelope(method="POST", path=_object_path(self.path, response_id, "cancel"))
        return await self._client.respond(envelope, EndpointFamily.RESPONSES, token=token)


class ChatEndpoint:
    """``/chat/completions``."""

    path = "chat/completions"

    def __init__(self, client: OpenKitClient) -> None:
        self._client = client

    async def create(
        self, request: Mapping[str, Any], *, token: CancellationToken | None = None
    ) -> AccumulatedResult:
        envelope = RequestEnvelope.from_json(self.path, request)
        return await self._client.respond(envelope, EndpointFamily.CHAT_COMPLETIONS, token=token)

    def stream(
        self,
        request: Mapping[str, Any],
        *,
        token: CancellationToken | None = None,
        decode_failure_policy: DecodeFailurePolicy | None = None,
    ) -> AsyncIterator[AccumulatedResult]:
        body = dict(request)
        # Usage only arrives in a trailing chunk when asked for.
        body.setdefault("stream_options", {"include_usage": True})
        envelope = RequestEnvelope.from_json(self.path, body, stream=True)
        return self._client.stream(
            envelope,
            EndpointFamily.CHAT_COMPLETIONS,
            token=token,
            decode_failure_policy=decode_failure_policy,
        )


class FilesEndpoint:
    """``/files``: multipart uploads."""

    path = "files"

    def __init__(self, client: OpenKitClient) -> None:
        self._client = client

    async def upload(
        self,
        content: bytes,
        filename: str,
        purpose: str,
        *,
        content_type: str = "application/octet-stream",
        token: CancellationToken | None = None,
    ) -> JSONValue:
        return await self._client.upload(
            self.path,
            {"purpose": purpose},
            {"file": (filename, content, content_type)},
            token=token,
        )
