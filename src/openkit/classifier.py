"""Map raw failures onto the closed error taxonomy.

Every function here is pure: the same failure always yields the same
:class:`~openkit.errors.ClassifiedError`. Three failure shapes are accepted:

* an HTTP status with its body and headers (:func:`classify_status`),
* an exception raised by the transport or a decoder (:func:`classify_exception`),
* an error event sent inside a stream (:func:`classify_stream_error`).

:func:`classify` dispatches on the shape.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from openkit.errors import (
    CHECK_API_KEY,
    CONTACT_SUPPORT,
    DEFAULT_RETRY_DELAY,
    REDUCE_REQUEST_SIZE,
    RETRY,
    USE_ALTERNATIVE_MODEL,
    ClassifiedError,
    ErrorKind,
    RequestFailedError,
    UserAction,
)
from openkit.jsonvalue import as_object, get_object, get_str, loads

_CLIENT_ERROR_MESSAGES: dict[int, str] = {
    400: "The request was invalid. Please check your parameters and try again.",
    403: "Access forbidden. You don't have permission to access this resource.",
    404: "The requested resource was not found.",
    413: "The request is too large. Please reduce the size and try again.",
    422: "The request couldn't be processed. Please check your input.",
}

_CLIENT_ERROR_ACTIONS: dict[int, tuple[UserAction, ...]] = {
    400: (RETRY,),
    403: (CHECK_API_KEY,),
    404: (CONTACT_SUPPORT,),
    413: (REDUCE_REQUEST_SIZE,),
}

_API_TYPE_TITLES: dict[str, str] = {
    "invalid_request_error": "Invalid Request",
    "authentication_error": "Authentication Error",
    "rate_limit_error": "Rate Limit",
    "server_error": "Server Error",
    "engine_error": "Model Error",
}

_STREAM_CODE_KINDS: dict[str, ErrorKind] = {
    "rate_limit_exceeded": ErrorKind.RATE_LIMIT_EXCEEDED,
    "rate_limit_error": ErrorKind.RATE_LIMIT_EXCEEDED,
    "server_error": ErrorKind.SERVER_ERROR,
    "internal_error": ErrorKind.SERVER_ERROR,
    "server_is_overloaded": ErrorKind.SERVER_ERROR,
    "invalid_api_key": ErrorKind.AUTHENTICATION_FAILED,
}


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header given either in seconds or as an HTTP date."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - (now or datetime.now(UTC))).total_seconds())


def _api_error_detail(body: Any) -> dict[str, Any]:
    """Extract ``{"error": {"message", "type", "param", "code"}}`` from a response body, if present."""
    if isinstance(body, bytes | bytearray | str):
        try:
            body = loads(body) if body else None
        except (ValueError, UnicodeDecodeError):
            return {}
    detail = get_object(body, "error")
    if detail is None:
        return {}
    code = as_object(detail).get("code")
    return {
        "message": get_str(detail, "message"),
        "api_type": get_str(detail, "type"),
        "param": get_str(detail, "param"),
        "code": str(code) if code is not None else None,
    }


def _api_actions(api_type: str | None, param: str | None) -> tuple[UserAction, ...] | None:
    match api_type:
        case "invalid_request_error" if param is not None:
            return (REDUCE_REQUEST_SIZE, RETRY)
        case "invalid_request_error":
            return (RETRY,)
        case "authentication_error":
            return (CHECK_API_KEY,)
        case "engine_error":
            return (USE_ALTERNATIVE_MODEL, RETRY)
        case _:
            return None


def classify_status(
    status: int,
    body: bytes | str | Mapping[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
    *,
    default_delay: float = DEFAULT_RETRY_DELAY,
) -> ClassifiedError:
    """Classify a non-success HTTP status and its body."""
    if 200 <= status < 300:
        raise ValueError(f"status {status} is not a failure")

    api = _api_error_detail(body)
    retry_after = parse_retry_after(_header(headers, "retry-after"))
    api_message = api.get("message")
    api_type = api.get("api_type")
    detail = f"HTTP {status}" + (f": {api_message}" if api_message else "")
    common: dict[str, Any] = {
        "status": status,
        "param": api.get("param"),
        "api_type": api_type,
        "technical_detail": detail,
    }

    if status == 401:
        return ClassifiedError.of(ErrorKind.AUTHENTICATION_FAILED, code=api.get("code"), **common)
    if status == 429:
        return ClassifiedError.of(
            ErrorKind.RATE_LIMIT_EXCEEDED,
            code=api.get("code"),
            retry_after=retry_after,
            suggested_delay=retry_after if retry_after is not None else default_delay,
            **common,
        )
    if 400 <= status < 500:
        return ClassifiedError.of(
            ErrorKind.CLIENT_ERROR,
            title=_API_TYPE_TITLES.get(api_type) if api_type else None,
            message=api_message or _CLIENT_ERROR_MESSAGES.get(status),
            code=api.get("code"),
            actions=_api_actions(api_type, api.get("param")) or _CLIENT_ERROR_ACTIONS.get(status),
            **common,
        )
    if 500 <= status < 600:
        return ClassifiedError.of(
            ErrorKind.SERVER_ERROR,
            code=api.get("code"),
            retry_after=retry_after,
            suggested_delay=retry_after if retry_after is not None else default_delay,
            **common,
        )
    return ClassifiedError.of(
        ErrorKind.DECODING_FAILED,
        message="Received an unexpected response. Please try again.",
        code="unexpected_status",
        **common,
    )


def classify_exception(exc: BaseException, *, default_delay: float = DEFAULT_RETRY_DELAY) -> ClassifiedError | None:
    """Classify a raised failure; ``None`` means the exception is not a recognised request failure."""
    match exc:
        case RequestFailedError():
            return exc.error
        case httpx.TimeoutException():
            return ClassifiedError.of(
                ErrorKind.TIMED_OUT,
                suggested_delay=default_delay,
                technical_detail=f"{type(exc).__name__}: {exc}",
            )
        case httpx.InvalidURL() | httpx.UnsupportedProtocol():
            return ClassifiedError.of(ErrorKind.INVALID_REQUEST_URL, technical_detail=str(exc))
        case httpx.HTTPStatusError():
            response = exc.response
            try:
                body: bytes = response.content
            except httpx.ResponseNotRead:
                body = b""
            return classify_status(response.status_code, body, response.headers, default_delay=default_delay)
        case httpx.DecodingError():
            return ClassifiedError.of(ErrorKind.DECODING_FAILED, technical_detail=str(exc))
        case httpx.TransportError():
            return ClassifiedError.of(
                ErrorKind.SERVER_ERROR,
                message="The connection to the API failed. Please try again.",
                code="connection_error",
                suggested_delay=default_delay,
                technical_detail=f"{type(exc).__name__}: {exc}",
            )
        case json.JSONDecodeError() | UnicodeDecodeError():
            return ClassifiedError.of(ErrorKind.DECODING_FAILED, technical_detail=str(exc))
        case asyncio.CancelledError():
            return ClassifiedError.of(ErrorKind.CANCELLED)
        case _:
            return None


def classify_stream_error(payload: Any, *, default_delay: float = DEFAULT_RETRY_DELAY) -> ClassifiedError:
    """Classify an error event sent by the server inside an event stream."""
    detail = get_object(payload, "error") or get_object(get_object(payload, "response"), "error") or payload
    code = get_str(detail, "code")
    message = get_str(detail, "message")
    kind = _STREAM_CODE_KINDS.get(code or "", ErrorKind.CLIENT_ERROR)
    if kind.retryable:
        return ClassifiedError.of(
            kind,
            message=message,
            code=code,
            suggested_delay=default_delay,
            technical_detail=f"stream error: {message or code or 'unknown'}",
        )
    return ClassifiedError.of(
        kind,
        message=message,
        code=code,
        param=get_str(detail, "param"),
        technical_detail=f"stream error: {message or code or 'unknown'}",
    )


def classify(failure: object, *, default_delay: float = DEFAULT_RETRY_DELAY) -> ClassifiedError | None:
    """Classify any supported failure shape."""
    match failure:
        case ClassifiedError():
            return failure
        case BaseException():
            return classify_exception(failure, default_delay=default_delay)
        case httpx.Response():
            return classify_status(failure.status_code, failure.content, failure.headers, default_delay=default_delay)
        case bool():
            return None
        case int():
            return classify_status(failure, default_delay=default_delay)
        case (int() as status, body):
            return classify_status(status, body, default_delay=default_delay)
        case dict():
            return classify_stream_error(failure, default_delay=default_delay)
        case _:
            return None


def _header(headers: Mapping[str, str] | None, name: str) -> str | None:
    if not headers:
        return None
    if isinstance(headers, httpx.Headers):
        return headers.get(name)
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None
