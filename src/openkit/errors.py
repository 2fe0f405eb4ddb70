"""Error taxonomy and exception types for openkit."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum, StrEnum
from typing import Any

DEFAULT_RETRY_DELAY = 1.0


class ErrorKind(StrEnum):
    """Closed set of failure classifications."""

    INVALID_REQUEST_URL = "invalid_request_url"
    AUTHENTICATION_FAILED = "authentication_failed"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CLIENT_ERROR = "client_error"
    SERVER_ERROR = "server_error"
    INVALID_PAYLOAD = "invalid_payload"
    DECODING_FAILED = "decoding_failed"
    STREAMING_UNSUPPORTED = "streaming_unsupported"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def retryable(self) -> bool:
        return self in _RETRYABLE_KINDS


_RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMIT_EXCEEDED, ErrorKind.SERVER_ERROR, ErrorKind.TIMED_OUT})


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    ERROR = 2
    CRITICAL = 3

    @property
    def label(self) -> str:
        return self.name.lower()


class ActionKind(StrEnum):
    RETRY = "retry"
    CHECK_API_KEY = "check_api_key"
    CHECK_CONNECTION = "check_connection"
    REDUCE_REQUEST_SIZE = "reduce_request_size"
    CONTACT_SUPPORT = "contact_support"
    WAIT = "wait"
    CHECK_FILE_FORMAT = "check_file_format"
    USE_ALTERNATIVE_MODEL = "use_alternative_model"


_ACTION_TEXT: dict[ActionKind, tuple[str, str]] = {
    ActionKind.RETRY: ("Try Again", "Retry the request"),
    ActionKind.CHECK_API_KEY: ("Check API Key", "Verify your API key in settings"),
    ActionKind.CHECK_CONNECTION: ("Check Connection", "Check your internet connection and try again"),
    ActionKind.REDUCE_REQUEST_SIZE: ("Reduce Size", "Reduce the size of your request"),
    ActionKind.CONTACT_SUPPORT: ("Contact Support", "Contact support for assistance"),
    ActionKind.WAIT: ("Wait {seconds}s", "Wait {seconds} seconds before retrying"),
    ActionKind.CHECK_FILE_FORMAT: ("Check File", "Ensure the file format is supported"),
    ActionKind.USE_ALTERNATIVE_MODEL: ("Try Different Model", "Try using a different model"),
}


@dataclass(frozen=True)
class UserAction:
    """Advisory remediation a UI may offer next to an error."""

    kind: ActionKind
    seconds: float | None = None

    @classmethod
    def wait(cls, seconds: float) -> UserAction:
        return cls(ActionKind.WAIT, seconds)

    @property
    def button_title(self) -> str:
        return _ACTION_TEXT[self.kind][0].format(seconds=int(self.seconds or 0))

    @property
    def description(self) -> str:
        return _ACTION_TEXT[self.kind][1].format(seconds=int(self.seconds or 0))


RETRY = UserAction(ActionKind.RETRY)
CHECK_API_KEY = UserAction(ActionKind.CHECK_API_KEY)
CHECK_CONNECTION = UserAction(ActionKind.CHECK_CONNECTION)
REDUCE_REQUEST_SIZE = UserAction(ActionKind.REDUCE_REQUEST_SIZE)
CONTACT_SUPPORT = UserAction(ActionKind.CONTACT_SUPPORT)
CHECK_FILE_FORMAT = UserAction(ActionKind.CHECK_FILE_FORMAT)
USE_ALTERNATIVE_MODEL = UserAction(ActionKind.USE_ALTERNATIVE_MODEL)


@dataclass(frozen=True)
class _KindDefaults:
    title: str
    message: str
    severity: Severity
    code: str | None
    actions: tuple[UserAction, ...] = ()


_DEFAULTS: dict[ErrorKind, _KindDefaults] = {
    ErrorKind.INVALID_REQUEST_URL: _KindDefaults(
        "Connection Error",
        "Unable to reach the API. Check the configured base URL and your internet connection.",
        Severity.ERROR,
        "invalid_url",
        (CHECK_CONNECTION, RETRY),
    ),
    ErrorKind.AUTHENTICATION_FAILED: _KindDefaults(
        "Authentication Error",
        "Your API key appears to be invalid. Please check your account settings.",
        Severity.ERROR,
        "authentication_failed",
        (CHECK_API_KEY,),
    ),
    ErrorKind.RATE_LIMIT_EXCEEDED: _KindDefaults(
        "Rate Limit Exceeded",
        "You've made too many requests. Please wait a moment before trying again.",
        Severity.WARNING,
        "rate_limit_exceeded",
    ),
    ErrorKind.CLIENT_ERROR: _KindDefaults(
        "Request Error",
        "The request failed. Please check your input and try again.",
        Severity.ERROR,
        None,
        (RETRY, CONTACT_SUPPORT),
    ),
    ErrorKind.SERVER_ERROR: _KindDefaults(
        "Server Error",
        "The API is experiencing issues. Please try again in a few moments.",
        Severity.CRITICAL,
        "server_error",
    ),
    ErrorKind.INVALID_PAYLOAD: _KindDefaults(
        "Data Processing Error",
        "Unable to process your request. Please check your input and try again.",
        Severity.CRITICAL,
        "invalid_payload",
        (RETRY, CONTACT_SUPPORT),
    ),
    ErrorKind.DECODING_FAILED: _KindDefaults(
        "Data Processing Error",
        "Unable to process the response. Please try again or contact support if this persists.",
        Severity.CRITICAL,
        "decoding_failed",
        (RETRY, CONTACT_SUPPORT),
    ),
    ErrorKind.STREAMING_UNSUPPORTED: _KindDefaults(
        "Feature Not Supported",
        "This request doesn't support real-time streaming.",
        Severity.INFO,
        "streaming_not_supported",
    ),
    ErrorKind.TIMED_OUT: _KindDefaults(
        "Request Timed Out",
        "The API did not respond in time. Please try again.",
        Severity.WARNING,
        "timed_out",
        (CHECK_CONNECTION, RETRY),
    ),
    ErrorKind.CANCELLED: _KindDefaults(
        "Request Cancelled",
        "The request was cancelled before it completed.",
        Severity.INFO,
        "cancelled",
    ),
}


@dataclass(frozen=True)
class ClassifiedError:
    """Immutable classification of one failure."""

    kind: ErrorKind
    title: str
    message: str
    severity: Severity
    retryable: bool
    status: int | None = None
    code: str | None = None
    suggested_delay: float | None = None
    retry_after: float | None = None
    param: str | None = None
    api_type: str | None = None
    technical_detail: str | None = None
    actions: tuple[UserAction, ...] = field(default_factory=tuple)

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        *,
        status: int | None = None,
        title: str | None = None,
        message: str | None = None,
        code: str | None = None,
        retry_after: float | None = None,
        suggested_delay: float | None = None,
        param: str | None = None,
        api_type: str | None = None,
        technical_detail: str | None = None,
        actions: tuple[UserAction, ...] | None = None,
    ) -> ClassifiedError:
        """Build an error for ``kind``, filling presentation defaults for anything not given."""
        defaults = _DEFAULTS[kind]
        delay: float | None = None
        if kind.retryable:
            if suggested_delay is not None:
                delay = suggested_delay
            elif retry_after is not None:
                delay = retry_after
            else:
                delay = DEFAULT_RETRY_DELAY
        if actions is None:
            actions = defaults.actions
            if delay is not None:
                actions = (UserAction.wait(delay), *(actions or (RETRY,)))
        return cls(
            kind=kind,
            title=title or defaults.title,
            message=message or defaults.message,
            severity=defaults.severity,
            retryable=kind.retryable,
            status=status,
            code=code or defaults.code,
            suggested_delay=delay,
            retry_after=retry_after,
            param=param,
            api_type=api_type,
            technical_detail=technical_detail,
            actions=actions,
        )

    def details(self) -> dict[str, Any]:
        """Plain representation for any surrounding interface."""
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "severity": self.severity.label,
            "retryable": self.retryable,
            "status": self.status,
            "code": self.code,
            "suggested_delay": self.suggested_delay,
            "param": self.param,
            "technical_detail": self.technical_detail,
            "actions": [action.button_title for action in self.actions],
        }

    def __str__(self) -> str:
        status = f" ({self.status})" if self.status is not None else ""
        return f"{self.kind.value}{status}: {self.message}"


class OpenKitError(Exception):
    """Base exception for openkit."""


class ConfigurationError(OpenKitError):
    """Base exception for configuration errors."""


class ApiKeyNotConfiguredError(ConfigurationError):
    """Raised when an API key is required but missing."""


class RequestFailedError(OpenKitError):
    """A call failed; ``error`` holds its classification."""

    def __init__(self, error: ClassifiedError) -> None:
        super().__init__(str(error))
        self.error = error

    @property
    def kind(self) -> ErrorKind:
        return self.error.kind

    @property
    def retryable(self) -> bool:
        return self.error.retryable


class RequestCancelledError(RequestFailedError):
    """The call's cancellation token fired."""

    def __init__(self, error: ClassifiedError | None = None) -> None:
        super().__init__(error or ClassifiedError.of(ErrorKind.CANCELLED))


class ProtocolViolationError(RequestFailedError):
    """A stream frame broke the output-item lifecycle."""

    def __init__(self, detail: str, *, item_id: str | None = None) -> None:
        super().__init__(
            ClassifiedError.of(ErrorKind.DECODING_FAILED, code="protocol_violation", technical_detail=detail)
        )
        self.item_id = item_id


class RetryFailedError(RequestFailedError):
    """Raised by the retry controller with the last classification and the attempt count."""

    def __init__(self, error: ClassifiedError, *, attempts: int) -> None:
        super().__init__(error)
        self.attempts = attempts

    def __str__(self) -> str:
        return f"{self.error} (after {self.attempts} attempt{'s' if self.attempts != 1 else ''})"
