"""Streaming decoder and resilience core for a generative-AI HTTP API."""

from openkit.cancellation import CancellationToken
from openkit.classifier import classify, classify_exception, classify_status, classify_stream_error
from openkit.client import OpenKitClient
from openkit.config import DecodeFailurePolicy, Settings, get_settings
from openkit.errors import (
    ClassifiedError,
    ErrorKind,
    OpenKitError,
    ProtocolViolationError,
    RequestCancelledError,
    RequestFailedError,
    RetryFailedError,
    Severity,
    UserAction,
)
from openkit.events import ChatCompletionDeltaMapper, EndpointFamily, ResponsesDeltaMapper, Usage
from openkit.reconstructor import AccumulatedResult, ItemSnapshot, ItemState, Reconstructor, reconstruct
from openkit.retry import RetryPolicy, perform
from openkit.sse import Frame, FrameDecoder, MalformedFrame, decode_frames
from openkit.transport import RequestEnvelope, Transport

__all__ = [
    "AccumulatedResult",
    "CancellationToken",
    "ChatCompletionDeltaMapper",
    "ClassifiedError",
    "DecodeFailurePolicy",
    "EndpointFamily",
    "ErrorKind",
    "Frame",
    "FrameDecoder",
    "ItemSnapshot",
    "ItemState",
    "MalformedFrame",
    "OpenKitClient",
    "OpenKitError",
    "ProtocolViolationError",
    "Reconstructor",
    "RequestCancelledError",
    "RequestEnvelope",
    "RequestFailedError",
    "ResponsesDeltaMapper",
    "RetryFailedError",
    "RetryPolicy",
    "Settings",
    "Severity",
    "Transport",
    "Usage",
    "UserAction",
    "classify",
    "classify_exception",
    "classify_status",
    "classify_stream_error",
    "decode_frames",
    "get_settings",
    "perform",
    "reconstruct",
]
__version__ = "0.1.0"
