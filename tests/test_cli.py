from __future__ import annotations

import httpx
import pytest
from typer.testing import CliRunner

from openkit import cli
from openkit.client import OpenKitClient
from openkit.config import Settings
from openkit.retry import RetryPolicy
from support import SSE_HEADERS, ChunkStream, hello_stream, sse_body

runner = CliRunner()


def use_handler(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    def factory(settings: Settings) -> OpenKitClient:
        policy = RetryPolicy(max_attempts=settings.max_attempts, base_delay=0.0, max_delay=0.0)
        return OpenKitClient(settings, policy=policy, http_transport=httpx.MockTransport(handler))

    monkeypatch.setenv("OPENKIT_API_KEY", "sk-test")
    monkeypatch.setattr(cli, "OpenKitClient", factory)


def test_explain_rate_limit() -> None:
    result = runner.invoke(cli.app, ["explain", "429", "--retry-after", "5"])

    assert result.exit_code == 0
    assert "Rate Limit Exceeded" in result.output
    assert "retryable: True" in result.output
    assert "suggested delay: 5s" in result.output


def test_explain_rejects_success_status() -> None:
    result = runner.invoke(cli.app, ["explain", "200"])

    assert result.exit_code == 2


def test_respond_requires_api_key() -> None:
    result = runner.invoke(cli.app, ["respond", "hello"])

    assert result.exit_code == 2
    assert "OPENKIT_API_KEY" in result.output


def test_respond_streams_text(monkeypatch: pytest.MonkeyPatch) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers=SSE_HEADERS, stream=ChunkStream([sse_body(*hello_stream())]))

    use_handler(monkeypatch, handler)

    result = runner.invoke(cli.app, ["respond", "hello", "--model", "gpt-test"])

    assert result.exit_code == 0, result.output
    assert "Hello" in result.output
    assert "total=5" in result.output


def test_respond_without_streaming(monkeypatch: pytest.MonkeyPatch) -> None:
    body = {
        "id": "resp_1",
        "status": "completed",
        "output": [{"id": "m1", "type": "message", "content": [{"type": "output_text", "text": "Plain answer"}]}],
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=body)

    use_handler(monkeypatch, handler)

    result = runner.invoke(cli.app, ["respond", "hello", "--no-stream"])

    assert result.exit_code == 0, result.output
    assert "Plain answer" in result.output


def test_respond_renders_classified_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(503, json={"error": {"message": "overloaded"}})

    use_handler(monkeypatch, handler)

    result = runner.invoke(cli.app, ["respond", "hello", "--no-stream", "--max-attempts", "2"])

    assert result.exit_code == 1
    assert calls == 2
    assert "Server Error" in result.output
    assert "attempts: 2" in result.output
