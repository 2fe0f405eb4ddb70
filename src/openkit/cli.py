"""Command-line harness for exercising the client against a live endpoint."""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from openkit.classifier import classify_status
from openkit.client import OpenKitClient
from openkit.config import Settings, get_settings
from openkit.errors import ClassifiedError, ConfigurationError, RequestFailedError, RetryFailedError, Severity
from openkit.logging_utils import configure_logging
from openkit.reconstructor import AccumulatedResult

app = typer.Typer(name="openkit", help="Streaming and retry harness for the model API", add_completion=False)

_SEVERITY_STYLE = {
    Severity.INFO: "blue",
    Severity.WARNING: "yellow",
    Severity.ERROR: "red",
    Severity.CRITICAL: "bold red",
}


def render_error(console: Console, error: ClassifiedError, *, attempts: int | None = None) -> None:
    lines = [escape(error.message)]
    if error.technical_detail:
        lines.append(f"[dim]{escape(error.technical_detail)}[/dim]")
    if attempts is not None:
        lines.append(f"[dim]attempts: {attempts}[/dim]")
    for action in error.actions:
        lines.append(f"• [bold]{action.button_title}[/bold]: {action.description}")
    subtitle = error.kind.value if error.status is None else f"{error.kind.value} ({error.status})"
    console.print(
        Panel(
            "\n".join(lines),
            title=error.title,
            subtitle=subtitle,
            border_style=_SEVERITY_STYLE[error.severity],
        )
    )


def render_usage(console: Console, result: AccumulatedResult) -> None:
    if result.usage is None:
        return
    usage = result.usage
    console.print(
        f"[dim]tokens in={usage.input_tokens} out={usage.output_tokens} total={usage.total_tokens}[/dim]"
    )


async def _respond(settings: Settings, prompt: str, *, stream: bool, console: Console) -> AccumulatedResult:
    request = {"model": settings.model, "input": prompt}
    async with OpenKitClient(settings) as client:
        if not stream:
            result = await client.responses.create(request)
            console.print(result.text)
            return result

        printed = 0
        result = AccumulatedResult()
        async for result in client.responses.stream(request):
            text = result.text
            console.print(text[printed:], end="", markup=False, highlight=False)
            printed = len(text)
        console.print()
        return result


@app.command()
def respond(
    prompt: str = typer.Argument(..., help="Input text sent to the model"),
    model: str | None = typer.Option(None, "--model", "-m", help="Model name"),
    stream: bool = typer.Option(True, "--stream/--no-stream", help="Stream the output as it arrives"),
    max_attempts: int | None = typer.Option(None, "--max-attempts", min=1, help="Retry attempts per call"),
) -> None:
    """Send one prompt and print the model's text."""

    console = Console()
    try:
        settings = get_settings(model=model, max_attempts=max_attempts)
        settings.require_api_key()
    except ConfigurationError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        raise typer.Exit(2) from exc
    configure_logging(profile="cli", level=settings.log_level)

    try:
        result = asyncio.run(_respond(settings, prompt, stream=stream, console=console))
    except RetryFailedError as exc:
        render_error(console, exc.error, attempts=exc.attempts)
        raise typer.Exit(1) from exc
    except RequestFailedError as exc:
        render_error(console, exc.error)
        raise typer.Exit(1) from exc
    render_usage(console, result)


@app.command()
def explain(
    status: int = typer.Argument(..., help="HTTP status code"),
    retry_after: str | None = typer.Option(None, "--retry-after", help="Retry-After header value"),
) -> None:
    """Show how an HTTP status is classified."""

    headers = {"retry-after": retry_after} if retry_after is not None else {}
    try:
        error = classify_status(status, b"", headers)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="STATUS") from exc
    console = Console()
    render_error(console, error)
    console.print(f"retryable: {error.retryable}")
    if error.suggested_delay is not None:
        console.print(f"suggested delay: {error.suggested_delay:g}s")
