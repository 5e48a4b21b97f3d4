"""Output formatters for human-readable and JSON output."""

import json
import sys
from typing import Any, NoReturn

import click

# Upstream response bodies are truncated in error output
MAX_BODY_CHARS = 500


def format_json(data: Any, success: bool = True) -> str:
    """Format data as JSON output."""
    if success:
        payload = {"success": True, "data": data}
    else:
        payload = data
    return json.dumps(payload, indent=2, default=str)


def error_payload(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> dict[str, Any]:
    """Build the JSON error object; HTTP-derived errors include status and body."""
    detail: dict[str, Any] = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    status = getattr(error, "status", None)
    body = getattr(error, "body", None)
    if status is not None:
        detail["status"] = status
    if body:
        detail["body"] = body[:MAX_BODY_CHARS]
    return {"success": False, "error": detail}


class OutputHandler:
    """Handles output formatting based on mode (JSON or human)."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def success(self, data: Any, human_message: str | None = None) -> None:
        """Output success response."""
        if self.json_mode:
            click.echo(format_json(data))
        elif human_message is not None:
            click.echo(human_message)
        else:
            click.echo(json.dumps(data, indent=2, default=str))

    def status(self, message: str) -> None:
        """Progress messages go to stderr so stdout stays machine-readable."""
        click.echo(message, err=True)

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> NoReturn:
        """Output error response and exit with status 1."""
        if self.json_mode:
            click.echo(format_json(error_payload(error, error_type, help_text), success=False))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)

    def table(self, headers: list[str], rows: list[list[str]]) -> None:
        """Output a table (JSON mode outputs a list of objects)."""
        if self.json_mode:
            click.echo(format_json([dict(zip(headers, row)) for row in rows]))
            return

        widths = [len(h) for h in headers]
        for row in rows:
            for i, cell in enumerate(row):
                widths[i] = max(widths[i], len(str(cell)))

        header_line = "  ".join(h.ljust(widths[i]) for i, h in enumerate(headers))
        click.secho(header_line, bold=True)
        click.echo("-" * len(header_line))
        for row in rows:
            click.echo("  ".join(str(c).ljust(widths[i]) for i, c in enumerate(row)))
