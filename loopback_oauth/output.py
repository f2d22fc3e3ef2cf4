"""Human-readable and JSON rendering for CLI results."""

import json
import sys
from typing import Any, NoReturn

import click

from .tokens import Token


def format_json(data: Any) -> str:
    """Format data as a JSON success envelope."""
    return json.dumps({"success": True, "data": data}, indent=2, default=str)


def format_error_json(
    error: Exception,
    error_type: str | None = None,
    help_text: str | None = None,
) -> str:
    """Format an error as a JSON failure envelope."""
    detail = {
        "type": error_type or type(error).__name__,
        "message": str(error),
        "help": help_text or "",
    }
    return json.dumps({"success": False, "error": detail}, indent=2)


def token_rows(token: Token) -> list[tuple[str, str]]:
    """Flatten a token into (field, value) pairs for display."""
    rows = [
        ("access_token", token.access_token),
        ("token_type", token.token_type),
        ("refresh_token", token.refresh_token or ""),
        ("expiry", token.expiry.isoformat() if token.expiry else ""),
    ]
    if token.scope:
        rows.append(("scope", token.scope))
    return rows


class OutputHandler:
    """Writes command results as JSON (--json) or as text for a terminal."""

    def __init__(self, json_mode: bool = False):
        self.json_mode = json_mode

    def token(self, token: Token, human_message: str) -> None:
        if self.json_mode:
            click.echo(format_json(token.to_dict()))
            return

        click.secho(human_message, fg="green")
        self.fields(token_rows(token))

    def fields(self, rows: list[tuple[str, str]]) -> None:
        """Print name/value pairs with the values aligned."""
        width = max((len(name) for name, _ in rows), default=0)
        for name, value in rows:
            click.echo(f"{click.style(name.ljust(width), bold=True)}  {value}")

    def error(
        self,
        error: Exception,
        error_type: str | None = None,
        help_text: str | None = None,
    ) -> NoReturn:
        """Report an error and exit with status 1.

        JSON errors go to stdout so scripts can parse them; text errors
        go to stderr.
        """
        if self.json_mode:
            click.echo(format_error_json(error, error_type, help_text))
        else:
            click.secho(f"Error: {error}", fg="red", err=True)
            if help_text:
                click.echo(f"\n{help_text}", err=True)
        sys.exit(1)
