"""CLI entry point for the loopback OAuth flow."""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import sys
from pathlib import Path

import click

from . import __version__
from .config import OAuthEndpointConfig, load_config_file, load_config_from_env
from .errors import ConfigurationError, OAuthFlowError
from .flow import get_token_sync
from .options import DEFAULT_CALLBACK_TIMEOUT, TokenOptions
from .output import OutputHandler
from .refresh import refresh_token
from .tokens import Token

logger = logging.getLogger("loopback_oauth")


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Path to JSON config file")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_path: str | None, env_path: str | None, verbose: bool) -> None:
    """Obtain OAuth tokens through a local loopback redirect."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_config(ctx: click.Context) -> OAuthEndpointConfig:
    """Load config from the --config file or the environment, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        if ctx.obj["config_path"]:
            return load_config_file(ctx.obj["config_path"], ctx.obj["env_path"])
        return load_config_from_env(env_path=ctx.obj["env_path"])
    except json.JSONDecodeError as e:
        output.error(
            e,
            error_type="ConfigParseError",
            help_text="The config file contains invalid JSON. Check for syntax errors.",
        )
    except ConfigurationError as e:
        output.error(e)


@main.command()
@click.option("--pkce", is_flag=True, help="Use PKCE (S256) for the authorization request")
@click.option("--port", "-p", type=int, help="Local callback port (overrides config)")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable, overrides config)")
@click.option(
    "--timeout",
    type=float,
    default=DEFAULT_CALLBACK_TIMEOUT,
    show_default=True,
    help="Seconds to wait for the browser login to finish",
)
@click.option("--no-browser", is_flag=True, help="Only print the authorization URL")
@click.pass_context
def login(
    ctx: click.Context,
    pkce: bool,
    port: int | None,
    scopes: tuple[str, ...],
    timeout: float,
    no_browser: bool,
) -> None:
    """Log in through the browser and print the obtained token."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    overrides: dict[str, object] = {}
    if port is not None:
        overrides["port"] = port
    if scopes:
        overrides["scopes"] = list(scopes)
    if overrides:
        config = dataclasses.replace(config, **overrides)

    options = TokenOptions(
        # Keep stdout clean for the JSON document
        output_writer=sys.stderr if ctx.obj["json_mode"] else sys.stdout,
        callback_timeout=timeout if timeout > 0 else None,
    )
    if no_browser:
        options.browser_opener = lambda url: None
        options.sleep_duration = 0

    try:
        token = get_token_sync(config, use_pkce=pkce, options=options)
    except ConfigurationError as e:
        output.error(e, help_text="Set OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET and OAUTH_REDIRECT_PATH or pass --config.")
    except OAuthFlowError as e:
        output.error(e)

    output.token(token, "Authentication successful")


@main.command()
@click.option(
    "--refresh-token",
    "refresh_token_value",
    envvar="OAUTH_REFRESH_TOKEN",
    required=True,
    help="Refresh token to redeem (or OAUTH_REFRESH_TOKEN)",
)
@click.pass_context
def refresh(ctx: click.Context, refresh_token_value: str) -> None:
    """Exchange a refresh token for a new token."""
    output: OutputHandler = ctx.obj["output"]
    config = get_config(ctx)

    if not config.token_url:
        output.error(ConfigurationError("token_url is not configured"))

    # An empty access token is never valid, so the refresh grant always runs
    expired = Token(access_token="", refresh_token=refresh_token_value)

    try:
        token = asyncio.run(refresh_token(config, expired))
    except OAuthFlowError as e:
        output.error(e)

    output.token(token, "Token refreshed")
