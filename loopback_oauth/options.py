"""Injectable behavior for the interactive authorization flow.

Every collaborator with a side effect (browser, output, timing, HTTP)
can be replaced here, which is how tests drive the flow end to end.
"""

import sys
from dataclasses import dataclass, field
from typing import IO, Any, Callable

import click
import httpx

from .callback import DEFAULT_SHUTDOWN_TIMEOUT
from .platform import open_in_browser

BrowserOpener = Callable[[str], None]

# Called as output(message, writer); click.echo matches this signature
OutputFunc = Callable[[str, IO[str]], Any]

# Pause around the browser launch so the OS can start the browser
DEFAULT_SLEEP_DURATION = 1.0

# How long to wait for the user to finish logging in
DEFAULT_CALLBACK_TIMEOUT = 300.0


@dataclass
class TokenOptions:
    """Behavior options for get_token.

    Attributes:
        browser_opener: Opens the authorization URL (called in a worker thread); raising aborts the flow
        output: Writes user-facing messages as output(message, writer)
        output_writer: Stream handed to output (default: sys.stdout)
        sleep_duration: Seconds to pause before and after the browser launch (0 skips)
        shutdown_timeout: Seconds allowed for the callback server to shut down
        callback_timeout: Seconds to wait for the callback (None waits forever)
        http_client: Client used for the token exchange (default: a new client)
    """

    browser_opener: BrowserOpener = open_in_browser
    output: OutputFunc = click.echo
    output_writer: IO[str] = field(default_factory=lambda: sys.stdout)
    sleep_duration: float = DEFAULT_SLEEP_DURATION
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    callback_timeout: float | None = DEFAULT_CALLBACK_TIMEOUT
    http_client: httpx.AsyncClient | None = None
