"""Localhost callback server and handler for OAuth redirects.

This module provides an ephemeral HTTP server, owned by a single flow,
that receives the OAuth authorization callback. It:
- Binds the configured loopback port and redirect path
- Validates the callback against the AuthorizationRequest
- Exchanges the authorization code for a token
- Records exactly one outcome (token or error) for the waiting flow
- Handles common edge cases (prefetch, favicon, repeated callbacks)
"""

import asyncio
import contextlib
import hmac
import logging
import socket
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from .errors import (
    CallbackError,
    CallbackTimeoutError,
    OAuthFlowError,
    PKCEChallengeMismatchError,
    PKCEMethodMismatchError,
    ProviderAuthorizationError,
    ServerListenError,
    StateMismatchError,
    TokenExchangeError,
)
from .pkce import PKCE_CHALLENGE_METHOD, AuthorizationRequest
from .tokens import Token

logger = logging.getLogger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PATH = "/callback"

# Seconds to wait for in-flight requests when stopping the server
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

# Seconds a connection may take to send its request line and headers
DEFAULT_REQUEST_TIMEOUT = 10.0

# Exchanges (code, code_verifier) for a token
TokenExchanger = Callable[[str, str | None], Awaitable[Token]]


class CallbackState(Enum):
    """Lifecycle of a callback handler. Terminal on first transition out of AWAITING."""

    AWAITING_CALLBACK = "awaiting_callback"
    VALIDATING = "validating"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    REJECTED = "rejected"


@dataclass
class CallbackParams:
    """Query parameters of an OAuth redirect.

    Absent parameters are empty strings.
    """

    state: str = ""
    code: str = ""
    code_challenge: str = ""
    code_challenge_method: str = ""
    error: str = ""
    error_description: str = ""


def parse_callback_url(url: str) -> CallbackParams:
    """Parse OAuth callback URL parameters.

    Args:
        url: The callback URL or request target with query parameters

    Returns:
        CallbackParams with the first value of each parameter
    """
    params = parse_qs(urlparse(url).query)

    def get_param(name: str) -> str:
        values = params.get(name, [])
        return values[0] if values else ""

    return CallbackParams(
        state=get_param("state"),
        code=get_param("code"),
        code_challenge=get_param("code_challenge"),
        code_challenge_method=get_param("code_challenge_method"),
        error=get_param("error"),
        error_description=get_param("error_description"),
    )


def validate_callback(params: CallbackParams, request: AuthorizationRequest) -> None:
    """Validate a callback against the request that started the flow.

    Checks run in order and none of them touches the network: state,
    PKCE challenge and method (only when PKCE was requested), provider
    error, presence of the authorization code.

    Raises:
        StateMismatchError: state differs from the generated state
        PKCEChallengeMismatchError: code_challenge differs from the generated one
        PKCEMethodMismatchError: code_challenge_method is not S256
        ProviderAuthorizationError: the provider returned an error
        CallbackError: the callback carries no authorization code
    """
    # Constant-time comparison to prevent timing attacks
    if not hmac.compare_digest(params.state.encode(), request.state.encode()):
        raise StateMismatchError("State mismatch in callback - possible CSRF attack")

    if request.code_challenge:
        if not hmac.compare_digest(
            params.code_challenge.encode(), request.code_challenge.encode()
        ):
            raise PKCEChallengeMismatchError("code_challenge mismatch in callback")

        if params.code_challenge_method != PKCE_CHALLENGE_METHOD:
            raise PKCEMethodMismatchError(
                f"code_challenge_method mismatch (expected {PKCE_CHALLENGE_METHOD}, "
                f"got {params.code_challenge_method!r})"
            )

    if params.error:
        raise ProviderAuthorizationError(params.error, params.error_description or None)

    if not params.code:
        raise CallbackError("No authorization code in callback")


class CallbackHandler:
    """Handles the redirect for one AuthorizationRequest.

    The handler owns a single-slot outcome future. The first callback
    moves it out of AWAITING_CALLBACK; its result (token or error) is the
    only one ever recorded. Later callbacks are refused without
    validation or exchange.

    Must be created inside a running event loop.
    """

    def __init__(self, request: AuthorizationRequest, exchange: TokenExchanger):
        self.request = request
        self.state = CallbackState.AWAITING_CALLBACK
        self.outcome: asyncio.Future[Token] = asyncio.get_running_loop().create_future()
        self._exchange = exchange

    def is_awaiting(self) -> bool:
        """Whether the handler still accepts a callback."""
        return self.state is CallbackState.AWAITING_CALLBACK and not self.outcome.done()

    async def handle(self, params: CallbackParams) -> bool:
        """Process a callback and record the flow outcome.

        Returns:
            True if a token was obtained, False otherwise
        """
        if not self.is_awaiting():
            logger.warning("Ignoring callback: authorization request already consumed")
            return False

        self.state = CallbackState.VALIDATING
        try:
            validate_callback(params, self.request)
        except CallbackError as e:
            logger.warning(f"Rejected OAuth callback: {type(e).__name__}")
            self._reject(e)
            return False

        self.state = CallbackState.EXCHANGING
        logger.debug("Callback validated, exchanging authorization code")
        verifier = self.request.code_verifier if self.request.pkce_enabled else None
        try:
            token = await self._exchange(params.code, verifier)
        except OAuthFlowError as e:
            self._reject(e)
            return False
        except Exception as e:
            self._reject(TokenExchangeError(f"Failed to exchange token: {e}"), cause=e)
            return False

        self.state = CallbackState.COMPLETED
        if not self.outcome.done():
            self.outcome.set_result(token)
        logger.debug("OAuth callback completed")
        return True

    def _reject(self, error: OAuthFlowError, cause: BaseException | None = None) -> None:
        if cause is not None:
            error.__cause__ = cause
        self.state = CallbackState.REJECTED
        if not self.outcome.done():
            self.outcome.set_exception(error)


def find_available_port() -> int:
    """Find an available loopback port.

    Returns:
        A port number that was free at the time of the call

    Raises:
        CallbackError: If no port is available
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            port: int = s.getsockname()[1]
            return port
    except OSError as e:
        raise CallbackError(f"No available port found for callback server: {e}") from e


SUCCESS_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<title>Signed in</title>
<style>
body { font-family: system-ui, sans-serif; margin: 15vh auto; max-width: 32em; text-align: center; }
p { color: #555; }
</style>
</head>
<body>
<h1>Signed in</h1>
<p>You have been authenticated. This browser window can be closed.</p>
</body>
</html>"""

# Failure details go to the terminal, never to the browser
FAILURE_BODY = "Authorization failed. Return to the terminal for details."

# Sent with every response; the success page needs inline styles only
_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Content-Security-Policy": "default-src 'none'; style-src 'unsafe-inline'",
    "Cache-Control": "no-store",
}


async def _read_request_line(reader: asyncio.StreamReader) -> tuple[str, str] | None:
    """Read "METHOD target HTTP/x" and drain the headers.

    Returns None when the request line is malformed.
    """
    line = (await reader.readline()).decode("utf-8", errors="replace")
    fields = line.split()
    while (await reader.readline()).strip():
        pass
    if len(fields) < 2:
        return None
    return fields[0], fields[1]


async def _respond(
    writer: asyncio.StreamWriter,
    status: HTTPStatus,
    body: str = "",
    content_type: str = "text/plain",
) -> None:
    payload = body.encode("utf-8")
    lines = [
        f"HTTP/1.1 {status.value} {status.phrase}",
        f"Content-Type: {content_type}; charset=utf-8",
        f"Content-Length: {len(payload)}",
        *(f"{name}: {value}" for name, value in _SECURITY_HEADERS.items()),
        "Connection: close",
    ]
    writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("ascii") + payload)
    await writer.drain()


class LocalhostCallbackServer:
    """Ephemeral HTTP server for one OAuth callback.

    Each flow creates its own instance bound to its own handler, so
    repeated or concurrent flows never share routing state.

    Usage:
        async with LocalhostCallbackServer(handler, port=8080) as server:
            token = await server.wait_for_outcome(timeout=300)
    """

    def __init__(
        self,
        handler: CallbackHandler,
        port: int,
        path: str = DEFAULT_PATH,
        host: str = DEFAULT_HOST,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Create a server for one flow. Nothing is bound until start().

        Args:
            handler: Handler receiving the callback for this flow
            port: Port to bind
            path: Redirect path that reaches the handler
            host: Interface name to bind (default "localhost")
            shutdown_timeout: Seconds to wait for in-flight requests on stop
            request_timeout: Seconds a connection gets to send its request
                (browser preconnects that stay silent are dropped)
        """
        self.handler = handler
        self.port = port
        self.path = path
        self.host = host
        self.shutdown_timeout = shutdown_timeout
        self.request_timeout = request_timeout

        self._server: asyncio.Server | None = None
        # Every live connection task, and the subset that has read a request
        self._connections: set[asyncio.Task[Any]] = set()
        self._in_flight: set[asyncio.Task[Any]] = set()

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}{self.path}"

    async def start(self) -> str:
        """Bind the port and begin accepting callbacks.

        Returns:
            The redirect URI the server answers on

        Raises:
            ServerListenError: If the port cannot be bound
        """
        try:
            self._server = await asyncio.start_server(self._serve, self.host, self.port)
        except OSError as e:
            raise ServerListenError(
                f"Failed to start callback server on port {self.port}: {e}"
            ) from e

        bound = self._server.sockets
        if not bound:
            await self.stop()
            raise ServerListenError("Failed to start callback server: no sockets created")

        # Port 0 asks the OS to pick one
        self.port = bound[0].getsockname()[1]
        logger.debug(f"Listening for OAuth callback on {self.redirect_uri}")
        return self.redirect_uri

    async def stop(self, timeout: float | None = None) -> None:
        """Stop accepting connections and release the port.

        Connections that have not sent a request are dropped at once.
        Requests being handled (including a running token exchange) get
        up to timeout seconds (default: shutdown_timeout) to finish and
        are cancelled after that. When the wait for the outcome was
        cancelled or timed out they are cancelled immediately, so no
        token exchange outlives the flow. Safe to call more than once.
        """
        server, self._server = self._server, None
        if server is None:
            return

        server.close()
        wait = self.shutdown_timeout if timeout is None else timeout

        for task in self._connections - self._in_flight:
            task.cancel()

        # A cancelled outcome means the caller gave up; its exchange is not awaited
        grace = 0 if self.handler.outcome.cancelled() else wait
        pending = {task for task in self._in_flight if not task.done()}
        if pending and grace > 0:
            _, pending = await asyncio.wait(pending, timeout=grace)
        if pending:
            logger.warning(f"Cancelling {len(pending)} unfinished callback request(s)")
            for task in pending:
                task.cancel()

        remaining = [task for task in self._connections if not task.done()]
        if remaining:
            await asyncio.gather(*remaining, return_exceptions=True)

        try:
            await asyncio.wait_for(server.wait_closed(), timeout=wait)
        except TimeoutError:
            logger.warning(f"Callback server did not shut down within {wait} seconds")
        logger.debug(f"Released callback port {self.port}")

    async def wait_for_outcome(self, timeout: float | None = None) -> Token:
        """Wait for the callback to produce a token or an error.

        Args:
            timeout: Seconds to wait for the user to finish logging in
                (None waits indefinitely)

        Raises:
            CallbackTimeoutError: No callback completed within timeout
            OAuthFlowError: Whatever error the callback produced
        """
        if self._server is None and not self.handler.outcome.done():
            raise CallbackError("Server not started")

        try:
            return await asyncio.wait_for(self.handler.outcome, timeout=timeout)
        except TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback after {timeout} seconds"
            ) from None

    async def _route(self, method: str, target: str) -> tuple[HTTPStatus, str, str]:
        """Decide the response for one request as (status, body, content type)."""
        path = urlparse(target).path

        # Browsers ask for a favicon alongside the redirect
        if path == "/favicon.ico" or path != self.path:
            return HTTPStatus.NOT_FOUND, "Not found", "text/plain"

        if method != "GET":
            return HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed", "text/plain"

        if not self.handler.is_awaiting():
            logger.warning("Received callback after the flow already completed")
            return HTTPStatus.CONFLICT, "This authorization request was already used.", "text/plain"

        if await self.handler.handle(parse_callback_url(target)):
            return HTTPStatus.OK, SUCCESS_HTML, "text/html"
        return HTTPStatus.BAD_REQUEST, FAILURE_BODY, "text/plain"

    async def _serve(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        assert task is not None
        self._connections.add(task)
        try:
            request = await asyncio.wait_for(
                _read_request_line(reader), timeout=self.request_timeout
            )
            self._in_flight.add(task)
            if request is None:
                await _respond(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
            else:
                await _respond(writer, *await self._route(*request))
        except TimeoutError:
            logger.debug("Closing callback connection that sent no request")
        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            with contextlib.suppress(Exception):
                await _respond(writer, HTTPStatus.INTERNAL_SERVER_ERROR, "Internal error")
        finally:
            self._connections.discard(task)
            self._in_flight.discard(task)
            with contextlib.suppress(Exception):
                writer.close()
                await writer.wait_closed()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
