"""Fake provider, fake browser and socket helpers for loopback OAuth tests."""

import asyncio
import socket
import threading
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import parse_qs, urlencode, urlparse

import httpx

TOKEN_URL = "https://auth.example.com/token"
AUTHORIZATION_URL = "https://auth.example.com/authorize"


class FakeTokenEndpoint:
    """Records token requests and answers with a fixed status and body."""

    def __init__(self, status_code: int = 200, body: dict[str, Any] | None = None):
        self.status_code = status_code
        self.body = body if body is not None else {
            "access_token": "T",
            "token_type": "Bearer",
            "refresh_token": "R",
        }
        self.requests: list[dict[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        self.requests.append(form)
        return httpx.Response(self.status_code, json=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


def query_params(url: str) -> dict[str, str]:
    """Return the first value of each query parameter of a URL."""
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def send_callback(redirect_uri: str, params: dict[str, str], attempts: int = 40) -> httpx.Response:
    """GET the local callback like a browser would, retrying until the server listens."""
    url = f"{redirect_uri}?{urlencode(params)}"
    with httpx.Client(trust_env=False, timeout=5.0) as client:
        for _ in range(attempts):
            try:
                return client.get(url)
            except httpx.ConnectError:
                time.sleep(0.05)
    raise AssertionError(f"Callback server never accepted a connection at {redirect_uri}")


def open_idle_connection(port: int, attempts: int = 40) -> socket.socket:
    """Connect to the callback port without sending anything, like a browser preconnect."""
    for _ in range(attempts):
        try:
            return socket.create_connection(("127.0.0.1", port), timeout=5.0)
        except ConnectionRefusedError:
            time.sleep(0.05)
    raise AssertionError(f"Callback server never accepted a connection on port {port}")


class FakeBrowser:
    """Browser opener that follows the authorization URL straight back to the callback.

    The flow calls openers from a worker thread, so the redirect is
    followed on a separate thread with a blocking client, much like a
    real browser process. The callback parameters are derived from the
    authorization URL by make_params, so tests can echo, alter or drop
    any of them.
    """

    def __init__(
        self,
        make_params: Callable[[dict[str, str]], dict[str, str]] | None = None,
        preconnect: bool = False,
    ):
        self.make_params = make_params or (lambda auth: {"state": auth["state"], "code": "test-auth-code"})
        self.preconnect = preconnect
        self.opened_urls: list[str] = []
        self.responses: list[httpx.Response] = []
        self.errors: list[Exception] = []
        self.idle_sockets: list[socket.socket] = []
        self._threads: list[threading.Thread] = []

    def __call__(self, url: str) -> None:
        self.opened_urls.append(url)
        auth = query_params(url)
        thread = threading.Thread(
            target=self._follow,
            args=(auth["redirect_uri"], self.make_params(auth)),
            daemon=True,
        )
        thread.start()
        self._threads.append(thread)

    def _follow(self, redirect_uri: str, params: dict[str, str]) -> None:
        time.sleep(0.05)
        try:
            if self.preconnect:
                self.idle_sockets.append(open_idle_connection(urlparse(redirect_uri).port))
            self.responses.append(send_callback(redirect_uri, params))
        except Exception as e:
            self.errors.append(e)

    async def settle(self) -> None:
        """Wait for every callback request to finish and drop idle connections."""
        for thread in self._threads:
            await asyncio.to_thread(thread.join, 10)
        for sock in self.idle_sockets:
            sock.close()


def pkce_callback_params(auth: dict[str, str]) -> dict[str, str]:
    """Callback parameters echoing state and the PKCE challenge."""
    return {
        "state": auth["state"],
        "code": "test-auth-code",
        "code_challenge": auth["code_challenge"],
        "code_challenge_method": "S256",
    }


def port_is_free(port: int) -> bool:
    """Check that nothing listens on the loopback port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
    return True


async def send_raw_request(port: int, request: bytes) -> bytes:
    """Send a raw HTTP request to 127.0.0.1 and return the full response."""
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(request)
    await writer.drain()
    response = await reader.read()
    writer.close()
    await writer.wait_closed()
    return response
