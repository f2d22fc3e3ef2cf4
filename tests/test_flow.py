"""End-to-end tests for the interactive authorization flow."""

import asyncio
import dataclasses
import io
import socket
import threading

import httpx
import pytest
from helpers import (
    FakeBrowser,
    FakeTokenEndpoint,
    pkce_callback_params,
    port_is_free,
    query_params,
)

from loopback_oauth.config import OAuthEndpointConfig
from loopback_oauth.errors import (
    BrowserLaunchError,
    CallbackTimeoutError,
    ConfigurationError,
    PKCEChallengeMismatchError,
    ProviderAuthorizationError,
    ServerListenError,
    StateMismatchError,
    TokenExchangeError,
)
from loopback_oauth.flow import get_token, get_token_sync
from loopback_oauth.options import TokenOptions
from loopback_oauth.pkce import generate_code_challenge


def make_options(browser, token_endpoint: FakeTokenEndpoint, **overrides) -> TokenOptions:
    options = TokenOptions(
        browser_opener=browser,
        output_writer=io.StringIO(),
        sleep_duration=0,
        shutdown_timeout=1,
        callback_timeout=10,
        http_client=token_endpoint.client(),
    )
    return dataclasses.replace(options, **overrides)


def never_calls_back(url: str) -> None:
    pass


class TestGetTokenSuccess:
    """Tests for flows that end with a token."""

    @pytest.mark.asyncio
    async def test_flow_without_pkce(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the full flow returns the token from the token endpoint."""
        browser = FakeBrowser()
        options = make_options(browser, token_endpoint)

        token = await get_token(endpoint_config, options=options)
        await browser.settle()

        assert token.access_token == "T"
        assert token.token_type == "Bearer"
        assert token.refresh_token == "R"
        assert browser.responses[0].status_code == 200
        assert port_is_free(endpoint_config.port)

    @pytest.mark.asyncio
    async def test_token_request_form(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the code is exchanged with the client credentials and no verifier."""
        browser = FakeBrowser()

        await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await browser.settle()

        assert len(token_endpoint.requests) == 1
        form = token_endpoint.requests[0]
        assert form["grant_type"] == "authorization_code"
        assert form["code"] == "test-auth-code"
        assert form["redirect_uri"] == endpoint_config.redirect_uri
        assert form["client_id"] == "test-client-id"
        assert form["client_secret"] == "test-client-secret"
        assert "code_verifier" not in form

    @pytest.mark.asyncio
    async def test_announces_authorization_url(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the authorization URL is written to the output writer."""
        browser = FakeBrowser()
        writer = io.StringIO()

        await get_token(endpoint_config, options=make_options(browser, token_endpoint, output_writer=writer))
        await browser.settle()

        expected = f"You will now be taken to your browser for authentication [{browser.opened_urls[0]}]"
        assert expected in writer.getvalue()

    @pytest.mark.asyncio
    async def test_authorization_url_parameters(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the browser is sent to the provider with the configured client."""
        browser = FakeBrowser()

        await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await browser.settle()

        assert browser.opened_urls[0].startswith("https://auth.example.com/authorize?")
        params = query_params(browser.opened_urls[0])
        assert params["client_id"] == "test-client-id"
        assert params["redirect_uri"] == f"http://localhost:{endpoint_config.port}/callback"
        assert params["scope"] == "read write"
        assert "code_challenge" not in params

    @pytest.mark.asyncio
    async def test_flow_with_pkce(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the verifier sent to the token endpoint matches the challenge."""
        browser = FakeBrowser(pkce_callback_params)

        token = await get_token(
            endpoint_config, use_pkce=True, options=make_options(browser, token_endpoint)
        )
        await browser.settle()

        assert token.access_token == "T"
        auth = query_params(browser.opened_urls[0])
        assert auth["code_challenge_method"] == "S256"
        verifier = token_endpoint.requests[0]["code_verifier"]
        assert generate_code_challenge(verifier) == auth["code_challenge"]

    @pytest.mark.asyncio
    async def test_each_flow_uses_fresh_state(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test two sequential flows on the same port use different states."""
        browser = FakeBrowser()

        await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await browser.settle()

        first, second = (query_params(url)["state"] for url in browser.opened_urls)
        assert first != second
        assert len(token_endpoint.requests) == 2

    def test_get_token_sync(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the blocking wrapper runs the flow to completion."""
        token = get_token_sync(endpoint_config, options=make_options(FakeBrowser(), token_endpoint))

        assert token.access_token == "T"


class TestGetTokenFailures:
    """Tests for flows that end with an error."""

    @pytest.mark.asyncio
    async def test_invalid_config_fails_before_browser(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a missing client_id aborts before anything happens."""
        browser = FakeBrowser()
        config = dataclasses.replace(endpoint_config, client_id="")

        with pytest.raises(ConfigurationError, match="client_id"):
            await get_token(config, options=make_options(browser, token_endpoint))

        assert browser.opened_urls == []

    @pytest.mark.asyncio
    async def test_browser_failure_never_binds_port(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a browser launch failure aborts before the server starts."""

        def broken_browser(url: str) -> None:
            raise RuntimeError("no display")

        writer = io.StringIO()
        options = make_options(broken_browser, token_endpoint, output_writer=writer)

        with pytest.raises(BrowserLaunchError, match="no display"):
            await get_token(endpoint_config, options=options)

        assert "taken to your browser" in writer.getvalue()
        assert port_is_free(endpoint_config.port)
        assert token_endpoint.requests == []

    @pytest.mark.asyncio
    async def test_browser_launch_error_passed_through(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a BrowserLaunchError from the opener keeps its message."""

        def broken_browser(url: str) -> None:
            raise BrowserLaunchError("unable to complete command [xdg-open]")

        with pytest.raises(BrowserLaunchError, match=r"^unable to complete command \[xdg-open\]$"):
            await get_token(endpoint_config, options=make_options(broken_browser, token_endpoint))

    @pytest.mark.asyncio
    async def test_callback_timeout(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the flow gives up when the browser never comes back."""
        options = make_options(never_calls_back, token_endpoint, callback_timeout=0.2)

        with pytest.raises(CallbackTimeoutError):
            await get_token(endpoint_config, options=options)

        assert port_is_free(endpoint_config.port)

    @pytest.mark.asyncio
    async def test_caller_cancellation_stops_server(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test cancelling the flow releases the callback port."""
        options = make_options(never_calls_back, token_endpoint, callback_timeout=None)

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(get_token(endpoint_config, options=options), timeout=0.3)

        assert port_is_free(endpoint_config.port)

    @pytest.mark.asyncio
    async def test_provider_error(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a denied consent surfaces the provider error."""
        browser = FakeBrowser(
            lambda auth: {
                "state": auth["state"],
                "error": "access_denied",
                "error_description": "User denied access",
            }
        )

        with pytest.raises(ProviderAuthorizationError, match="access_denied: User denied access"):
            await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await browser.settle()

        assert browser.responses[0].status_code == 400
        assert "access_denied" not in browser.responses[0].text
        assert token_endpoint.requests == []

    @pytest.mark.asyncio
    async def test_state_mismatch(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a forged state never reaches the token endpoint."""
        browser = FakeBrowser(lambda auth: {"state": "forged", "code": "stolen-code"})

        with pytest.raises(StateMismatchError):
            await get_token(endpoint_config, options=make_options(browser, token_endpoint))
        await browser.settle()

        assert token_endpoint.requests == []
        assert port_is_free(endpoint_config.port)

    @pytest.mark.asyncio
    async def test_pkce_callback_without_challenge(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a PKCE flow rejects a callback that does not echo the challenge."""
        browser = FakeBrowser()

        with pytest.raises(PKCEChallengeMismatchError):
            await get_token(endpoint_config, use_pkce=True, options=make_options(browser, token_endpoint))
        await browser.settle()

        assert token_endpoint.requests == []

    @pytest.mark.asyncio
    async def test_token_endpoint_error(self, endpoint_config: OAuthEndpointConfig) -> None:
        """Test a token endpoint rejection surfaces as TokenExchangeError."""
        endpoint = FakeTokenEndpoint(
            status_code=400,
            body={"error": "invalid_grant", "error_description": "Code expired"},
        )
        browser = FakeBrowser()

        with pytest.raises(TokenExchangeError, match="invalid_grant - Code expired"):
            await get_token(endpoint_config, options=make_options(browser, endpoint))
        await browser.settle()

        assert browser.responses[0].status_code == 400

    @pytest.mark.asyncio
    async def test_port_in_use(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test an occupied callback port fails with ServerListenError."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            config = dataclasses.replace(endpoint_config, port=blocker.getsockname()[1])

            with pytest.raises(ServerListenError):
                await get_token(config, options=make_options(never_calls_back, token_endpoint))


class TestGetTokenShutdown:
    """Tests that no work outlives the flow."""

    @staticmethod
    def slow_token_endpoint(events: list[str]) -> httpx.AsyncClient:
        async def handler(request: httpx.Request) -> httpx.Response:
            events.append("exchange-started")
            await asyncio.sleep(1.0)
            events.append("exchange-finished")
            return httpx.Response(200, json={"access_token": "T"})

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_caller_cancellation_cancels_exchange(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a running token exchange stops before the cancelled caller resumes."""
        events: list[str] = []
        browser = FakeBrowser()
        options = make_options(
            browser,
            token_endpoint,
            shutdown_timeout=0.1,
            callback_timeout=None,
            http_client=self.slow_token_endpoint(events),
        )

        with pytest.raises(TimeoutError):
            await asyncio.wait_for(get_token(endpoint_config, options=options), timeout=0.5)
        events.append("caller-returned")

        await asyncio.sleep(1.0)
        await browser.settle()

        assert events == ["exchange-started", "caller-returned"]
        assert port_is_free(endpoint_config.port)

    @pytest.mark.asyncio
    async def test_callback_timeout_cancels_exchange(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test the callback deadline also ends an exchange already under way."""
        events: list[str] = []
        browser = FakeBrowser()
        options = make_options(
            browser,
            token_endpoint,
            shutdown_timeout=5,
            callback_timeout=0.4,
            http_client=self.slow_token_endpoint(events),
        )
        loop = asyncio.get_running_loop()
        started = loop.time()

        with pytest.raises(CallbackTimeoutError):
            await get_token(endpoint_config, options=options)

        assert loop.time() - started < 1.0
        await asyncio.sleep(1.0)
        await browser.settle()
        assert events == ["exchange-started"]

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_delay_return(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a preconnected socket that never sends a request is dropped on shutdown."""
        browser = FakeBrowser(preconnect=True)
        options = make_options(browser, token_endpoint, shutdown_timeout=3)
        loop = asyncio.get_running_loop()
        started = loop.time()

        token = await get_token(endpoint_config, options=options)
        elapsed = loop.time() - started
        await browser.settle()

        assert token.access_token == "T"
        assert elapsed < 2.0
        assert browser.responses[0].status_code == 200
        assert len(browser.idle_sockets) == 1

    @pytest.mark.asyncio
    async def test_browser_opener_runs_off_event_loop(
        self, endpoint_config: OAuthEndpointConfig, token_endpoint: FakeTokenEndpoint
    ) -> None:
        """Test a blocking opener does not run on the event loop thread."""
        browser = FakeBrowser()
        opener_threads: list[int] = []

        def recording_opener(url: str) -> None:
            opener_threads.append(threading.get_ident())
            browser(url)

        await get_token(endpoint_config, options=make_options(recording_opener, token_endpoint))
        await browser.settle()

        assert opener_threads
        assert opener_threads[0] != threading.get_ident()
