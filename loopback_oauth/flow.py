"""Interactive OAuth authorization code flow with optional PKCE.

This module orchestrates one end-to-end flow:
1. Validate the client configuration
2. Generate state (and PKCE verifier/challenge)
3. Build the authorization URL and open the browser
4. Start the localhost callback server on the redirect path
5. Wait for the callback to validate and exchange the code
6. Shut the server down and return the token or raise the error
"""

import asyncio
import logging

from .authorize import build_authorization_url, exchange_code_for_token
from .callback import CallbackHandler, LocalhostCallbackServer
from .config import OAuthEndpointConfig
from .errors import BrowserLaunchError
from .options import TokenOptions
from .pkce import AuthorizationRequest
from .tokens import Token

logger = logging.getLogger(__name__)


def _emit(options: TokenOptions, message: str) -> None:
    options.output(message, options.output_writer)


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


async def _open_browser(options: TokenOptions, url: str) -> None:
    # The opener may block on a subprocess; keep it off the event loop
    try:
        await asyncio.to_thread(options.browser_opener, url)
    except BrowserLaunchError:
        raise
    except Exception as e:
        raise BrowserLaunchError(str(e)) from e


async def get_token(
    config: OAuthEndpointConfig,
    use_pkce: bool = False,
    options: TokenOptions | None = None,
) -> Token:
    """Run the interactive authorization code flow.

    The callback server is bound only after the browser was opened
    successfully, and it is always shut down before this returns.

    Args:
        config: Client and provider settings
        use_pkce: Send a PKCE challenge and verifier
        options: Optional behavior overrides

    Returns:
        Token obtained from the token endpoint

    Raises:
        ConfigurationError: Missing client_id, client_secret or redirect_path
        RandomnessError: The secure random source failed
        BrowserLaunchError: The browser could not be opened
        ServerListenError: The callback port could not be bound
        CallbackError: The callback was rejected or never arrived
        TokenExchangeError: The code could not be exchanged
    """
    opts = options or TokenOptions()
    config.validate()

    request = AuthorizationRequest.create(use_pkce)
    auth_url = build_authorization_url(config, request)

    _emit(opts, f"You will now be taken to your browser for authentication [{auth_url}]\n")
    await _pause(opts.sleep_duration)
    await _open_browser(opts, auth_url)
    await _pause(opts.sleep_duration)

    async def exchange(code: str, code_verifier: str | None) -> Token:
        response = await exchange_code_for_token(
            config, code, code_verifier, http_client=opts.http_client
        )
        return Token.from_token_response(response)

    handler = CallbackHandler(request, exchange)
    server = LocalhostCallbackServer(
        handler,
        port=config.port,
        path=config.redirect_path,
        shutdown_timeout=opts.shutdown_timeout,
    )

    await server.start()
    try:
        logger.debug(f"Waiting for callback on {server.redirect_uri}")
        token = await server.wait_for_outcome(timeout=opts.callback_timeout)
        logger.info("Successfully authenticated")
        return token
    finally:
        await server.stop()


def get_token_sync(
    config: OAuthEndpointConfig,
    use_pkce: bool = False,
    options: TokenOptions | None = None,
) -> Token:
    """Run get_token in a new event loop, for callers without one."""
    return asyncio.run(get_token(config, use_pkce=use_pkce, options=options))
