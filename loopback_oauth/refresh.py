"""Token refresh, independent of the interactive flow.

A TokenSource yields a usable token. The default source reuses a token
that is still valid and otherwise runs the refresh-token grant; tests
and callers can inject any other source. No retries happen here.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Protocol

import httpx

from .authorize import request_refresh_grant
from .config import OAuthEndpointConfig
from .errors import RefreshFailedError
from .tokens import Token

logger = logging.getLogger(__name__)


class TokenSource(Protocol):
    """Anything that can produce a token on demand."""

    async def token(self) -> Token: ...


class StaticTokenSource:
    """Token source that always returns the same token."""

    def __init__(self, token: Token):
        self._token = token

    async def token(self) -> Token:
        return self._token


class RefreshingTokenSource:
    """Reuses a valid token, refreshing it through the token endpoint when needed."""

    def __init__(
        self,
        config: OAuthEndpointConfig,
        token: Token,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._token = token
        self._http_client = http_client

    async def token(self) -> Token:
        if self._token.is_valid():
            return self._token

        if not self._token.has_refresh_token():
            raise RefreshFailedError("Token is expired and has no refresh token")

        response = await request_refresh_grant(
            self.config,
            self._token.refresh_token,  # type: ignore
            http_client=self._http_client,
        )
        new_token = Token.from_token_response(response)

        # Providers may omit the refresh token when it does not rotate
        if not new_token.has_refresh_token():
            new_token.refresh_token = self._token.refresh_token

        self._token = new_token
        return new_token


TokenSourceFactory = Callable[
    [OAuthEndpointConfig, Token, httpx.AsyncClient | None], TokenSource
]


def default_token_source_factory(
    config: OAuthEndpointConfig,
    token: Token,
    http_client: httpx.AsyncClient | None,
) -> TokenSource:
    return RefreshingTokenSource(config, token, http_client)


@dataclass
class RefreshTokenOptions:
    """Behavior options for refresh_token.

    Attributes:
        token_source_factory: Builds the source asked for a fresh token
        http_client: Client passed to the factory (default: a new client per request)
    """

    token_source_factory: TokenSourceFactory = default_token_source_factory
    http_client: httpx.AsyncClient | None = None


async def refresh_token(
    config: OAuthEndpointConfig,
    token: Token | None,
    options: RefreshTokenOptions | None = None,
) -> Token:
    """Obtain a fresh token for an existing one.

    Args:
        config: Client and provider settings (token_url, client credentials)
        token: The token to refresh
        options: Optional behavior overrides

    Returns:
        The token produced by the token source

    Raises:
        RefreshFailedError: If the token is missing or the source fails
    """
    if token is None:
        raise RefreshFailedError("token is not specified")

    opts = options or RefreshTokenOptions()
    source = opts.token_source_factory(config, token, opts.http_client)

    try:
        return await source.token()
    except RefreshFailedError:
        raise
    except Exception as e:
        logger.warning(f"Token refresh failed: {e}")
        raise RefreshFailedError(
            f"failed to retrieve a new token from refresh token: {e}"
        ) from e
