"""Authorization URL construction and token endpoint requests.

The authorization URL sends the user to the provider; the token endpoint
requests turn an authorization code (or a refresh token) into a Token.
"""

import logging
from typing import Any
from urllib.parse import parse_qsl, urlencode

import httpx

from .config import OAuthEndpointConfig
from .errors import TokenExchangeError
from .pkce import PKCE_CHALLENGE_METHOD, AuthorizationRequest

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


def build_authorization_url(config: OAuthEndpointConfig, request: AuthorizationRequest) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        config: Client and provider settings
        request: Secrets generated for this flow

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "access_type": "offline",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "state": request.state,
    }

    if config.scopes:
        params["scope"] = " ".join(config.scopes)

    if request.pkce_enabled:
        params["code_challenge"] = request.code_challenge
        params["code_challenge_method"] = PKCE_CHALLENGE_METHOD

    auth_url = config.authorization_url
    separator = "&" if "?" in auth_url else "?"
    return f"{auth_url}{separator}{urlencode(params)}"


def _parse_token_response(response: httpx.Response) -> dict[str, Any]:
    """Decode a token endpoint body, which may be JSON or form-encoded."""
    content_type = response.headers.get("content-type", "")
    if "application/x-www-form-urlencoded" in content_type or "text/plain" in content_type:
        return dict(parse_qsl(response.text))

    data = response.json()
    if not isinstance(data, dict):
        raise ValueError("token response is not a JSON object")
    return data


def _error_detail(data: dict[str, Any]) -> str:
    # Only extract safe error fields, not arbitrary response data
    return f": {data.get('error', '')} - {data.get('error_description', '')}"


async def _post_token_request(
    token_url: str,
    form: dict[str, str],
    action: str,
    http_client: httpx.AsyncClient | None,
) -> dict[str, Any]:
    """POST a token request and return the decoded, successful response.

    Raises:
        TokenExchangeError: On network errors, non-2xx status, an error
            field in the body, or a body without access_token
    """
    client = http_client or httpx.AsyncClient(timeout=DEFAULT_HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        response = await client.post(
            token_url,
            data=form,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )

        try:
            data = _parse_token_response(response)
        except ValueError:
            # Don't include raw response body - it might contain tokens or secrets
            data = {}

        if not 200 <= response.status_code < 300:
            error_detail = _error_detail(data) if "error" in data else ""
            raise TokenExchangeError(
                f"Token {action} failed (HTTP {response.status_code}){error_detail}"
            )

        if data.get("error"):
            raise TokenExchangeError(f"Token {action} failed{_error_detail(data)}")

        if not data.get("access_token"):
            raise TokenExchangeError(f"Token {action} response missing access_token")

        return data

    except httpx.RequestError as e:
        raise TokenExchangeError(f"Network error during token {action}: {e}") from e
    finally:
        if should_close:
            await client.aclose()


async def exchange_code_for_token(
    config: OAuthEndpointConfig,
    code: str,
    code_verifier: str | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Exchange an authorization code for tokens.

    Args:
        config: Client and provider settings
        code: Authorization code from callback
        code_verifier: PKCE code verifier, when PKCE was used
        http_client: Optional HTTP client

    Returns:
        Token endpoint response as dictionary

    Raises:
        TokenExchangeError: If token exchange fails
    """
    token_request: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_uri,
        "client_id": config.client_id,
        "client_secret": config.client_secret,
    }

    if code_verifier:
        token_request["code_verifier"] = code_verifier

    logger.debug(f"Exchanging authorization code at {config.token_url}")
    return await _post_token_request(config.token_url, token_request, "exchange", http_client)


async def request_refresh_grant(
    config: OAuthEndpointConfig,
    refresh_token_value: str,
    http_client: httpx.AsyncClient | None = None,
) -> dict[str, Any]:
    """Run the refresh_token grant against the token endpoint.

    Raises:
        TokenExchangeError: If the provider rejects the refresh
    """
    token_request: dict[str, str] = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token_value,
        "client_id": config.client_id,
    }

    if config.client_secret:
        token_request["client_secret"] = config.client_secret

    logger.debug(f"Refreshing token at {config.token_url}")
    return await _post_token_request(config.token_url, token_request, "refresh", http_client)
