"""Loopback OAuth - OAuth 2.0 authorization code flow for CLI and installed apps.

The flow opens the system browser, catches the provider redirect on a
short-lived localhost server, validates it (state and optional PKCE),
and exchanges the authorization code for a token.

Quick Start:
    from loopback_oauth import OAuthEndpointConfig, get_token

    config = OAuthEndpointConfig(
        client_id="...",
        client_secret="...",
        authorization_url="https://provider.example/oauth/authorize",
        token_url="https://provider.example/oauth/token",
        scopes=["read"],
        redirect_path="/callback",
        port=8080,
    )
    token = await get_token(config, use_pkce=True)
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("loopback-oauth")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

from .authorize import build_authorization_url, exchange_code_for_token, request_refresh_grant
from .callback import (
    CallbackHandler,
    CallbackParams,
    CallbackState,
    LocalhostCallbackServer,
    find_available_port,
    parse_callback_url,
    validate_callback,
)
from .config import OAuthEndpointConfig, load_config_file, load_config_from_env
from .errors import (
    BrowserLaunchError,
    CallbackError,
    CallbackTimeoutError,
    ConfigurationError,
    OAuthFlowError,
    PKCEChallengeMismatchError,
    PKCEMethodMismatchError,
    ProviderAuthorizationError,
    RandomnessError,
    RefreshFailedError,
    ServerListenError,
    StateMismatchError,
    TokenExchangeError,
)
from .flow import get_token, get_token_sync
from .options import TokenOptions
from .pkce import (
    AuthorizationRequest,
    generate_code_challenge,
    generate_code_verifier,
    generate_state,
)
from .refresh import (
    RefreshingTokenSource,
    RefreshTokenOptions,
    StaticTokenSource,
    TokenSource,
    refresh_token,
)
from .tokens import Token

__all__ = [
    "__version__",
    # Flow (main entry point)
    "get_token",
    "get_token_sync",
    "TokenOptions",
    # Refresh
    "refresh_token",
    "RefreshTokenOptions",
    "TokenSource",
    "StaticTokenSource",
    "RefreshingTokenSource",
    # Config and tokens
    "OAuthEndpointConfig",
    "load_config_file",
    "load_config_from_env",
    "Token",
    # Secrets
    "AuthorizationRequest",
    "generate_state",
    "generate_code_verifier",
    "generate_code_challenge",
    # Authorization endpoint and token endpoint
    "build_authorization_url",
    "exchange_code_for_token",
    "request_refresh_grant",
    # Callback
    "CallbackHandler",
    "CallbackParams",
    "CallbackState",
    "LocalhostCallbackServer",
    "find_available_port",
    "parse_callback_url",
    "validate_callback",
    # Errors
    "OAuthFlowError",
    "ConfigurationError",
    "RandomnessError",
    "BrowserLaunchError",
    "ServerListenError",
    "CallbackError",
    "CallbackTimeoutError",
    "StateMismatchError",
    "PKCEChallengeMismatchError",
    "PKCEMethodMismatchError",
    "ProviderAuthorizationError",
    "TokenExchangeError",
    "RefreshFailedError",
]
