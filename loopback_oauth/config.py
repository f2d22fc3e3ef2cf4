"""Endpoint configuration and loading for the loopback flow."""

import json
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_PORT = 8080
DEFAULT_REDIRECT_PATH = "/callback"
DEFAULT_ENV_PREFIX = "OAUTH_"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
]


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Missing vars resolve to empty string.
    """
    if "${" not in value:
        return value

    result = value
    for match in re.finditer(r'\$\{([^}]+)\}', value):
        env_var = match.group(1)
        env_value = os.environ.get(env_var, "")
        result = result.replace(match.group(0), env_value)
    return result


def _split_scopes(value: str) -> list[str]:
    """Split a comma- or whitespace-separated scope string."""
    return [s for s in re.split(r"[,\s]+", value) if s]


def _parse_port(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"port must be an integer, got {value!r}") from None


@dataclass(frozen=True)
class OAuthEndpointConfig:
    """Client and provider settings for one authorization flow.

    Attributes:
        client_id: OAuth client identifier
        client_secret: OAuth client secret
        authorization_url: Provider authorization endpoint
        token_url: Provider token endpoint
        scopes: Scopes to request
        redirect_path: Path the local server listens on (e.g. "/callback")
        port: Local port the callback server binds
    """

    client_id: str = ""
    client_secret: str = ""
    authorization_url: str = ""
    token_url: str = ""
    scopes: list[str] = field(default_factory=list)
    redirect_path: str = DEFAULT_REDIRECT_PATH
    port: int = DEFAULT_PORT

    @property
    def redirect_uri(self) -> str:
        """Loopback redirect URI registered with the provider."""
        return f"http://localhost:{self.port}{self.redirect_path}"

    def validate(self) -> None:
        """Check required fields before any side effect.

        Raises:
            ConfigurationError: If a required field is missing or invalid
        """
        if not self.client_id:
            raise ConfigurationError("client_id is not configured")
        if not self.client_secret:
            raise ConfigurationError("client_secret is not configured")
        if not self.redirect_path:
            raise ConfigurationError("redirect_path is not configured")
        if not self.redirect_path.startswith("/"):
            raise ConfigurationError(
                f"redirect_path must start with '/', got {self.redirect_path!r}"
            )
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"port must be between 1 and 65535, got {self.port}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthEndpointConfig":
        """Build a config from a JSON-style dictionary.

        String values may reference environment variables as ${VAR}.
        """
        resolved = {
            key: _resolve_env_vars(value) if isinstance(value, str) else value
            for key, value in data.items()
        }

        scopes = resolved.get("scopes", [])
        if isinstance(scopes, str):
            scopes = _split_scopes(scopes)
        else:
            scopes = [_resolve_env_vars(s) for s in scopes]

        return cls(
            client_id=resolved.get("client_id", ""),
            client_secret=resolved.get("client_secret", ""),
            authorization_url=resolved.get("authorization_url", ""),
            token_url=resolved.get("token_url", ""),
            scopes=scopes,
            redirect_path=resolved.get("redirect_path", DEFAULT_REDIRECT_PATH),
            port=_parse_port(resolved.get("port", DEFAULT_PORT)),
        )


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file to load, if any."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def load_config_from_env(
    prefix: str = DEFAULT_ENV_PREFIX,
    env_path: Path | None = None,
) -> OAuthEndpointConfig:
    """Load endpoint configuration from environment variables.

    A .env file is loaded first (explicit path, or ./.env when present);
    variables already set in the environment take precedence.

    Recognized variables (with the default prefix):
        OAUTH_CLIENT_ID, OAUTH_CLIENT_SECRET, OAUTH_AUTHORIZATION_URL,
        OAUTH_TOKEN_URL, OAUTH_SCOPES, OAUTH_REDIRECT_PATH, OAUTH_PORT

    Args:
        prefix: Variable name prefix
        env_path: Explicit path to .env file (optional)

    Returns:
        OAuthEndpointConfig (not yet validated)
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    def get(name: str, default: str = "") -> str:
        return os.environ.get(f"{prefix}{name}", default)

    return OAuthEndpointConfig(
        client_id=get("CLIENT_ID"),
        client_secret=get("CLIENT_SECRET"),
        authorization_url=get("AUTHORIZATION_URL"),
        token_url=get("TOKEN_URL"),
        scopes=_split_scopes(get("SCOPES")),
        redirect_path=get("REDIRECT_PATH", DEFAULT_REDIRECT_PATH),
        port=_parse_port(get("PORT", str(DEFAULT_PORT))),
    )


def load_config_file(config_path: Path, env_path: Path | None = None) -> OAuthEndpointConfig:
    """Load endpoint configuration from a JSON file.

    Args:
        config_path: Path to a JSON object with snake_case config fields
        env_path: Explicit path to .env file used for ${VAR} resolution

    Returns:
        OAuthEndpointConfig (not yet validated)

    Raises:
        FileNotFoundError: If the config file does not exist
        json.JSONDecodeError: If the config file is invalid JSON
        ConfigurationError: If the file does not contain a JSON object
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    with open(config_path) as f:
        data = json.load(f)

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a JSON object")

    return OAuthEndpointConfig.from_dict(data)
