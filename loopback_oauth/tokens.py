"""OAuth token data structure and utilities.

This module provides the Token dataclass returned by the authorization
flow and the refresher, including expiry handling and serialization.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)

# Fields of a token endpoint response mapped onto Token attributes
_STANDARD_FIELDS = {"access_token", "token_type", "refresh_token", "expires_in", "scope"}

# Seconds before expiry at which a token is no longer considered valid
DEFAULT_EXPIRY_BUFFER = 10


@dataclass
class Token:
    """OAuth token returned by the authorization flow.

    Attributes:
        access_token: The access token string
        token_type: Token type (typically "Bearer")
        refresh_token: Optional refresh token for obtaining new access tokens
        expiry: When the access token expires (UTC datetime), None if unknown
        scope: Space-separated list of granted scopes
        extra: Any other fields from the token response (e.g. id_token)
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expiry: datetime | None = None
    scope: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, buffer_seconds: int = DEFAULT_EXPIRY_BUFFER) -> bool:
        """Check if the access token is expired or nearly expired.

        Tokens without expiry information are treated as not expired.
        """
        if self.expiry is None:
            return False

        expiry = self.expiry
        if expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)

        return datetime.now(timezone.utc) >= expiry - timedelta(seconds=buffer_seconds)

    def is_valid(self) -> bool:
        """Check that the token has an access token and is not expired."""
        return bool(self.access_token) and not self.is_expired()

    def has_refresh_token(self) -> bool:
        """Check if this token has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        # Normalize to "Bearer" per RFC 6750; some servers return lowercase
        if self.token_type.lower() == "bearer":
            return f"Bearer {self.access_token}"
        return f"{self.token_type} {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize token to a JSON-compatible dictionary."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }

        if self.refresh_token:
            data["refresh_token"] = self.refresh_token

        if self.expiry:
            data["expiry"] = self.expiry.isoformat()

        if self.scope:
            data["scope"] = self.scope

        if self.extra:
            data["extra"] = dict(self.extra)

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Token":
        """Deserialize a token from a dictionary produced by to_dict."""
        expiry = None
        if data.get("expiry"):
            expiry = datetime.fromisoformat(data["expiry"])
            if expiry.tzinfo is None:
                expiry = expiry.replace(tzinfo=timezone.utc)

        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            refresh_token=data.get("refresh_token"),
            expiry=expiry,
            scope=data.get("scope"),
            extra=dict(data.get("extra", {})),
        )

    @classmethod
    def from_token_response(cls, response: dict[str, Any]) -> "Token":
        """Create a Token from an OAuth token endpoint response.

        Args:
            response: Parsed token endpoint response

        Returns:
            Token instance with expiry computed from expires_in
        """
        expiry = None
        expires_in = response.get("expires_in")
        if expires_in not in (None, "", 0, "0"):
            try:
                expiry = datetime.now(timezone.utc) + timedelta(seconds=int(expires_in))
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-numeric expires_in in token response: {expires_in!r}")

        return cls(
            access_token=response["access_token"],
            token_type=response.get("token_type") or "Bearer",
            refresh_token=response.get("refresh_token") or None,
            expiry=expiry,
            scope=response.get("scope"),
            extra={k: v for k, v in response.items() if k not in _STANDARD_FIELDS},
        )
