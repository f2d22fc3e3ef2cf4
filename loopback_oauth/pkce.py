"""PKCE (Proof Key for Code Exchange) and state generation per RFC 7636.

Each flow invocation gets a fresh AuthorizationRequest holding the
anti-CSRF state and, when PKCE is requested, the code verifier and its
S256 challenge. The request is consumed by exactly one callback.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass

from .errors import RandomnessError

# Number of random bytes in the state parameter
DEFAULT_STATE_LENGTH = 32

VERIFIER_LENGTH = 64

# Unreserved URI characters without "~", which some servers reject
VERIFIER_CHARS = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-._"

PKCE_CHALLENGE_METHOD = "S256"


def generate_state(length: int = DEFAULT_STATE_LENGTH) -> str:
    """Generate a cryptographically random state parameter.

    The state parameter protects against CSRF attacks by ensuring
    the authorization response came from a request we initiated.

    Args:
        length: Number of random bytes (0 yields an empty string)

    Returns:
        Base64URL-encoded random bytes, with padding

    Raises:
        ValueError: If length is negative
        RandomnessError: If the OS random source fails
    """
    if length < 0:
        raise ValueError(f"State length must not be negative, got {length}")

    try:
        raw = secrets.token_bytes(length)
    except OSError as e:
        raise RandomnessError(f"Failed to read from secure random source: {e}") from e

    return base64.urlsafe_b64encode(raw).decode("ascii")


def generate_code_verifier() -> str:
    """Generate a 64-character code verifier from unreserved URI characters."""
    try:
        return "".join(secrets.choice(VERIFIER_CHARS) for _ in range(VERIFIER_LENGTH))
    except OSError as e:
        raise RandomnessError(f"Failed to read from secure random source: {e}") from e


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))

    Args:
        verifier: The code verifier string

    Returns:
        Base64URL-encoded SHA256 hash of the verifier, without padding
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()

    # See RFC 7636 Appendix A for the no-padding requirement
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


@dataclass(frozen=True)
class AuthorizationRequest:
    """Secrets generated for one authorization attempt.

    The callback handler validates against this object; it is never
    persisted or reused across flows.

    Attributes:
        state: Anti-CSRF state round-tripped through the provider
        pkce_enabled: Whether PKCE parameters were sent
        code_verifier: PKCE verifier (empty when PKCE is disabled)
        code_challenge: S256 challenge of the verifier (empty when disabled)
    """

    state: str
    pkce_enabled: bool = False
    code_verifier: str = ""
    code_challenge: str = ""

    @classmethod
    def create(cls, use_pkce: bool = False) -> "AuthorizationRequest":
        """Generate fresh state and, if requested, a PKCE pair."""
        state = generate_state()
        if not use_pkce:
            return cls(state=state)

        verifier = generate_code_verifier()
        return cls(
            state=state,
            pkce_enabled=True,
            code_verifier=verifier,
            code_challenge=generate_code_challenge(verifier),
        )
