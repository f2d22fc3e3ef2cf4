"""Exception hierarchy for the loopback authorization flow.

Every terminal condition of a flow is raised as a subclass of
OAuthFlowError so callers can catch one type and decide how to report it.
"""


class OAuthFlowError(Exception):
    """Error during the OAuth authorization flow."""

    pass


class ConfigurationError(OAuthFlowError):
    """A required configuration field is missing or invalid."""

    pass


class RandomnessError(OAuthFlowError):
    """The secure random source could not produce bytes."""

    pass


class BrowserLaunchError(OAuthFlowError):
    """The system browser could not be opened."""

    pass


class ServerListenError(OAuthFlowError):
    """The local callback server could not bind its port."""

    pass


class TokenExchangeError(OAuthFlowError):
    """Error exchanging the authorization code at the token endpoint."""

    pass


class RefreshFailedError(OAuthFlowError):
    """Error obtaining a new token from a refresh token."""

    pass


class CallbackError(OAuthFlowError):
    """Error during OAuth callback handling."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for the OAuth callback."""

    pass


class StateMismatchError(CallbackError):
    """The callback state does not match the state that was sent."""

    pass


class PKCEChallengeMismatchError(CallbackError):
    """The callback code_challenge does not match the generated challenge."""

    pass


class PKCEMethodMismatchError(CallbackError):
    """The callback code_challenge_method is not S256."""

    pass


class ProviderAuthorizationError(CallbackError):
    """The authorization server redirected back with an error.

    Attributes:
        error: The OAuth error code (e.g. "access_denied")
        error_description: Optional human-readable description
    """

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        if error_description:
            super().__init__(f"{error}: {error_description}")
        else:
            super().__init__(error)
