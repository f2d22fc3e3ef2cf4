"""Shared fixtures for loopback OAuth tests."""

import pytest
from helpers import AUTHORIZATION_URL, TOKEN_URL, FakeTokenEndpoint

from loopback_oauth.callback import find_available_port
from loopback_oauth.config import OAuthEndpointConfig


@pytest.fixture
def free_port() -> int:
    """A loopback port that is currently unbound."""
    return find_available_port()


@pytest.fixture
def endpoint_config(free_port: int) -> OAuthEndpointConfig:
    """A complete configuration pointing at the fake provider."""
    return OAuthEndpointConfig(
        client_id="test-client-id",
        client_secret="test-client-secret",
        authorization_url=AUTHORIZATION_URL,
        token_url=TOKEN_URL,
        scopes=["read", "write"],
        redirect_path="/callback",
        port=free_port,
    )


@pytest.fixture
def token_endpoint() -> FakeTokenEndpoint:
    """Fake token endpoint returning access_token T and refresh_token R."""
    return FakeTokenEndpoint()
