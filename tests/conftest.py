"""Shared fixtures and utilities for MCP OAuth bridge tests."""

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl

import httpx
import pytest

from mcp_oauth_bridge.config import ConfigManager
from mcp_oauth_bridge.oauth.descriptor import OAuthServerDescriptor
from mcp_oauth_bridge.oauth.store import TokenStore
from mcp_oauth_bridge.oauth.tokens import TokenRecord

TOKEN_URL = "https://auth.example.com/token"
AUTH_URL = "https://auth.example.com/authorize"


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def descriptor() -> OAuthServerDescriptor:
    """A public client descriptor with explicit endpoints."""
    return OAuthServerDescriptor(
        authorization_endpoint=AUTH_URL,
        token_endpoint=TOKEN_URL,
        client_id="client-123",
        scopes=["read", "write"],
    )


@pytest.fixture
def confidential_descriptor(descriptor: OAuthServerDescriptor) -> OAuthServerDescriptor:
    """A confidential client descriptor."""
    descriptor.client_secret = "s3cret"
    return descriptor


@pytest.fixture
def token_store(tmp_path: Path) -> TokenStore:
    """Token store in a temporary directory."""
    return TokenStore(tmp_path / "tokens")


@pytest.fixture
def expired_record() -> TokenRecord:
    """A record that expired a minute ago and can be refreshed."""
    return TokenRecord(
        access_token="old",
        refresh_token="r1",
        expires_in=3600,
        expires_at=1,
    )


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    return tmp_path / "bridge"


@pytest.fixture
def config_manager(config_dir: Path) -> ConfigManager:
    """An initialized config manager with no servers."""
    manager = ConfigManager(config_dir)
    manager.init()
    return manager


@pytest.fixture
def write_config(config_dir: Path) -> Callable[[dict[str, Any]], Path]:
    """Factory that writes a raw config.json into the config dir."""

    def _write(data: dict[str, Any]) -> Path:
        config_dir.mkdir(parents=True, exist_ok=True)
        path = config_dir / "config.json"
        path.write_text(json.dumps(data))
        return path

    return _write


# ============================================================================
# HTTP Mock Helpers
# ============================================================================


@pytest.fixture
def mock_http() -> Callable[..., tuple[httpx.AsyncClient, list[httpx.Request]]]:
    """Factory for an AsyncClient backed by httpx.MockTransport.

    The handler receives each request; every request is also recorded in
    the returned list so tests can inspect what was sent.
    """

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
    ) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
        requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        return httpx.AsyncClient(transport=httpx.MockTransport(_record)), requests

    return _make


def form_of(request: httpx.Request) -> dict[str, str]:
    """Decode a form-encoded request body."""
    return dict(parse_qsl(request.content.decode("utf-8")))


@pytest.fixture
def decode_form() -> Callable[[httpx.Request], dict[str, str]]:
    return form_of
