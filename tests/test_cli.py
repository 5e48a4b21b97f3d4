"""Tests for CLI commands."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from click.testing import CliRunner

from mcp_oauth_bridge.cli import main
from mcp_oauth_bridge.config import ConfigManager
from mcp_oauth_bridge.oauth.errors import (
    AuthRejectedError,
    PortInUseError,
    RefreshFailedError,
)
from mcp_oauth_bridge.oauth.tokens import TokenRecord


@pytest.fixture
def runner() -> CliRunner:
    """Create a CLI test runner."""
    return CliRunner()


@pytest.fixture
def registered(config_manager: ConfigManager) -> ConfigManager:
    """Config with one fully configured server."""
    runner = CliRunner()
    result = runner.invoke(
        main,
        [
            "--config-dir", str(config_manager.config_dir),
            "add", "notion", "https://mcp.notion.com/mcp",
            "--client-id", "abc",
            "--auth-url", "https://auth.example.com/authorize",
            "--token-url", "https://auth.example.com/token",
            "--scope", "read",
            "--scope", "write",
        ],
    )
    assert result.exit_code == 0, result.output
    return config_manager


def invoke(runner: CliRunner, config: ConfigManager, *args: str, json_mode: bool = False):
    base = ["--config-dir", str(config.config_dir)]
    if json_mode:
        base.insert(0, "--json")
    return runner.invoke(main, [*base, *args])


class TestMainGroup:
    """Tests for the main command group."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("init", "add", "auth", "status", "refresh", "logout", "call"):
            assert command in result.output

    def test_version(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "version" in result.output.lower()


class TestInitAddRemoveList:
    """Tests for registry commands."""

    def test_init(self, runner: CliRunner, tmp_path: Path) -> None:
        config_dir = tmp_path / "fresh"
        result = runner.invoke(main, ["--config-dir", str(config_dir), "init"])

        assert result.exit_code == 0
        assert "Initialized" in result.output
        assert (config_dir / "config.json").exists()

    def test_init_uses_env_dir(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("MCP_BRIDGE_HOME", str(tmp_path / "from-env"))
        result = runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert (tmp_path / "from-env" / "config.json").exists()

    def test_add_writes_oauth_block(self, runner: CliRunner, registered: ConfigManager) -> None:
        server = registered.get_server("notion")
        assert server.oauth.client_id == "abc"
        assert server.oauth.scopes == ["read", "write"]

    def test_add_duplicate(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "add", "notion", "https://x")
        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_add_without_init(self, runner: CliRunner, tmp_path: Path) -> None:
        result = runner.invoke(
            main, ["--config-dir", str(tmp_path / "none"), "add", "notion", "https://x"]
        )
        assert result.exit_code == 1
        assert "init" in result.output

    def test_list(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "list")
        assert result.exit_code == 0
        assert "[notion]" in result.output
        assert "abc (public)" in result.output

    def test_list_json(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "list", json_mode=True)
        data = json.loads(result.output)

        assert data["success"] is True
        assert data["data"]["servers"][0]["name"] == "notion"
        assert data["data"]["servers"][0]["confidential"] is False

    def test_list_empty(self, runner: CliRunner, config_manager: ConfigManager) -> None:
        result = invoke(runner, config_manager, "list")
        assert result.exit_code == 0
        assert "No servers configured" in result.output

    def test_remove(self, runner: CliRunner, registered: ConfigManager) -> None:
        registered.token_store().save("notion", TokenRecord(access_token="a"))

        result = invoke(runner, registered, "remove", "notion")

        assert result.exit_code == 0
        assert registered.list_servers() == []
        assert registered.token_store().load("notion") is None


class TestAuthCommand:
    """Tests for the auth command."""

    def test_auth_unknown_server(self, runner: CliRunner, config_manager: ConfigManager) -> None:
        result = invoke(runner, config_manager, "auth", "nobody")
        assert result.exit_code == 1
        assert "not found" in result.output.lower()

    def test_auth_success(self, runner: CliRunner, registered: ConfigManager) -> None:
        record = TokenRecord(access_token="a", refresh_token="r", expires_at=123)
        with patch(
            "mcp_oauth_bridge.cli.TokenLifecycleManager.authenticate",
            new_callable=AsyncMock,
            return_value=record,
        ) as authenticate:
            result = invoke(runner, registered, "auth", "notion", "--callback-port", "9000")

        assert result.exit_code == 0, result.output
        assert "Authenticated with 'notion'" in result.output
        kwargs = authenticate.call_args.kwargs
        assert kwargs["callback_port"] == 9000
        assert kwargs["callback_timeout"] == 300
        assert kwargs["prompt_for_redirect"] is None

    def test_auth_manual_passes_prompt(self, runner: CliRunner, registered: ConfigManager) -> None:
        with patch(
            "mcp_oauth_bridge.cli.TokenLifecycleManager.authenticate",
            new_callable=AsyncMock,
            return_value=TokenRecord(access_token="a"),
        ) as authenticate:
            result = invoke(runner, registered, "auth", "notion", "--manual", "--no-browser")

        assert result.exit_code == 0
        kwargs = authenticate.call_args.kwargs
        assert callable(kwargs["prompt_for_redirect"])
        assert kwargs["open_browser"] is False

    def test_auth_saves_overrides(self, runner: CliRunner, config_manager: ConfigManager) -> None:
        """Test OAuth options given to auth are saved and used for the token request."""
        config_manager.add_server("notion", "https://mcp.notion.com/mcp")
        requests: list[httpx.Request] = []
        seen: dict[str, str] = {}
        real_client = httpx.AsyncClient

        def issue(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(200, json={"access_token": "at", "expires_in": 60})

        def mock_client(*args, **kwargs) -> httpx.AsyncClient:
            return real_client(transport=httpx.MockTransport(issue))

        def paste(text: str, **kwargs) -> str:
            state = parse_qs(urlparse(seen["auth_url"]).query)["state"][0]
            return f"http://localhost:8080/callback?code=the-code&state={state}"

        def remember_url(message: str) -> None:
            if message.startswith("https://a.example.com/authorize?"):
                seen["auth_url"] = message

        with (
            patch("mcp_oauth_bridge.oauth.flow.httpx.AsyncClient", side_effect=mock_client),
            patch("mcp_oauth_bridge.cli.click.prompt", side_effect=paste),
            patch("mcp_oauth_bridge.cli.OutputHandler.status", side_effect=remember_url),
        ):
            result = invoke(
                runner, config_manager,
                "auth", "notion", "--manual",
                "--client-id", "new-id",
                "--auth-url", "https://a.example.com/authorize",
                "--token-url", "https://t.example.com/token",
                "--scope", "read",
            )

        assert result.exit_code == 0, result.output
        assert len(requests) == 1
        assert str(requests[0].url) == "https://t.example.com/token"
        assert parse_qs(requests[0].content.decode())["client_id"] == ["new-id"]
        assert "scope=read" in seen["auth_url"]

        saved = config_manager.get_server("notion").oauth
        assert saved.client_id == "new-id"
        assert saved.token_endpoint == "https://t.example.com/token"
        assert saved.scopes == ["read"]

    def test_auth_overrides_unknown_server(
        self, runner: CliRunner, config_manager: ConfigManager
    ) -> None:
        result = invoke(runner, config_manager, "auth", "nobody", "--client-id", "x")
        assert result.exit_code == 1
        assert "not found" in result.output.lower()

    def test_auth_port_in_use(self, runner: CliRunner, registered: ConfigManager) -> None:
        with patch(
            "mcp_oauth_bridge.cli.TokenLifecycleManager.authenticate",
            new_callable=AsyncMock,
            side_effect=PortInUseError(8080),
        ):
            result = invoke(runner, registered, "auth", "notion")

        assert result.exit_code == 1
        assert "Port 8080 is already in use" in result.output

    def test_auth_missing_endpoint(self, runner: CliRunner, config_manager: ConfigManager) -> None:
        """Test the real flow stops on an incomplete descriptor."""
        config_manager.add_server("bare", "https://x")
        result = invoke(runner, config_manager, "auth", "bare")

        assert result.exit_code == 1
        assert "--auth-url" in result.output


class TestStatusRefreshLogout:
    """Tests for token status, refresh and logout."""

    def test_status_not_authenticated(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "status")
        assert result.exit_code == 0
        assert "not authenticated" in result.output

    def test_status_json(self, runner: CliRunner, registered: ConfigManager) -> None:
        registered.token_store().save(
            "notion", TokenRecord(access_token="secret-token", refresh_token="r", expires_in=3600)
        )
        result = invoke(runner, registered, "status", "notion", json_mode=True)
        data = json.loads(result.output)["data"]["servers"][0]

        assert data["authenticated"] is True
        assert data["expired"] is False
        assert data["has_refresh_token"] is True
        assert "secret-token" not in result.output

    def test_refresh(self, runner: CliRunner, registered: ConfigManager) -> None:
        record = TokenRecord(access_token="new", expires_at=1)
        with patch(
            "mcp_oauth_bridge.cli.TokenLifecycleManager.refresh",
            new_callable=AsyncMock,
            return_value=record,
        ):
            result = invoke(runner, registered, "refresh", "notion")

        assert result.exit_code == 0
        assert "Token refreshed" in result.output

    def test_refresh_failure_json(self, runner: CliRunner, registered: ConfigManager) -> None:
        """Test JSON errors carry HTTP status and body."""
        error = RefreshFailedError("Token refresh failed", status=400, body='{"error":"invalid_grant"}')
        with patch(
            "mcp_oauth_bridge.cli.TokenLifecycleManager.refresh",
            new_callable=AsyncMock,
            side_effect=error,
        ):
            result = invoke(runner, registered, "refresh", "notion", json_mode=True)

        assert result.exit_code == 1
        data = json.loads(result.output)
        assert data["success"] is False
        assert data["error"]["type"] == "RefreshFailedError"
        assert data["error"]["status"] == 400
        assert "auth notion" in data["error"]["help"]

    def test_logout(self, runner: CliRunner, registered: ConfigManager) -> None:
        registered.token_store().save("notion", TokenRecord(access_token="a"))

        result = invoke(runner, registered, "logout", "notion")
        assert result.exit_code == 0
        assert "Logged out" in result.output

        result = invoke(runner, registered, "logout", "notion")
        assert "No token stored" in result.output


class TestCallCommand:
    """Tests for the call command."""

    def test_call_posts_payload(self, runner: CliRunner, registered: ConfigManager) -> None:
        response = httpx.Response(200, json={"jsonrpc": "2.0", "result": {}})
        with patch(
            "mcp_oauth_bridge.cli.AuthorizedCaller.request",
            new_callable=AsyncMock,
            return_value=response,
        ) as request:
            result = invoke(
                runner, registered, "call", "notion", '{"method": "tools/list"}', "--path", "/v1"
            )

        assert result.exit_code == 0, result.output
        args, kwargs = request.call_args
        assert args[0] == "notion"
        assert args[2] == "POST"
        assert args[3] == "https://mcp.notion.com/mcp/v1"
        assert kwargs["json"] == {"method": "tools/list"}
        assert '"jsonrpc": "2.0"' in result.output

    def test_call_invalid_payload(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "call", "notion", "{not json")
        assert result.exit_code == 1
        assert "valid JSON" in result.output

    def test_call_without_token(self, runner: CliRunner, registered: ConfigManager) -> None:
        result = invoke(runner, registered, "call", "notion", "{}")
        assert result.exit_code == 1
        assert "auth notion" in result.output

    def test_call_rejected(self, runner: CliRunner, registered: ConfigManager) -> None:
        with patch(
            "mcp_oauth_bridge.cli.AuthorizedCaller.request",
            new_callable=AsyncMock,
            side_effect=AuthRejectedError("notion rejected the token (HTTP 401)", status=401),
        ):
            result = invoke(runner, registered, "call", "notion", "{}")

        assert result.exit_code == 1
        assert "HTTP 401" in result.output
