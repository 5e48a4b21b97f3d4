"""Server registry and configuration loading for the MCP OAuth bridge."""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .oauth.descriptor import OAuthServerDescriptor
from .oauth.store import TokenStore

logger = logging.getLogger(__name__)

# Environment variable overriding the config directory
CONFIG_DIR_ENV = "MCP_BRIDGE_HOME"

DEFAULT_CONFIG_DIR = Path.home() / ".mcp-bridge"
CONFIG_FILE = "config.json"
TOKENS_DIR = "tokens"
ENV_FILE = ".env"


class ConfigError(Exception):
    """Error loading or updating the bridge configuration."""

    pass


class ConfigNotFoundError(ConfigError):
    """No config file exists yet."""

    pass


class ServerNotFoundError(ConfigError):
    """The named server is not registered."""

    pass


class ServerExistsError(ConfigError):
    """A server with this name is already registered."""

    pass


def _resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} patterns in a string from environment variables.

    Handles:
    - Full replacement: "${VAR}" -> "value"
    - Partial replacement: "prefix_${VAR}_suffix" -> "prefix_value_suffix"
    - Missing vars resolve to empty string
    """
    if "${" not in value:
        return value

    return re.sub(r"\$\{([^}]+)\}", lambda m: os.environ.get(m.group(1), ""), value)


def _resolve_tree(value: Any) -> Any:
    """Apply ``_resolve_env_vars`` to every string in a JSON value."""
    if isinstance(value, str):
        return _resolve_env_vars(value)
    if isinstance(value, list):
        return [_resolve_tree(v) for v in value]
    if isinstance(value, dict):
        return {k: _resolve_tree(v) for k, v in value.items()}
    return value


@dataclass
class ServerConfig:
    """Configuration for a single upstream server."""

    name: str
    url: str
    oauth: OAuthServerDescriptor = field(default_factory=OAuthServerDescriptor)

    def to_dict(self) -> dict[str, Any]:
        return {"url": self.url, "oauth": self.oauth.to_dict()}


@dataclass
class BridgeConfig:
    """Complete bridge configuration."""

    servers: dict[str, ServerConfig] = field(default_factory=dict)
    config_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"servers": {name: s.to_dict() for name, s in self.servers.items()}}


def get_config_dir(explicit: Path | None = None) -> Path:
    """Resolve the config directory: explicit, then $MCP_BRIDGE_HOME, then default."""
    if explicit:
        return explicit
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir).expanduser()
    return DEFAULT_CONFIG_DIR


def parse_server_config(name: str, data: dict[str, Any]) -> ServerConfig:
    """Parse a server configuration from JSON data."""
    return ServerConfig(
        name=name,
        url=data.get("url", ""),
        oauth=OAuthServerDescriptor.from_dict(data.get("oauth") or {}),
    )


class ConfigManager:
    """Reads and writes the server registry.

    Layout of the config directory:
        config.json     registered servers and their OAuth parameters
        .env            optional secrets referenced as ${VAR} in config.json
        tokens/         one token record per identity
    """

    def __init__(self, config_dir: Path | None = None):
        self.config_dir = get_config_dir(config_dir)
        self.config_path = self.config_dir / CONFIG_FILE
        self.tokens_dir = self.config_dir / TOKENS_DIR

    def token_store(self) -> TokenStore:
        """Token store rooted in this config directory."""
        return TokenStore(self.tokens_dir)

    def get_token_path(self, name: str) -> Path:
        return self.token_store().path_for(name)

    def init(self) -> bool:
        """Create the config directory and an empty config.

        Returns:
            True if a new config file was created, False if one existed
        """
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.tokens_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.tokens_dir.chmod(0o700)
        except OSError as e:
            logger.warning(f"Could not set directory permissions: {e}")

        if self.config_path.exists():
            return False

        self._write(BridgeConfig())
        logger.info(f"Config initialized at {self.config_path}")
        return True

    def _read_raw(self) -> dict[str, Any]:
        if not self.config_path.exists():
            raise ConfigNotFoundError(
                f"Config not found at {self.config_path}. Run: mcp-oauth-bridge init"
            )
        try:
            with open(self.config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Config file {self.config_path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Config file {self.config_path} must contain a JSON object")
        return data

    def _write(self, config: BridgeConfig) -> None:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w", encoding="utf-8") as f:
            json.dump(config.to_dict(), f, indent=2)

    def load(self, resolve_env: bool = True) -> BridgeConfig:
        """Load the registry.

        Args:
            resolve_env: Expand ${VAR} references (after loading the config
                directory's .env file). Disabled when loading for an update,
                so references are written back unexpanded.

        Raises:
            ConfigNotFoundError: If the config file does not exist
            ConfigError: If the config file is not valid JSON
        """
        data = self._read_raw()

        if resolve_env:
            env_file = self.config_dir / ENV_FILE
            if env_file.exists():
                load_dotenv(env_file)
            data = _resolve_tree(data)

        servers: dict[str, ServerConfig] = {}
        for name, server_data in (data.get("servers") or {}).items():
            servers[name] = parse_server_config(name, server_data or {})

        return BridgeConfig(servers=servers, config_path=self.config_path)

    def add_server(
        self,
        name: str,
        url: str,
        oauth: OAuthServerDescriptor | None = None,
    ) -> ServerConfig:
        """Register a server.

        Raises:
            ServerExistsError: If the name is taken
        """
        config = self.load(resolve_env=False)
        if name in config.servers:
            raise ServerExistsError(f"Server '{name}' already exists")

        # Validates the name as a token file name
        self.get_token_path(name)

        server = ServerConfig(name=name, url=url, oauth=oauth or OAuthServerDescriptor())
        config.servers[name] = server
        self._write(config)
        logger.info(f"Added server {name}")
        return server

    def update_server_oauth(self, name: str, **changes: Any) -> ServerConfig:
        """Update OAuth fields of a registered server; None values are ignored.

        Raises:
            ServerNotFoundError: If the server is not registered
        """
        config = self.load(resolve_env=False)
        server = config.servers.get(name)
        if server is None:
            raise ServerNotFoundError(f"Server '{name}' not found")

        for key, value in changes.items():
            if value is None:
                continue
            if not hasattr(server.oauth, key):
                raise ConfigError(f"Unknown OAuth setting: {key}")
            setattr(server.oauth, key, value)

        self._write(config)
        return server

    def remove_server(self, name: str) -> None:
        """De-register a server and delete its token record.

        Raises:
            ServerNotFoundError: If the server is not registered
        """
        config = self.load(resolve_env=False)
        server = config.servers.pop(name, None)
        if server is None:
            raise ServerNotFoundError(f"Server '{name}' not found")

        self.token_store().delete(name, server.oauth.token_path)
        self._write(config)
        logger.info(f"Removed server {name}")

    def list_servers(self) -> list[ServerConfig]:
        return list(self.load().servers.values())

    def get_server(self, name: str) -> ServerConfig:
        """Get a registered server.

        Raises:
            ServerNotFoundError: If the server is not registered
        """
        server = self.load().servers.get(name)
        if server is None:
            raise ServerNotFoundError(
                f"Server '{name}' not found. Run: mcp-oauth-bridge list"
            )
        return server
