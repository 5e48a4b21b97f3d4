"""MCP OAuth Bridge - OAuth token lifecycle for headless MCP clients."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("mcp-oauth-bridge")
except PackageNotFoundError:
    __version__ = "0.1.0"  # Fallback for development

__all__ = [
    "__version__",
    # Configuration
    "ConfigManager",
    "ServerConfig",
    # Token lifecycle
    "TokenLifecycleManager",
    "AuthorizedCaller",
    "OAuthServerDescriptor",
    "TokenStore",
    "OutputHandler",
]

# Lazy imports keep `--version` and config commands light
def __getattr__(name: str) -> object:
    """Lazy import module components."""
    if name in ("ConfigManager", "ServerConfig"):
        from .config import ConfigManager, ServerConfig
        return {"ConfigManager": ConfigManager, "ServerConfig": ServerConfig}[name]
    elif name in ("TokenLifecycleManager", "AuthorizedCaller", "OAuthServerDescriptor", "TokenStore"):
        from . import oauth
        return getattr(oauth, name)
    elif name == "OutputHandler":
        from .output import OutputHandler
        return OutputHandler
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
