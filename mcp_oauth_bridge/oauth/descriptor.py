"""OAuth server descriptor for a registered upstream server.

Endpoints are always explicit configuration. There is no discovery: some
providers do not publish metadata documents, and endpoints are never guessed
from the resource URL.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from .errors import MissingClientIdError, MissingEndpointError

logger = logging.getLogger(__name__)

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _warn_if_insecure(url: str, context: str) -> None:
    """Log a warning when an endpoint is plain HTTP on a non-loopback host.

    Authorization codes and tokens travel over these endpoints, so anything
    other than HTTPS is only acceptable for local development servers.
    """
    parsed = urlparse(url)
    if parsed.scheme != "https" and parsed.hostname not in LOOPBACK_HOSTS:
        logger.warning(f"{context} does not use HTTPS: {url}")


@dataclass
class OAuthServerDescriptor:
    """Per-server OAuth parameters.

    Attributes:
        authorization_endpoint: Where the browser is sent to authorize
        token_endpoint: Where codes and refresh tokens are exchanged
        client_id: The OAuth client identifier
        client_secret: Optional secret for confidential clients
        scopes: Scopes to request (joined with spaces)
        token_path: Where this identity's token record is persisted
    """

    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    scopes: list[str] = field(default_factory=list)
    token_path: Path | None = None

    def is_confidential(self) -> bool:
        """Check if this is a confidential client (has a secret)."""
        return self.client_secret is not None and len(self.client_secret) > 0

    def require_authorization_endpoint(self) -> str:
        if not self.authorization_endpoint:
            raise MissingEndpointError(
                "No authorization endpoint configured. "
                "Add one with: mcp-oauth-bridge add <name> <url> --auth-url <url>"
            )
        _warn_if_insecure(self.authorization_endpoint, "Authorization endpoint")
        return self.authorization_endpoint

    def require_token_endpoint(self) -> str:
        if not self.token_endpoint:
            raise MissingEndpointError(
                "No token endpoint configured. "
                "Add one with: mcp-oauth-bridge add <name> <url> --token-url <url>"
            )
        _warn_if_insecure(self.token_endpoint, "Token endpoint")
        return self.token_endpoint

    def require_client_id(self) -> str:
        if not self.client_id:
            raise MissingClientIdError(
                "No client ID configured. "
                "Add one with: mcp-oauth-bridge add <name> <url> --client-id <id>"
            )
        return self.client_id

    def to_dict(self) -> dict[str, Any]:
        """Serialize using the config file's key names."""
        data: dict[str, Any] = {}
        if self.authorization_endpoint:
            data["authorizationUrl"] = self.authorization_endpoint
        if self.token_endpoint:
            data["tokenUrl"] = self.token_endpoint
        if self.client_id:
            data["clientId"] = self.client_id
        if self.client_secret:
            data["clientSecret"] = self.client_secret
        if self.scopes:
            data["scopes"] = list(self.scopes)
        if self.token_path:
            data["tokenPath"] = str(self.token_path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OAuthServerDescriptor":
        """Create from a config file ``oauth`` block."""
        scopes = data.get("scopes") or []
        if isinstance(scopes, str):
            scopes = scopes.split()

        token_path = data.get("tokenPath")

        return cls(
            authorization_endpoint=data.get("authorizationUrl"),
            token_endpoint=data.get("tokenUrl"),
            client_id=data.get("clientId"),
            client_secret=data.get("clientSecret"),
            scopes=list(scopes),
            token_path=Path(token_path).expanduser() if token_path else None,
        )
