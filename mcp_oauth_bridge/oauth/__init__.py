"""OAuth token lifecycle engine for the MCP OAuth bridge.

This package obtains, stores, refreshes and attaches OAuth Bearer tokens so
that headless clients can call OAuth-protected upstream servers.

Main Components:
    TokenLifecycleManager: Expiry checks, refresh, and valid-token lookup
    AuthorizedCaller: Upstream calls with a managed Bearer token
    OAuthFlow: Interactive authorization code flow with PKCE
    LocalhostCallbackServer: One-shot listener for the OAuth redirect
    TokenStore: Per-identity token record storage
    TokenRecord: Token data structure

Quick Start:
    from mcp_oauth_bridge.oauth import TokenLifecycleManager, TokenStore

    manager = TokenLifecycleManager(TokenStore(tokens_dir))
    token = await manager.get_valid_token("notion", descriptor)
    header = token.get_auth_header()
"""

from .callback import (
    CallbackResult,
    CallbackState,
    LocalhostCallbackServer,
    parse_redirect_url,
)
from .caller import AuthorizedCaller
from .descriptor import OAuthServerDescriptor
from .errors import (
    AuthorizationFlowError,
    AuthRejectedError,
    CallbackError,
    CallbackTimeoutError,
    ConfigurationError,
    MalformedCallbackError,
    MissingClientIdError,
    MissingEndpointError,
    NoRefreshTokenError,
    NoTokenError,
    OAuthBridgeError,
    OAuthProviderError,
    PortInUseError,
    RefreshFailedError,
    StateMismatchError,
    TokenExchangeError,
    TokenLifecycleError,
    UnexpectedResponseError,
    UnreachableError,
    UpstreamCallError,
    UpstreamError,
)
from .flow import OAuthFlow, exchange_code, exchange_refresh_token
from .manager import AuthStatus, TokenLifecycleManager
from .pkce import PKCEPair, build_authorization_url, generate_pkce_pair, generate_state
from .store import TokenStore, TokenStoreError
from .tokens import (
    TokenExchangeResult,
    TokenHTTPError,
    TokenProviderError,
    TokenRecord,
    TokenSuccess,
)

__all__ = [
    # Manager (main entry point)
    "TokenLifecycleManager",
    "AuthStatus",
    # Authorized calls
    "AuthorizedCaller",
    # Flow
    "OAuthFlow",
    "exchange_code",
    "exchange_refresh_token",
    # Descriptor
    "OAuthServerDescriptor",
    # Tokens
    "TokenRecord",
    "TokenExchangeResult",
    "TokenSuccess",
    "TokenProviderError",
    "TokenHTTPError",
    # Storage
    "TokenStore",
    "TokenStoreError",
    # PKCE
    "PKCEPair",
    "generate_pkce_pair",
    "generate_state",
    "build_authorization_url",
    # Callback
    "LocalhostCallbackServer",
    "CallbackResult",
    "CallbackState",
    "parse_redirect_url",
    # Errors
    "OAuthBridgeError",
    "CallbackError",
    "PortInUseError",
    "CallbackTimeoutError",
    "MalformedCallbackError",
    "OAuthProviderError",
    "AuthorizationFlowError",
    "StateMismatchError",
    "TokenExchangeError",
    "ConfigurationError",
    "MissingEndpointError",
    "MissingClientIdError",
    "TokenLifecycleError",
    "NoTokenError",
    "NoRefreshTokenError",
    "RefreshFailedError",
    "UpstreamCallError",
    "AuthRejectedError",
    "UpstreamError",
    "UnreachableError",
    "UnexpectedResponseError",
]
