"""Exception hierarchy for the OAuth bridge.

Every failure path in the token lifecycle raises one of these types so that
callers can choose a recovery strategy (re-authorize, pick another callback
port, retry with backoff) without parsing messages.
"""

from __future__ import annotations


class OAuthBridgeError(Exception):
    """Base exception for all OAuth bridge errors."""

    pass


class HTTPErrorMixin:
    """Carries the upstream HTTP status and raw response body.

    ``status`` is None when no response was received at all.
    """

    status: int | None
    body: str

    def _set_http_context(self, status: int | None, body: str | None) -> None:
        self.status = status
        self.body = body or ""


# Callback listener / manual redirect entry


class CallbackError(OAuthBridgeError):
    """Error while capturing the OAuth redirect."""

    pass


class PortInUseError(CallbackError):
    """The requested callback port is already bound by another process."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(
            f"Port {port} is already in use. "
            f"Use --callback-port to choose a different port."
        )


class CallbackTimeoutError(CallbackError):
    """No redirect arrived before the listener timed out."""

    pass


class MalformedCallbackError(CallbackError):
    """The redirect is missing the code or state parameter."""

    pass


class OAuthProviderError(CallbackError):
    """The authorization server redirected back with an error."""

    def __init__(self, error: str, error_description: str | None = None):
        self.error = error
        self.error_description = error_description
        message = f"Authorization failed: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


# Interactive authorization


class AuthorizationFlowError(OAuthBridgeError):
    """Error during the interactive authorization code flow."""

    pass


class StateMismatchError(AuthorizationFlowError):
    """The returned state does not match the one generated for this attempt."""

    pass


class TokenExchangeError(HTTPErrorMixin, AuthorizationFlowError):
    """The token endpoint rejected the authorization code exchange."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        self._set_http_context(status, body)
        super().__init__(message)


# Descriptor problems


class ConfigurationError(OAuthBridgeError):
    """The OAuth server descriptor is incomplete."""

    pass


class MissingEndpointError(ConfigurationError):
    """The descriptor lacks an authorization or token endpoint."""

    pass


class MissingClientIdError(ConfigurationError):
    """The descriptor lacks a client identifier."""

    pass


# Token lifecycle


class TokenLifecycleError(OAuthBridgeError):
    """Error obtaining a usable token for an identity."""

    pass


class NoTokenError(TokenLifecycleError):
    """No token record is stored for the identity."""

    pass


class NoRefreshTokenError(TokenLifecycleError):
    """The stored record is missing or carries no refresh token."""

    pass


class RefreshFailedError(HTTPErrorMixin, TokenLifecycleError):
    """The token endpoint rejected the refresh token exchange."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        self._set_http_context(status, body)
        super().__init__(message)


# Authorized upstream calls


class UpstreamCallError(HTTPErrorMixin, OAuthBridgeError):
    """An authorized call to the upstream server failed."""

    def __init__(self, message: str, status: int | None = None, body: str | None = None):
        self._set_http_context(status, body)
        super().__init__(message)


class AuthRejectedError(UpstreamCallError):
    """Upstream answered 401/403; the token is likely invalid or revoked."""

    pass


class UpstreamError(UpstreamCallError):
    """Upstream answered 5xx; transient and safe to retry at a higher layer."""

    pass


class UnreachableError(UpstreamCallError):
    """No response was received from upstream."""

    pass


class UnexpectedResponseError(UpstreamCallError):
    """Upstream answered with a non-2xx status outside the other classes."""

    pass
