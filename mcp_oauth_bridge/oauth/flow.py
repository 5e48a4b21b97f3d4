"""OAuth authorization code flow with PKCE.

This module orchestrates the interactive authorization flow:
1. Validate the server descriptor
2. Generate PKCE pair and state
3. Start the localhost callback listener (or prompt for a pasted URL)
4. Build authorization URL and open browser
5. Wait for callback with authorization code
6. Verify state
7. Exchange code for tokens
8. Store tokens

It also holds the token endpoint calls (code exchange and refresh), which
decode responses into a TokenExchangeResult at the HTTP boundary.
"""

import asyncio
import hmac
import logging
import webbrowser
from typing import Callable

import httpx

from .callback import DEFAULT_CALLBACK_PORT, DEFAULT_TIMEOUT, LocalhostCallbackServer, parse_redirect_url
from .descriptor import OAuthServerDescriptor
from .errors import StateMismatchError, TokenExchangeError
from .pkce import build_authorization_url, build_redirect_uri, generate_pkce_pair, generate_state
from .store import TokenStore
from .tokens import (
    TokenExchangeResult,
    TokenHTTPError,
    TokenProviderError,
    TokenRecord,
    TokenSuccess,
    decode_token_response,
)

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 30.0  # seconds


async def post_token_request(
    token_endpoint: str,
    form: dict[str, str],
    http_client: httpx.AsyncClient | None = None,
) -> TokenExchangeResult:
    """POST a form-encoded grant to the token endpoint.

    Args:
        token_endpoint: The token endpoint URL
        form: Grant parameters
        http_client: Optional HTTP client

    Returns:
        The decoded TokenExchangeResult

    Raises:
        httpx.RequestError: If no response was received
    """
    http = http_client or httpx.AsyncClient(timeout=HTTP_TIMEOUT)
    should_close = http_client is None

    try:
        logger.debug(f"Token request: grant_type={form['grant_type']} -> {token_endpoint}")
        response = await http.post(
            token_endpoint,
            data=form,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
        )
        return decode_token_response(response)
    finally:
        if should_close:
            await http.aclose()


def describe_failure(result: TokenProviderError | TokenHTTPError) -> str:
    """Short summary of a failed token endpoint result."""
    if isinstance(result, TokenHTTPError):
        return result.summary()
    detail = result.error
    if result.error_description:
        detail += f" - {result.error_description}"
    return f"HTTP {result.status}: {detail}"


async def exchange_code(
    descriptor: OAuthServerDescriptor,
    code: str,
    verifier: str,
    callback_port: int,
    http_client: httpx.AsyncClient | None = None,
) -> TokenRecord:
    """Exchange an authorization code for a token record.

    Args:
        descriptor: OAuth server descriptor
        code: Authorization code from the callback
        verifier: PKCE code verifier generated for this attempt
        callback_port: Port used to build the authorization URL; the redirect
            URI sent here must match it exactly
        http_client: Optional HTTP client

    Returns:
        The issued TokenRecord (a missing refresh token is not an error)

    Raises:
        MissingEndpointError: If no token endpoint is configured
        MissingClientIdError: If no client ID is configured
        TokenExchangeError: If the token endpoint rejects the exchange or is unreachable
    """
    token_endpoint = descriptor.require_token_endpoint()
    client_id = descriptor.require_client_id()

    form: dict[str, str] = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": build_redirect_uri(callback_port),
        "client_id": client_id,
        "code_verifier": verifier,
    }

    # Add client_secret for confidential clients
    if descriptor.is_confidential():
        form["client_secret"] = descriptor.client_secret  # type: ignore[assignment]

    try:
        result = await post_token_request(token_endpoint, form, http_client)
    except httpx.RequestError as e:
        raise TokenExchangeError(
            f"Network error during token exchange: {e}", status=None, body=str(e)
        ) from e

    if isinstance(result, TokenSuccess):
        return result.record

    raise TokenExchangeError(
        f"Token exchange failed ({describe_failure(result)})",
        status=result.status,
        body=result.body,
    )


async def exchange_refresh_token(
    descriptor: OAuthServerDescriptor,
    refresh_token: str,
    http_client: httpx.AsyncClient | None = None,
) -> TokenExchangeResult:
    """Exchange a refresh token at the token endpoint.

    The caller decides what a failed result means; see
    ``TokenLifecycleManager.refresh``.

    Raises:
        MissingEndpointError: If no token endpoint is configured
        MissingClientIdError: If no client ID is configured
        httpx.RequestError: If no response was received
    """
    token_endpoint = descriptor.require_token_endpoint()
    client_id = descriptor.require_client_id()

    form: dict[str, str] = {
        "grant_type": "refresh_token",
        "refresh_token": refresh_token,
        "client_id": client_id,
    }

    if descriptor.is_confidential():
        form["client_secret"] = descriptor.client_secret  # type: ignore[assignment]

    return await post_token_request(token_endpoint, form, http_client)


class OAuthFlow:
    """Orchestrates the interactive authorization code flow for one identity.

    Usage:
        flow = OAuthFlow("notion", descriptor, token_store)
        token = await flow.run()
    """

    def __init__(
        self,
        identity: str,
        descriptor: OAuthServerDescriptor,
        token_store: TokenStore,
        callback_port: int = DEFAULT_CALLBACK_PORT,
        callback_timeout: float = DEFAULT_TIMEOUT,
        open_browser: bool = True,
        on_status: Callable[[str], None] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        """Initialize OAuth flow.

        Args:
            identity: Name the token record is saved under
            descriptor: OAuth server descriptor
            token_store: Token storage instance
            callback_port: Port for the localhost callback listener
            callback_timeout: Seconds to wait for the callback
            open_browser: Try to open the authorization URL in a browser
            on_status: Optional callback for status messages
            http_client: Optional HTTP client for the token exchange
        """
        self.identity = identity
        self.descriptor = descriptor
        self.token_store = token_store
        self.callback_port = callback_port
        self.callback_timeout = callback_timeout
        self.open_browser = open_browser
        self.on_status = on_status or (lambda msg: None)
        self.http_client = http_client

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    def _validate(self) -> None:
        self.descriptor.require_authorization_endpoint()
        self.descriptor.require_token_endpoint()
        self.descriptor.require_client_id()

    async def run(
        self,
        prompt_for_redirect: Callable[[str], str] | None = None,
    ) -> TokenRecord:
        """Execute the complete authorization flow.

        Args:
            prompt_for_redirect: If given, the flow runs in manual mode: no
                listener is opened, the authorization URL is passed to this
                callable, and it must return the redirect URL the user pasted.

        Returns:
            The saved TokenRecord

        Raises:
            MissingEndpointError: If an endpoint is not configured
            MissingClientIdError: If no client ID is configured
            PortInUseError: If the callback port is already bound
            CallbackTimeoutError: If no callback arrives in time
            OAuthProviderError: If the authorization server reports an error
            MalformedCallbackError: If the callback lacks code or state
            StateMismatchError: If the returned state is not ours
            TokenExchangeError: If the code exchange fails
        """
        self._validate()

        pkce = generate_pkce_pair()
        state = generate_state()

        if prompt_for_redirect is not None:
            port = self.callback_port
            auth_url = build_authorization_url(self.descriptor, pkce, state, port)
            self._emit_status("Open this URL in your browser to authenticate:")
            self._emit_status(auth_url)
            # Blocking prompt runs off the event loop
            pasted = await asyncio.to_thread(prompt_for_redirect, auth_url)
            result = parse_redirect_url(pasted)
        else:
            # Listener must be bound before the browser is sent to the provider
            async with LocalhostCallbackServer(
                port=self.callback_port, timeout=self.callback_timeout
            ) as callback_server:
                port = callback_server.port
                auth_url = build_authorization_url(self.descriptor, pkce, state, port)
                self._emit_status(f"Waiting for callback on {callback_server.redirect_uri}")

                opened = False
                if self.open_browser:
                    self._emit_status("Opening browser for authorization...")
                    try:
                        opened = webbrowser.open(auth_url)
                    except webbrowser.Error as e:
                        logger.debug(f"Could not open browser: {e}")
                if not opened:
                    self._emit_status(
                        f"If the browser did not open, visit this URL manually:\n{auth_url}"
                    )

                result = await callback_server.wait_for_callback()

        # Constant-time comparison to prevent timing attacks
        if not hmac.compare_digest(result.state.encode("utf-8"), state.encode("utf-8")):
            raise StateMismatchError(
                "OAuth state mismatch - possible CSRF attack. Please run the authorization again."
            )

        self._emit_status("Exchanging authorization code for token...")
        record = await exchange_code(
            self.descriptor,
            result.code,
            pkce.verifier,
            port,
            http_client=self.http_client,
        )

        saved = self.token_store.save(self.identity, record, self.descriptor.token_path)
        self._emit_status(f"Authentication successful for '{self.identity}'")
        if saved.expires_in:
            minutes = round(saved.expires_in / 60)
            suffix = " (auto-refresh enabled)" if saved.has_refresh_token() else ""
            self._emit_status(f"Token expires in {minutes} minutes{suffix}")

        return saved
