"""Token lifecycle manager for the OAuth bridge.

This module is the sole authority on whether a stored token is usable. It
handles expiry evaluation, refresh token exchange with rotation, and the
lookup performed before every authorized call.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

import httpx

from .descriptor import OAuthServerDescriptor
from .errors import NoRefreshTokenError, NoTokenError, RefreshFailedError
from .flow import OAuthFlow, describe_failure, exchange_refresh_token
from .store import TokenStore, TokenStoreError
from .tokens import TokenRecord, TokenSuccess, now_ms

logger = logging.getLogger(__name__)

# Tolerates clock skew and request latency so a token is never presented
# to upstream already expired
EXPIRY_BUFFER = timedelta(minutes=5)


def _format_timedelta(td: timedelta) -> str:
    """Format a timedelta into a human-readable string.

    Examples:
        - "45 minutes"
        - "2 hours"
        - "3 days"
    """
    total_seconds = int(td.total_seconds())

    if total_seconds < 0:
        return "Expired"

    if total_seconds < 60:
        return f"{total_seconds} seconds"

    minutes = total_seconds // 60
    if minutes < 60:
        return f"{minutes} minute{'s' if minutes != 1 else ''}"

    hours = minutes // 60
    if hours < 24:
        return f"{hours} hour{'s' if hours != 1 else ''}"

    days = hours // 24
    return f"{days} day{'s' if days != 1 else ''}"


@dataclass
class AuthStatus:
    """Token status for one identity, without secrets.

    Attributes:
        identity: The identity name
        authenticated: Whether a token record is stored
        expired: Whether the token is expired (within the refresh buffer)
        expires_at: Expiry as epoch milliseconds, None if non-expiring
        expires_in_human: Human-readable time until expiry
        has_refresh_token: Whether a refresh token is available
        scope: Granted scopes
        error: Any error reading the record
    """

    identity: str
    authenticated: bool = False
    expired: bool = False
    expires_at: int | None = None
    expires_in_human: str | None = None
    has_refresh_token: bool = False
    scope: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {
            "identity": self.identity,
            "authenticated": self.authenticated,
            "expired": self.expired,
            "expires_at": self.expires_at,
            "expires_in_human": self.expires_in_human,
            "has_refresh_token": self.has_refresh_token,
            "scope": self.scope,
            "error": self.error,
        }


class TokenLifecycleManager:
    """Manages token validity and refresh for registered identities.

    ``get_valid_token`` is the entry point used before every authorized call.
    Concurrent calls for the same identity that find the token expired share
    one in-flight refresh instead of each calling the token endpoint.

    Usage:
        manager = TokenLifecycleManager(TokenStore(tokens_dir))
        token = await manager.get_valid_token("notion", descriptor)
        headers = {"Authorization": token.get_auth_header()}
    """

    def __init__(
        self,
        store: TokenStore,
        buffer: timedelta = EXPIRY_BUFFER,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the manager.

        Args:
            store: Token storage
            buffer: Refresh this long before the actual expiry
            http_client: Optional HTTP client for token endpoint calls
            clock: Returns the current time as epoch milliseconds
        """
        self.store = store
        self.buffer = buffer
        self.http_client = http_client
        self.clock = clock
        self._refreshing: dict[str, asyncio.Task[TokenRecord]] = {}

    def is_expired(self, record: TokenRecord) -> bool:
        """Check whether a record must be refreshed before use.

        A record without ``expires_at`` never expires: some providers omit
        lifetime information, and upstream answers 401 if it is really stale.
        """
        if record.expires_at is None:
            return False

        remaining_ms = record.expires_at - self.clock()
        return remaining_ms < self.buffer.total_seconds() * 1000

    def load(self, identity: str, descriptor: OAuthServerDescriptor) -> TokenRecord | None:
        """Load the stored record for an identity."""
        return self.store.load(identity, descriptor.token_path)

    async def refresh(self, identity: str, descriptor: OAuthServerDescriptor) -> TokenRecord:
        """Exchange the stored refresh token for a new access token.

        If the response omits a refresh token the previous one is kept;
        providers that rotate send a replacement, which wins. The rest of the
        response always overwrites the stored record, and ``expires_at`` is
        recomputed from the new ``expires_in`` at save time.

        Raises:
            NoRefreshTokenError: If no record or no refresh token is stored
            MissingEndpointError: If no token endpoint is configured
            MissingClientIdError: If no client ID is configured
            RefreshFailedError: If the token endpoint rejects the refresh
        """
        current = self.load(identity, descriptor)
        if current is None or not current.has_refresh_token():
            raise NoRefreshTokenError(
                f"No refresh token stored for {identity}. "
                f"Please re-authenticate: mcp-oauth-bridge auth {identity}"
            )

        logger.info(f"Refreshing token for {identity}")

        try:
            result = await exchange_refresh_token(
                descriptor,
                current.refresh_token,  # type: ignore[arg-type]
                http_client=self.http_client,
            )
        except httpx.RequestError as e:
            raise RefreshFailedError(
                f"Network error refreshing token for {identity}: {e}. "
                f"Please re-authenticate: mcp-oauth-bridge auth {identity}",
                status=None,
                body=str(e),
            ) from e

        if not isinstance(result, TokenSuccess):
            logger.warning(f"Token refresh failed for {identity}: {describe_failure(result)}")
            raise RefreshFailedError(
                f"Token refresh failed for {identity} ({describe_failure(result)}). "
                f"Please re-authenticate: mcp-oauth-bridge auth {identity}",
                status=result.status,
                body=result.body,
            )

        issued = result.record
        if not issued.has_refresh_token():
            issued.refresh_token = current.refresh_token
            logger.debug(f"Provider did not rotate the refresh token for {identity}")

        # expires_at always derives from the new expires_in
        issued.expires_at = None
        saved = self.store.save(
            identity, issued.with_expiry(self.clock()), descriptor.token_path
        )
        logger.info(f"Token refreshed for {identity}")
        return saved

    async def get_valid_token(
        self, identity: str, descriptor: OAuthServerDescriptor
    ) -> TokenRecord:
        """Return a usable token for an identity, refreshing it if needed.

        Raises:
            NoTokenError: If no record is stored
            NoRefreshTokenError: If the token expired and cannot be refreshed
            RefreshFailedError: If the refresh was rejected
            MissingEndpointError: If a refresh is needed but no token endpoint is configured
            MissingClientIdError: If a refresh is needed but no client ID is configured
        """
        record = self.load(identity, descriptor)
        if record is None:
            raise NoTokenError(
                f"No token found for {identity}. Run: mcp-oauth-bridge auth {identity}"
            )

        if not self.is_expired(record):
            return record

        logger.debug(f"Token for {identity} is expired or about to expire")

        task = self._refreshing.get(identity)
        if task is None:
            task = asyncio.ensure_future(self.refresh(identity, descriptor))
            self._refreshing[identity] = task
            task.add_done_callback(lambda t: self._release(identity, t))

        # Shielded so a cancelled waiter does not abort the shared refresh
        return await asyncio.shield(task)

    def _release(self, identity: str, task: "asyncio.Task[TokenRecord]") -> None:
        if self._refreshing.get(identity) is task:
            del self._refreshing[identity]
        # Mark the exception retrieved; waiters already received it
        if not task.cancelled():
            task.exception()

    async def authenticate(
        self,
        identity: str,
        descriptor: OAuthServerDescriptor,
        callback_port: int,
        callback_timeout: float,
        open_browser: bool = True,
        on_status: Callable[[str], None] | None = None,
        prompt_for_redirect: Callable[[str], str] | None = None,
    ) -> TokenRecord:
        """Run the interactive authorization flow and store the result.

        This is the recovery path after NoTokenError, NoRefreshTokenError,
        RefreshFailedError or AuthRejectedError.
        """
        flow = OAuthFlow(
            identity=identity,
            descriptor=descriptor,
            token_store=self.store,
            callback_port=callback_port,
            callback_timeout=callback_timeout,
            open_browser=open_browser,
            on_status=on_status,
            http_client=self.http_client,
        )
        return await flow.run(prompt_for_redirect=prompt_for_redirect)

    def get_auth_status(self, identity: str, descriptor: OAuthServerDescriptor) -> AuthStatus:
        """Get token status for an identity (no secrets)."""
        try:
            record = self.load(identity, descriptor)
        except TokenStoreError as e:
            return AuthStatus(identity=identity, error=str(e))

        if record is None:
            return AuthStatus(identity=identity)

        expires_in_human = None
        remaining = record.expires_in_ms(self.clock())
        if remaining is not None:
            expires_in_human = _format_timedelta(timedelta(milliseconds=remaining))

        return AuthStatus(
            identity=identity,
            authenticated=True,
            expired=self.is_expired(record),
            expires_at=record.expires_at,
            expires_in_human=expires_in_human,
            has_refresh_token=record.has_refresh_token(),
            scope=record.scope,
        )

    def logout(self, identity: str, descriptor: OAuthServerDescriptor) -> bool:
        """Delete the stored token for an identity.

        Returns:
            True if a token was deleted, False if none existed
        """
        deleted = self.store.delete(identity, descriptor.token_path)
        if deleted:
            logger.info(f"Logged out {identity}")
        return deleted
