"""Authorized calls to upstream servers.

Wraps an outbound HTTP call with: fetch a valid token, attach it as a Bearer
header, call, and classify the outcome into a typed error. No retries happen
here; retry policy belongs to the caller.
"""

import logging
from typing import Any

import httpx

from .descriptor import OAuthServerDescriptor
from .errors import (
    AuthRejectedError,
    UnexpectedResponseError,
    UnreachableError,
    UpstreamError,
)
from .manager import TokenLifecycleManager

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0  # seconds


class AuthorizedCaller:
    """Performs upstream HTTP calls with a managed Bearer token.

    Usage:
        caller = AuthorizedCaller(manager)
        response = await caller.request("notion", descriptor, "POST", url, json=payload)
    """

    def __init__(
        self,
        manager: TokenLifecycleManager,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.manager = manager
        self.http_client = http_client
        self.timeout = timeout

    async def request(
        self,
        identity: str,
        descriptor: OAuthServerDescriptor,
        method: str,
        url: str,
        *,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Call ``url`` on behalf of ``identity``.

        Args:
            identity: The identity whose token authorizes the call
            descriptor: OAuth server descriptor (used if a refresh is needed)
            method: HTTP method
            url: Upstream URL
            json: Optional JSON body
            headers: Extra request headers

        Returns:
            The 2xx response

        Raises:
            NoTokenError, NoRefreshTokenError, RefreshFailedError: From the
                token lookup; the call is not attempted
            AuthRejectedError: Upstream answered 401 or 403
            UpstreamError: Upstream answered 5xx
            UnreachableError: No response was received
            UnexpectedResponseError: Any other non-2xx status
        """
        token = await self.manager.get_valid_token(identity, descriptor)

        request_headers = {
            "Accept": "application/json, text/event-stream",
            **(headers or {}),
            "Authorization": token.get_auth_header(),
        }

        http = self.http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self.http_client is None

        try:
            response = await http.request(method, url, json=json, headers=request_headers)
        except httpx.RequestError as e:
            raise UnreachableError(
                f"Cannot reach {identity} at {url}: {e}. Is the server running?",
                status=None,
                body=str(e),
            ) from e
        finally:
            if should_close:
                await http.aclose()

        _raise_for_status(identity, response)
        return response

    async def post_json(
        self,
        identity: str,
        descriptor: OAuthServerDescriptor,
        url: str,
        payload: Any,
    ) -> Any:
        """POST a JSON payload and return the decoded JSON response."""
        response = await self.request(identity, descriptor, "POST", url, json=payload)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise UnexpectedResponseError(
                f"{identity} returned a non-JSON response",
                status=response.status_code,
                body=response.text,
            ) from e


def _raise_for_status(identity: str, response: httpx.Response) -> None:
    """Translate a non-2xx response into a typed error."""
    status = response.status_code
    if 200 <= status < 300:
        return

    body = response.text
    logger.debug(f"Upstream {identity} answered HTTP {status}")

    if status in (401, 403):
        reason = "rejected the token" if status == 401 else "denied access"
        raise AuthRejectedError(
            f"{identity} {reason} (HTTP {status}). The token may be invalid, revoked, "
            f"or missing required scopes. Re-authenticate: mcp-oauth-bridge auth {identity}",
            status=status,
            body=body,
        )

    if status >= 500:
        raise UpstreamError(
            f"{identity} returned a server error (HTTP {status})",
            status=status,
            body=body,
        )

    raise UnexpectedResponseError(
        f"{identity} returned an unexpected response (HTTP {status}): {body[:200]}",
        status=status,
        body=body,
    )
