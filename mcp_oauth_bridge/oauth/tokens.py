"""OAuth token data structures and utilities.

This module provides the TokenRecord dataclass persisted per identity, and
the TokenExchangeResult union that token endpoint responses are decoded into
exactly once, at the HTTP boundary.
"""

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Union

import httpx

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass
class TokenRecord:
    """OAuth token record for one identity.

    Attributes:
        access_token: The access token string
        token_type: Token type (typically "Bearer")
        refresh_token: Optional refresh token for obtaining new access tokens
        expires_in: Lifetime in seconds as reported at issuance
        expires_at: Absolute expiry as epoch milliseconds. Once set it is
            the only value consulted for expiry checks.
        scope: Space-separated list of granted scopes
    """

    access_token: str
    token_type: str = "Bearer"
    refresh_token: str | None = None
    expires_in: int | None = None
    expires_at: int | None = None
    scope: str | None = None

    def has_refresh_token(self) -> bool:
        """Check if this record has a refresh token."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def with_expiry(self, at_ms: int | None = None) -> "TokenRecord":
        """Return a copy with ``expires_at`` computed from ``expires_in``.

        A record that already has ``expires_at`` is returned unchanged, even
        if ``expires_in`` is also present.
        """
        if self.expires_at is not None or self.expires_in is None:
            return self

        issued = now_ms() if at_ms is None else at_ms
        return replace(self, expires_at=issued + self.expires_in * 1000)

    def expires_in_ms(self, at_ms: int | None = None) -> int | None:
        """Milliseconds until expiry, or None if the record never expires."""
        if self.expires_at is None:
            return None
        return self.expires_at - (now_ms() if at_ms is None else at_ms)

    def get_auth_header(self) -> str:
        """Get the Authorization header value for this token."""
        # Always "Bearer" per RFC 6750; some providers return lowercase
        return f"Bearer {self.access_token}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dictionary for storage."""
        data: dict[str, Any] = {
            "access_token": self.access_token,
            "token_type": self.token_type,
        }

        if self.refresh_token:
            data["refresh_token"] = self.refresh_token

        if self.expires_in is not None:
            data["expires_in"] = self.expires_in

        if self.expires_at is not None:
            data["expires_at"] = self.expires_at

        if self.scope:
            data["scope"] = self.scope

        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenRecord":
        """Deserialize from storage or a token endpoint payload.

        Raises:
            KeyError: If ``access_token`` is missing
            ValueError: If a numeric field is not a number
        """
        expires_in = data.get("expires_in")
        expires_at = data.get("expires_at")

        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type") or "Bearer",
            refresh_token=data.get("refresh_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
            expires_at=int(expires_at) if expires_at is not None else None,
            scope=data.get("scope"),
        )


# Token endpoint responses


@dataclass
class TokenSuccess:
    """The token endpoint issued a token."""

    record: TokenRecord


@dataclass
class TokenProviderError:
    """The token endpoint answered 2xx but reported an OAuth error.

    Also used when a 2xx payload carries no access token.
    """

    error: str
    error_description: str | None
    status: int
    body: str


@dataclass
class TokenHTTPError:
    """The token endpoint answered with a non-2xx status."""

    status: int
    body: str
    error: str | None = None
    error_description: str | None = None

    def summary(self) -> str:
        """Short description using the OAuth error fields when present."""
        if self.error:
            detail = f": {self.error}"
            if self.error_description:
                detail += f" - {self.error_description}"
            return f"HTTP {self.status}{detail}"
        return f"HTTP {self.status}"


TokenExchangeResult = Union[TokenSuccess, TokenProviderError, TokenHTTPError]


def decode_token_response(response: httpx.Response) -> TokenExchangeResult:
    """Decode a token endpoint response into a TokenExchangeResult.

    Args:
        response: The raw HTTP response from the token endpoint

    Returns:
        TokenSuccess, TokenProviderError, or TokenHTTPError
    """
    body = response.text

    try:
        payload = response.json()
    except (json.JSONDecodeError, ValueError):
        payload = None

    if not isinstance(payload, dict):
        payload = {}

    if not response.is_success:
        return TokenHTTPError(
            status=response.status_code,
            body=body,
            error=payload.get("error"),
            error_description=payload.get("error_description"),
        )

    if "error" in payload:
        return TokenProviderError(
            error=str(payload["error"]),
            error_description=payload.get("error_description"),
            status=response.status_code,
            body=body,
        )

    try:
        record = TokenRecord.from_dict(payload)
    except (KeyError, TypeError, ValueError):
        logger.debug("Token endpoint response has no usable access_token")
        return TokenProviderError(
            error="invalid_token_response",
            error_description="Response did not contain an access_token",
            status=response.status_code,
            body=body,
        )

    return TokenSuccess(record=record)
