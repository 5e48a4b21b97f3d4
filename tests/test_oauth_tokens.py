"""Tests for OAuth token data structures."""

import httpx
import pytest

from mcp_oauth_bridge.oauth.tokens import (
    TokenHTTPError,
    TokenProviderError,
    TokenRecord,
    TokenSuccess,
    decode_token_response,
)


class TestTokenRecord:
    """Tests for TokenRecord dataclass."""

    def test_with_expiry_computes_from_expires_in(self) -> None:
        """Test that expires_at is issued-at plus expires_in seconds."""
        record = TokenRecord(access_token="a", expires_in=3600)
        stamped = record.with_expiry(at_ms=1_000)

        assert stamped.expires_at == 1_000 + 3_600_000
        assert record.expires_at is None  # original untouched

    def test_with_expiry_keeps_explicit_expires_at(self) -> None:
        """Test that an explicit expires_at is never recomputed."""
        record = TokenRecord(access_token="a", expires_in=3600, expires_at=42)
        assert record.with_expiry(at_ms=1_000).expires_at == 42

    def test_with_expiry_without_lifetime(self) -> None:
        """Test that a record without expires_in stays non-expiring."""
        record = TokenRecord(access_token="a")
        assert record.with_expiry(at_ms=1_000).expires_at is None

    def test_auth_header_is_always_capitalised_bearer(self) -> None:
        record = TokenRecord(access_token="abc", token_type="bearer")
        assert record.get_auth_header() == "Bearer abc"

    def test_has_refresh_token(self) -> None:
        assert TokenRecord(access_token="a", refresh_token="r").has_refresh_token()
        assert not TokenRecord(access_token="a").has_refresh_token()
        assert not TokenRecord(access_token="a", refresh_token="").has_refresh_token()

    def test_expires_in_ms(self) -> None:
        record = TokenRecord(access_token="a", expires_at=10_000)
        assert record.expires_in_ms(at_ms=4_000) == 6_000
        assert TokenRecord(access_token="a").expires_in_ms(at_ms=4_000) is None

    def test_to_dict_omits_absent_fields(self) -> None:
        data = TokenRecord(access_token="a").to_dict()
        assert data == {"access_token": "a", "token_type": "Bearer"}

    def test_dict_round_trip(self) -> None:
        record = TokenRecord(
            access_token="a",
            refresh_token="r",
            expires_in=60,
            expires_at=123,
            scope="read write",
        )
        assert TokenRecord.from_dict(record.to_dict()) == record

    def test_from_dict_missing_access_token(self) -> None:
        with pytest.raises(KeyError):
            TokenRecord.from_dict({"token_type": "Bearer"})

    def test_from_dict_defaults_token_type(self) -> None:
        record = TokenRecord.from_dict({"access_token": "a", "token_type": None})
        assert record.token_type == "Bearer"


class TestDecodeTokenResponse:
    """Tests for decoding token endpoint responses."""

    def test_success(self) -> None:
        response = httpx.Response(
            200,
            json={
                "access_token": "new",
                "token_type": "Bearer",
                "expires_in": 3600,
                "refresh_token": "r2",
                "scope": "read",
            },
        )
        result = decode_token_response(response)

        assert isinstance(result, TokenSuccess)
        assert result.record.access_token == "new"
        assert result.record.refresh_token == "r2"
        assert result.record.expires_in == 3600
        assert result.record.expires_at is None

    def test_http_error_with_oauth_fields(self) -> None:
        response = httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token revoked"}
        )
        result = decode_token_response(response)

        assert isinstance(result, TokenHTTPError)
        assert result.status == 400
        assert result.error == "invalid_grant"
        assert "invalid_grant" in result.summary()
        assert "Token revoked" in result.summary()

    def test_http_error_with_non_json_body(self) -> None:
        response = httpx.Response(502, text="<html>Bad gateway</html>")
        result = decode_token_response(response)

        assert isinstance(result, TokenHTTPError)
        assert result.status == 502
        assert result.body == "<html>Bad gateway</html>"
        assert result.error is None
        assert result.summary() == "HTTP 502"

    def test_provider_error_on_2xx(self) -> None:
        """Test that some providers report errors with a 200 status."""
        response = httpx.Response(200, json={"error": "bad_verification_code"})
        result = decode_token_response(response)

        assert isinstance(result, TokenProviderError)
        assert result.error == "bad_verification_code"
        assert result.status == 200

    def test_missing_access_token(self) -> None:
        response = httpx.Response(200, json={"token_type": "Bearer"})
        result = decode_token_response(response)

        assert isinstance(result, TokenProviderError)
        assert result.error == "invalid_token_response"

    def test_non_object_json(self) -> None:
        response = httpx.Response(200, json=["not", "an", "object"])
        assert isinstance(decode_token_response(response), TokenProviderError)
