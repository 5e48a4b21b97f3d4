"""PKCE (Proof Key for Code Exchange) implementation per RFC 7636.

PKCE binds the authorization code to a secret generated for one attempt, so
a stolen code cannot be redeemed by another party. The parameters are
returned as values and threaded explicitly into the code exchange; nothing
here keeps state between calls.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass
from urllib.parse import urlencode

from .descriptor import OAuthServerDescriptor

# Random bytes behind the verifier; 32 bytes gives a 43-character verifier,
# the RFC 7636 minimum length
VERIFIER_BYTES = 32
STATE_BYTES = 16

CHALLENGE_METHOD = "S256"
CALLBACK_PATH = "/callback"


@dataclass(frozen=True)
class PKCEPair:
    """PKCE code verifier and challenge pair.

    The verifier is a cryptographically random string sent in the token request.
    The challenge is a SHA256 hash of the verifier sent in the authorization request.
    """

    verifier: str
    challenge: str
    method: str = CHALLENGE_METHOD


def _b64url(data: bytes) -> str:
    """Base64URL encode without padding (per RFC 7636)."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_code_challenge(verifier: str) -> str:
    """Generate S256 code challenge from verifier.

    Per RFC 7636 Section 4.2:
    code_challenge = BASE64URL(SHA256(code_verifier))
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> PKCEPair:
    """Generate a complete PKCE pair (verifier + challenge).

    Returns:
        PKCEPair with verifier, challenge, and method (always "S256")
    """
    verifier = _b64url(secrets.token_bytes(VERIFIER_BYTES))
    return PKCEPair(verifier=verifier, challenge=generate_code_challenge(verifier))


def generate_state() -> str:
    """Generate a cryptographically random state parameter.

    Returns:
        32-character random hex string
    """
    return secrets.token_hex(STATE_BYTES)


def build_redirect_uri(callback_port: int) -> str:
    """The redirect URI registered for a callback port.

    Must be identical in the authorization request and the code exchange.
    """
    return f"http://localhost:{callback_port}{CALLBACK_PATH}"


def build_authorization_url(
    descriptor: OAuthServerDescriptor,
    pkce: PKCEPair,
    state: str,
    callback_port: int,
) -> str:
    """Build the authorization URL for browser redirect.

    Args:
        descriptor: OAuth server descriptor (authorization endpoint, client id, scopes)
        pkce: PKCE pair for this attempt
        state: State parameter for CSRF protection
        callback_port: Port of the local callback listener

    Returns:
        Complete authorization URL
    """
    params: dict[str, str] = {
        "response_type": "code",
        "client_id": descriptor.client_id or "",
        "redirect_uri": build_redirect_uri(callback_port),
        "state": state,
        "code_challenge": pkce.challenge,
        "code_challenge_method": pkce.method,
    }

    if descriptor.scopes:
        params["scope"] = " ".join(descriptor.scopes)

    return f"{descriptor.authorization_endpoint}?{urlencode(params)}"
