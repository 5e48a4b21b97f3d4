"""Localhost callback listener for OAuth redirects.

This module provides a one-shot HTTP listener that captures the OAuth
authorization redirect. It:
- Binds a caller-chosen port on localhost (no automatic fallback port)
- Answers only ``/callback``; other paths get 404 and are ignored
- Closes itself after the first meaningful callback, success or failure
- Returns a user-friendly HTML page to the browser

The listener is a small state machine:
IDLE -> LISTENING -> COMPLETED | FAILED | TIMED_OUT

For environments without a local browser, ``parse_redirect_url`` accepts the
redirect URL pasted by the user and applies the same validation.
"""

import asyncio
import errno
import html
import logging
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

from .errors import (
    CallbackError,
    CallbackTimeoutError,
    MalformedCallbackError,
    OAuthProviderError,
    PortInUseError,
)
from .pkce import CALLBACK_PATH, build_redirect_uri

logger = logging.getLogger(__name__)

DEFAULT_CALLBACK_PORT = 8080

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 300  # seconds

# How long a connected client gets to send its request line and headers
REQUEST_READ_TIMEOUT = 10  # seconds

# Grace period for in-flight responses when the listener is stopped
SHUTDOWN_GRACE = 1.0  # seconds

# Windows reports a bound port with its own errno
_ADDR_IN_USE = {errno.EADDRINUSE, 10048}


class CallbackState(Enum):
    """Lifecycle of a callback listener."""

    IDLE = "idle"
    LISTENING = "listening"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (CallbackState.COMPLETED, CallbackState.FAILED, CallbackState.TIMED_OUT)


@dataclass(frozen=True)
class CallbackResult:
    """Authorization code and state captured from a redirect."""

    code: str
    state: str


SUCCESS_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authentication successful</title>
    <style>
        body { font-family: -apple-system, 'Segoe UI', sans-serif; text-align: center; padding: 60px; color: #1a1a1a; }
        h1 { color: #2e7d32; }
        p { color: #555; }
    </style>
</head>
<body>
    <h1>Authentication successful</h1>
    <p>You can close this tab and return to the terminal.</p>
</body>
</html>"""

ERROR_HTML = """<!DOCTYPE html>
<html>
<head>
    <title>Authentication failed</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', sans-serif; text-align: center; padding: 60px; color: #1a1a1a; }}
        h1 {{ color: #c0392b; }}
        p {{ color: #555; }}
        code {{ background: #fee; padding: 8px 12px; border-radius: 6px; color: #c0392b; }}
    </style>
</head>
<body>
    <h1>Authentication failed</h1>
    <p><code>{error}: {description}</code></p>
    <p>Return to the terminal and run the authorization again.</p>
</body>
</html>"""

MALFORMED_HTML = """<!DOCTYPE html>
<html>
<head><title>Invalid callback</title></head>
<body style="font-family: sans-serif; text-align: center; padding: 60px">
    <h1>Missing code or state</h1>
    <p>The authorization server did not return the expected parameters.</p>
</body>
</html>"""


def _first(params: dict[str, list[str]], name: str) -> str | None:
    """First non-empty value of a query parameter."""
    values = params.get(name, [])
    return values[0] if values and values[0] else None


def _classify(params: dict[str, list[str]]) -> CallbackResult:
    """Validate redirect query parameters.

    Raises:
        OAuthProviderError: If the redirect carries ``error``
        MalformedCallbackError: If ``code`` or ``state`` is missing
    """
    error = _first(params, "error")
    if error:
        raise OAuthProviderError(error, _first(params, "error_description"))

    code = _first(params, "code")
    state = _first(params, "state")
    if code is None or state is None:
        raise MalformedCallbackError(
            "OAuth callback is missing the code or state parameter"
        )

    return CallbackResult(code=code, state=state)


def parse_redirect_url(url: str) -> CallbackResult:
    """Parse a redirect URL pasted by the user.

    Same validation as the listener, without opening a socket.

    Args:
        url: The full redirect URL from the browser address bar

    Returns:
        CallbackResult with code and state

    Raises:
        OAuthProviderError: If the redirect carries an error
        MalformedCallbackError: If the URL has no code or state
    """
    parsed = urlparse(url.strip())
    if not parsed.query:
        raise MalformedCallbackError(
            "Could not parse code or state from the pasted URL"
        )
    return _classify(parse_qs(parsed.query))


class LocalhostCallbackServer:
    """One-shot HTTP listener for OAuth callbacks.

    Usage:
        async with LocalhostCallbackServer(port=8080) as server:
            # Open browser with authorization URL using server.redirect_uri
            result = await server.wait_for_callback()

    The listening socket is released on every exit path: success, provider
    error, malformed callback, timeout, or an exception in the caller.
    """

    def __init__(
        self,
        port: int = DEFAULT_CALLBACK_PORT,
        timeout: float = DEFAULT_TIMEOUT,
        host: str = "127.0.0.1",
        path: str = CALLBACK_PATH,
    ):
        """Initialize callback listener.

        Args:
            port: Port to bind; 0 lets the OS choose (useful in tests)
            timeout: Seconds to wait for the callback
            host: Interface to bind
            path: URL path that carries the callback
        """
        self.port = port
        self.timeout = timeout
        self.host = host
        self.path = path
        self.redirect_uri = build_redirect_uri(port)
        self.state = CallbackState.IDLE

        self._server: asyncio.Server | None = None
        self._done: asyncio.Event | None = None
        self._result: CallbackResult | None = None
        self._error: CallbackError | None = None
        self._handlers: set[asyncio.Task[Any]] = set()

    async def start(self) -> str:
        """Bind the listener.

        Returns:
            The redirect URI to use in the authorization request

        Raises:
            PortInUseError: If the port is already bound
        """
        if self.state is not CallbackState.IDLE:
            raise CallbackError(f"Callback server cannot start from state {self.state.value}")

        self._done = asyncio.Event()

        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            self.state = CallbackState.FAILED
            if e.errno in _ADDR_IN_USE:
                raise PortInUseError(self.port) from e
            raise CallbackError(f"Failed to start callback server on port {self.port}: {e}") from e

        sockets = self._server.sockets
        if sockets:
            self.port = sockets[0].getsockname()[1]
        self.redirect_uri = build_redirect_uri(self.port)
        self.state = CallbackState.LISTENING

        logger.debug(f"Callback server listening on {self.host}:{self.port}")
        return self.redirect_uri

    async def stop(self) -> None:
        """Release the listener and wait for in-flight responses."""
        if self.state is CallbackState.LISTENING:
            self._finish(
                CallbackState.FAILED, error=CallbackError("Callback server stopped")
            )

        if self._server is None:
            return

        self._server.close()

        pending = {t for t in self._handlers if not t.done()}
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=SHUTDOWN_GRACE)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)

        await self._server.wait_closed()
        self._server = None
        logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackResult:
        """Wait for the OAuth callback.

        Returns:
            CallbackResult with the authorization code and state

        Raises:
            CallbackTimeoutError: If no callback arrives within the timeout
            OAuthProviderError: If the redirect carried an error
            MalformedCallbackError: If code or state was missing
        """
        if self._done is None:
            raise CallbackError("Callback server not started")

        try:
            await asyncio.wait_for(self._done.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._finish(
                CallbackState.TIMED_OUT,
                error=CallbackTimeoutError(
                    f"Timed out waiting for OAuth callback after {self.timeout:g} seconds. "
                    f"Run the authorization again."
                ),
            )

        if self._error is not None:
            raise self._error
        if self._result is None:
            raise CallbackError("No callback result received")
        return self._result

    def _finish(
        self,
        state: CallbackState,
        result: CallbackResult | None = None,
        error: CallbackError | None = None,
    ) -> None:
        """Enter a terminal state and stop accepting connections."""
        if self.state.is_terminal:
            return

        self.state = state
        self._result = result
        self._error = error

        if self._server is not None:
            self._server.close()
        if self._done is not None:
            self._done.set()

        logger.debug(f"Callback server finished: {state.value}")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one incoming HTTP connection."""
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)

        try:
            request_line = await asyncio.wait_for(reader.readline(), REQUEST_READ_TIMEOUT)
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Consume headers
            while True:
                header_line = await asyncio.wait_for(reader.readline(), REQUEST_READ_TIMEOUT)
                if header_line in (b"\r\n", b"\n", b""):
                    break

            parsed = urlparse(target)

            if parsed.path != self.path or self.state.is_terminal:
                # Favicon requests and stray probes do not complete the flow
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            try:
                result = _classify(parse_qs(parsed.query))
            except OAuthProviderError as e:
                # HTML-escape provider text to prevent XSS
                page = ERROR_HTML.format(
                    error=html.escape(e.error),
                    description=html.escape(e.error_description or "No description provided"),
                )
                await self._send_html_response(writer, HTTPStatus.BAD_REQUEST, page)
                self._finish(CallbackState.FAILED, error=e)
                return
            except MalformedCallbackError as e:
                await self._send_html_response(writer, HTTPStatus.BAD_REQUEST, MALFORMED_HTML)
                self._finish(CallbackState.FAILED, error=e)
                return

            await self._send_html_response(writer, HTTPStatus.OK, SUCCESS_HTML)
            self._finish(CallbackState.COMPLETED, result=result)

        except asyncio.TimeoutError:
            logger.debug("Callback connection sent no request in time")
        except ValueError:
            # Request line or header over the stream limit
            logger.debug("Callback request too large")
            try:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Request too large")
            except ConnectionError as e:
                logger.debug(f"Callback connection dropped: {e}")
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug(f"Callback connection dropped: {e}")

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            if task is not None:
                self._handlers.discard(task)

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain; charset=utf-8\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.stop()
