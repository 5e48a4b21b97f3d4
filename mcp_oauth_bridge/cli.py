"""CLI entry point for the MCP OAuth bridge."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .config import ConfigError, ConfigManager, ServerConfig
from .oauth import (
    AuthorizedCaller,
    OAuthBridgeError,
    OAuthServerDescriptor,
    TokenLifecycleManager,
    TokenStoreError,
)
from .oauth.callback import DEFAULT_CALLBACK_PORT, DEFAULT_TIMEOUT
from .oauth.errors import (
    AuthRejectedError,
    CallbackError,
    ConfigurationError,
    TokenLifecycleError,
    UnreachableError,
)
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("mcp_oauth_bridge")


def _help_for(error: Exception, server: str | None) -> str | None:
    """Suggest the next command for a failed operation."""
    if server is None:
        return None
    if isinstance(error, (TokenLifecycleError, AuthRejectedError, TokenStoreError)):
        return f"Run 'mcp-oauth-bridge auth {server}' to authenticate."
    if isinstance(error, ConfigurationError):
        return f"Run 'mcp-oauth-bridge remove {server}' and add it again with the missing options."
    if isinstance(error, CallbackError):
        return "Try 'mcp-oauth-bridge auth --manual' if a local listener cannot be used."
    if isinstance(error, UnreachableError):
        return "Check the server URL with 'mcp-oauth-bridge list'."
    return None


def fail(ctx: click.Context, error: Exception, server: str | None = None) -> NoReturn:
    output: OutputHandler = ctx.obj["output"]
    output.error(error, help_text=_help_for(error, server))


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Config directory (default: $MCP_BRIDGE_HOME or ~/.mcp-bridge)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, config_dir: Path | None, verbose: bool) -> None:
    """MCP OAuth Bridge - OAuth tokens for headless MCP clients."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["config"] = ConfigManager(config_dir)
    ctx.obj["output"] = OutputHandler(json_mode)

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_server(ctx: click.Context, name: str) -> ServerConfig | NoReturn:
    """Look up a registered server, handling errors."""
    config: ConfigManager = ctx.obj["config"]
    try:
        return config.get_server(name)
    except ConfigError as e:
        fail(ctx, e)


def get_manager(ctx: click.Context) -> TokenLifecycleManager:
    config: ConfigManager = ctx.obj["config"]
    return TokenLifecycleManager(config.token_store())


@main.command()
@click.pass_context
def init(ctx: click.Context) -> None:
    """Create the config directory and an empty server registry."""
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]

    try:
        created = config.init()
    except OSError as e:
        fail(ctx, e)

    message = (
        f"Initialized config at {config.config_path}"
        if created
        else f"Config already exists at {config.config_path}"
    )
    output.success({"config_path": str(config.config_path), "created": created}, message)


@main.command()
@click.argument("name")
@click.argument("url")
@click.option("--client-id", help="OAuth client ID")
@click.option("--client-secret", help="OAuth client secret (confidential clients only)")
@click.option("--auth-url", help="Authorization endpoint URL")
@click.option("--token-url", help="Token endpoint URL")
@click.option("--scope", "scopes", multiple=True, help="Scope to request (repeatable)")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    url: str,
    client_id: str | None,
    client_secret: str | None,
    auth_url: str | None,
    token_url: str | None,
    scopes: tuple[str, ...],
) -> None:
    """Register an OAuth-protected server.

    Values may reference environment variables as ${VAR}; they are resolved
    at load time, also from a .env file in the config directory.

    Example: mcp-oauth-bridge add notion https://mcp.notion.com/mcp
    --client-id abc --auth-url https://api.notion.com/v1/oauth/authorize
    --token-url https://api.notion.com/v1/oauth/token
    """
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]

    descriptor = OAuthServerDescriptor(
        authorization_endpoint=auth_url,
        token_endpoint=token_url,
        client_id=client_id,
        client_secret=client_secret,
        scopes=list(scopes),
    )
    try:
        server = config.add_server(name, url, descriptor)
    except (ConfigError, TokenStoreError) as e:
        fail(ctx, e)

    output.success(
        {"name": server.name, "url": server.url},
        f"Added server '{name}'. Next: mcp-oauth-bridge auth {name}",
    )


@main.command()
@click.argument("name")
@click.pass_context
def remove(ctx: click.Context, name: str) -> None:
    """De-register a server and delete its stored token."""
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]

    try:
        config.remove_server(name)
    except (ConfigError, TokenStoreError) as e:
        fail(ctx, e)

    output.success({"name": name, "removed": True}, f"Removed server '{name}'")


@main.command("list")
@click.pass_context
def list_cmd(ctx: click.Context) -> None:
    """List configured servers with their OAuth settings."""
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]

    try:
        servers = config.list_servers()
    except ConfigError as e:
        fail(ctx, e)

    if not servers:
        if ctx.obj["json_mode"]:
            output.success({"servers": []})
        else:
            click.echo("No servers configured. Add one with: mcp-oauth-bridge add NAME URL")
        return

    if ctx.obj["json_mode"]:
        output.success({
            "servers": [
                {
                    "name": s.name,
                    "url": s.url,
                    "client_id": s.oauth.client_id,
                    "confidential": s.oauth.is_confidential(),
                    "scopes": s.oauth.scopes,
                }
                for s in servers
            ]
        })
        return

    click.secho("\nConfigured Servers:\n", bold=True)
    for s in servers:
        click.secho(f"  [{s.name}] ", fg="cyan", nl=False)
        click.echo(s.url)
        if s.oauth.client_id:
            kind = "confidential" if s.oauth.is_confidential() else "public"
            click.echo(f"    Client: {s.oauth.client_id} ({kind})")
        else:
            click.secho("    Client: not configured", fg="yellow")
        if s.oauth.scopes:
            click.echo(f"    Scopes: {' '.join(s.oauth.scopes)}")
    click.echo(f"\nConfig: {config.config_path}")


@main.command()
@click.argument("name")
@click.option(
    "--callback-port",
    default=DEFAULT_CALLBACK_PORT,
    show_default=True,
    type=click.IntRange(0, 65535),
    help="Local port for the OAuth redirect",
)
@click.option("--manual", is_flag=True, help="Paste the redirect URL instead of running a listener")
@click.option(
    "--timeout",
    default=DEFAULT_TIMEOUT,
    show_default=True,
    type=click.IntRange(min=1),
    help="Seconds to wait for the callback",
)
@click.option("--no-browser", is_flag=True, help="Print the authorization URL instead of opening it")
@click.option("--client-id", help="Save a new OAuth client ID before authenticating")
@click.option("--client-secret", help="Save a new OAuth client secret before authenticating")
@click.option("--auth-url", help="Save a new authorization endpoint before authenticating")
@click.option("--token-url", help="Save a new token endpoint before authenticating")
@click.option("--scope", "scopes", multiple=True, help="Replace the saved scopes (repeatable)")
@click.pass_context
def auth(
    ctx: click.Context,
    name: str,
    callback_port: int,
    manual: bool,
    timeout: int,
    no_browser: bool,
    client_id: str | None,
    client_secret: str | None,
    auth_url: str | None,
    token_url: str | None,
    scopes: tuple[str, ...],
) -> None:
    """Authenticate with a server through the browser (PKCE).

    The redirect URI sent to the provider is
    http://localhost:<callback-port>/callback and must be registered with
    the OAuth application. OAuth options given here are saved to the
    server's config first.
    """
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]

    overrides = {
        "client_id": client_id,
        "client_secret": client_secret,
        "authorization_endpoint": auth_url,
        "token_endpoint": token_url,
        "scopes": list(scopes) or None,
    }
    if any(value is not None for value in overrides.values()):
        try:
            config.update_server_oauth(name, **overrides)
        except ConfigError as e:
            fail(ctx, e, name)

    # Re-read so saved overrides go through env resolution
    server = get_server(ctx, name)
    manager = get_manager(ctx)

    def prompt(auth_url: str) -> str:
        return click.prompt("Paste the full redirect URL", err=True)

    try:
        record = asyncio.run(
            manager.authenticate(
                name,
                server.oauth,
                callback_port=callback_port,
                callback_timeout=timeout,
                open_browser=not no_browser,
                on_status=output.status,
                prompt_for_redirect=prompt if manual else None,
            )
        )
    except (OAuthBridgeError, TokenStoreError) as e:
        fail(ctx, e, name)

    output.success(
        {
            "name": name,
            "authenticated": True,
            "expires_at": record.expires_at,
            "has_refresh_token": record.has_refresh_token(),
            "scope": record.scope,
        },
        click.style(f"Authenticated with '{name}'", fg="green"),
    )


@main.command()
@click.argument("name", required=False)
@click.pass_context
def status(ctx: click.Context, name: str | None) -> None:
    """Show token status for one server, or for all servers."""
    output: OutputHandler = ctx.obj["output"]
    config: ConfigManager = ctx.obj["config"]
    manager = get_manager(ctx)

    if name:
        servers = [get_server(ctx, name)]
    else:
        try:
            servers = config.list_servers()
        except ConfigError as e:
            fail(ctx, e)

    statuses = [manager.get_auth_status(s.name, s.oauth) for s in servers]

    if ctx.obj["json_mode"]:
        output.success({"servers": [st.to_dict() for st in statuses]})
        return

    if not statuses:
        click.echo("No servers configured.")
        return

    rows: list[list[str]] = []
    for st in statuses:
        if st.error:
            state = "error"
        elif not st.authenticated:
            state = "not authenticated"
        elif st.expired:
            state = "expired"
        else:
            state = "valid"
        rows.append([
            st.identity,
            state,
            st.expires_in_human or "-",
            "yes" if st.has_refresh_token else "no",
        ])
    output.table(["SERVER", "STATUS", "EXPIRES IN", "REFRESH"], rows)

    for st in statuses:
        if st.error:
            click.secho(f"\n[{st.identity}] {st.error}", fg="red")


@main.command()
@click.argument("name")
@click.pass_context
def refresh(ctx: click.Context, name: str) -> None:
    """Exchange the stored refresh token for a new access token now."""
    output: OutputHandler = ctx.obj["output"]
    server = get_server(ctx, name)
    manager = get_manager(ctx)

    try:
        record = asyncio.run(manager.refresh(name, server.oauth))
    except (OAuthBridgeError, TokenStoreError) as e:
        fail(ctx, e, name)

    st = manager.get_auth_status(name, server.oauth)
    message = f"Token refreshed for '{name}'"
    if st.expires_in_human:
        message += f" (expires in {st.expires_in_human})"
    output.success(
        {"name": name, "expires_at": record.expires_at, "scope": record.scope},
        click.style(message, fg="green"),
    )


@main.command()
@click.argument("name")
@click.pass_context
def logout(ctx: click.Context, name: str) -> None:
    """Delete the stored token for a server."""
    output: OutputHandler = ctx.obj["output"]
    server = get_server(ctx, name)
    manager = get_manager(ctx)

    try:
        deleted = manager.logout(name, server.oauth)
    except OSError as e:
        fail(ctx, e, name)

    message = f"Logged out of '{name}'" if deleted else f"No token stored for '{name}'"
    output.success({"name": name, "deleted": deleted}, message)


@main.command()
@click.argument("name")
@click.argument("payload", required=False)
@click.option("--method", "-X", default="POST", show_default=True, help="HTTP method")
@click.option("--path", default="", help="Path appended to the server URL")
@click.option("--stdin", is_flag=True, help="Read the payload from stdin")
@click.pass_context
def call(
    ctx: click.Context,
    name: str,
    payload: str | None,
    method: str,
    path: str,
    stdin: bool,
) -> None:
    """Make one authorized request to a server.

    PAYLOAD is a JSON document sent as the request body. The stored token is
    refreshed first if it is about to expire.

    Example: mcp-oauth-bridge call notion '{"jsonrpc": "2.0", "id": 1, "method": "tools/list"}'
    """
    output: OutputHandler = ctx.obj["output"]
    server = get_server(ctx, name)

    if stdin:
        payload = sys.stdin.read()

    body: Any = None
    if payload:
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as e:
            output.error(
                e,
                error_type="PayloadParseError",
                help_text="The payload must be valid JSON.",
            )

    url = server.url
    if path:
        url = url.rstrip("/") + "/" + path.lstrip("/")

    caller = AuthorizedCaller(get_manager(ctx))
    logger.debug(f"Calling {name}: {method.upper()} {url}")

    try:
        response = asyncio.run(
            caller.request(name, server.oauth, method.upper(), url, json=body)
        )
    except (OAuthBridgeError, TokenStoreError) as e:
        fail(ctx, e, name)

    try:
        result: Any = response.json() if response.content else None
    except ValueError:
        result = response.text

    output.success({"status": response.status_code, "result": result})
