"""CLI: petnest auth login|status|logout"""

import click
from rich.console import Console

from petnest.errors import AuthError

console = Console()


def _get_client(require_login: bool = True):
    from petnest.cli.main import _get_client
    return _get_client(require_login)


def _run(coro):
    from petnest.cli.main import _run
    return _run(coro)


@click.group()
def auth():
    """Authentication commands."""


@auth.command("login")
def auth_login():
    """Log in with email or username and password."""

    async def _login():
        client = _get_client(require_login=False)
        try:
            identifier = click.prompt("Email or username")
            password = click.prompt("Password", hide_input=True)
            with console.status("Signing in..."):
                result = await client.auth.login(identifier, password)
        except AuthError as e:
            console.print(f"[red]{e}[/red]")
            raise SystemExit(1)
        finally:
            await client.close()
        user = result.get("user") if isinstance(result, dict) else None
        name = (user or {}).get("username") or (user or {}).get("email") or identifier
        console.print(f"[green]Logged in as {name} (ID: {client.user_id})[/green]")
        console.print(f"[dim]Credentials saved to {client.store.path}[/dim]")

    _run(_login())


@auth.command("status")
def auth_status():
    """Show current auth status."""
    client = _get_client(require_login=False)
    pair = client.tokens.current()
    if pair.access_token:
        console.print(f"[green]Logged in[/green] (ID: {client.user_id or 'unknown'})")
    elif pair.refresh_token:
        console.print("[yellow]Access token missing; it will be refreshed on next use.[/yellow]")
    else:
        console.print("[yellow]Not logged in. Run `petnest auth login`.[/yellow]")
    _run(client.close())


@auth.command("logout")
def auth_logout():
    """Sign out and clear saved credentials."""

    async def _logout():
        client = _get_client(require_login=False)
        try:
            await client.auth.logout()
        finally:
            await client.close()
        console.print("[green]Logged out.[/green]")

    _run(_logout())
