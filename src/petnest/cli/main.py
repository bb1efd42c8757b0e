"""
PetNest CLI: `petnest` command.

Commands:
  petnest auth login                 Sign in with email/username and password
  petnest auth status|logout
  petnest chat <conversation-id>     Interactive chat
  petnest history <conversation-id>  Print message history
"""

import asyncio
import logging
from typing import Optional

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install petnest[cli]")

from petnest import __version__
from petnest.client import AsyncPetNest
from petnest.config import Settings
from petnest.credentials import FileCredentialStore

console = Console()
err_console = Console(stderr=True)


def _settings() -> Settings:
    ctx = click.get_current_context(silent=True)
    settings = ctx.find_root().obj if ctx is not None else None
    return settings if isinstance(settings, Settings) else Settings()


def _store() -> FileCredentialStore:
    return FileCredentialStore(_settings().credentials_file)


def _get_client(require_login: bool = True) -> AsyncPetNest:
    store = _store()
    pair = store.get()
    if require_login and not (pair.access_token or pair.refresh_token):
        console.print("[red]Not logged in. Run `petnest auth login` first.[/red]")
        raise SystemExit(1)
    return AsyncPetNest(_settings(), store=store)


def _run(coro):
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        pass


@click.group()
@click.version_option(__version__)
@click.option("--base-url", default=None, help="Marketplace base URL (default: $PETNEST_BASE_URL)")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
@click.pass_context
def main(ctx: click.Context, base_url: Optional[str], verbose: bool):
    """PetNest CLI: chat with adopters and rehomers from the terminal."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )
    settings = Settings()
    if base_url:
        settings = settings.model_copy(update={"base_url": base_url})
    ctx.obj = settings


# Register subcommands from separate modules
from petnest.cli.auth import auth
from petnest.cli.chat import chat_cmd, history_cmd

main.add_command(auth)
main.add_command(chat_cmd)
main.add_command(history_cmd)


if __name__ == "__main__":
    main()
