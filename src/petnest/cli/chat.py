"""CLI: petnest chat, petnest history"""

import asyncio
import json
from typing import Any, Optional

import click
from rich.console import Console

from petnest.chat import ConversationView
from petnest.errors import HistoryLoadFailed, InvalidConversation, Unauthenticated
from petnest.models.conversation import Message
from petnest.transport.socketio import ConnectionState

console = Console()


def _get_client():
    from petnest.cli.main import _get_client
    return _get_client()


def _run(coro):
    from petnest.cli.main import _run
    return _run(coro)


def _name(view: ConversationView, message: Message) -> str:
    if view.user_id and message.sender_id == view.user_id:
        return "You"
    if message.sender and message.sender.username:
        return message.sender.username
    return "User"


def _print_message(view: ConversationView, message: Message) -> None:
    when = message.created_at.astimezone().strftime("%H:%M") if message.created_at else "--:--"
    colour = "magenta" if _name(view, message) == "You" else "green"
    console.print(f"[dim]{when}[/dim] [{colour}]{_name(view, message)}:[/{colour}] {message.text}")
    if view.is_seen(message):
        console.print("[dim]      Seen[/dim]")


async def _open(client: Any, conversation_id: str) -> Optional[ConversationView]:
    try:
        return await client.open_conversation(conversation_id)
    except Unauthenticated:
        console.print("[red]Session expired. Run `petnest auth login` first.[/red]")
    except (InvalidConversation, HistoryLoadFailed) as e:
        console.print(f"[red]{e}[/red]")
    return None


def _prompt() -> Optional[str]:
    try:
        return click.prompt("You", prompt_suffix=": ", default="", show_default=False)
    except (click.Abort, EOFError):
        return None


@click.command("chat")
@click.argument("conversation_id")
def chat_cmd(conversation_id: str):
    """Interactive chat in a conversation."""

    async def _chat():
        client = _get_client()
        try:
            view = await _open(client, conversation_id)
            if view is None:
                return
            peer = view.other_participant()
            peer_name = (peer.username if peer else None) or "Unknown User"
            console.print(f"[bold]{peer_name}[/bold] [dim]({conversation_id})[/dim]")
            if not view.messages:
                console.print("[dim]No messages yet. Start the conversation![/dim]")
            for message in view.messages:
                _print_message(view, message)
            if view.is_self_conversation:
                console.print("[yellow]You can't message yourself. This conversation is read-only.[/yellow]")

            def on_change(kind: str, value: Any) -> None:
                if kind == "message":
                    _print_message(view, value)
                elif kind == "typing" and value:
                    console.print(f"[dim]{peer_name} is typing...[/dim]")
                elif kind == "seen" and view.seen_message is not None:
                    console.print("[dim]      Seen[/dim]")
                elif kind == "connection":
                    if value is ConnectionState.CONNECTED:
                        console.print("[dim]Connected.[/dim]")
                    else:
                        console.print("[red]Connection lost. Trying to reconnect...[/red]")

            view.add_change_handler(on_change)
            console.print("[cyan]Type your message (/quit to exit)[/cyan]\n")
            loop = asyncio.get_running_loop()
            while True:
                line = await loop.run_in_executor(None, _prompt)
                if line is None or line.strip().lower() in ("/quit", "/exit"):
                    break
                if not line.strip():
                    continue
                if not view.send(line):
                    if view.is_self_conversation:
                        console.print("[yellow]This conversation is read-only.[/yellow]")
                    else:
                        console.print("[red]Not connected; message not sent.[/red]")
        finally:
            await client.close()

    _run(_chat())


@click.command("history")
@click.argument("conversation_id")
@click.option("--json-output", "--json", is_flag=True)
def history_cmd(conversation_id: str, json_output: bool):
    """Print a conversation's message history."""

    async def _history():
        client = _get_client()
        try:
            view = await _open(client, conversation_id)
            if view is None:
                return
            if json_output:
                click.echo(json.dumps([m.model_dump(mode="json") for m in view.messages], indent=2))
                return
            for message in view.messages:
                _print_message(view, message)
        finally:
            await client.close()

    _run(_history())
