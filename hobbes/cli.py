"""Terminal driver for Hobbes."""

import asyncio
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from hobbes import __version__
from hobbes.channels import TurnUpdate
from hobbes.client import ChatClient
from hobbes.config import Config, set_config
from hobbes.logging import configure_logging, log
from hobbes.models import Author, PermissionRequestContent, ToolCallContent
from hobbes.session import SessionManager

app = typer.Typer(help="Hobbes - an AI chat client with tool-calling turns")
console = Console()

EXIT_COMMANDS = {"/exit", "/quit"}


def _load_config(config_path: str = "", model: str = "", verbose: bool = False) -> Config:
    if config_path:
        try:
            cfg = Config.from_yaml(Path(config_path))
        except Exception as e:
            log.error("Failed to load config", error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.chat_model = model

    set_config(cfg)
    configure_logging("DEBUG" if verbose else None, settings=cfg.logging)
    return cfg


class TurnRenderer:
    """Prints turn updates as they arrive and asks for tool approvals."""

    def __init__(self, client: ChatClient, out: Console):
        self.client = client
        self.out = out

    async def handle(self, update: TurnUpdate) -> None:
        message = update.message
        if update.kind == "text":
            self.out.print(update.text, end="", markup=False, highlight=False)
        elif update.kind == "message" and message is not None:
            if message.author is Author.USER:
                return
            if isinstance(message.content, ToolCallContent):
                call = message.content.call
                self.out.print(f"\n[dim]-> {call.tool_name} on {call.server_name}[/dim]")
            else:
                self.out.print("\n[bold cyan]hobbes[/bold cyan] ", end="")
                if update.text:
                    self.out.print(update.text, end="", markup=False, highlight=False)
        elif update.kind == "tool_status" and message is not None and message.tool_call is not None:
            call = message.tool_call
            style = "green" if update.text == "Completed" else "red"
            self.out.print(f"\n[{style}]{call.tool_name}: {update.text}[/{style}]")
        elif update.kind == "permission" and message is not None:
            if isinstance(message.content, PermissionRequestContent):
                await self._ask_permission(message.content)

    async def _ask_permission(self, content: PermissionRequestContent) -> None:
        call = content.call
        self.out.print(
            Panel(
                f"[bold]{call.tool_name}[/bold] on [bold]{call.server_name}[/bold]\n{call.arguments}",
                title="Tool approval",
            )
        )
        approved = await asyncio.to_thread(Confirm.ask, "Allow this tool call?", default=False)
        if approved:
            self.client.approve(call.execution_id)
        else:
            self.client.deny(call.execution_id)


async def run_chat(cfg: Config, session_name: str = "") -> None:
    client = ChatClient(cfg)
    session = await client.start(session_name or None)
    console.print(
        Panel(
            f"Session [bold]{session.name}[/bold] ({len(session.messages)} messages)\n"
            f"Model: {cfg.model.chat_model}\n"
            "Type /exit to quit, /new <name> for a new session, /session <id|name|#n> to switch.",
            title=f"Hobbes v{__version__}",
        )
    )
    renderer = TurnRenderer(client, console)
    try:
        while True:
            text = (await asyncio.to_thread(Prompt.ask, "\n[bold]you[/bold]")).strip()
            if not text:
                continue
            if text in EXIT_COMMANDS:
                break
            if text.startswith("/new"):
                name = text[len("/new"):].strip() or cfg.session.default_name
                session = await client.new_session(name)
                console.print(f"[dim]New session {session.name} ({session.id})[/dim]")
                continue
            if text.startswith("/session "):
                try:
                    session = await client.switch_session(text[len("/session "):])
                except Exception as e:
                    console.print(f"[red]{e}[/red]")
                    continue
                console.print(f"[dim]Switched to {session.name} ({session.id})[/dim]")
                continue

            result = await client.send(text, on_update=renderer.handle)
            console.print()
            if result.error:
                log.error("Turn ended with error", error=result.error)
    finally:
        await client.close()


@app.command()
def chat(
    session: str = typer.Option("", "-s", "--session", help="Session name to open"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override chat model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Start an interactive chat."""
    cfg = _load_config(config, model, verbose)
    try:
        asyncio.run(run_chat(cfg, session))
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


async def _list_sessions(cfg: Config, limit: int) -> None:
    manager = SessionManager(cfg.session.path)
    try:
        rows = await manager.list_sessions(limit=limit)
    finally:
        await manager.close()

    table = Table(title="Sessions")
    table.add_column("#", justify="right")
    table.add_column("Name")
    table.add_column("ID")
    table.add_column("Messages", justify="right")
    table.add_column("Updated")
    for index, item in enumerate(rows, start=1):
        table.add_row(str(index), item.name, item.id, str(len(item.messages)), item.updated_at)
    console.print(table)


@app.command()
def sessions(
    limit: int = typer.Option(10, "-n", "--limit", help="How many sessions to list"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List recent sessions."""
    cfg = _load_config(config)
    asyncio.run(_list_sessions(cfg, limit))


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"Hobbes v{__version__}")


def main() -> None:
    app()
