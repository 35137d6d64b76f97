"""termbridge CLI — command-line interface."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from termbridge import __version__

app = typer.Typer(
    name="termbridge",
    help="Drive an interactive AI coding CLI from the browser.",
    no_args_is_help=True,
    add_completion=False,
)

console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def version_callback(value: bool):
    if value:
        console.print(f"[bold cyan]termbridge[/bold cyan] v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
):
    """Drive an interactive AI coding CLI from the browser."""
    pass


# ── Serve Command ───────────────────────────────────────────


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Server port."),
    host: Optional[str] = typer.Option(None, "--host", help="Bind address."),
    command: Optional[str] = typer.Option(
        None, "--command", "-c", help="CLI to wrap (default from config: claude)."
    ),
    pipe: bool = typer.Option(
        False, "--pipe", help="Use plain pipes instead of a pseudo-terminal."
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Debug logging."),
):
    """Start the web server."""
    import uvicorn

    from termbridge.config import load_config
    from termbridge.server.app import create_app
    from termbridge.session.transport import pty_available

    _setup_logging(verbose)
    config = load_config()
    if port is not None:
        config.server.port = port
    if host is not None:
        config.server.host = host
    if command is not None:
        config.agent.command = command
    if pipe:
        config.agent.prefer_pty = False

    mode = "pty" if config.agent.prefer_pty and pty_available() else "pipe"
    console.print("\n[bold cyan]⚡ termbridge[/bold cyan]")
    console.print(f"  [dim]URL:     http://{config.server.host}:{config.server.port}[/dim]")
    console.print(f"  [dim]WS:      ws://{config.server.host}:{config.server.port}/ws[/dim]")
    console.print(f"  [dim]Agent:   {config.agent.command} ({mode})[/dim]")
    console.print()

    uvicorn.run(
        create_app(config),
        host=config.server.host,
        port=config.server.port,
        log_level="debug" if verbose else "warning",
    )


# ── Parse Command ───────────────────────────────────────────


@app.command()
def parse(
    path: Path = typer.Argument(
        ..., exists=True, dir_okay=False, help="Raw terminal capture to parse."
    ),
    as_json: bool = typer.Option(False, "--json", help="Print messages as JSON."),
    chunk_size: int = typer.Option(
        4096, "--chunk-size", min=1, help="Feed the parser this many bytes at a time."
    ),
):
    """Rebuild the conversation from a recorded terminal session."""
    from termbridge.parser.rules import load_rules
    from termbridge.parser.stream import StreamParser

    parser = StreamParser(load_rules())
    with open(path, "rb") as f:
        while chunk := f.read(chunk_size):
            parser.feed(chunk)
    parser.flush_buffer()

    if as_json:
        console.print_json(data=[m.model_dump(mode="json") for m in parser.messages])
        return

    table = Table(title=f"Conversation — {path.name}")
    table.add_column("#", style="dim")
    table.add_column("Role", style="cyan")
    table.add_column("Tool", style="yellow")
    table.add_column("Content")

    for i, message in enumerate(parser.messages, 1):
        tool = ""
        if message.tool_name:
            status = message.tool_status.value if message.tool_status else ""
            tool = f"{message.tool_name} [dim]{status}[/dim]"
        table.add_row(str(i), message.role.value, tool, message.content)

    console.print(table)


# ── Config Commands ─────────────────────────────────────────


config_app = typer.Typer(help="Manage termbridge configuration.")
app.add_typer(config_app, name="config")


@config_app.command("init")
def config_init():
    """Create default configuration files."""
    from termbridge.config import (
        CONFIG_FILE,
        USER_PATTERNS_FILE,
        ensure_dirs,
        save_default_config,
    )

    ensure_dirs()

    if CONFIG_FILE.exists():
        console.print(f"[yellow]Config already exists:[/yellow] {CONFIG_FILE}")
    else:
        path = save_default_config()
        console.print(f"[green]✓[/green] Created config: {path}")

    if not USER_PATTERNS_FILE.exists():
        example = (
            "# termbridge — extra conversation markers\n"
            "# Patterns are appended to the built-in ones; rule order never changes.\n"
            "#\n"
            "# markers:\n"
            "#   user_prompt:\n"
            "#     - '^\\s*you>\\s+(?P<text>\\S.*)$'\n"
            "#   tool_call:\n"
            "#     - '^\\s*Running (?P<name>\\w+)\\((?P<args>.*)\\)$'\n"
            "#   tool_result: ['Done:']\n"
            "#   system: ['^\\s*Note:']\n"
            "#\n"
            "# tool_error: ['Traceback']\n"
        )
        USER_PATTERNS_FILE.write_text(example)
        console.print(f"[green]✓[/green] Created patterns: {USER_PATTERNS_FILE}")
    else:
        console.print(
            f"[yellow]Patterns already exists:[/yellow] {USER_PATTERNS_FILE}"
        )


@config_app.command("show")
def config_show():
    """Show current configuration."""
    from termbridge.config import load_config

    config = load_config()
    console.print_json(data=config.model_dump())


if __name__ == "__main__":
    app()
