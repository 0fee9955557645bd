"""
GhostTerm - Main entry point for the application.

Created by orpheus497

Exit status:
    0  session ended normally
    1  connection failure before the session became active, or a fatal error
    2  the ticket could not be decoded
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import pyperclip
from rich.console import Console
from rich.panel import Panel
from rich.text import Text

from . import __version__
from .config import Config
from .constants import APP_NAME
from .engine import GhostEngine
from .errors import ConfigError, ConnectError, TicketError
from .network import DirectTransport
from .rate_limiter import RateLimiter
from .ui import GhostApp
from .utils import validate_port

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONNECT_FAILED = 1
EXIT_BAD_TICKET = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ghostterm",
        description="GhostTerm - Ephemeral peer-to-peer terminal chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ghostterm host --name Ava                  # Open a room and print its ticket
  ghostterm host --name Ava --cover "hi :)"  # Hide the ticket behind cover text
  ghostterm join --ticket "[Ghost:...]" --name Bo

Nothing is ever written to disk; the conversation is gone when you quit.

Created by orpheus497
        """,
    )

    parser.add_argument("--version", action="version", version=f"{APP_NAME} {__version__}")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Send log records to the Textual devtools console",
    )
    parser.add_argument("--config", type=str, default=None, help="Path to a TOML config file")
    parser.add_argument("--bind", type=str, default=None, help="Address to listen on")
    parser.add_argument(
        "--port", type=int, default=None, help="Port to listen on (default: any free port)"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    host = commands.add_parser("host", help="Open a new room and print its ticket")
    host.add_argument("--name", type=str, default=None, help="Your display name")
    host.add_argument(
        "--cover", type=str, default=None, help="Innocuous text to place before the ticket"
    )

    join = commands.add_parser("join", help="Join a room from a ticket")
    join.add_argument("--ticket", type=str, required=True, help="Ticket text from the host")
    join.add_argument("--name", type=str, default=None, help="Your display name")

    return parser


def configure_logging(debug: bool, level: str = "INFO") -> None:
    """
    Route log records without ever touching the terminal or the disk.

    With --debug records go to the Textual devtools console; otherwise they
    are discarded.
    """
    root = logging.getLogger()
    if debug:
        from textual.logging import TextualHandler

        root.setLevel(logging.DEBUG)
        root.addHandler(TextualHandler())
    else:
        root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
        root.addHandler(logging.NullHandler())


def show_ticket(console: Console, ticket_text: str, copy_to_clipboard: bool = True) -> None:
    console.print(
        Panel(
            Text(ticket_text), title="Your ticket", subtitle="share it with the people you invite"
        )
    )
    if not copy_to_clipboard:
        return
    try:
        pyperclip.copy(ticket_text)
        console.print("[green]Ticket copied to clipboard.[/green]")
    except pyperclip.PyperclipException as e:
        logger.debug(f"Clipboard unavailable: {e}")
        console.print("[dim]Clipboard unavailable; copy the ticket above.[/dim]")


async def run_app(engine: GhostEngine) -> int:
    app = GhostApp(engine)
    try:
        await app.run_async()
    finally:
        await engine.teardown()
    return EXIT_CONNECT_FAILED if app.session_error else EXIT_OK


async def run_host(args, config: Config, transport: DirectTransport, console: Console) -> int:
    engine = GhostEngine(transport, args.name or config.get("ui", "display_name"), config)
    try:
        ticket_text = await engine.host(cover=args.cover)
    except ConnectError as e:
        console.print(f"[red]Could not open the room:[/red] {e.message}")
        await engine.teardown()
        return EXIT_CONNECT_FAILED

    show_ticket(console, ticket_text, bool(config.get("ui", "copy_ticket", True)))
    try:
        await asyncio.to_thread(console.input, "[dim]Press Enter to open the chat...[/dim]")
    except EOFError:
        pass
    return await run_app(engine)


async def run_join(args, config: Config, transport: DirectTransport, console: Console) -> int:
    engine = GhostEngine(transport, args.name or config.get("ui", "display_name"), config)
    try:
        with console.status("Connecting..."):
            await engine.join(args.ticket)
    except TicketError as e:
        console.print(f"[red]Invalid ticket ({e.kind}):[/red] {e.message}")
        await engine.teardown()
        return EXIT_BAD_TICKET
    except ConnectError as e:
        console.print(f"[red]Could not connect:[/red] {e.message}")
        await engine.teardown()
        return EXIT_CONNECT_FAILED

    return await run_app(engine)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for GhostTerm."""
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()

    try:
        config = Config(Path(args.config).expanduser() if args.config else None)
    except ConfigError as e:
        console.print(f"[red]{e}[/red]")
        return EXIT_CONNECT_FAILED

    configure_logging(args.debug, config.get("logging", "level", "INFO"))

    port = args.port if args.port is not None else int(config.get("network", "port"))
    if not validate_port(port):
        parser.error(f"invalid port: {port}")

    transport = DirectTransport(
        bind_host=args.bind or config.get("network", "bind_host"),
        port=port,
        connect_timeout=float(config.get("network", "connect_timeout")),
        send_timeout=float(config.get("network", "send_timeout")),
        rate_limiter=RateLimiter(
            frames_per_second=float(config.get("limits", "frames_per_second")),
            frames_burst=int(config.get("limits", "frames_burst")),
        ),
    )

    runner = run_host if args.command == "host" else run_join
    try:
        return asyncio.run(runner(args, config, transport, console))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
