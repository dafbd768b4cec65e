"""Command-line interface for termrelay.

Provides the entry point for running the relay server, minting
development tokens, and attaching the local terminal to a stored
connection through a running relay.
"""

from __future__ import annotations

import argparse
import asyncio
import codecs
import logging
import os
import shutil
import signal
import sys
from datetime import timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

# Ctrl-] detaches from the remote shell, as in telnet
ESCAPE_BYTE = b"\x1d"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="termrelay",
        description="WebSocket relay between terminal clients and remote shells",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/termrelay.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Start the relay server")
    serve_parser.add_argument("--host", type=str, default=None, help="Override server.host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override server.port")

    token_parser = subparsers.add_parser("token", help="Print a signed development token")
    token_parser.add_argument("--user-id", type=int, required=True, help="User the token identifies")
    token_parser.add_argument("--email", type=str, default=None, help="Optional email claim")

    connect_parser = subparsers.add_parser(
        "connect", help="Attach this terminal to a stored connection",
    )
    connect_parser.add_argument("connection_id", type=int, help="Stored connection id")
    connect_parser.add_argument("--token", type=str, required=True, help="Bearer token")
    connect_parser.add_argument("--user-id", type=int, default=None, help="Expected token user")
    connect_parser.add_argument("--client-id", type=str, default=None, help="Stable session key")
    connect_parser.add_argument("--url", type=str, default=None, help="Override client.base_url")
    connect_parser.add_argument(
        "--no-reconnect", action="store_true",
        help="Exit on the first disconnect instead of retrying",
    )

    return parser.parse_args(argv)


def _issue_token(settings, args) -> str:
    from termrelay.auth.tokens import issue_token

    auth = settings.auth
    return issue_token(
        args.user_id,
        auth.jwt_secret.get_secret_value(),
        email=args.email,
        ttl=timedelta(hours=auth.token_ttl_hours),
        issuer=auth.issuer,
        algorithm=auth.algorithm,
    )


async def _connect(settings, args) -> None:
    """Run a raw-mode terminal attached to the relay until detach or disconnect."""
    import termios
    import tty

    from termrelay.client import ReconnectPolicy, Reconnector, TerminalClient

    done = asyncio.Event()
    tasks: set[asyncio.Task] = set()

    def write_out(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    client = TerminalClient(
        base_url=args.url or settings.client.base_url,
        connection_id=args.connection_id,
        token=args.token,
        user_id=args.user_id,
        client_id=args.client_id,
        on_output=write_out,
        on_status=lambda message: write_out(f"\r\n[{message}]\r\n"),
        on_error=lambda message: write_out(f"\r\n[error: {message}]\r\n"),
    )
    reconnector = None
    if not args.no_reconnect:
        reconnector = Reconnector(client, ReconnectPolicy.from_config(settings.client))

    def on_disconnect() -> None:
        if reconnector is None or not reconnector.pending:
            done.set()

    # Registered after the reconnector so its timer is already scheduled
    client.subscribe("disconnect", on_disconnect)

    def spawn(coro) -> None:
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    fd = sys.stdin.fileno()
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def on_stdin() -> None:
        data = os.read(fd, 1024)
        if not data or ESCAPE_BYTE in data:
            done.set()
            return
        spawn(client.send_input(decoder.decode(data)))

    def on_winch() -> None:
        size = shutil.get_terminal_size()
        spawn(client.send_resize(size.columns, size.lines))

    loop = asyncio.get_running_loop()
    saved = termios.tcgetattr(fd)
    # Geometry is recorded now and sent as soon as the socket opens
    size = shutil.get_terminal_size()
    await client.send_resize(size.columns, size.lines)
    try:
        tty.setraw(fd)
        loop.add_reader(fd, on_stdin)
        loop.add_signal_handler(signal.SIGWINCH, on_winch)
        await client.connect()
        await done.wait()
    finally:
        loop.remove_reader(fd)
        loop.remove_signal_handler(signal.SIGWINCH)
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)
        await client.disconnect()
        write_out("\n")


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the termrelay CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from termrelay.config.settings import load_settings
    from termrelay.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        from termrelay.relay.server import create_app
        import uvicorn

        host = args.host or settings.server.host
        port = args.port or settings.server.port
        logger.info("Starting relay on %s:%d", host, port)
        uvicorn.run(create_app(settings), host=host, port=port)

    elif args.command == "token":
        print(_issue_token(settings, args))

    elif args.command == "connect":
        if not sys.stdin.isatty():
            print("connect requires an interactive terminal", file=sys.stderr)
            sys.exit(2)
        logger.info("Attaching to connection %d", args.connection_id)
        asyncio.run(_connect(settings, args))


if __name__ == "__main__":
    main()
