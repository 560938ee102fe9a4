"""thingdev CLI entry point."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from pathlib import Path
from typing import List

from .config import LOGGING_LEVELS, load_config
from .console import DevConsole
from .errors import ConfigError
from .logger import configure_logging
from .relay import DevServer

LOG = logging.getLogger("thingdev.cli")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run an application under the thingdev relay")
    parser.add_argument("--config", type=Path, help="Path to deskthing.config.json (default: <app-dir>/deskthing.config.json)")
    parser.add_argument("--app-dir", type=Path, default=Path.cwd(), help="Application project directory")
    parser.add_argument("--entry", type=Path, help="Application entry module (default: <app-dir>/server/index.py)")
    parser.add_argument("--port", type=int, help="Override the relay websocket port")
    parser.add_argument(
        "--log-level",
        choices=LOGGING_LEVELS,
        default=os.environ.get("THINGDEV_LOG"),
        help="Override the configured logging level",
    )
    parser.add_argument("--no-console", action="store_true", help="Run without the interactive console")
    parser.add_argument(
        "-c",
        "--command",
        help="Execute a single console command after start-up and exit (quote the command string)",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    app_dir = args.app_dir.resolve()
    try:
        config = load_config(args.config, root=app_dir)
    except ConfigError as exc:
        print(f"thingdev: {exc}", file=sys.stderr)
        return 2
    if args.port is not None:
        config.client.link_port = args.port
    if args.log_level:
        config.logging.level = args.log_level
    configure_logging(config.logging.level, config.logging.prefix)
    entry = args.entry.resolve() if args.entry else None
    server = DevServer(config, app_dir, entry=entry)
    try:
        server.start()
    except OSError as exc:
        LOG.error("failed to start relay on port %s: %s", config.client.link_port, exc)
        return 1
    try:
        if args.command:
            return _run_single_command(server, args.command)
        if args.no_console:
            return _wait_forever()
        return DevConsole(server).run()
    except SystemExit as exc:
        return int(exc.code or 0)
    except KeyboardInterrupt:
        print()
        return 0
    finally:
        server.stop()


def _run_single_command(server: DevServer, command_line: str) -> int:
    return DevConsole(server).execute(command_line)


def _wait_forever() -> int:
    LOG.info("relay running; press Ctrl+C to stop")
    stopped = threading.Event()
    while not stopped.wait(1.0):
        pass
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
