"""Child-side runner for the application under development.

Launched by the supervisor as ``python -m thingdev.app_process``. It loads
the module named by ``$THINGDEV_APP_ENTRY`` and talks to the supervisor with
one JSON object per line: requests arrive on stdin, data and log lines leave
on stdout. ``sys.stdout`` is pointed at stderr before the application is
imported so that ``print`` in application code cannot corrupt the channel.

The application module must define ``start(bridge)``. It may also define
``handle_data(envelope)``, called for every envelope the relay sends it, and
``stop()``, called before the process exits.
"""

from __future__ import annotations

import importlib.util
import os
import signal
import sys
import threading
from pathlib import Path
from types import ModuleType
from typing import Any, Optional, TextIO

from .errors import FrameError
from .wire import APP_DATA, DEFAULT_ENTRY, ENTRY_ENV, SERVER_DATA, SERVER_LOG, decode_line, encode_line


class AppBridge:
    """Handle given to the application for talking back to the relay."""

    def __init__(self, channel: TextIO) -> None:
        self._channel = channel
        self._lock = threading.Lock()

    def _write(self, kind: str, payload: Any) -> None:
        with self._lock:
            self._channel.write(encode_line(kind, payload))
            self._channel.flush()

    def send(self, envelope: Any) -> None:
        """Send an envelope (``{"type", "request", "payload"}``) to the relay."""
        self._write(SERVER_DATA, envelope)

    def log(self, message: str) -> None:
        self._write(SERVER_LOG, str(message))


def load_app(entry: Path) -> ModuleType:
    entry = Path(entry).resolve()
    if not entry.exists():
        raise FileNotFoundError(f"application entry {entry} does not exist")
    sys.path.insert(0, str(entry.parent))
    spec = importlib.util.spec_from_file_location("thingdev_app", entry)
    if spec is None or spec.loader is None:
        raise ImportError(f"cannot load {entry}")
    module = importlib.util.module_from_spec(spec)
    sys.modules["thingdev_app"] = module
    spec.loader.exec_module(module)
    if not callable(getattr(module, "start", None)):
        raise AttributeError(f"{entry} does not define start(bridge)")
    return module


class AppRunner:
    def __init__(self, module: ModuleType, bridge: AppBridge) -> None:
        self.module = module
        self.bridge = bridge
        self._stopped = False

    def start(self) -> None:
        self.module.start(self.bridge)
        self.bridge.log("Application module loaded successfully.")

    def handle_line(self, line: str) -> None:
        try:
            message = decode_line(line)
        except FrameError as exc:
            self.bridge.log(f"Ignoring malformed request: {exc}")
            return
        if message.get("type") != APP_DATA:
            return
        handler = getattr(self.module, "handle_data", None)
        if not callable(handler):
            return
        payload = message.get("payload")
        try:
            handler(payload)
        except Exception as exc:
            self.bridge.log(f"handle_data failed: {exc!r}")
            return
        self.bridge.log(f"Handled request: {payload}")

    def serve(self, stream: TextIO) -> None:
        for line in stream:
            if line.strip():
                self.handle_line(line)
        self.stop()

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        stop = getattr(self.module, "stop", None)
        if callable(stop):
            try:
                stop()
            except Exception as exc:
                self.bridge.log(f"stop failed: {exc!r}")


def main(argv: Optional[list] = None) -> int:
    channel = sys.stdout
    sys.stdout = sys.stderr
    bridge = AppBridge(channel)
    entry = Path(os.environ.get(ENTRY_ENV) or DEFAULT_ENTRY)
    bridge.log(f"Starting up... {entry}")
    try:
        module = load_app(entry)
        runner = AppRunner(module, bridge)
        runner.start()
    except Exception as exc:
        bridge.log(f"Failed to load application: {exc}")
        return 1

    def _on_sigterm(signum, frame):
        runner.stop()
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _on_sigterm)
    runner.serve(sys.stdin)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
