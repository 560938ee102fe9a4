"""Wire framing helpers.

Two framings are used:

* websocket frames between the relay and emulators: one JSON object
  ``{"event": name, "data": payload}`` per websocket message;
* the application-process channel: one JSON object
  ``{"type": kind, "payload": value}`` per line on stdin/stdout.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Tuple

from .errors import FrameError


JsonDict = Dict[str, Any]

# supervisor -> application process
APP_DATA = "app:data"
# application process -> supervisor
SERVER_LOG = "server:log"
SERVER_DATA = "server:data"

# relay <-> emulator bus events
CLIENT_REQUEST = "client:request"
CLIENT_RESPONSE = "client:response"

# environment variable naming the application entry module in the child
ENTRY_ENV = "THINGDEV_APP_ENTRY"
DEFAULT_ENTRY = Path("server") / "index.py"


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"), default=str)


def encode_frame(event: str, data: Any) -> str:
    return _json_dumps({"event": event, "data": data})


def decode_frame(raw: Any) -> Tuple[str, Any]:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise FrameError(f"frame is not utf-8: {exc}") from exc
    try:
        message = json.loads(raw)
    except (TypeError, ValueError, RecursionError) as exc:
        raise FrameError(f"frame is not JSON: {exc}") from exc
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        raise FrameError("frame missing 'event'")
    return message["event"], message.get("data")


def encode_line(kind: str, payload: Any) -> str:
    return _json_dumps({"type": kind, "payload": payload}) + "\n"


def decode_line(line: str) -> JsonDict:
    line = line.strip()
    if not line:
        raise FrameError("empty line")
    try:
        message = json.loads(line)
    except (ValueError, RecursionError) as exc:
        raise FrameError(f"line is not JSON: {exc}") from exc
    if not isinstance(message, dict) or not isinstance(message.get("type"), str):
        raise FrameError("line missing 'type'")
    return message
