"""Envelope model and message vocabulary for thingdev."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


JsonDict = Dict[str, Any]

CLIENT_APP = "client"
UI_SOURCE = "deskthing"


class SendType(str, Enum):
    """Envelope ``type`` values an application process may send."""

    DEFAULT = "default"
    GET = "get"
    SET = "set"
    DELETE = "delete"
    OPEN = "open"
    SEND = "send"
    TOAPP = "toApp"
    LOG = "log"
    KEY = "key"
    ACTION = "action"


class LogLevel(str, Enum):
    MESSAGE = "message"
    LOG = "log"
    WARN = "warning"
    ERROR = "error"
    DEBUG = "debugging"
    FATAL = "fatal"


class DeviceClientType(str, Enum):
    """Envelope ``type`` values the relay pushes to the emulated device."""

    MUSIC = "music"
    SONG = "song"
    SETTINGS = "settings"
    APPS = "apps"
    MANIFEST = "manifest"
    TIME = "time"
    CLIENT_STATUS = "client_status"


def _coerce_enum(enum_cls, value: Any):
    try:
        return enum_cls(value)
    except ValueError:
        return None


@dataclass
class Envelope:
    type: str = ""
    request: Optional[str] = None
    payload: Any = None
    app: Optional[str] = None
    client_id: Optional[str] = None
    extra: JsonDict = field(default_factory=dict)

    @property
    def send_type(self) -> Optional[SendType]:
        return _coerce_enum(SendType, self.type)

    @property
    def for_device(self) -> bool:
        return self.app == CLIENT_APP

    def to_dict(self) -> JsonDict:
        message: JsonDict = dict(self.extra)
        message["type"] = self.type
        if self.request is not None:
            message["request"] = self.request
        if self.payload is not None:
            message["payload"] = self.payload
        if self.app is not None:
            message["app"] = self.app
        if self.client_id is not None:
            message["clientId"] = self.client_id
        return message

    def stamped(self, app: Optional[str] = None, client_id: Optional[str] = None) -> "Envelope":
        """Copy with ``app``/``clientId`` filled in where the original is blank."""
        return Envelope(
            type=self.type,
            request=self.request,
            payload=self.payload,
            app=self.app or app,
            client_id=self.client_id or client_id,
            extra=dict(self.extra),
        )


_KNOWN_KEYS = {"type", "request", "payload", "app", "clientId"}


def parse_envelope(message: Any) -> Envelope:
    """Convert a raw message dictionary into an :class:`Envelope`.

    Anything that is not a mapping becomes an envelope with an empty type so
    that it still reaches the default handler.
    """

    if isinstance(message, Envelope):
        return message
    if not isinstance(message, dict):
        return Envelope(payload=message)
    request = message.get("request")
    app = message.get("app")
    client_id = message.get("clientId")
    return Envelope(
        type=str(message.get("type") or ""),
        request=str(request) if request is not None else None,
        payload=message.get("payload"),
        app=str(app) if app is not None else None,
        client_id=str(client_id) if client_id is not None else None,
        extra={key: value for key, value in message.items() if key not in _KNOWN_KEYS},
    )


def describe_payload(payload: Any, limit: int = 1000) -> str:
    """Short printable form of a payload for log lines."""
    if payload is None:
        return "undefined"
    text = repr(payload)
    if len(text) > limit:
        return "[Large Payload]"
    return text
