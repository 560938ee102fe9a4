"""Emulator-side routing between the relay transport and the embedded UI.

Traffic arriving from the relay on ``client:request`` may update local
emulator state (song, settings, clock, app list, manifest) and is then always
forwarded to the UI. Traffic arriving from the UI is either answered locally
(``app == "client"``) or stamped with the active application id and the
session id and published to the relay as ``app:data``.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Dict, List, Optional, TextIO

from .client_bus import ClientMessageBus
from .config import DevConfig
from .envelope import CLIENT_APP, UI_SOURCE, DeviceClientType, Envelope, parse_envelope
from .logger import app_log, configure_logging
from .sample_data import sample_apps, sample_song
from .wire import APP_DATA, CLIENT_REQUEST, CLIENT_RESPONSE


logger = logging.getLogger(__name__)

UNKNOWN_APP_ID = "unknownId"
CLIENT_NAME = "deskthing-client"
EMULATOR_LOGGERS = ("thingdev.router", "thingdev.client_bus")

UiSink = Callable[[Dict[str, Any]], None]
ResponseCallback = Callable[[Any], None]


@dataclass
class EmulatorState:
    song: Dict[str, Any] = field(default_factory=sample_song)
    settings: Dict[str, Any] = field(default_factory=dict)
    apps: List[Dict[str, Any]] = field(default_factory=sample_apps)
    manifest: Optional[Dict[str, Any]] = None
    time: Optional[Dict[str, Any]] = None
    client_id: str = field(default_factory=lambda: uuid.uuid4().hex)


class ClientService:
    """Request/response helpers on top of a :class:`ClientMessageBus`.

    One callback is kept per response type; a newer request replaces the
    callback of an older one that has not been answered yet.
    """

    def __init__(self, bus: ClientMessageBus) -> None:
        self.bus = bus
        self._callbacks: Dict[str, ResponseCallback] = {}
        self._lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(CLIENT_RESPONSE, self._on_response)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def request_server_data(self, callback: ResponseCallback) -> None:
        self._request("data", "getData", callback)

    def request_manifest(self, callback: ResponseCallback) -> None:
        self._request("manifest", "getManifest", callback)

    def request_settings(self, callback: ResponseCallback) -> None:
        self._request("settings", "getSettings", callback)

    def send_to_server(self, message: Dict[str, Any]) -> None:
        self.bus.publish(CLIENT_REQUEST, message)

    def send_to_app(self, message: Dict[str, Any]) -> None:
        self.bus.publish(APP_DATA, message)

    def _request(self, response_type: str, request_type: str, callback: ResponseCallback) -> None:
        with self._lock:
            self._callbacks[response_type] = callback
        self.bus.publish(CLIENT_REQUEST, {"type": request_type})

    def _on_response(self, data: Any) -> None:
        if not isinstance(data, dict):
            logger.debug("ignoring response %r", data)
            return
        with self._lock:
            callback = self._callbacks.get(data.get("type"))
        if callback is None:
            logger.debug("no callback for %s response", data.get("type"))
            return
        callback(data.get("payload"))


class MessageRouter:
    def __init__(
        self,
        bus: ClientMessageBus,
        post_to_ui: UiSink,
        *,
        service: Optional[ClientService] = None,
        state: Optional[EmulatorState] = None,
        ui_origin: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        remote_logging: bool = False,
    ) -> None:
        self.bus = bus
        self.post_to_ui = post_to_ui
        self.service = service or ClientService(bus)
        self.state = state or EmulatorState()
        self.ui_origin = ui_origin
        self.clock = clock
        self.remote_logging = remote_logging
        self._awaiting_manifest = False
        self._held: Deque[Envelope] = deque()
        self._lock = threading.RLock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._get_handlers: Dict[str, Callable[[Envelope], None]] = {
            DeviceClientType.MUSIC.value: self._get_music,
            DeviceClientType.SONG.value: self._get_music,
            DeviceClientType.SETTINGS.value: self._get_settings,
            DeviceClientType.APPS.value: self._get_apps,
            DeviceClientType.MANIFEST.value: self._get_manifest,
        }

    def attach(self) -> None:
        self.service.attach()
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(CLIENT_REQUEST, self.handle_transport)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.service.detach()

    @property
    def active_app_id(self) -> str:
        with self._lock:
            manifest = self.state.manifest
        if isinstance(manifest, dict) and manifest.get("id"):
            return str(manifest["id"])
        return UNKNOWN_APP_ID

    def set_manifest(self, manifest: Any) -> None:
        with self._lock:
            self.state.manifest = manifest if isinstance(manifest, dict) else None
            self._awaiting_manifest = False
            held = list(self._held)
            self._held.clear()
            if held:
                logger.debug("manifest arrived; sending %d held message(s)", len(held))
            for envelope in held:
                self._send_to_app(envelope)

    def await_manifest(self) -> None:
        """Hold UI messages for the application until :meth:`set_manifest` runs."""
        with self._lock:
            self._awaiting_manifest = True

    # ------------------------------------------------------------------
    # Relay -> UI
    # ------------------------------------------------------------------

    def handle_transport(self, data: Any) -> None:
        logger.debug("Received message from server: %s", data)
        if isinstance(data, dict) and data.get("app") == CLIENT_APP:
            self._apply_device_update(data)
        self.send_to_ui(data)

    def send_to_ui(self, message: Any) -> None:
        if isinstance(message, Envelope):
            message = message.to_dict()
        if not isinstance(message, dict):
            message = {"payload": message}
        outgoing = dict(message)
        outgoing["source"] = UI_SOURCE
        self.post_to_ui(outgoing)

    def _apply_device_update(self, data: Dict[str, Any]) -> None:
        kind = data.get("type")
        payload = data.get("payload")
        with self._lock:
            if kind in (DeviceClientType.MUSIC.value, DeviceClientType.SONG.value):
                if isinstance(payload, dict):
                    self.state.song.update(payload)
            elif kind == DeviceClientType.SETTINGS.value:
                if isinstance(payload, dict):
                    self.state.settings = payload
            elif kind == DeviceClientType.TIME.value:
                if isinstance(payload, dict):
                    self.state.time = payload
            elif kind == DeviceClientType.APPS.value:
                if isinstance(payload, list):
                    self.state.apps = payload
            elif kind == DeviceClientType.MANIFEST.value:
                self.set_manifest(payload)

    # ------------------------------------------------------------------
    # UI -> emulator / relay
    # ------------------------------------------------------------------

    def handle_ui(self, message: Any, origin: Optional[str] = None) -> bool:
        """Route one message from the embedded UI; False if it was rejected."""
        if self.ui_origin is not None and origin != self.ui_origin:
            logger.debug("ignoring UI message from origin %r", origin)
            return False
        envelope = parse_envelope(message)
        if envelope.for_device:
            self._handle_device_request(envelope)
        else:
            self._send_to_app(envelope)
        return True

    def _handle_device_request(self, envelope: Envelope) -> None:
        kind = envelope.type
        if kind == "get":
            handler = self._get_handlers.get(envelope.request or "")
            if handler is None:
                logger.debug("Unknown request type: %s", envelope.request)
                return
            handler(envelope)
        elif kind == "log":
            self._log(envelope)
        elif kind in ("key", "action"):
            logger.debug("Handling %s %s", kind, envelope.request)
            self._send_to_app(replace(envelope, app=None))
        else:
            logger.debug("Unknown or unsupported request type: %s", kind)

    def _get_music(self, envelope: Envelope) -> None:
        self.service.send_to_app({"type": "get", "request": "song", "app": self.active_app_id})
        with self._lock:
            song = dict(self.state.song)
        self.send_to_ui({"type": DeviceClientType.MUSIC.value, "app": CLIENT_APP, "payload": song})

    def _get_settings(self, envelope: Envelope) -> None:
        def deliver(settings: Any) -> None:
            with self._lock:
                if isinstance(settings, dict):
                    self.state.settings = settings
            self.send_to_ui({"type": DeviceClientType.SETTINGS.value, "app": CLIENT_APP, "payload": settings})

        self.service.request_settings(deliver)

    def _get_apps(self, envelope: Envelope) -> None:
        with self._lock:
            apps = list(self.state.apps)
        self.send_to_ui({"type": DeviceClientType.APPS.value, "app": CLIENT_APP, "payload": apps})

    def _get_manifest(self, envelope: Envelope) -> None:
        def deliver(manifest: Any) -> None:
            self.set_manifest(manifest)
            self.send_to_ui({"type": DeviceClientType.MANIFEST.value, "app": CLIENT_APP, "payload": manifest})

        self.service.request_manifest(deliver)

    def _log(self, envelope: Envelope) -> None:
        payload = envelope.payload
        if isinstance(payload, dict):
            message = payload.get("message", "")
            extra = payload.get("data") or []
            if extra:
                message = " ".join(str(part) for part in [message, *extra])
        else:
            message = payload
        level = envelope.request or "log"
        app_log(level, message, app=CLIENT_APP)
        if self.remote_logging:
            self.service.send_to_server({"type": "log", "request": level, "payload": message, "app": CLIENT_APP})

    def _send_to_app(self, envelope: Envelope) -> None:
        with self._lock:
            if self._awaiting_manifest:
                self._held.append(envelope)
                return
            stamped = envelope.stamped(app=self.active_app_id, client_id=self.state.client_id)
            logger.debug("Sending data to server: %s %s", stamped.type, stamped.request)
            self.service.send_to_app(stamped.to_dict())

    # ------------------------------------------------------------------
    # UI lifecycle
    # ------------------------------------------------------------------

    def ui_loaded(self) -> None:
        status = self._client_status(True, self.active_app_id)
        for request in ("connected", "opened"):
            self._send_status(request, status)

    def ui_failed(self) -> None:
        status = self._client_status(False, None)
        for request in ("disconnected", "closed"):
            self._send_status(request, status)

    def _client_status(self, connected: bool, current_app: Optional[str]) -> Dict[str, Any]:
        return {
            "id": CLIENT_NAME,
            "connectionId": self.state.client_id,
            "connected": connected,
            "timestamp": int(self.clock() * 1000),
            "currentApp": current_app,
        }

    def _send_status(self, request: str, status: Dict[str, Any]) -> None:
        self.service.send_to_app(
            {"type": DeviceClientType.CLIENT_STATUS.value, "request": request, "payload": dict(status)}
        )


class Emulator:
    """Client bus, client service and router wired for one emulator session."""

    def __init__(
        self,
        post_to_ui: UiSink,
        config: Optional[DevConfig] = None,
        *,
        bus: Optional[ClientMessageBus] = None,
        state: Optional[EmulatorState] = None,
    ) -> None:
        self.config = config or DevConfig()
        client = self.config.client
        self.bus = bus or ClientMessageBus(client.link_url, reconnect_delay=client.reconnect_delay_ms / 1000.0)
        self.service = ClientService(self.bus)
        self.router = MessageRouter(
            self.bus,
            post_to_ui,
            service=self.service,
            state=state,
            ui_origin=client.ui_origin,
            remote_logging=client.logging.enable_remote_logging,
        )

    def configure_logging(self, stream: Optional[TextIO] = None) -> None:
        """Apply the client logging level and prefix to the emulator loggers."""
        settings = self.config.client.logging
        for name in EMULATOR_LOGGERS:
            configure_logging(settings.level, settings.prefix, stream=stream, name=name)

    def start(self) -> None:
        logger.info("Initializing the wrapper...")
        self.router.attach()
        self.router.await_manifest()
        self.bus.initialize()
        self.service.request_manifest(self.router.set_manifest)

    def stop(self) -> None:
        self.router.detach()
        self.bus.close()
