"""Dev relay composition: bus, handler table, supervisor and services."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .config import DevConfig
from .envelope import CLIENT_APP, DeviceClientType
from .errors import ManifestError
from .handlers import HandlerTable
from .logger import app_log
from .manifest import AppManifest, load_manifest
from .record import ApplicationRecord, normalize_keys
from .server_bus import ServerMessageBus
from .services import MusicService, TimeService
from .supervisor import DEFAULT_APP_ID, ChildHandle, ProcessSupervisor, default_spawner
from .watcher import SourceWatcher
from .wire import APP_DATA, CLIENT_REQUEST, CLIENT_RESPONSE, DEFAULT_ENTRY


logger = logging.getLogger(__name__)


class ClientRequestService:
    """Answers requests the emulator sends on ``client:request``."""

    def __init__(
        self,
        bus,
        record: ApplicationRecord,
        manifest_provider: Callable[[], Optional[AppManifest]],
    ) -> None:
        self.bus = bus
        self.record = record
        self.manifest_provider = manifest_provider
        self._unsubscribe: Optional[Callable[[], None]] = None

    def attach(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(CLIENT_REQUEST, self.handle)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def handle(self, data: Any) -> None:
        if not isinstance(data, dict):
            logger.warning("ignoring client request %r", data)
            return
        logger.debug("Received request: %s", data)
        kind = data.get("type")
        if kind == "getData":
            self._respond("data", self.record.data)
        elif kind == "getManifest":
            manifest = self.manifest_provider()
            self._respond("manifest", manifest.to_dict() if manifest else None)
        elif kind == "getSettings":
            self._respond("settings", self.record.settings)
        elif kind == "updateSettings":
            payload = data.get("payload")
            if not isinstance(payload, dict):
                logger.warning("updateSettings payload must be an object, got %r", payload)
                return
            self.push_settings(self.record.merge_settings(payload))
        elif kind == "deleteSettings":
            keys = normalize_keys(data.get("payload"))
            if keys is None:
                logger.warning("deleteSettings payload must be a string or list of strings")
                return
            self.push_settings(self.record.remove_settings(keys))
        elif kind == "log":
            app_log(data.get("request") or "log", data.get("payload"), app=data.get("app") or CLIENT_APP)
        elif kind:
            self._respond(kind, data.get("payload"))

    def push_settings(self, settings: Dict[str, Any]) -> None:
        """Send settings to both the emulated device and the application."""
        self.bus.publish(
            CLIENT_REQUEST,
            {"type": DeviceClientType.SETTINGS.value, "payload": settings, "app": CLIENT_APP},
        )
        self.bus.notify(APP_DATA, {"type": "settings", "payload": settings})

    def _respond(self, kind: str, payload: Any) -> None:
        self.bus.publish(CLIENT_RESPONSE, {"type": kind, "payload": payload})


class DevServer:
    """Everything the relay process runs, wired together."""

    def __init__(
        self,
        config: Optional[DevConfig] = None,
        app_dir: Optional[Path] = None,
        *,
        entry: Optional[Path] = None,
        spawner: Optional[Callable[[], ChildHandle]] = None,
        watcher_factory: Optional[Callable[[Callable[[str], None]], Any]] = None,
        bus: Optional[ServerMessageBus] = None,
    ) -> None:
        self.config = config or DevConfig()
        self.app_dir = Path(app_dir or Path.cwd())
        self.entry = Path(entry) if entry else self.app_dir / DEFAULT_ENTRY
        self.manifest = self._load_manifest()
        self.app_id = self.manifest.id if self.manifest else DEFAULT_APP_ID
        server = self.config.server
        self.record = ApplicationRecord()
        self.bus = bus or ServerMessageBus("localhost", self.config.client.link_port)
        self.handlers = HandlerTable(
            self.bus,
            self.record,
            mock_data=server.mock_data,
            settings_delay=server.settings_delay_ms / 1000.0,
            default_app=self.app_id,
        )
        self.client_requests = ClientRequestService(self.bus, self.record, lambda: self.manifest)
        if watcher_factory is None:
            watch_root = self.entry.parent

            def watcher_factory(callback: Callable[[str], None]) -> SourceWatcher:
                return SourceWatcher(watch_root, callback, suffixes=server.watch_suffixes)

        self.supervisor = ProcessSupervisor(
            self.bus,
            spawner or default_spawner(self.entry, cwd=self.app_dir),
            config=server,
            watcher_factory=watcher_factory,
            app_id=self.app_id,
        )
        self.time_service = TimeService(self.bus, server.time_interval)
        self.music_service = MusicService(self.bus, server.refresh_interval)
        self._started = False
        self._lock = threading.Lock()

    def _load_manifest(self) -> Optional[AppManifest]:
        try:
            manifest = load_manifest(self.app_dir)
        except ManifestError as exc:
            logger.warning("%s; using app id %r", exc, DEFAULT_APP_ID)
            return None
        logger.debug("loaded manifest for %s", manifest.id)
        return manifest

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            logger.debug("Starting server wrapper...")
            self.bus.start()
            self.handlers.attach()
            self.client_requests.attach()
            self.supervisor.start()
            self.time_service.start()
            self.music_service.start()
            self._started = True

    def stop(self) -> None:
        with self._lock:
            if not self._started:
                return
            self.music_service.stop()
            self.time_service.stop()
            self.supervisor.stop()
            self.bus.stop()
            self.client_requests.detach()
            self.handlers.close()
            self._started = False

    def status(self) -> Dict[str, Any]:
        sup = self.supervisor.status()
        return {
            "app": self.app_id,
            "state": sup.state.value,
            "pid": sup.pid,
            "restarts": sup.restarts,
            "crashes": sup.crash_count,
            "peers": self.bus.peer_count,
            "port": self.bus.bound_port or self.bus.port,
        }
