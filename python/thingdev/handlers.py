"""Handler table for envelopes sent by the application process.

Dispatch is two-level: the envelope ``type`` selects a :class:`HandlerGroup`
(one per :class:`~thingdev.envelope.SendType`), and the ``request`` selects a
handler inside that group. A miss at either level falls through to that
level's default handler, which logs and does nothing. Handler exceptions stop
at :meth:`HandlerTable.dispatch`; the envelope is dropped and the relay keeps
going.
"""

from __future__ import annotations

import logging
import threading
import webbrowser
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import MockData
from .envelope import Envelope, LogLevel, SendType, describe_payload, parse_envelope
from .logger import app_log
from .record import ApplicationRecord, normalize_keys
from .wire import APP_DATA, CLIENT_REQUEST, SERVER_DATA


logger = logging.getLogger(__name__)

HandlerFunction = Callable[[str, Envelope], None]
Scheduler = Callable[[float, Callable[[], None]], Any]

DEFAULT_APP = "testapp"
INPUT_PLACEHOLDER = "arbData"


@dataclass
class HandlerGroup:
    default: HandlerFunction
    handlers: Dict[str, HandlerFunction] = field(default_factory=dict)

    def resolve(self, request: Optional[str]) -> HandlerFunction:
        return self.handlers.get(request or "default", self.default)


def _start_timer(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


class HandlerTable:
    """Interprets application envelopes against an :class:`ApplicationRecord`.

    ``bus`` is anything with ``notify(event, data)`` and
    ``publish(event, data)``; responses for the application go out through
    ``notify("app:data", ...)`` and traffic for the emulated device through
    ``publish("client:request", ...)``.
    """

    def __init__(
        self,
        bus,
        record: Optional[ApplicationRecord] = None,
        *,
        mock_data: Optional[MockData] = None,
        settings_delay: float = 0.5,
        opener: Optional[Callable[[str], Any]] = None,
        scheduler: Optional[Scheduler] = None,
        default_app: str = DEFAULT_APP,
    ) -> None:
        self.bus = bus
        self.record = record if record is not None else ApplicationRecord()
        self.mock_data = mock_data or MockData()
        self.settings_delay = settings_delay
        self.default_app = default_app
        self._opener = opener or webbrowser.open
        self._scheduler = scheduler or _start_timer
        self._pending: List[Any] = []
        self._pending_lock = threading.Lock()
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._groups = self._build_groups()
        missing = set(SendType) - set(self._groups)
        if missing:
            raise RuntimeError(f"handler table missing groups: {sorted(m.value for m in missing)}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Dispatch every ``server:data`` envelope that reaches the bus."""
        if self._unsubscribe is None:
            self._unsubscribe = self.bus.subscribe(SERVER_DATA, self._on_server_data)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._pending_lock:
            pending, self._pending = self._pending, []
        for timer in pending:
            cancel = getattr(timer, "cancel", None)
            if callable(cancel):
                cancel()

    def _on_server_data(self, message: Any) -> None:
        envelope = parse_envelope(message)
        self.dispatch(envelope.app or self.default_app, envelope)

    def resolve(self, message: Any) -> HandlerFunction:
        envelope = parse_envelope(message)
        send_type = envelope.send_type
        group = self._groups[send_type] if send_type is not None else self._groups[SendType.DEFAULT]
        return group.resolve(envelope.request)

    def dispatch(self, app: str, message: Any) -> bool:
        """Run the handler for ``message``; returns False if the handler raised."""
        envelope = parse_envelope(message)
        handler = self.resolve(envelope)
        try:
            handler(app, envelope)
        except Exception:
            logger.exception(
                "handler failed for app %s type=%s request=%s", app, envelope.type, envelope.request
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Table
    # ------------------------------------------------------------------

    def _build_groups(self) -> Dict[SendType, HandlerGroup]:
        missing = self._request_missing
        unsupported = self._mapping_unsupported
        return {
            SendType.GET: HandlerGroup(
                default=missing,
                handlers={
                    "data": self._get_data,
                    "config": self._get_config,
                    "settings": self._get_settings,
                    "input": self._get_input,
                },
            ),
            SendType.SET: HandlerGroup(
                default=self._set_default,
                handlers={"data": self._set_data, "settings": self._set_settings},
            ),
            SendType.DELETE: HandlerGroup(
                default=missing,
                handlers={"data": self._delete_data, "settings": self._delete_settings},
            ),
            SendType.OPEN: HandlerGroup(default=self._open),
            SendType.SEND: HandlerGroup(default=self._send_to_client),
            SendType.TOAPP: HandlerGroup(default=self._send_to_app),
            SendType.LOG: HandlerGroup(
                default=missing,
                handlers={level.value: self._log for level in LogLevel},
            ),
            SendType.KEY: HandlerGroup(
                default=missing,
                handlers={name: unsupported for name in ("add", "remove", "trigger")},
            ),
            SendType.ACTION: HandlerGroup(
                default=missing,
                handlers={name: unsupported for name in ("add", "remove", "update", "run")},
            ),
            SendType.DEFAULT: HandlerGroup(default=missing),
        }

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _to_app(self, kind: str, payload: Any, request: Optional[str] = None) -> None:
        message: Dict[str, Any] = {"type": kind, "payload": payload}
        if request is not None:
            message["request"] = request
        self.bus.notify(APP_DATA, message)

    def _request_missing(self, app: str, envelope: Envelope) -> None:
        logger.info(
            "App %s sent unknown data type: %s and request: %s, with payload %s",
            app,
            envelope.type or "<none>",
            envelope.request,
            describe_payload(envelope.payload),
        )

    def _mapping_unsupported(self, app: str, envelope: Envelope) -> None:
        logger.error(
            "Mapping data isn't supported in the emulator (%s %s from %s). Received %s",
            envelope.type,
            envelope.request,
            app,
            describe_payload(envelope.payload),
        )

    def _get_data(self, app: str, envelope: Envelope) -> None:
        data = self.record.data
        logger.debug("App %s is requesting data. Returning: %s", app, data)
        self._to_app("data", data)

    def _get_config(self, app: str, envelope: Envelope) -> None:
        self._to_app("config", {})
        logger.warning('%s tried accessing "Config" data type which is deprecated and no longer in use', app)

    def _get_settings(self, app: str, envelope: Envelope) -> None:
        settings = self.record.settings
        logger.debug("App %s is requesting settings. Returning: %s", app, settings)
        self._to_app("settings", settings)

    def _get_input(self, app: str, envelope: Envelope) -> None:
        requested = envelope.payload
        if isinstance(requested, dict):
            keys = list(requested.keys())
        elif isinstance(requested, (list, tuple)):
            keys = [str(item) for item in requested]
        else:
            keys = []
        template = {key: self.mock_data.input.get(key, INPUT_PLACEHOLDER) for key in keys}
        logger.debug("App %s is requesting input. Returning: %s", app, template)
        self._to_app("input", template)

    def _set_data(self, app: str, envelope: Envelope) -> None:
        if not isinstance(envelope.payload, dict):
            logger.info("Cannot set data for %s: payload %s is not an object", app, describe_payload(envelope.payload))
            return
        logger.debug("Simulating adding data %s", envelope.payload)
        self.record.merge_data(envelope.payload)

    def _set_settings(self, app: str, envelope: Envelope) -> None:
        if not isinstance(envelope.payload, dict):
            logger.info(
                "Cannot set settings for %s: payload %s is not an object", app, describe_payload(envelope.payload)
            )
            return
        self._apply_settings(app, envelope.payload)

    def _set_default(self, app: str, envelope: Envelope) -> None:
        payload = envelope.payload
        if not payload:
            return
        if not isinstance(payload, dict):
            logger.info("Cannot set values for %s: payload %s is not an object", app, describe_payload(payload))
            return
        data = dict(payload)
        settings = data.pop("settings", None)
        self.record.merge_data(data)
        if isinstance(settings, dict) and settings:
            self._apply_settings(app, settings)

    def _apply_settings(self, app: str, submitted: Dict[str, Any]) -> None:
        overrides = self.mock_data.settings
        values: Dict[str, Any] = {}
        for setting_id, descriptor in submitted.items():
            if setting_id in overrides:
                mock_value = overrides[setting_id]
                logger.debug("Using mock value %r for setting %s", mock_value, setting_id)
                if isinstance(descriptor, dict):
                    descriptor = {**descriptor, "value": mock_value}
                else:
                    descriptor = mock_value
            values[setting_id] = descriptor
        logger.debug("Simulating adding settings: %s", values)
        merged = self.record.merge_settings(values)
        self._schedule(self.settings_delay, lambda: self._to_app("settings", merged))

    def _schedule(self, delay: float, callback: Callable[[], None]) -> None:
        state: Dict[str, Any] = {"timer": None, "fired": False}

        def fire() -> None:
            with self._pending_lock:
                state["fired"] = True
                if state["timer"] is not None and state["timer"] in self._pending:
                    self._pending.remove(state["timer"])
            try:
                callback()
            except Exception:
                logger.exception("delayed handler callback failed")

        timer = self._scheduler(delay, fire)
        with self._pending_lock:
            if not state["fired"]:
                state["timer"] = timer
                self._pending.append(timer)

    def _delete_data(self, app: str, envelope: Envelope) -> None:
        keys = normalize_keys(envelope.payload)
        if keys is None:
            logger.info(
                "Cannot delete data because %s is not a string or string[]", describe_payload(envelope.payload)
            )
            return
        logger.debug("%s is deleting data: %s", app, keys)
        self.record.remove_data(keys)

    def _delete_settings(self, app: str, envelope: Envelope) -> None:
        keys = normalize_keys(envelope.payload)
        if keys is None:
            logger.info(
                "Cannot delete settings because %s is not a string or string[]", describe_payload(envelope.payload)
            )
            return
        logger.debug("%s is deleting settings: %s", app, keys)
        self.record.remove_settings(keys)

    def _open(self, app: str, envelope: Envelope) -> None:
        url = envelope.payload
        if not isinstance(url, str) or not url:
            logger.info("App %s asked to open %s, which is not a URL", app, describe_payload(url))
            return
        logger.info("Opening %s for %s", url, app)
        thread = threading.Thread(target=self._open_url, args=(url,), name="thingdev-open", daemon=True)
        thread.start()

    def _open_url(self, url: str) -> None:
        try:
            self._opener(url)
        except Exception:
            logger.exception("failed to open %s", url)

    def _send_to_client(self, app: str, envelope: Envelope) -> None:
        inner = envelope.payload
        if not isinstance(inner, dict):
            logger.info("App %s sent %s to the client, which is not an object", app, describe_payload(inner))
            return
        self.bus.publish(
            CLIENT_REQUEST,
            {
                "app": inner.get("app") or app,
                "type": inner.get("type") or "",
                "payload": inner.get("payload", ""),
                "request": inner.get("request") or "",
            },
        )

    def _send_to_app(self, app: str, envelope: Envelope) -> None:
        logger.info("Sent data %s from %s to other app %s", describe_payload(envelope.payload), app, envelope.request)

    def _log(self, app: str, envelope: Envelope) -> None:
        payload = envelope.payload
        if isinstance(payload, dict) and "message" in payload:
            payload = payload["message"]
        app_log(envelope.request, payload, app)
