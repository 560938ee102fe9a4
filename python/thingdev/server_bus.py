"""Relay-side message bus.

``publish`` sends a frame to every attached emulator; ``notify`` delivers to
local subscribers only. Frames arriving from emulators are decoded and passed
to ``notify``, so local code never cares whether an event came from a peer or
from inside the relay.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional, Set

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

from .errors import FrameError
from .subscriptions import Callback, SubscriptionRegistry, Unsubscribe
from .wire import decode_frame, encode_frame


logger = logging.getLogger(__name__)


class ServerMessageBus:
    """Pub/sub endpoint bridging local subscribers and websocket peers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 8080,
        *,
        registry: Optional[SubscriptionRegistry] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.registry = registry or SubscriptionRegistry()
        self._server: Optional[Server] = None
        self._thread: Optional[threading.Thread] = None
        self._peers: Set[ServerConnection] = set()
        self._peers_lock = threading.Lock()
        self._on_peer: list[Callable[[str, int], None]] = []

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def subscribe(self, event: str, callback: Callback) -> Unsubscribe:
        return self.registry.subscribe(event, callback)

    def notify(self, event: str, data: Any) -> None:
        self.registry.notify(event, data)

    def publish(self, event: str, data: Any) -> int:
        """Send ``(event, data)`` to every attached peer; returns peers reached."""
        with self._peers_lock:
            peers = list(self._peers)
        if not peers:
            logger.debug("no emulator attached; dropping %s", event)
            return 0
        frame = encode_frame(event, data)
        sent = 0
        for peer in peers:
            try:
                peer.send(frame)
                sent += 1
            except (ConnectionClosed, OSError) as exc:
                logger.debug("peer send failed (%s); detaching", exc)
                self._detach(peer)
        return sent

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def peer_count(self) -> int:
        with self._peers_lock:
            return len(self._peers)

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.socket.getsockname()[1]

    def register_on_peer(self, callback: Callable[[str, int], None]) -> None:
        """``callback(state, peer_count)`` with state ``"attached"``/``"detached"``."""
        self._on_peer.append(callback)

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = serve(self._handle_peer, self.host, self.port)
        self._thread = threading.Thread(target=self._server.serve_forever, name="thingdev-relay", daemon=True)
        self._thread.start()
        logger.info("relay listening on ws://%s:%s", self.host, self.bound_port)

    def stop(self) -> None:
        server = self._server
        if server is None:
            return
        self._server = None
        with self._peers_lock:
            peers = list(self._peers)
            self._peers.clear()
        for peer in peers:
            try:
                peer.close()
            except OSError:
                pass
        server.shutdown()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)
        self._thread = None
        logger.info("relay stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_peer(self, websocket: ServerConnection) -> None:
        with self._peers_lock:
            self._peers.add(websocket)
            count = len(self._peers)
        logger.info("emulator attached (%d connected)", count)
        self._fire_peer("attached", count)
        try:
            for raw in websocket:
                try:
                    event, data = decode_frame(raw)
                except FrameError as exc:
                    logger.warning("dropping undecodable frame: %s", exc)
                    continue
                self.notify(event, data)
        except ConnectionClosed:
            pass
        except Exception:
            logger.exception("emulator reader failed")
        finally:
            self._detach(websocket)

    def _detach(self, websocket: ServerConnection) -> None:
        with self._peers_lock:
            if websocket not in self._peers:
                return
            self._peers.discard(websocket)
            count = len(self._peers)
        logger.info("emulator detached (%d connected)", count)
        self._fire_peer("detached", count)

    def _fire_peer(self, state: str, count: int) -> None:
        for callback in list(self._on_peer):
            try:
                callback(state, count)
            except Exception:
                logger.exception("peer callback failed")
