"""Emulator-side message bus with reconnect and an outbound queue.

Connection lifecycle::

    Disconnected --initialize()--> Connecting --open--> Connected
         ^                             |                    |
         +-------- close / refused ----+--------------------+

Frames published while not ``Connected`` are queued and drained strictly in
order on the ``Connected`` transition. Every close schedules exactly one
reconnect attempt after ``reconnect_delay`` seconds, replacing any attempt
that is already scheduled.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, List, Optional, Tuple

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import connect as ws_connect

from .errors import FrameError
from .subscriptions import Callback, SubscriptionRegistry, Unsubscribe
from .wire import decode_frame, encode_frame


logger = logging.getLogger(__name__)

Connector = Callable[[str], Any]

DEFAULT_URL = "ws://localhost:8080"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def _default_connector(url: str):
    return ws_connect(url, open_timeout=5.0)


class ClientMessageBus:
    """Pub/sub endpoint for an emulator connected to the relay."""

    def __init__(
        self,
        url: str = DEFAULT_URL,
        *,
        reconnect_delay: float = 5.0,
        connector: Optional[Connector] = None,
        registry: Optional[SubscriptionRegistry] = None,
    ) -> None:
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.registry = registry or SubscriptionRegistry()
        self._connector = connector or _default_connector
        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._conn: Any = None
        self._generation = 0
        self._closed_generation = -1
        self._queue: Deque[Tuple[str, Any]] = deque()
        self._reconnect_timer: Optional[threading.Timer] = None
        self._shutdown = False
        self._on_state: List[Callable[[ConnectionState], None]] = []

    # ------------------------------------------------------------------
    # Pub/sub
    # ------------------------------------------------------------------

    def subscribe(self, event: str, callback: Callback) -> Unsubscribe:
        return self.registry.subscribe(event, callback)

    def notify(self, event: str, data: Any) -> None:
        self.registry.notify(event, data)

    def publish(self, event: str, data: Any) -> bool:
        """Send now if connected, otherwise queue; returns True if sent now."""
        failed_generation: Optional[int] = None
        with self._lock:
            if self._state is not ConnectionState.CONNECTED or self._conn is None:
                self._queue.append((event, data))
                logger.debug("transport not open; queued %s (%d pending)", event, len(self._queue))
                return False
            try:
                self._conn.send(encode_frame(event, data))
                return True
            except (ConnectionClosed, OSError) as exc:
                logger.warning("send failed (%s); queueing %s", exc, event)
                self._queue.append((event, data))
                failed_generation = self._generation
        self._handle_close(failed_generation)
        return False

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        with self._lock:
            return self._state

    @property
    def pending(self) -> List[Tuple[str, Any]]:
        with self._lock:
            return list(self._queue)

    def register_on_state(self, callback: Callable[[ConnectionState], None]) -> None:
        self._on_state.append(callback)

    def initialize(self, url: Optional[str] = None) -> None:
        """(Re)connect, closing any stale connection first."""
        with self._lock:
            if url:
                self.url = url
            self._shutdown = False
            self._cancel_reconnect()
            stale = self._conn
            self._conn = None
            self._generation += 1
            generation = self._generation
            self._set_state(ConnectionState.CONNECTING)
        if stale is not None:
            self._close_quietly(stale)
        thread = threading.Thread(
            target=self._connect, args=(generation,), name="thingdev-client-connect", daemon=True
        )
        thread.start()

    def close(self) -> None:
        """Close for good: no reconnect is scheduled afterwards."""
        with self._lock:
            self._shutdown = True
            self._cancel_reconnect()
            conn = self._conn
            self._conn = None
            self._generation += 1
            self._set_state(ConnectionState.DISCONNECTED)
        if conn is not None:
            self._close_quietly(conn)

    def _connect(self, generation: int) -> None:
        try:
            conn = self._connector(self.url)
        except (OSError, WebSocketException, TimeoutError) as exc:
            logger.warning("connection to %s failed: %s", self.url, exc)
            self._handle_close(generation)
            return
        with self._lock:
            if generation != self._generation or self._shutdown:
                stale = conn
            else:
                stale = None
                self._conn = conn
        if stale is not None:
            self._close_quietly(stale)
            return
        if not self._handle_open(generation):
            return
        reader = threading.Thread(
            target=self._reader_loop, args=(conn, generation), name="thingdev-client-reader", daemon=True
        )
        reader.start()

    def _handle_open(self, generation: int) -> bool:
        failed = False
        with self._lock:
            if generation != self._generation:
                return False
            self._set_state(ConnectionState.CONNECTED)
            logger.info("connected to %s; flushing %d queued message(s)", self.url, len(self._queue))
            while self._queue:
                event, data = self._queue[0]
                try:
                    self._conn.send(encode_frame(event, data))
                except (ConnectionClosed, OSError) as exc:
                    logger.warning("flush interrupted (%s); %d message(s) kept", exc, len(self._queue))
                    failed = True
                    break
                self._queue.popleft()
        if failed:
            self._handle_close(generation)
            return False
        return True

    def _reader_loop(self, conn: Any, generation: int) -> None:
        try:
            for raw in conn:
                try:
                    event, data = decode_frame(raw)
                except FrameError as exc:
                    logger.warning("dropping undecodable frame: %s", exc)
                    continue
                self.notify(event, data)
        except ConnectionClosed as exc:
            logger.debug("connection closed: %s", exc)
        except OSError as exc:
            logger.error("transport error: %s", exc)
        except Exception:
            logger.exception("client reader failed")
        finally:
            self._handle_close(generation)

    def _handle_close(self, generation: Optional[int]) -> None:
        with self._lock:
            if generation != self._generation or self._closed_generation == generation:
                return
            self._closed_generation = generation
            conn = self._conn
            self._conn = None
            self._set_state(ConnectionState.DISCONNECTED)
            if not self._shutdown:
                self._schedule_reconnect()
        if conn is not None:
            self._close_quietly(conn)

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        logger.info("reconnecting to %s in %.1fs", self.url, self.reconnect_delay)
        timer = threading.Timer(self.reconnect_delay, lambda: self._reconnect(timer))
        timer.daemon = True
        self._reconnect_timer = timer
        timer.start()

    def _cancel_reconnect(self) -> None:
        timer = self._reconnect_timer
        self._reconnect_timer = None
        if timer is not None:
            timer.cancel()

    def _reconnect(self, timer: threading.Timer) -> None:
        with self._lock:
            # a replaced timer that already fired must not connect twice
            if self._shutdown or self._reconnect_timer is not timer:
                return
            self._reconnect_timer = None
        self.initialize()

    def _set_state(self, state: ConnectionState) -> None:
        if self._state is state:
            return
        self._state = state
        for callback in list(self._on_state):
            try:
                callback(state)
            except Exception:
                logger.exception("state callback failed")

    @staticmethod
    def _close_quietly(conn: Any) -> None:
        try:
            conn.close()
        except (OSError, WebSocketException):
            pass
