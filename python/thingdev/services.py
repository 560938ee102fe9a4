"""Periodic emulator services (clock updates, music refresh)."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .envelope import CLIENT_APP, DeviceClientType
from .wire import APP_DATA, CLIENT_REQUEST


logger = logging.getLogger(__name__)


class PeriodicService:
    """Runs :meth:`tick` every ``interval`` seconds on a daemon thread."""

    name = "service"

    def __init__(self, bus, interval: float) -> None:
        self.bus = bus
        self.interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        self.stop()
        if self.interval <= 0:
            logger.debug("%s disabled (interval <= 0)", self.name)
            return
        logger.debug("starting %s with %.1fs interval", self.name, self.interval)
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name=f"thingdev-{self.name}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop.set()
        if thread is not threading.current_thread():
            thread.join(timeout=1.0)
        self._thread = None
        logger.debug("%s stopped", self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except Exception:
                logger.exception("%s tick failed", self.name)

    def tick(self) -> None:
        raise NotImplementedError


class TimeService(PeriodicService):
    """Pushes the host clock to the emulated device."""

    name = "time-service"

    def __init__(self, bus, interval: float = 15.0, *, clock: Callable[[], float] = time.time) -> None:
        super().__init__(bus, interval)
        self.clock = clock

    def payload(self) -> Dict[str, Any]:
        now = self.clock()
        offset = time.localtime(now).tm_gmtoff or 0
        # minutes behind UTC, matching Date.getTimezoneOffset()
        return {"utcTime": int(now * 1000), "timezoneOffset": -offset // 60}

    def tick(self) -> None:
        self.bus.publish(
            CLIENT_REQUEST,
            {"type": DeviceClientType.TIME.value, "app": CLIENT_APP, "request": "set", "payload": self.payload()},
        )


class MusicService(PeriodicService):
    """Asks the application to refresh its music data."""

    name = "music-service"

    def tick(self) -> None:
        logger.debug("Refreshing music data...")
        self.bus.notify(APP_DATA, {"type": "get", "request": "refresh"})
