"""Ordered subscription registry shared by the server and client buses."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Tuple


logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class SubscriptionRegistry:
    """Fan-out of event payloads to callbacks in registration order."""

    def __init__(self) -> None:
        self._subs: Dict[str, List[Tuple[int, Callback]]] = {}
        self._lock = threading.Lock()
        self._next_token = 1

    def subscribe(self, event: str, callback: Callback) -> Unsubscribe:
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subs.setdefault(event, []).append((token, callback))

        def unsubscribe() -> None:
            self._remove(event, token)

        return unsubscribe

    def _remove(self, event: str, token: int) -> None:
        with self._lock:
            entries = self._subs.get(event)
            if not entries:
                return
            remaining = [entry for entry in entries if entry[0] != token]
            if remaining:
                self._subs[event] = remaining
            else:
                self._subs.pop(event, None)

    def count(self, event: str) -> int:
        with self._lock:
            return len(self._subs.get(event, ()))

    def notify(self, event: str, data: Any) -> int:
        """Deliver ``data`` to every subscriber of ``event``; returns the number called.

        Delivery walks a snapshot taken before the first callback runs, so a
        callback that unsubscribes itself does not skip its neighbours. A
        callback that raises is logged and the remaining callbacks still run.
        """

        with self._lock:
            entries = list(self._subs.get(event, ()))
        delivered = 0
        for token, callback in entries:
            if not self._is_live(event, token):
                continue
            try:
                callback(data)
            except Exception:
                logger.exception("subscriber for %s failed", event)
            delivered += 1
        return delivered

    def _is_live(self, event: str, token: int) -> bool:
        with self._lock:
            return any(entry[0] == token for entry in self._subs.get(event, ()))

    def clear(self) -> None:
        with self._lock:
            self._subs.clear()
