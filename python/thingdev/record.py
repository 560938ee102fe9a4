"""In-memory application record (data + settings)."""

from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Iterable, List, Optional


def normalize_keys(payload: Any) -> Optional[List[str]]:
    """Return the key list for a delete payload, or ``None`` if it is malformed."""
    if isinstance(payload, str):
        return [payload]
    if isinstance(payload, (list, tuple)) and all(isinstance(item, str) for item in payload):
        return list(payload)
    return None


class ApplicationRecord:
    """Data and settings held for the application under development.

    Handlers may run on the websocket server thread, the child reader thread
    or a timer thread, so every access goes through one lock.
    """

    def __init__(self) -> None:
        self._data: Dict[str, Any] = {}
        self._settings: Dict[str, Any] = {}
        self._lock = threading.Lock()

    @property
    def data(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._data)

    @property
    def settings(self) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._settings)

    def merge_data(self, values: Dict[str, Any]) -> None:
        with self._lock:
            self._data.update(values)

    def merge_settings(self, values: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._settings.update(values)
            return copy.deepcopy(self._settings)

    def remove_data(self, keys: Iterable[str]) -> None:
        doomed = set(keys)
        with self._lock:
            self._data = {key: value for key, value in self._data.items() if key not in doomed}

    def remove_settings(self, keys: Iterable[str]) -> Dict[str, Any]:
        doomed = set(keys)
        with self._lock:
            self._settings = {key: value for key, value in self._settings.items() if key not in doomed}
            return copy.deepcopy(self._settings)
