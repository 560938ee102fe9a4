"""Source watcher that reports changed application files."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]


class _SourceEventHandler(FileSystemEventHandler):
    """Forwards file events whose suffix is watched; directories are ignored."""

    def __init__(self, callback: ChangeCallback, suffixes: Iterable[str]) -> None:
        super().__init__()
        self.callback = callback
        self.suffixes = {suffix.lower() for suffix in suffixes}

    def matches(self, path: str) -> bool:
        if not self.suffixes:
            return True
        return os.path.splitext(path)[1].lower() in self.suffixes

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        paths = [event.src_path, getattr(event, "dest_path", "")]
        for path in paths:
            if isinstance(path, bytes):
                path = os.fsdecode(path)
            if path and self.matches(path):
                try:
                    self.callback(path)
                except Exception:
                    logger.exception("change callback failed for %s", path)
                return


class SourceWatcher:
    """watchdog observer scoped to the application source root."""

    def __init__(
        self,
        root: Path,
        callback: ChangeCallback,
        *,
        suffixes: Iterable[str] = (".py",),
        recursive: bool = True,
    ) -> None:
        self.root = Path(root)
        self.recursive = recursive
        self.handler = _SourceEventHandler(callback, suffixes)
        self._observer: Optional[Observer] = None

    @property
    def running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        if self._observer is not None:
            return
        observer = Observer()
        try:
            observer.schedule(self.handler, str(self.root), recursive=self.recursive)
            observer.start()
        except OSError as exc:
            logger.error("cannot watch %s: %s", self.root, exc)
            return
        self._observer = observer
        logger.debug("watching %s for %s", self.root, sorted(self.handler.suffixes))

    def stop(self) -> None:
        observer = self._observer
        self._observer = None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=5)
        except RuntimeError as exc:
            logger.warning("watcher did not stop cleanly: %s", exc)
