"""Application-process supervisor.

Keeps exactly one application process running and matching the current
source. All state changes happen on one consumer thread that drains an event
queue; file changes, child exits and timers only post events to it::

    Stopped -> Starting -> Running -> RestartPending -> Restarting -> Running
                   |          |                                         ^
                   v          v                                         |
                 Errored <- (unexpected exit) -- bounded respawn -------+

Respawn after a crash is bounded: at most ``max_respawn_attempts``
consecutive attempts, each delayed by ``respawn_grace * 2**n`` (capped). The
crash counter resets once a child stays up for ``stable_after`` seconds, on a
source-change restart, and on a manual restart.
"""

from __future__ import annotations

import functools
import logging
import os
import queue
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import ServerConfig
from .errors import FrameError, SpawnError
from .wire import APP_DATA, ENTRY_ENV, SERVER_DATA, SERVER_LOG, decode_line, encode_line


logger = logging.getLogger(__name__)

DEFAULT_APP_ID = "testapp"

MessageCallback = Callable[[Dict[str, Any]], None]
ExitCallback = Callable[[Optional[int], Optional[int]], None]


class SupervisorState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTART_PENDING = "restart_pending"
    RESTARTING = "restarting"
    ERRORED = "errored"


class ChildHandle:
    """Parent-side handle of one application process."""

    pid: Optional[int] = None

    def attach(self, on_message: MessageCallback, on_exit: ExitCallback) -> None:
        raise NotImplementedError

    def send(self, kind: str, payload: Any) -> None:
        raise NotImplementedError

    def terminate(self, timeout: float) -> None:
        raise NotImplementedError


class AppProcessHandle(ChildHandle):
    """Runs ``python -m thingdev.app_process`` with a JSON-lines pipe channel."""

    def __init__(self, entry: Path, *, cwd: Optional[Path] = None, python: Optional[str] = None) -> None:
        self.entry = Path(entry)
        self.cwd = Path(cwd) if cwd else self.entry.parent
        env = os.environ.copy()
        env[ENTRY_ENV] = str(self.entry)
        env.setdefault("PYTHONUNBUFFERED", "1")
        cmd = [python or sys.executable, "-m", "thingdev.app_process"]
        try:
            self.process = subprocess.Popen(
                cmd,
                cwd=str(self.cwd),
                env=env,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise SpawnError(f"failed to launch {' '.join(cmd)}: {exc}") from exc
        self.pid = self.process.pid
        self._send_lock = threading.Lock()
        self._reader: Optional[threading.Thread] = None

    def attach(self, on_message: MessageCallback, on_exit: ExitCallback) -> None:
        self._reader = threading.Thread(
            target=self._reader_loop, args=(on_message, on_exit), name=f"thingdev-child-{self.pid}", daemon=True
        )
        self._reader.start()

    def _reader_loop(self, on_message: MessageCallback, on_exit: ExitCallback) -> None:
        stream = self.process.stdout
        assert stream is not None  # mypy guard
        try:
            for line in stream:
                if not line.strip():
                    continue
                try:
                    message = decode_line(line)
                except FrameError as exc:
                    logger.warning("ignoring malformed line from application process: %s", exc)
                    continue
                on_message(message)
        except Exception:
            logger.exception("reader for application process pid %s failed; killing it", self.pid)
            self.process.kill()
        finally:
            code = self.process.wait()
            sig = -code if code is not None and code < 0 else None
            on_exit(code, sig)

    def send(self, kind: str, payload: Any) -> None:
        stdin = self.process.stdin
        if stdin is None or self.process.poll() is not None:
            logger.debug("application process gone; dropping %s", kind)
            return
        with self._send_lock:
            try:
                stdin.write(encode_line(kind, payload))
                stdin.flush()
            except (BrokenPipeError, ValueError, OSError) as exc:
                logger.debug("write to application process failed: %s", exc)

    def terminate(self, timeout: float) -> None:
        proc = self.process
        if proc.poll() is None:
            logger.debug("terminating application process pid %s", proc.pid)
            proc.send_signal(signal.SIGTERM)
            try:
                proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("application process pid %s ignored SIGTERM; killing", proc.pid)
                proc.kill()
                proc.wait()
        if proc.stdin is not None:
            try:
                proc.stdin.close()
            except OSError:
                pass


@dataclass
class SupervisorStatus:
    state: SupervisorState
    pid: Optional[int]
    generation: int
    restarts: int
    crash_count: int


# Events consumed by the supervisor loop ---------------------------------------


@dataclass
class _FileChanged:
    path: str


@dataclass
class _DebounceElapsed:
    token: int


@dataclass
class _ChildExited:
    generation: int
    code: Optional[int]
    signal: Optional[int]


@dataclass
class _RespawnDue:
    token: int


@dataclass
class _Stable:
    generation: int


class _GraceOver:
    pass


class _ManualRestart:
    pass


class _Stop:
    pass


class ProcessSupervisor:
    """Owns the application process, its restart policy and its bus bridge."""

    def __init__(
        self,
        bus,
        spawner: Callable[[], ChildHandle],
        *,
        config: Optional[ServerConfig] = None,
        watcher_factory: Optional[Callable[[Callable[[str], None]], Any]] = None,
        app_id: str = DEFAULT_APP_ID,
    ) -> None:
        self.bus = bus
        self.spawner = spawner
        self.config = config or ServerConfig()
        self.app_id = app_id
        self._watcher_factory = watcher_factory
        self._watcher: Any = None
        self._state = SupervisorState.STOPPED
        self._events: "queue.Queue[Any]" = queue.Queue()
        self._loop: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self._child: Optional[ChildHandle] = None
        self._generation = 0
        self._expected_exits: set[int] = set()
        self._restarts = 0
        self._crash_count = 0
        self._in_grace = False
        self._debounce_token = 0
        self._respawn_token = 0
        self._timers: Dict[str, threading.Timer] = {}
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._on_state: List[Callable[[SupervisorState], None]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> SupervisorState:
        return self._state

    def status(self) -> SupervisorStatus:
        child = self._child
        return SupervisorStatus(
            state=self._state,
            pid=child.pid if child is not None else None,
            generation=self._generation,
            restarts=self._restarts,
            crash_count=self._crash_count,
        )

    def register_on_state(self, callback: Callable[[SupervisorState], None]) -> None:
        self._on_state.append(callback)

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._loop is not None:
                return
            self._set_state(SupervisorState.STARTING)
            self._unsubscribe = self.bus.subscribe(APP_DATA, self._forward_to_child)
            self._spawn()
            if self._watcher_factory is not None:
                try:
                    self._watcher = self._watcher_factory(self.on_file_changed)
                    self._watcher.start()
                except Exception:
                    logger.exception("file watcher failed to start; continuing without reloads")
                    self._watcher = None
            grace = self.config.initial_scan_grace_ms / 1000.0
            if grace > 0:
                self._in_grace = True
                self._arm("grace", grace, _GraceOver())
            self._loop = threading.Thread(target=self._run, name="thingdev-supervisor", daemon=True)
            self._loop.start()

    def stop(self) -> None:
        with self._lifecycle_lock:
            loop = self._loop
            if loop is None:
                return
            self._events.put(_Stop())
            loop.join(timeout=self.config.terminate_timeout_ms / 1000.0 + 2.0)
            self._loop = None

    def on_file_changed(self, path: str) -> None:
        self._events.put(_FileChanged(str(path)))

    def restart(self) -> None:
        self._events.put(_ManualRestart())

    def send_to_app(self, message: Any) -> None:
        """Deliver an envelope to the running application process."""
        self._forward_to_child(message)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            event = self._events.get()
            if isinstance(event, _Stop):
                self._shutdown()
                return
            try:
                self._handle(event)
            except Exception:
                logger.exception("supervisor failed handling %r", event)

    def _handle(self, event: Any) -> None:
        if isinstance(event, _FileChanged):
            self._on_file_changed(event.path)
        elif isinstance(event, _DebounceElapsed):
            self._on_debounce_elapsed(event.token)
        elif isinstance(event, _ChildExited):
            self._on_child_exit(event.generation, event.code, event.signal)
        elif isinstance(event, _RespawnDue):
            self._on_respawn_due(event.token)
        elif isinstance(event, _Stable):
            if event.generation == self._generation and self._state is SupervisorState.RUNNING:
                self._crash_count = 0
        elif isinstance(event, _GraceOver):
            self._in_grace = False
            logger.debug("initial scan grace window over; watching for changes")
        elif isinstance(event, _ManualRestart):
            logger.info("Restart requested")
            self._cancel("debounce")
            self._cancel("respawn")
            self._crash_count = 0
            self._restart()

    def _on_file_changed(self, path: str) -> None:
        if self._in_grace:
            logger.debug("ignoring %s during initial scan", path)
            return
        logger.info("File %s changed, queuing server restart...", path)
        self._debounce_token += 1
        self._arm("debounce", self.config.restart_debounce_ms / 1000.0, _DebounceElapsed(self._debounce_token))
        self._set_state(SupervisorState.RESTART_PENDING)

    def _on_debounce_elapsed(self, token: int) -> None:
        if token != self._debounce_token or "debounce" not in self._timers:
            return
        self._timers.pop("debounce", None)
        self._cancel("respawn")
        self._crash_count = 0
        self._restart()

    def _on_child_exit(self, generation: int, code: Optional[int], sig: Optional[int]) -> None:
        if generation in self._expected_exits:
            self._expected_exits.discard(generation)
            logger.debug("application process generation %d exited as requested", generation)
            return
        if generation != self._generation:
            return
        self._child = None
        self._cancel("stable")
        logger.error("Application process exited unexpectedly (code=%s, signal=%s)", code, sig)
        if "debounce" in self._timers:
            # the pending source-change restart will spawn a replacement
            return
        self._set_state(SupervisorState.ERRORED)
        self._schedule_respawn()

    def _on_respawn_due(self, token: int) -> None:
        if token != self._respawn_token or self._state is not SupervisorState.ERRORED:
            return
        self._timers.pop("respawn", None)
        logger.info("Respawning application process (attempt %d/%d)", self._crash_count, self.config.max_respawn_attempts)
        self._set_state(SupervisorState.STARTING)
        self._spawn()

    # ------------------------------------------------------------------
    # Child management (loop thread, or start() before the loop exists)
    # ------------------------------------------------------------------

    def _restart(self) -> None:
        logger.info("Restarting server...")
        self._set_state(SupervisorState.RESTARTING)
        self._terminate_child()
        self._restarts += 1
        self._spawn()

    def _spawn(self) -> None:
        self._generation += 1
        generation = self._generation
        try:
            child = self.spawner()
            child.attach(
                functools.partial(self._on_child_message, generation),
                functools.partial(self._post_exit, generation),
            )
        except Exception as exc:
            logger.error("Server process failed to start: %s", exc)
            self._child = None
            self._set_state(SupervisorState.ERRORED)
            self._schedule_respawn()
            return
        self._child = child
        self._set_state(SupervisorState.RUNNING)
        logger.info("Server process started (pid %s)", child.pid)
        stable_after = self.config.stable_after_ms / 1000.0
        if stable_after > 0:
            self._arm("stable", stable_after, _Stable(generation))

    def _terminate_child(self) -> None:
        child = self._child
        self._child = None
        self._cancel("stable")
        if child is None:
            return
        self._expected_exits.add(self._generation)
        try:
            child.terminate(self.config.terminate_timeout_ms / 1000.0)
        except Exception:
            logger.exception("failed to terminate application process")

    def _schedule_respawn(self) -> None:
        limit = self.config.max_respawn_attempts
        if self._crash_count >= limit:
            logger.error(
                "Application process failed %d time(s) in a row; waiting for a source change or manual restart",
                self._crash_count,
            )
            return
        base = self.config.respawn_grace_ms / 1000.0
        cap = self.config.max_respawn_backoff_ms / 1000.0
        delay = min(base * (2 ** self._crash_count), cap)
        self._crash_count += 1
        self._respawn_token += 1
        logger.info("Respawning application process in %.2fs", delay)
        self._arm("respawn", delay, _RespawnDue(self._respawn_token))

    def _shutdown(self) -> None:
        for name in list(self._timers):
            self._cancel(name)
        watcher = self._watcher
        self._watcher = None
        if watcher is not None:
            try:
                watcher.stop()
            except Exception:
                logger.exception("file watcher failed to stop")
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._terminate_child()
        self._set_state(SupervisorState.STOPPED)
        logger.debug("supervisor stopped")

    # ------------------------------------------------------------------
    # Bridges and helpers
    # ------------------------------------------------------------------

    def _forward_to_child(self, message: Any) -> None:
        child = self._child
        if child is None:
            logger.debug("no application process; dropping app:data")
            return
        child.send(APP_DATA, message)

    def _on_child_message(self, generation: int, message: Dict[str, Any]) -> None:
        if generation != self._generation:
            logger.debug("dropping output of replaced application process generation %d", generation)
            return
        kind = message.get("type")
        payload = message.get("payload")
        if kind == SERVER_LOG:
            logger.info("[childprocess] %s", payload)
        elif kind == SERVER_DATA:
            if not isinstance(payload, dict):
                logger.warning("application sent non-object data: %r", payload)
                return
            envelope = dict(payload)
            envelope["app"] = envelope.get("app") or self.app_id
            self.bus.notify(SERVER_DATA, envelope)
        else:
            logger.error("Unknown message type: %s", kind)

    def _post_exit(self, generation: int, code: Optional[int], sig: Optional[int]) -> None:
        self._events.put(_ChildExited(generation, code, sig))

    def _arm(self, name: str, delay: float, event: Any) -> None:
        self._cancel(name)
        timer = threading.Timer(delay, self._events.put, args=(event,))
        timer.daemon = True
        self._timers[name] = timer
        timer.start()

    def _cancel(self, name: str) -> None:
        timer = self._timers.pop(name, None)
        if timer is not None:
            timer.cancel()

    def _set_state(self, state: SupervisorState) -> None:
        if self._state is state:
            return
        logger.debug("supervisor %s -> %s", self._state.value, state.value)
        self._state = state
        for callback in list(self._on_state):
            try:
                callback(state)
            except Exception:
                logger.exception("state callback failed")


def default_spawner(entry: Path, *, cwd: Optional[Path] = None) -> Callable[[], ChildHandle]:
    return functools.partial(AppProcessHandle, Path(entry), cwd=cwd)
