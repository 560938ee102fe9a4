from watchdog.events import DirModifiedEvent, FileClosedNoWriteEvent, FileModifiedEvent, FileMovedEvent

from thingdev.watcher import SourceWatcher, _SourceEventHandler

from thingdev_stubs import wait_until


def test_handler_filters_by_suffix():
    seen = []
    handler = _SourceEventHandler(seen.append, [".py"])
    handler.dispatch(FileModifiedEvent("/app/server/index.py"))
    handler.dispatch(FileModifiedEvent("/app/server/notes.txt"))
    handler.dispatch(DirModifiedEvent("/app/server"))
    handler.dispatch(FileClosedNoWriteEvent("/app/server/index.py"))
    handler.dispatch(FileMovedEvent("/app/server/tmp.swp", "/app/server/util.py"))
    assert seen == ["/app/server/index.py", "/app/server/util.py"]


def test_handler_survives_callback_errors():
    def boom(path):
        raise RuntimeError(path)

    handler = _SourceEventHandler(boom, [".py"])
    handler.dispatch(FileModifiedEvent("/app/x.py"))


def test_observer_reports_changes(tmp_path):
    seen = []
    watcher = SourceWatcher(tmp_path, seen.append)
    watcher.start()
    try:
        assert watcher.running
        (tmp_path / "index.py").write_text("x = 1\n")
        assert wait_until(lambda: any(path.endswith("index.py") for path in seen), timeout=5.0)
    finally:
        watcher.stop()
    assert not watcher.running


def test_missing_root_is_logged_not_raised(tmp_path):
    watcher = SourceWatcher(tmp_path / "absent", lambda path: None)
    watcher.start()
    assert not watcher.running
    watcher.stop()
