import json
import logging

from websockets.sync.client import connect

from thingdev.config import DevConfig
from thingdev.manifest import AppManifest
from thingdev.record import ApplicationRecord
from thingdev.relay import ClientRequestService, DevServer
from thingdev.server_bus import ServerMessageBus
from thingdev.supervisor import SupervisorState
from thingdev.wire import APP_DATA, CLIENT_REQUEST, CLIENT_RESPONSE, encode_frame

from thingdev_stubs import DummyBus, FakeSpawner, FakeWatcher, wait_until


def _service(manifest=None):
    bus = DummyBus()
    record = ApplicationRecord()
    service = ClientRequestService(bus, record, lambda: manifest)
    service.attach()
    return bus, record, service


def test_get_requests_are_answered():
    bus, record, service = _service(AppManifest(id="weather", label="Weather"))
    record.merge_data({"city": "Oslo"})
    record.merge_settings({"units": {"value": "metric"}})
    for kind in ("getData", "getManifest", "getSettings"):
        bus.notify(CLIENT_REQUEST, {"type": kind})
    responses = bus.events(CLIENT_RESPONSE, published=True)
    assert responses[0] == {"type": "data", "payload": {"city": "Oslo"}}
    assert responses[1]["type"] == "manifest"
    assert responses[1]["payload"]["id"] == "weather"
    assert responses[1]["payload"]["label"] == "Weather"
    assert responses[2] == {"type": "settings", "payload": {"units": {"value": "metric"}}}


def test_manifest_request_without_manifest():
    bus, record, service = _service()
    bus.notify(CLIENT_REQUEST, {"type": "getManifest"})
    assert bus.events(CLIENT_RESPONSE, published=True) == [{"type": "manifest", "payload": None}]


def test_update_and_delete_settings_push_to_both_sides():
    bus, record, service = _service()
    bus.notify(CLIENT_REQUEST, {"type": "updateSettings", "payload": {"a": {"value": 1}, "b": {"value": 2}}})
    bus.notify(CLIENT_REQUEST, {"type": "deleteSettings", "payload": ["a"]})
    bus.notify(CLIENT_REQUEST, {"type": "deleteSettings", "payload": 5})
    assert record.settings == {"b": {"value": 2}}
    device = [m for m in bus.events(CLIENT_REQUEST, published=True)]
    assert device == [
        {"type": "settings", "payload": {"a": {"value": 1}, "b": {"value": 2}}, "app": "client"},
        {"type": "settings", "payload": {"b": {"value": 2}}, "app": "client"},
    ]
    assert bus.events(APP_DATA) == [
        {"type": "settings", "payload": {"a": {"value": 1}, "b": {"value": 2}}},
        {"type": "settings", "payload": {"b": {"value": 2}}},
    ]


def test_other_requests_are_echoed():
    bus, record, service = _service()
    bus.notify(CLIENT_REQUEST, {"type": "ping", "payload": 1})
    bus.notify(CLIENT_REQUEST, {"payload": "untyped"})
    bus.notify(CLIENT_REQUEST, "junk")
    assert bus.events(CLIENT_RESPONSE, published=True) == [{"type": "ping", "payload": 1}]
    service.detach()
    bus.notify(CLIENT_REQUEST, {"type": "ping"})
    assert len(bus.events(CLIENT_RESPONSE, published=True)) == 1


def test_emulator_log_requests_are_logged_not_echoed(caplog):
    bus, record, service = _service()
    with caplog.at_level(logging.DEBUG, logger="thingdev.app"):
        bus.notify(CLIENT_REQUEST, {"type": "log", "request": "warning", "payload": "low battery", "app": "client"})
    assert "[App client warning] low battery" in caplog.text
    assert bus.events(CLIENT_RESPONSE, published=True) == []


def _dev_server(tmp_path, spawner):
    (tmp_path / "manifest.json").write_text(json.dumps({"id": "weather"}))
    config = DevConfig()
    config.server.initial_scan_grace_ms = 0
    config.server.time_interval = 0
    config.server.settings_delay_ms = 0
    watchers = []

    def make_watcher(callback):
        watcher = FakeWatcher(callback)
        watchers.append(watcher)
        return watcher

    server = DevServer(
        config,
        tmp_path,
        spawner=spawner,
        watcher_factory=make_watcher,
        bus=ServerMessageBus("127.0.0.1", 0),
    )
    return server, watchers


def test_dev_server_end_to_end(tmp_path):
    spawner = FakeSpawner()
    server, watchers = _dev_server(tmp_path, spawner)
    assert server.app_id == "weather"
    server.start()
    try:
        child = spawner.children[0]
        child.emit({"type": "server:data", "payload": {"type": "set", "request": "data", "payload": {"a": 1}}})
        assert server.record.data == {"a": 1}

        child.emit({"type": "server:data", "payload": {"type": "get", "request": "data"}})
        assert child.sent[-1] == ("app:data", {"type": "data", "payload": {"a": 1}})

        with connect(f"ws://127.0.0.1:{server.bus.bound_port}", open_timeout=2.0) as ws:
            ws.send(encode_frame("client:request", {"type": "getManifest"}))
            frame = json.loads(ws.recv(timeout=2.0))
            assert frame["event"] == "client:response"
            assert frame["data"]["payload"]["id"] == "weather"

            child.emit(
                {"type": "server:data", "payload": {"type": "send", "payload": {"type": "song", "payload": {}}}}
            )
            frame = json.loads(ws.recv(timeout=2.0))
            assert frame == {
                "event": "client:request",
                "data": {"app": "weather", "type": "song", "payload": {}, "request": ""},
            }

        status = server.status()
        assert status["app"] == "weather"
        assert status["state"] == "running"
        assert status["pid"] == child.pid
        watchers[0].touch()
        assert wait_until(lambda: len(spawner.children) == 2, timeout=3.0)
    finally:
        server.stop()
    assert server.supervisor.state is SupervisorState.STOPPED
    server.stop()


def test_dev_server_without_manifest_uses_default_app(tmp_path):
    server = DevServer(
        DevConfig(), tmp_path, spawner=FakeSpawner(), watcher_factory=FakeWatcher, bus=DummyBus()
    )
    assert server.app_id == "testapp"
    assert server.manifest is None
    assert server.entry == tmp_path / "server" / "index.py"
