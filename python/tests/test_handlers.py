import logging

import pytest

from thingdev.config import MockData
from thingdev.handlers import HandlerTable
from thingdev.record import ApplicationRecord
from thingdev.wire import APP_DATA, CLIENT_REQUEST, SERVER_DATA

from thingdev_stubs import DummyBus, wait_until


def _run_now(delay, callback):
    callback()
    return None


def _table(**kwargs):
    bus = DummyBus()
    kwargs.setdefault("scheduler", _run_now)
    table = HandlerTable(bus, **kwargs)
    return bus, table


def test_get_settings_responds_with_record_settings():
    bus, table = _table()
    table.record.merge_settings({"volume": {"value": 50}})
    assert table.dispatch("demo", {"type": "get", "request": "settings"})
    assert bus.events(APP_DATA) == [{"type": "settings", "payload": {"volume": {"value": 50}}}]


def test_get_data_and_config():
    bus, table = _table()
    table.record.merge_data({"a": 1})
    table.dispatch("demo", {"type": "get", "request": "data"})
    table.dispatch("demo", {"type": "get", "request": "config"})
    assert bus.events(APP_DATA) == [
        {"type": "data", "payload": {"a": 1}},
        {"type": "config", "payload": {}},
    ]


def test_get_input_uses_mock_table():
    bus, table = _table(mock_data=MockData(input={"name": "Ada"}))
    table.dispatch("demo", {"type": "get", "request": "input", "payload": {"name": "", "age": ""}})
    assert bus.events(APP_DATA) == [{"type": "input", "payload": {"name": "Ada", "age": "arbData"}}]


def test_delete_data_removes_listed_keys():
    bus, table = _table()
    table.record.merge_data({"a": 1, "b": 2, "c": 3})
    table.dispatch("demo", {"type": "delete", "request": "data", "payload": ["a", "b"]})
    assert table.record.data == {"c": 3}


def test_delete_settings_single_key():
    bus, table = _table()
    table.record.merge_settings({"volume": {"value": 1}, "theme": {"value": "dark"}})
    table.dispatch("demo", {"type": "delete", "request": "settings", "payload": "volume"})
    assert table.record.settings == {"theme": {"value": "dark"}}
    assert table.record.data == {}


@pytest.mark.parametrize("payload", [42, {"a": 1}, ["a", 2], None])
def test_delete_with_malformed_payload_is_noop(payload, caplog):
    bus, table = _table()
    table.record.merge_data({"a": 1})
    with caplog.at_level(logging.INFO, logger="thingdev.handlers"):
        assert table.dispatch("demo", {"type": "delete", "request": "data", "payload": payload})
    assert table.record.data == {"a": 1}
    assert "Cannot delete data" in caplog.text


def test_record_is_sequential_fold_of_set_and_delete():
    bus, table = _table()
    ops = [
        ("set", "data", {"a": 1, "b": 2}),
        ("delete", "data", "a"),
        ("set", "data", {"a": 5, "c": 3}),
        ("set", "settings", {"s1": {"value": 1}}),
        ("delete", "data", ["b", "missing"]),
        ("set", "settings", {"s2": {"value": 2}, "s1": {"value": 9}}),
        ("delete", "settings", ["s2"]),
    ]
    expected_data, expected_settings = {}, {}
    for kind, request, payload in ops:
        table.dispatch("demo", {"type": kind, "request": request, "payload": payload})
        target = expected_data if request == "data" else expected_settings
        if kind == "set":
            target.update(payload)
        else:
            for key in [payload] if isinstance(payload, str) else payload:
                target.pop(key, None)
    assert table.record.data == expected_data == {"a": 5, "c": 3}
    assert table.record.settings == expected_settings == {"s1": {"value": 9}}


def test_set_default_splits_settings_from_data():
    bus, table = _table()
    table.dispatch("demo", {"type": "set", "payload": {"token": "x", "settings": {"volume": {"value": 3}}}})
    assert table.record.data == {"token": "x"}
    assert table.record.settings == {"volume": {"value": 3}}


def test_set_settings_applies_mock_override_and_echoes():
    bus, table = _table(mock_data=MockData(settings={"volume": 80}))
    table.dispatch(
        "demo",
        {"type": "set", "request": "settings", "payload": {"volume": {"value": 10, "type": "number"}, "theme": "dark"}},
    )
    expected = {"volume": {"value": 80, "type": "number"}, "theme": "dark"}
    assert table.record.settings == expected
    assert bus.events(APP_DATA) == [{"type": "settings", "payload": expected}]


def test_settings_echo_is_delayed():
    bus = DummyBus()
    table = HandlerTable(bus, settings_delay=0.1)
    try:
        table.dispatch("demo", {"type": "set", "request": "settings", "payload": {"a": {"value": 1}}})
        assert table.record.settings == {"a": {"value": 1}}
        assert bus.events(APP_DATA) == []
        assert wait_until(lambda: bus.events(APP_DATA) == [{"type": "settings", "payload": {"a": {"value": 1}}}])
    finally:
        table.close()


def test_close_cancels_pending_echo():
    bus = DummyBus()
    table = HandlerTable(bus, settings_delay=0.2)
    table.dispatch("demo", {"type": "set", "request": "settings", "payload": {"a": 1}})
    table.close()
    assert not wait_until(lambda: bus.events(APP_DATA), timeout=0.4)


@pytest.mark.parametrize(
    "message",
    [
        {"type": "bogus", "request": "thing"},
        {"type": "get", "request": "nothing"},
        {"type": "log", "request": "shout"},
        {"type": "key", "request": "press"},
        {},
        "not a dict",
        None,
    ],
)
def test_unknown_combinations_fall_back_to_default(message):
    bus, table = _table()
    assert table.dispatch("demo", message)
    assert bus.events(APP_DATA) == []
    assert bus.published == []


def test_handler_failure_does_not_block_next_envelope(monkeypatch):
    bus, table = _table()

    def boom(values):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(table.record, "merge_data", boom)
    assert not table.dispatch("demo", {"type": "set", "request": "data", "payload": {"a": 1}})
    assert table.dispatch("demo", {"type": "get", "request": "settings"})
    assert bus.events(APP_DATA) == [{"type": "settings", "payload": {}}]


def test_send_forwards_to_device_transport():
    bus, table = _table()
    table.dispatch("demo", {"type": "send", "payload": {"type": "song", "payload": {"track_name": "x"}}})
    assert bus.events(CLIENT_REQUEST, published=True) == [
        {"app": "demo", "type": "song", "payload": {"track_name": "x"}, "request": ""}
    ]


def test_open_uses_opener_off_thread():
    opened = []
    bus, table = _table(opener=opened.append)
    table.dispatch("demo", {"type": "open", "payload": "https://example.com"})
    assert wait_until(lambda: opened == ["https://example.com"])


def test_log_envelope_goes_to_app_logger(caplog):
    bus, table = _table()
    with caplog.at_level(logging.DEBUG, logger="thingdev.app"):
        table.dispatch("demo", {"type": "log", "request": "warning", "payload": {"message": "careful"}})
    assert "[App demo warning] careful" in caplog.text


def test_attach_dispatches_server_data_with_default_app():
    bus, table = _table(default_app="myapp")
    table.attach()
    bus.notify(SERVER_DATA, {"type": "set", "request": "data", "payload": {"k": "v"}})
    assert table.record.data == {"k": "v"}
    table.close()
    bus.notify(SERVER_DATA, {"type": "set", "request": "data", "payload": {"k": "w"}})
    assert table.record.data == {"k": "v"}


def test_shared_record_is_used():
    record = ApplicationRecord()
    bus, table = _table(record=record)
    table.dispatch("demo", {"type": "set", "request": "data", "payload": {"x": 1}})
    assert record.data == {"x": 1}
