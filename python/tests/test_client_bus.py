import json
import queue
import threading
import time

from thingdev.client_bus import ClientMessageBus, ConnectionState
from thingdev.wire import encode_frame

from thingdev_stubs import wait_until


class FakeConnection:
    def __init__(self) -> None:
        self.sent = []
        self.closed = False
        self.fail_sends = False
        self._inbox: "queue.Queue" = queue.Queue()

    def send(self, frame) -> None:
        if self.closed or self.fail_sends:
            raise OSError("connection gone")
        self.sent.append(json.loads(frame))

    def push(self, raw) -> None:
        self._inbox.put(raw)

    def drop(self) -> None:
        self._inbox.put(None)

    def close(self) -> None:
        self.closed = True
        self._inbox.put(None)

    def __iter__(self):
        while True:
            item = self._inbox.get()
            if item is None:
                return
            yield item


class FakeConnector:
    def __init__(self, allow: bool = True) -> None:
        self.allow = allow
        self.attempts = 0
        self.connections = []
        self._lock = threading.Lock()

    def __call__(self, url):
        with self._lock:
            self.attempts += 1
            if not self.allow:
                raise ConnectionRefusedError(f"refused {url}")
            conn = FakeConnection()
            self.connections.append(conn)
            return conn


def _bus(connector, **kwargs) -> ClientMessageBus:
    kwargs.setdefault("reconnect_delay", 0.05)
    return ClientMessageBus("ws://relay.test:8080", connector=connector, **kwargs)


def test_publish_while_closed_queues_in_order():
    bus = _bus(FakeConnector(allow=False))
    assert not bus.publish("app:data", {"n": 1})
    assert not bus.publish("app:data", {"n": 2})
    assert not bus.publish("client:request", {"n": 3})
    assert bus.pending == [("app:data", {"n": 1}), ("app:data", {"n": 2}), ("client:request", {"n": 3})]
    assert bus.state is ConnectionState.DISCONNECTED


def test_reconnect_flushes_queue_in_order_exactly_once():
    connector = FakeConnector()
    bus = _bus(connector)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        first = connector.connections[0]

        connector.allow = False
        first.drop()
        assert wait_until(lambda: bus.state is not ConnectionState.CONNECTED)
        for n in range(3):
            bus.publish("app:data", {"n": n})

        time.sleep(0.1)
        connector.allow = True
        assert wait_until(lambda: len(connector.connections) == 2)
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        second = connector.connections[1]
        assert wait_until(lambda: len(second.sent) == 3)
        time.sleep(0.1)
        assert second.sent == [{"event": "app:data", "data": {"n": n}} for n in range(3)]
        assert first.sent == []
        assert bus.pending == []
    finally:
        bus.close()


def test_publish_when_connected_sends_immediately():
    connector = FakeConnector()
    bus = _bus(connector)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        assert bus.publish("client:request", {"type": "getData"})
        assert connector.connections[0].sent == [{"event": "client:request", "data": {"type": "getData"}}]
    finally:
        bus.close()


def test_failed_send_requeues_and_reconnects():
    connector = FakeConnector()
    bus = _bus(connector)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        connector.connections[0].fail_sends = True
        assert not bus.publish("app:data", {"n": 1})
        assert wait_until(lambda: len(connector.connections) == 2)
        second = connector.connections[1]
        assert wait_until(lambda: second.sent == [{"event": "app:data", "data": {"n": 1}}])
    finally:
        bus.close()


def test_incoming_frames_reach_subscribers():
    connector = FakeConnector()
    bus = _bus(connector)
    received = []
    bus.subscribe("client:request", received.append)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        conn = connector.connections[0]
        conn.push("{not json")
        conn.push(encode_frame("client:request", {"type": "song"}))
        assert wait_until(lambda: received == [{"type": "song"}])
    finally:
        bus.close()


def test_oversized_frame_is_dropped_and_reader_keeps_going():
    connector = FakeConnector()
    bus = _bus(connector)
    received = []
    bus.subscribe("y", received.append)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        conn = connector.connections[0]
        conn.push('{"event":"x","data":' + "9" * 5000 + "}")
        conn.push(encode_frame("y", 1))
        assert wait_until(lambda: received == [1])
        assert bus.state is ConnectionState.CONNECTED
        assert connector.attempts == 1
    finally:
        bus.close()


def test_reader_failure_triggers_reconnect(monkeypatch):
    connector = FakeConnector()
    bus = _bus(connector)

    def broken_notify(event, data):
        raise RuntimeError("reader bug")

    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        monkeypatch.setattr(bus, "notify", broken_notify)
        connector.connections[0].push(encode_frame("x", 1))
        assert wait_until(lambda: len(connector.connections) == 2)
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
    finally:
        bus.close()


def test_reinitialize_closes_stale_connection():
    connector = FakeConnector()
    bus = _bus(connector)
    try:
        bus.initialize()
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        bus.initialize()
        assert wait_until(lambda: len(connector.connections) == 2)
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        assert connector.connections[0].closed
        time.sleep(0.2)
        # the stale connection's close must not trigger another connect
        assert len(connector.connections) == 2
    finally:
        bus.close()


def test_refused_connection_retries_on_timer():
    connector = FakeConnector(allow=False)
    states = []
    bus = _bus(connector)
    bus.register_on_state(states.append)
    try:
        bus.initialize()
        assert wait_until(lambda: connector.attempts >= 3)
        assert bus.state is not ConnectionState.CONNECTED
        connector.allow = True
        assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
        assert states[0] is ConnectionState.CONNECTING
        assert ConnectionState.DISCONNECTED in states
    finally:
        bus.close()


def test_close_stops_reconnecting():
    connector = FakeConnector()
    bus = _bus(connector)
    bus.initialize()
    assert wait_until(lambda: bus.state is ConnectionState.CONNECTED)
    bus.close()
    time.sleep(0.2)
    assert len(connector.connections) == 1
    assert connector.connections[0].closed
    assert bus.state is ConnectionState.DISCONNECTED
