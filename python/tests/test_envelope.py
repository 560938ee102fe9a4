import pytest

from thingdev.envelope import Envelope, SendType, describe_payload, parse_envelope
from thingdev.errors import FrameError
from thingdev.wire import decode_frame, decode_line, encode_frame, encode_line


def test_parse_envelope_keeps_unknown_keys():
    envelope = parse_envelope(
        {"type": "get", "request": "settings", "app": "demo", "clientId": "c1", "source": "x"}
    )
    assert envelope.send_type is SendType.GET
    assert envelope.client_id == "c1"
    assert envelope.extra == {"source": "x"}
    assert envelope.to_dict() == {
        "type": "get",
        "request": "settings",
        "app": "demo",
        "clientId": "c1",
        "source": "x",
    }


def test_unrecognized_type_has_no_send_type():
    assert parse_envelope({"type": "teleport"}).send_type is None
    assert parse_envelope("raw").payload == "raw"
    assert parse_envelope(None).type == ""


def test_stamped_fills_blanks_only():
    stamped = Envelope(type="set", app="mine").stamped(app="other", client_id="c9")
    assert stamped.app == "mine"
    assert stamped.client_id == "c9"
    assert Envelope(type="set").stamped(app="other").app == "other"


def test_for_device():
    assert Envelope(app="client").for_device
    assert not Envelope(app="weather").for_device


def test_describe_payload():
    assert describe_payload(None) == "undefined"
    assert describe_payload({"a": 1}) == "{'a': 1}"
    assert describe_payload("x" * 2000) == "[Large Payload]"


def test_frames():
    event, data = decode_frame(encode_frame("app:data", {"type": "get"}))
    assert (event, data) == ("app:data", {"type": "get"})
    assert decode_frame(b'{"event": "x"}') == ("x", None)
    for bad in ("{", '{"data": 1}', "[]", b"\xff"):
        with pytest.raises(FrameError):
            decode_frame(bad)


def test_lines():
    line = encode_line("server:log", "hi")
    assert line.endswith("\n")
    assert decode_line(line) == {"type": "server:log", "payload": "hi"}
    with pytest.raises(FrameError):
        decode_line("   ")
    with pytest.raises(FrameError):
        decode_line("nope")


def test_oversized_numbers_are_frame_errors():
    huge = "9" * 5000
    with pytest.raises(FrameError):
        decode_frame('{"event": "x", "data": %s}' % huge)
    with pytest.raises(FrameError):
        decode_line('{"type": "server:log", "payload": %s}' % huge)
    with pytest.raises(FrameError):
        decode_frame("[" * 100000 + "]" * 100000)
