import logging

from thingdev.subscriptions import SubscriptionRegistry


def test_delivery_follows_registration_order():
    registry = SubscriptionRegistry()
    calls = []
    registry.subscribe("app:data", lambda data: calls.append(("first", data)))
    registry.subscribe("app:data", lambda data: calls.append(("second", data)))
    registry.subscribe("other", lambda data: calls.append(("other", data)))
    assert registry.notify("app:data", 1) == 2
    assert calls == [("first", 1), ("second", 1)]


def test_unsubscribe_during_delivery_keeps_neighbours():
    registry = SubscriptionRegistry()
    calls = []
    handles = {}

    def once(data):
        calls.append("once")
        handles["once"]()

    handles["once"] = registry.subscribe("evt", once)
    registry.subscribe("evt", lambda data: calls.append("after"))
    registry.notify("evt", None)
    registry.notify("evt", None)
    assert calls == ["once", "after", "after"]
    assert registry.count("evt") == 1


def test_callback_removing_a_later_one_stops_its_delivery():
    registry = SubscriptionRegistry()
    calls = []
    handles = {}
    registry.subscribe("evt", lambda data: handles["late"]())
    handles["late"] = registry.subscribe("evt", lambda data: calls.append("late"))
    registry.notify("evt", None)
    assert calls == []


def test_failing_subscriber_is_logged_and_skipped(caplog):
    registry = SubscriptionRegistry()
    calls = []

    def boom(data):
        raise ValueError("nope")

    registry.subscribe("evt", boom)
    registry.subscribe("evt", calls.append)
    with caplog.at_level(logging.ERROR, logger="thingdev.subscriptions"):
        registry.notify("evt", 7)
    assert calls == [7]
    assert "subscriber for evt failed" in caplog.text


def test_unsubscribe_twice_and_clear():
    registry = SubscriptionRegistry()
    unsubscribe = registry.subscribe("evt", lambda data: None)
    unsubscribe()
    unsubscribe()
    assert registry.count("evt") == 0
    registry.subscribe("evt", lambda data: None)
    registry.clear()
    assert registry.notify("evt", None) == 0
