# tests/control_plane/test_events.py
"""
Unit Tests for the event bus and domain event handlers
"""

import logging

from core.domain_events import EventTypes, counter_reset_payload
from core.event_handlers import audit_handler, register_event_handlers
from core.events import Event, EventBus, EventPriority, event_bus, publish


class TestEventBus:
    def test_priority_order(self):
        bus = EventBus()
        calls = []

        def low(event):
            calls.append("low")

        def high(event):
            calls.append("high")

        bus.subscribe("Something", low, EventPriority.LOW)
        bus.subscribe("Something", high, EventPriority.HIGH)
        bus.publish(Event(event_type="Something", payload={}))

        assert calls == ["high", "low"]

    def test_failing_handler_does_not_stop_others(self):
        bus = EventBus()
        calls = []

        def broken(event):
            raise RuntimeError("boom")

        def working(event):
            calls.append(event.event_type)

        bus.subscribe("Something", broken, EventPriority.HIGH)
        bus.subscribe("Something", working)
        bus.publish(Event(event_type="Something", payload={}))

        assert calls == ["Something"]

    def test_duplicate_subscription_ignored(self):
        bus = EventBus()

        def handler(event):
            pass

        bus.subscribe("Something", handler)
        bus.subscribe("Something", handler)

        assert bus.get_subscriptions() == {"Something": 1}

    def test_history_bounded(self):
        bus = EventBus(max_history_size=3)
        for i in range(5):
            bus.publish(Event(event_type="Tick", payload={"i": i}))

        assert [e.payload["i"] for e in bus.get_history()] == [2, 3, 4]


class TestHandlers:
    def test_register_is_idempotent(self):
        register_event_handlers()
        register_event_handlers()

        subscriptions = event_bus.get_subscriptions()
        assert set(subscriptions) == set(EventTypes.all())
        assert subscriptions[EventTypes.COUNTER_RESET] == 2
        assert subscriptions[EventTypes.GATEWAY_REGISTERED] == 1

    def test_audit_line(self, caplog):
        event = Event(event_type=EventTypes.GATEWAY_DELETED, payload={"gateway_id": 3}, operator="alice")

        with caplog.at_level(logging.INFO, logger="core.event_handlers"):
            audit_handler(event)

        assert "[AUDIT] GatewayDeleted" in caplog.text
        assert "operator=alice" in caplog.text

    def test_counter_reset_warning(self, caplog):
        register_event_handlers()

        with caplog.at_level(logging.WARNING, logger="core.event_handlers"):
            publish(EventTypes.COUNTER_RESET, counter_reset_payload(7, "upload", 9000, 200), source="metrics")

        assert "Counter reset on credential 7 (upload)" in caplog.text
