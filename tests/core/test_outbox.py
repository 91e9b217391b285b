"""Tests for twocheck.core.outbox module."""

from __future__ import annotations

import logging

from twocheck.core.outbox import Event, Outbox


class TestPublish:
    """Tests for publishing and the event record."""

    def test_publish_returns_event(self):
        outbox = Outbox()
        event = outbox.publish("transaction.created", {"id": "TX-1"})
        assert isinstance(event, Event)
        assert event.topic == "transaction.created"
        assert event.payload == {"id": "TX-1"}
        assert event.id

    def test_payload_defaults_to_empty(self):
        assert Outbox().publish("ping").payload == {}

    def test_events_filtered_by_prefix(self):
        outbox = Outbox()
        outbox.publish("trust.score_updated")
        outbox.publish("transaction.created")
        outbox.publish("trust.level_changed")
        assert [e.topic for e in outbox.events("trust.")] == ["trust.score_updated", "trust.level_changed"]
        assert len(outbox.events()) == 3

    def test_history_is_bounded(self):
        outbox = Outbox(history_size=2)
        for i in range(5):
            outbox.publish(f"e.{i}")
        assert [e.topic for e in outbox.events()] == ["e.3", "e.4"]

    def test_clear(self):
        outbox = Outbox()
        outbox.publish("a")
        outbox.clear()
        assert outbox.events() == []

    def test_to_dict(self):
        d = Outbox().publish("a.b", {"x": 1}).to_dict()
        assert d["topic"] == "a.b"
        assert d["payload"] == {"x": 1}
        assert "timestamp" in d


class TestSubscribe:
    """Tests for prefix subscriptions and delivery order."""

    def test_prefix_subscription(self):
        outbox = Outbox()
        seen = []
        outbox.subscribe("dispute.", lambda e: seen.append(e.topic))
        outbox.publish("dispute.created")
        outbox.publish("transaction.created")
        outbox.publish("dispute.resolved")
        assert seen == ["dispute.created", "dispute.resolved"]

    def test_empty_prefix_receives_all(self):
        outbox = Outbox()
        seen = []
        outbox.subscribe("", lambda e: seen.append(e.topic))
        outbox.publish("a")
        outbox.publish("b")
        assert seen == ["a", "b"]

    def test_unsubscribe(self):
        outbox = Outbox()
        seen = []

        def handler(event):
            seen.append(event.topic)

        outbox.subscribe("", handler)
        outbox.unsubscribe(handler)
        outbox.publish("a")
        assert seen == []

    def test_nested_publish_is_queued(self):
        """An event published inside a handler is delivered after the current one."""
        outbox = Outbox()
        order = []

        def first(event):
            order.append(("first", event.topic))
            if event.topic == "outer":
                outbox.publish("inner")

        def second(event):
            order.append(("second", event.topic))

        outbox.subscribe("", first)
        outbox.subscribe("", second)
        outbox.publish("outer")

        assert order == [
            ("first", "outer"),
            ("second", "outer"),
            ("first", "inner"),
            ("second", "inner"),
        ]
        assert [e.topic for e in outbox.events()] == ["outer", "inner"]

    def test_handler_failure_is_logged_and_isolated(self, caplog):
        """A failing handler does not stop the remaining subscribers."""
        outbox = Outbox()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        outbox.subscribe("", broken)
        outbox.subscribe("", lambda e: seen.append(e.topic))

        with caplog.at_level(logging.ERROR, logger="twocheck.core.outbox"):
            outbox.publish("a")

        assert seen == ["a"]
        assert any("Event handler failed for a" in r.message for r in caplog.records)

    def test_publish_after_failure_still_dispatches(self):
        """The nested-delivery queue is reset after a handler error."""
        outbox = Outbox()
        seen = []

        def broken(event):
            raise ValueError("bad")

        outbox.subscribe("bad", broken)
        outbox.subscribe("good", lambda e: seen.append(e.topic))
        outbox.publish("bad")
        outbox.publish("good")
        assert seen == ["good"]
