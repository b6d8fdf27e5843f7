"""
Tests for the observer registry.
"""

from __future__ import annotations

from dataclasses import dataclass

from mediacache.events import EventHub


@dataclass
class Ping:
    type: str
    value: int = 0


def make_hub() -> EventHub[Ping]:
    return EventHub("test", type_of=lambda event: event.type)


class TestEventHub:
    """Tests for subscribe/emit/unsubscribe."""

    def test_emit_reaches_listeners(self) -> None:
        hub = make_hub()
        received: list[Ping] = []
        hub.subscribe(received.append)

        hub.emit(Ping("a", 1))

        assert received == [Ping("a", 1)]

    def test_type_filter(self) -> None:
        hub = make_hub()
        received: list[Ping] = []
        hub.subscribe(received.append, ["b"])

        hub.emit(Ping("a"))
        hub.emit(Ping("b"))

        assert [p.type for p in received] == ["b"]

    def test_unsubscribe_by_callable(self) -> None:
        hub = make_hub()
        received: list[Ping] = []
        hub.subscribe(received.append)

        assert hub.unsubscribe(received.append) is True
        assert hub.unsubscribe(received.append) is False
        hub.emit(Ping("a"))

        assert received == []
        assert len(hub) == 0

    def test_subscription_cancel_and_context(self) -> None:
        hub = make_hub()
        received: list[Ping] = []

        with hub.subscribe(received.append):
            hub.emit(Ping("a"))
        hub.emit(Ping("b"))

        assert [p.type for p in received] == ["a"]

    def test_failing_listener_isolated(self) -> None:
        hub = make_hub()
        received: list[Ping] = []

        def broken(event: Ping) -> None:
            raise RuntimeError("listener bug")

        hub.subscribe(broken)
        hub.subscribe(received.append)

        hub.emit(Ping("a"))

        assert received == [Ping("a")]

    def test_listener_may_unsubscribe_during_emit(self) -> None:
        hub = make_hub()
        calls: list[str] = []

        def once(event: Ping) -> None:
            calls.append(event.type)
            hub.unsubscribe(once)

        hub.subscribe(once)
        hub.emit(Ping("a"))
        hub.emit(Ping("b"))

        assert calls == ["a"]
