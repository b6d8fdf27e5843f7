"""
Observer registry used by the store, the preloader and the manager.

Listeners are plain callables. A subscription can be revoked either through
the returned Subscription or by passing the same callable to unsubscribe().
A failing listener is logged and never interrupts the emitter or the other
listeners.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from typing import Generic, TypeVar

from mediacache.logging import get_logger

logger = get_logger(__name__)

E = TypeVar("E")
Listener = Callable[[E], None]


class Subscription(Generic[E]):
    """Revocable registration of one listener."""

    def __init__(
        self,
        hub: EventHub[E],
        listener: Listener[E],
        types: frozenset[str] | None,
    ) -> None:
        self._hub = hub
        self.listener = listener
        self.types = types
        self.active = True

    def accepts(self, event_type: str | None) -> bool:
        return self.types is None or event_type in self.types

    def cancel(self) -> None:
        if self.active:
            self._hub._remove(self)

    def __enter__(self) -> Subscription[E]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cancel()


class EventHub(Generic[E]):
    """Synchronous fan-out of events to registered listeners.

    Args:
        name: Used in log messages only.
        type_of: Extracts the event type used for filtered subscriptions.
    """

    def __init__(self, name: str, type_of: Callable[[E], str] | None = None) -> None:
        self.name = name
        self._type_of = type_of
        self._subscriptions: list[Subscription[E]] = []

    def subscribe(
        self,
        listener: Listener[E],
        types: Iterable[str] | None = None,
    ) -> Subscription[E]:
        """Register a listener, optionally for a subset of event types."""
        wanted = frozenset(str(getattr(t, "value", t)) for t in types) if types else None
        subscription = Subscription(self, listener, wanted)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, listener: Listener[E]) -> bool:
        """Remove every subscription of a listener. Returns whether any existed."""
        removed = False
        for subscription in list(self._subscriptions):
            if subscription.listener == listener:
                self._remove(subscription)
                removed = True
        return removed

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            self._remove(subscription)

    def emit(self, event: E) -> None:
        event_type = self._type_of(event) if self._type_of else None
        # Snapshot so listeners may unsubscribe while being notified.
        for subscription in list(self._subscriptions):
            if not subscription.active or not subscription.accepts(event_type):
                continue
            try:
                subscription.listener(event)
            except Exception:
                logger.exception("Event listener failed", hub=self.name, event=event_type)

    def __len__(self) -> int:
        return len(self._subscriptions)

    def _remove(self, subscription: Subscription[E]) -> None:
        subscription.active = False
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
