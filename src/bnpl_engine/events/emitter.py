"""In-process delivery of domain events to subscribers.

Services publish events only after their unit of work has committed, so a
subscriber never observes a state the store rolled back. Subscribers are
isolated from one another: a raising credit ledger or notifier is logged and
reported back to the publisher, and delivery continues.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

from bnpl_engine.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class Subscription:
    handler: EventHandler
    event_types: frozenset[str] = frozenset()
    categories: frozenset[EventCategory] = frozenset()

    def matches(self, event: DomainEvent) -> bool:
        # An empty filter accepts everything.
        if self.event_types and event.event_type not in self.event_types:
            return False
        return not self.categories or event.category in self.categories


def _as_set(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]


class EventEmitter:
    """Routes events to subscribers by event class or category.

        emitter.on(PaymentCompleted, credit_handler)
        emitter.on_category(EventCategory.SETTLEMENT, audit_log)
        emitter.emit_all(events)

    Inside ``with emitter.batch():`` publication is deferred on the calling
    thread and delivered when the block exits cleanly.
    """

    def __init__(self) -> None:
        self._subscriptions: list[Subscription] = []
        self._local = threading.local()

    def on(self, event_type: type[DomainEvent] | Iterable[type[DomainEvent]], handler: EventHandler) -> None:
        names = frozenset(cls.__name__ for cls in _as_set(event_type))
        self._subscriptions.append(Subscription(handler, event_types=names))

    def on_category(self, category: EventCategory | Iterable[EventCategory], handler: EventHandler) -> None:
        self._subscriptions.append(Subscription(handler, categories=frozenset(_as_set(category))))

    def on_all(self, handler: EventHandler) -> None:
        self._subscriptions.append(Subscription(handler))

    def off(self, handler: EventHandler) -> None:
        """Drop every subscription held by ``handler``."""
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver one event, or queue it when a batch is open on this thread."""
        pending = self._pending()
        if pending is not None:
            pending.append(event)
            return []
        return self._deliver(event)

    def emit_all(self, events: Iterable[DomainEvent]) -> list[Exception]:
        errors: list[Exception] = []
        for event in events:
            errors.extend(self.emit(event))
        return errors

    def batch(self) -> EventBatch:
        return EventBatch(self)

    def _pending(self) -> list[DomainEvent] | None:
        return getattr(self._local, "pending", None)

    def _deliver(self, event: DomainEvent) -> list[Exception]:
        errors: list[Exception] = []
        for subscription in [s for s in self._subscriptions if s.matches(event)]:
            try:
                subscription.handler(event)
            except Exception as exc:
                logger.exception(
                    "Subscriber %r failed on %s event_id=%s",
                    subscription.handler,
                    event.event_type,
                    event.metadata.event_id,
                )
                errors.append(exc)
        return errors


class EventBatch:
    """Defers publication on the current thread until the block exits.

    A block that raises discards everything it queued.
    """

    def __init__(self, emitter: EventEmitter) -> None:
        self._emitter = emitter
        self.errors: list[Exception] = []

    def __enter__(self) -> EventBatch:
        self._emitter._local.pending = []
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        queued = self._emitter._pending() or []
        self._emitter._local.pending = None
        if exc_type is not None:
            if queued:
                logger.info("Discarding %d queued events after %s", len(queued), exc_type.__name__)
            return
        for event in queued:
            self.errors.extend(self._emitter._deliver(event))

    def add(self, event: DomainEvent) -> None:
        self._emitter.emit(event)
