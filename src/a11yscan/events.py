"""Crawl event channel."""

import logging
from typing import Callable, Iterable, Optional

from a11yscan.models import CrawlEvent, CrawlEventType

logger = logging.getLogger(__name__)

EventCallback = Callable[[CrawlEvent], None]


class CrawlEventBus:
    """
    Typed, append-only event channel for a crawl session.

    Subscribers are called synchronously in subscription order. A subscriber
    that raises is logged and skipped; the publisher never sees the error.

    Usage:
        unsubscribe = bus.subscribe(print, [CrawlEventType.URL_COMPLETED])
        ...
        unsubscribe()
    """

    def __init__(self):
        self._subscribers: list[tuple[EventCallback, Optional[frozenset[CrawlEventType]]]] = []
        self._history: list[CrawlEvent] = []

    def subscribe(
        self,
        callback: EventCallback,
        event_types: Optional[Iterable[CrawlEventType]] = None,
    ) -> Callable[[], None]:
        """
        Register a callback.

        Args:
            callback: Called with each matching CrawlEvent
            event_types: Only deliver these types (all types when None)

        Returns:
            Function that removes the subscription
        """
        types = frozenset(CrawlEventType(t) for t in event_types) if event_types is not None else None
        subscription = (callback, types)
        self._subscribers.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

        return unsubscribe

    def publish(self, event: CrawlEvent) -> None:
        self._history.append(event)
        for callback, types in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.type.value}: {e}")

    @property
    def history(self) -> list[CrawlEvent]:
        return list(self._history)

    def events_of(self, event_type: CrawlEventType) -> list[CrawlEvent]:
        return [event for event in self._history if event.type == event_type]

    def clear(self) -> None:
        """Forget the event history; subscriptions are kept."""
        self._history.clear()
