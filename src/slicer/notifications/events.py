"""In-process event bus for portfolio notifications."""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

from slicer.core.models import Event

E = TypeVar("E", bound=Event)

Subscriber = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """
    Records every notification and fans it out to subscribers.

    Subscribers may be plain or async callables. A failing subscriber is
    logged and never interrupts the operation that emitted the event.
    """

    def __init__(self) -> None:
        self._history: list[Event] = []
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    async def emit(self, event: Event) -> None:
        self._history.append(event)
        logger.debug(f"Event {event.name}: {event}")

        for subscriber in list(self._subscribers):
            try:
                result = subscriber(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.name}: {e}")

    @property
    def history(self) -> list[Event]:
        return list(self._history)

    def of_type(self, event_type: type[E]) -> list[E]:
        """Get recorded events of one type, in emission order."""
        return [e for e in self._history if isinstance(e, event_type)]

    def clear(self) -> None:
        self._history.clear()
