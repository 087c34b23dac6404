"""Observer registry for run events."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunEvent:
    type: str
    session_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[RunEvent], None]


class EventBus:
    """Fan run events out to independent subscribers.

    Subscribers run synchronously in publish order. One that raises is logged
    and skipped so observers never affect scheduling.
    """

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def publish(self, event_type: str, session_id: str | None = None, **data: Any) -> RunEvent:
        event = RunEvent(type=event_type, session_id=session_id, data=data)
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Event subscriber failed",
                    extra={"event_type": event_type, "subscriber": getattr(callback, "__name__", repr(callback))},
                )
        return event


class EventRecorder:
    """Subscriber that keeps events in memory."""

    def __init__(self, limit: int | None = None) -> None:
        self.events: list[RunEvent] = []
        self._limit = limit

    def __call__(self, event: RunEvent) -> None:
        self.events.append(event)
        if self._limit is not None and len(self.events) > self._limit:
            del self.events[: len(self.events) - self._limit]

    def of_type(self, event_type: str) -> list[RunEvent]:
        return [event for event in self.events if event.type == event_type]


__all__ = ["EventBus", "EventRecorder", "RunEvent", "Subscriber"]
