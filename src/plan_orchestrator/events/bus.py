from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional

from ..storage.interfaces import EventRepository

logger = logging.getLogger(__name__)

CHANNELS = {"plans", "assignments", "activities", "tasks", "agents"}

EventCallback = Callable[[dict[str, Any]], None]


@dataclass
class Subscription:
    callback: EventCallback
    channels: Optional[set[str]] = None
    _bus: Optional["EventBus"] = field(default=None, repr=False)

    def accepts(self, event: dict[str, Any]) -> bool:
        return self.channels is None or event.get("channel") in self.channels

    def unsubscribe(self) -> None:
        if self._bus is not None:
            self._bus._remove(self)
            self._bus = None


class EventBus:
    def __init__(self, repo: EventRepository) -> None:
        self._repo = repo
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback, channels: Optional[Iterable[str]] = None) -> Subscription:
        subscription = Subscription(
            callback=callback,
            channels=set(channels) if channels is not None else None,
            _bus=self,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            self._subscriptions = [s for s in self._subscriptions if s is not subscription]

    def emit(self, *, channel: str, event_type: str, entity_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        event = self._repo.append(
            channel=channel,
            event_type=event_type,
            entity_id=entity_id,
            payload=payload,
        )
        with self._lock:
            targets = [s for s in self._subscriptions if s.accepts(event)]
        for subscription in targets:
            try:
                subscription.callback(event)
            except Exception:
                logger.exception("Event subscriber failed for %s/%s", channel, event_type)
        return event
