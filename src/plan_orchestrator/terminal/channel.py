"""Per-process output channel with typed subscribers.

Every subscriber owns its own lifetime: data subscribers are removed by
`unsubscribe()`, pattern subscribers remove themselves on match or when their
timeout elapses, so callers never have to pair listener add/remove by hand.
"""

from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Pattern, Union

from loguru import logger

PatternLike = Union[str, Pattern[str]]


def _matches(pattern: PatternLike, data: str) -> bool:
    if isinstance(pattern, str):
        return pattern in data
    return pattern.search(data) is not None


class _Subscriber(ABC):
    def __init__(self, channel: "OutputChannel") -> None:
        self._channel: Optional[OutputChannel] = channel

    def unsubscribe(self) -> None:
        if self._channel is not None:
            self._channel._remove(self)
            self._channel = None

    @property
    def active(self) -> bool:
        return self._channel is not None

    @abstractmethod
    def _deliver(self, data: str) -> None:
        raise NotImplementedError

    def _close(self) -> None:
        self._channel = None


class DataSubscriber(_Subscriber):
    def __init__(self, channel: "OutputChannel", callback: Callable[[str], None]) -> None:
        super().__init__(channel)
        self._callback = callback

    def _deliver(self, data: str) -> None:
        self._callback(data)


class PatternSubscriber(_Subscriber):
    """Resolve once when `pattern` appears in a chunk, or resolve False on timeout."""

    def __init__(self, channel: "OutputChannel", pattern: PatternLike, timeout: float) -> None:
        super().__init__(channel)
        self.pattern = pattern
        self.deadline = time.monotonic() + timeout
        self.matched = False
        self._done = threading.Event()

    def _deliver(self, data: str) -> None:
        if self._done.is_set():
            return
        if _matches(self.pattern, data):
            self.matched = True
            self._done.set()
            self.unsubscribe()

    def _close(self) -> None:
        super()._close()
        self._done.set()

    def wait(self) -> bool:
        remaining = self.deadline - time.monotonic()
        if remaining > 0:
            self._done.wait(remaining)
        if not self._done.is_set():
            self.unsubscribe()
        return self.matched


class OutputChannel:
    def __init__(self) -> None:
        self._subscribers: list[_Subscriber] = []
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, callback: Callable[[str], None]) -> DataSubscriber:
        subscriber = DataSubscriber(self, callback)
        with self._lock:
            if self._closed:
                subscriber._close()
            else:
                self._subscribers.append(subscriber)
        return subscriber

    def expect(self, pattern: PatternLike, timeout: float) -> PatternSubscriber:
        """Register a pattern wait now; call `.wait()` on the result later.

        Registering before writing avoids missing output produced in between.
        """
        subscriber = PatternSubscriber(self, pattern, timeout)
        with self._lock:
            if self._closed:
                subscriber._close()
            else:
                self._subscribers.append(subscriber)
        return subscriber

    def wait_for_output(self, pattern: PatternLike, timeout: float) -> bool:
        return self.expect(pattern, timeout).wait()

    def publish(self, data: str) -> None:
        with self._lock:
            targets = list(self._subscribers)
        for subscriber in targets:
            try:
                subscriber._deliver(data)
            except Exception:
                logger.exception("Output subscriber failed")

    def _remove(self, subscriber: _Subscriber) -> None:
        with self._lock:
            self._subscribers = [s for s in self._subscribers if s is not subscriber]

    def close(self) -> None:
        """Drop all subscribers; pending pattern waits resolve as not matched."""
        with self._lock:
            self._closed = True
            targets = list(self._subscribers)
            self._subscribers = []
        for subscriber in targets:
            subscriber._close()
