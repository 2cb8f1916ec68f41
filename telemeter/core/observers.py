"""Ordered observer registry."""

import logging
import threading
from typing import Callable, Generic, ParamSpec

P = ParamSpec("P")

logger = logging.getLogger("telemeter.observers")


class ObserverRegistry(Generic[P]):
    """Ordered set of callbacks fired synchronously.

    ``notify`` iterates over a snapshot taken when it starts, so a subscriber
    that unsubscribes itself (or another subscriber) during notification does
    not change who receives the current notification. A subscriber that
    raises is logged and skipped.
    """

    def __init__(self, name: str = "observers") -> None:
        self._name = name
        self._subscribers: dict[int, Callable[P, object]] = {}
        self._next_token = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: Callable[P, object]) -> Callable[[], None]:
        """Add a subscriber and return a callable that removes it again.

        Subscribing the same callable twice registers it once.
        """
        with self._lock:
            for token, existing in self._subscribers.items():
                if existing == callback:
                    return lambda token=token: self._remove(token)
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
        return lambda: self._remove(token)

    def unsubscribe(self, callback: Callable[P, object]) -> bool:
        with self._lock:
            for token, existing in list(self._subscribers.items()):
                if existing == callback:
                    del self._subscribers[token]
                    return True
        return False

    def _remove(self, token: int) -> None:
        with self._lock:
            self._subscribers.pop(token, None)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def notify(self, *args: P.args, **kwargs: P.kwargs) -> int:
        """Call every current subscriber in subscription order.

        Returns:
            The number of subscribers that were called.
        """
        with self._lock:
            snapshot = list(self._subscribers.values())

        for callback in snapshot:
            try:
                callback(*args, **kwargs)
            except Exception as e:
                logger.error(
                    f"Subscriber of {self._name} raised: {e}",
                    extra={"registry": self._name},
                    exc_info=True,
                )
        return len(snapshot)
