"""
Live subscriptions over the store.

A ChangeFeed is owned by the application instance (see main.lifespan) and
maps topics to listeners. Writers publish the topics they touched after
committing; each Subscription re-runs its query and hands the full current
result to its callback. Callers own their subscriptions and must cancel them.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Generic, Iterable, Optional, TypeVar

from badgerswap.metrics import subscription_closed, subscription_opened
from badgerswap.storage import run_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

Listener = Callable[[str], None]


def messages_topic(conversation_id: str) -> str:
    return f"conversation:{conversation_id}:messages"


def buyer_topic(user_id: str) -> str:
    return f"user:{user_id}:buyer"


def seller_topic(user_id: str) -> str:
    return f"user:{user_id}:seller"


class ChangeFeed:
    """Topic based change notification."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    def listen(self, topic: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for a topic.

        Returns:
            A function removing the listener. Calling it twice is harmless.
        """
        with self._lock:
            self._listeners[topic].append(listener)

        def remove() -> None:
            with self._lock:
                listeners = self._listeners.get(topic)
                if listeners and listener in listeners:
                    listeners.remove(listener)
                    if not listeners:
                        del self._listeners[topic]

        return remove

    def publish(self, *topics: str) -> None:
        """Notify every listener of the given topics."""
        with self._lock:
            targets = [(topic, list(self._listeners.get(topic, ()))) for topic in topics]

        # Listeners run outside the lock so they may cancel themselves
        for topic, listeners in targets:
            for listener in listeners:
                try:
                    listener(topic)
                except Exception:
                    logger.exception(f"Listener for {topic} failed")

    def listener_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._listeners.get(topic, ()))
            return sum(len(listeners) for listeners in self._listeners.values())


class Subscription(Generic[T]):
    """
    A live query.

    The current result is delivered once on creation and again after every
    change published on any of `topics`. Each delivery is the full list,
    never a diff.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        topics: Iterable[str],
        load: Callable[[], T],
        on_update: Callable[[T], None],
        on_error: Optional[Callable[[Exception], None]] = None,
        name: str = "subscription",
        kind: Optional[str] = None,
    ):
        self._load = load
        self._on_update = on_update
        self._on_error = on_error
        self._name = name
        self._kind = kind
        self._lock = threading.RLock()
        self._active = True
        self._removers = [feed.listen(topic, self._notify) for topic in topics]

        if kind:
            subscription_opened(kind)

        self.refresh()

    @property
    def active(self) -> bool:
        return self._active

    def _notify(self, topic: str) -> None:
        logger.debug(f"{self._name}: change on {topic}")
        self.refresh()

    def refresh(self) -> None:
        """Re-run the query and deliver the result."""
        if not self._active:
            return

        # Serialize deliveries so callbacks never see an older snapshot last
        with self._lock:
            if not self._active:
                return
            try:
                result = run_with_retry(self._load, self._name)
            except Exception as e:
                logger.error(f"{self._name}: failed to load snapshot: {e}")
                if self._on_error is not None:
                    self._on_error(e)
                return
            self._on_update(result)

    def cancel(self) -> None:
        """Stop delivery and release the feed listeners."""
        with self._lock:
            if not self._active:
                return
            self._active = False
            removers, self._removers = self._removers, []

        for remove in removers:
            remove()

        if self._kind:
            subscription_closed(self._kind)
        logger.debug(f"{self._name}: cancelled")


class MergedSubscription:
    """
    Two independent live queries presented as one list.

    Each side keeps its own latest snapshot; the merged list is recomputed
    whenever either side changes, so one side may briefly be staler than
    the other. A side whose first load fails counts as empty until its next
    successful load, so the other side is still shown.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        left: tuple[str, Callable[[], list]],
        right: tuple[str, Callable[[], list]],
        on_update: Callable[[list], None],
        key: Callable[[object], object],
        on_error: Optional[Callable[[Exception], None]] = None,
        name: str = "merged",
        kind: Optional[str] = None,
    ):
        self._on_update = on_update
        self._on_error = on_error
        self._key = key
        self._lock = threading.Lock()
        self._parts: dict[str, list] = {}
        self._kind = kind
        self._active = True

        left_topic, left_load = left
        right_topic, right_load = right

        if kind:
            subscription_opened(kind)

        self._left = Subscription(
            feed, [left_topic], left_load,
            lambda items: self._deliver("left", items),
            on_error=lambda exc: self._side_failed("left", exc),
            name=f"{name}:left",
        )
        self._right = Subscription(
            feed, [right_topic], right_load,
            lambda items: self._deliver("right", items),
            on_error=lambda exc: self._side_failed("right", exc),
            name=f"{name}:right",
        )

    @property
    def active(self) -> bool:
        return self._active

    def _deliver(self, side: str, items: list) -> None:
        with self._lock:
            self._parts[side] = list(items)
            self._emit()

    def _side_failed(self, side: str, exc: Exception) -> None:
        if self._on_error is not None:
            self._on_error(exc)
        with self._lock:
            # A later failure keeps the last good snapshot of that side
            if side in self._parts:
                return
            self._parts[side] = []
            self._emit()

    def _emit(self) -> None:
        # Wait until both sides have reported once
        if len(self._parts) < 2:
            return
        merged = []
        seen = set()
        for item in self._parts["left"] + self._parts["right"]:
            item_key = self._key(item)
            if item_key in seen:
                continue
            seen.add(item_key)
            merged.append(item)
        self._on_update(merged)

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        self._left.cancel()
        self._right.cancel()
        if self._kind:
            subscription_closed(self._kind)
