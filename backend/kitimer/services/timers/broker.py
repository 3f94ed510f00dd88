import logging
import queue
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Optional, Set

from .snapshot import TimerSnapshot


logger = logging.getLogger(__name__)

_CANCELLED = object()


class Subscription:
    """Unbounded stream of snapshots for one project code.

    Yields the snapshot current at subscription time (``None`` while the
    code awaits setup) followed by one snapshot per committed mutation.
    Iteration only ends once ``cancel()`` is called.
    """

    def __init__(self, broker: 'SnapshotBroker', project_code: str) -> None:
        self.project_code = project_code
        self._broker = broker
        self._queue: 'queue.Queue' = queue.Queue()
        self._cancelled = False
        self._version = 0
        self._cancel_callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_cancel_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when the subscription is cancelled (now, if it already is)."""
        if self._cancelled:
            callback()
            return
        self._cancel_callbacks.append(callback)

    def _push(self, snapshot: Optional[TimerSnapshot]) -> None:
        # The primed snapshot may already be newer than a late publish
        if snapshot is not None and snapshot.version <= self._version:
            return
        self._version = snapshot.version if snapshot is not None else 0
        self._queue.put(snapshot)

    def get(self, timeout: Optional[float] = None) -> Optional[TimerSnapshot]:
        """Next snapshot; raises ``queue.Empty`` on timeout and ``StopIteration`` once cancelled."""
        if self._cancelled and self._queue.empty():
            raise StopIteration
        item = self._queue.get(timeout=timeout)
        if item is _CANCELLED:
            raise StopIteration
        return item

    def __iter__(self):
        return self

    def __next__(self) -> Optional[TimerSnapshot]:
        return self.get()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._broker._remove(self)
        self._queue.put(_CANCELLED)
        for callback in self._cancel_callbacks:
            callback()
        self._cancel_callbacks = []


class SnapshotBroker:
    """Fans committed snapshots out to subscribers and listeners.

    Subscriptions are in-process queues.  Listeners are plain callables
    ``(project_code, snapshot)``; the Socket.IO layer registers one to emit
    ``timer_update`` into the project's room.

    Two commands may commit in one order and publish in the other, so the
    broker remembers the newest version delivered per code and drops any
    snapshot at or below it.  ``None`` (record wiped) resets the counter.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscriptions: Dict[str, Set[Subscription]] = defaultdict(set)
        self._listeners: List[Callable[[str, Optional[TimerSnapshot]], None]] = []
        self._versions: Dict[str, int] = {}

    def add_listener(self, listener: Callable[[str, Optional[TimerSnapshot]], None]) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def subscribe(self, project_code: str, loader: Callable[[], Optional[TimerSnapshot]]) -> Subscription:
        """Register a subscription primed with ``loader()``.

        The initial read happens under the broker lock, and publishers take
        the same lock, so no mutation can slip between the initial snapshot
        and the registration.
        """
        subscription = Subscription(self, project_code)
        with self._lock:
            subscription._push(loader())
            self._subscriptions[project_code].add(subscription)
        return subscription

    def subscriber_count(self, project_code: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(project_code, ()))

    def publish(self, project_code: str, snapshot: Optional[TimerSnapshot]) -> bool:
        """Deliver ``snapshot``; returns False when a newer one already went out."""
        with self._lock:
            if snapshot is None:
                self._versions.pop(project_code, None)
            elif snapshot.version <= self._versions.get(project_code, 0):
                logger.debug(f"[broker-stale] code={project_code} version={snapshot.version} last={self._versions[project_code]}")
                return False
            else:
                self._versions[project_code] = snapshot.version
            for subscription in list(self._subscriptions.get(project_code, ())):
                subscription._push(snapshot)
            # Listeners run under the lock so room pushes keep version order
            for listener in list(self._listeners):
                try:
                    listener(project_code, snapshot)
                except Exception:
                    # A failing transport must not undo a committed mutation
                    logger.exception(f"[broker-listener-failed] code={project_code}")
        return True

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions.get(subscription.project_code)
            if subs is None:
                return
            subs.discard(subscription)
            if not subs:
                self._subscriptions.pop(subscription.project_code, None)
