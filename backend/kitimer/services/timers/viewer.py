import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .projector import TickLoop, format_remaining, status_label
from .snapshot import TimerSnapshot, validate_project_code


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class View:
    project_code: str
    seconds: float
    display: str
    label: str
    status: Optional[str]


class ViewerSession:
    """Everything one viewer needs to follow one project code.

    Owns the active subscription and tick loop.  Watching a different code
    cancels both before the new subscription starts, and a newer snapshot
    always replaces the running tick loop.  ``render(View)`` is called on
    every tick.
    """

    def __init__(
        self,
        render: Callable[[View], None],
        *,
        is_facilitator: bool = False,
        clock: Callable[[], float] = time.time,
        interval: float = 1.0,
        spawn: Optional[Callable] = None,
        on_time_up: Optional[Callable[[str], None]] = None,
        heartbeat_sec: int = 0,
    ) -> None:
        self.is_facilitator = is_facilitator
        self.project_code: Optional[str] = None
        self.snapshot: Optional[TimerSnapshot] = None
        self.offset = 0.0
        self._render = render
        self._local_clock = clock
        self._interval = interval
        self._spawn = spawn
        self._on_time_up = on_time_up
        self._heartbeat_sec = heartbeat_sec
        self._lock = threading.RLock()
        self._subscription = None
        self._loop: Optional[TickLoop] = None
        self._version = 0

    @property
    def tick_loop(self) -> Optional[TickLoop]:
        return self._loop

    @property
    def subscription(self):
        return self._subscription

    def now(self) -> float:
        """Local time corrected by the last known server clock offset."""
        return self._local_clock() + self.offset

    def watch(self, project_code: str, source) -> None:
        """Follow ``project_code`` through ``source.subscribe`` (e.g. a TimerStore)."""
        validate_project_code(project_code)
        with self._lock:
            self._stop()
            self.project_code = project_code
            self.snapshot = None
            self._version = 0
            subscription = source.subscribe(project_code)
            self._subscription = subscription
        spawn = self._spawn or _default_spawn()
        spawn(self._pump, subscription)

    def apply(self, snapshot: Optional[TimerSnapshot], server_time: Optional[float] = None) -> bool:
        """Take a new snapshot; returns False when it was stale and ignored."""
        with self._lock:
            if snapshot is not None and self.project_code and snapshot.project_code != self.project_code:
                return False
            if snapshot is not None and snapshot.version < self._version:
                logger.debug(f"[viewer-stale] code={snapshot.project_code} version={snapshot.version} seen={self._version}")
                return False
            if server_time is not None:
                self.offset = server_time - self._local_clock()
            if self._loop is not None:
                self._loop.cancel()
                self._loop = None
            self.snapshot = snapshot
            self._version = snapshot.version if snapshot is not None else 0
            if snapshot is None:
                self._render(View(self.project_code or '', 0, format_remaining(0), status_label(None, 0), None))
                return True
            self.project_code = snapshot.project_code
            loop = TickLoop(
                snapshot,
                on_tick=lambda seconds, snap=snapshot: self._tick(snap, seconds),
                on_time_up=lambda snap=snapshot: self._time_up(snap),
                clock=self.now,
                interval=self._interval,
                heartbeat_sec=self._heartbeat_sec,
            )
            self._loop = loop
        loop.start(self._spawn or _default_spawn())
        return True

    def close(self) -> None:
        with self._lock:
            self._stop()
            self.project_code = None
            self.snapshot = None

    def _stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        if self._loop is not None:
            self._loop.cancel()
            self._loop = None

    def _pump(self, subscription) -> None:
        for snapshot in subscription:
            if subscription is not self._subscription:
                return
            self.apply(snapshot)

    def _tick(self, snapshot: TimerSnapshot, seconds: float) -> None:
        self._render(View(
            snapshot.project_code,
            seconds,
            format_remaining(seconds),
            status_label(snapshot, seconds),
            snapshot.status,
        ))

    def _time_up(self, snapshot: TimerSnapshot) -> None:
        logger.info(f"[viewer-time-up] code={snapshot.project_code} version={snapshot.version}")
        if self._on_time_up is not None:
            self._on_time_up(snapshot.project_code)


def _default_spawn():
    from kitimer import socketio
    return socketio.start_background_task
