"""Local time projection for timer snapshots.

A viewer receives a snapshot only when the record changes, so between
snapshots it has to work out the remaining time on its own:

    project(snapshot, now)  -> seconds remaining (pure arithmetic)
    format_remaining(secs)  -> "MM:SS" or "HH:MM:SS"
    status_label(snap, s)   -> text shown next to the clock
    TickLoop                -> re-projects once per interval until time is up

Every tick projects from the snapshot's own ``start_time`` and
``duration_seconds`` instead of subtracting the interval from the last
value, so a late or skipped tick never compounds into drift.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .errors import CorruptRecord
from .snapshot import PAUSED, RUNNING, STOPPED, TimerSnapshot


logger = logging.getLogger(__name__)

AWAITING_SETUP = 'Awaiting Setup...'
TIME_UP = 'TIME UP!'


def project(snapshot: Optional[TimerSnapshot], now: float) -> float:
    """Seconds remaining on ``snapshot`` at wall-clock instant ``now``."""
    if snapshot is None or snapshot.duration_seconds is None:
        return 0
    if snapshot.status == RUNNING:
        if snapshot.start_time is None:
            raise CorruptRecord(f'Timer {snapshot.project_code} is running without a start time')
        elapsed = now - snapshot.start_time
        return max(0, snapshot.duration_seconds - elapsed)
    if snapshot.status == PAUSED:
        if snapshot.remaining_at_pause is None:
            raise CorruptRecord(f'Timer {snapshot.project_code} is paused without a remaining time')
        return snapshot.remaining_at_pause
    return snapshot.duration_seconds


def format_remaining(seconds: float) -> str:
    total = int(max(0, seconds))
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f'{hours:02d}:{minutes:02d}:{secs:02d}'
    return f'{minutes:02d}:{secs:02d}'


def status_label(snapshot: Optional[TimerSnapshot], seconds: float) -> str:
    if snapshot is None or snapshot.duration_seconds is None:
        return AWAITING_SETUP
    if seconds <= 0 and snapshot.status != STOPPED:
        return TIME_UP
    return snapshot.status.upper()


def view_payload(project_code: str, snapshot: Optional[TimerSnapshot], now: float) -> dict:
    """The payload HTTP responses and ``timer_update`` events carry."""
    seconds = project(snapshot, now)
    return {
        'projectCode': project_code,
        'timer': snapshot.to_dict() if snapshot else None,
        'remainingSeconds': seconds,
        'display': format_remaining(seconds),
        'label': status_label(snapshot, seconds),
        'serverTime': now,
    }


class TickLoop:
    """Cancellable once-per-interval re-projection of a single snapshot.

    ``on_tick(seconds)`` fires on every tick; ``on_time_up()`` fires once
    when a running snapshot reaches zero, after which the loop stops.  A
    snapshot that is not running produces exactly one tick.  Replacing a
    loop means cancelling it and starting a new one with the new snapshot.
    """

    def __init__(
        self,
        snapshot: TimerSnapshot,
        on_tick: Callable[[float], None],
        on_time_up: Optional[Callable[[], None]] = None,
        *,
        clock: Callable[[], float] = time.time,
        interval: float = 1.0,
        heartbeat_sec: int = 0,
    ) -> None:
        self.snapshot = snapshot
        self._on_tick = on_tick
        self._on_time_up = on_time_up
        self._clock = clock
        self._interval = interval
        self._heartbeat_sec = heartbeat_sec
        self._cancelled = threading.Event()
        self._finished = False
        self._task = None
        self._ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._finished and not self._cancelled.is_set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def finished(self) -> bool:
        return self._finished

    def step(self) -> bool:
        """Run one tick.  Returns True while further ticks are due."""
        if self._cancelled.is_set() or self._finished:
            return False
        seconds = project(self.snapshot, self._clock())
        self._ticks += 1
        self._on_tick(seconds)
        if not self.snapshot.is_running:
            self._finished = True
            return False
        if seconds <= 0:
            self._finished = True
            if self._on_time_up is not None:
                self._on_time_up()
            return False
        if self._heartbeat_sec and self._interval and self._ticks % max(1, int(self._heartbeat_sec / self._interval)) == 0:
            logger.info(f"[tick-heartbeat] code={self.snapshot.project_code} remaining={format_remaining(seconds)}")
        return True

    def start(self, spawn: Optional[Callable] = None) -> 'TickLoop':
        """Tick once now, then keep ticking in the background if time is still running.

        ``spawn`` defaults to ``socketio.start_background_task`` so the loop
        cooperates with whatever async mode the server runs under.
        """
        if self._task is not None:
            return self
        if not self.step():
            return self
        if spawn is None:
            from kitimer import socketio
            spawn = socketio.start_background_task
        self._task = spawn(self._run)
        return self

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        logger.debug(f"[tick-cancel] code={self.snapshot.project_code} version={self.snapshot.version}")

    def _run(self) -> None:
        while not self._cancelled.wait(self._interval):
            if not self.step():
                return
