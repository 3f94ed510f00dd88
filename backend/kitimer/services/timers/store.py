"""Authoritative timer records and their transition rules.

Each command reads the record with its ``version``, decides the next state
from that read, and writes it back with a compare-and-swap::

    UPDATE timer_record SET ... WHERE project_code = :code AND version = :seen

A lost race re-reads and re-decides against the winner's state, so two
facilitators pressing start/pause at once end with whichever write the
database serialized last, never with a half-applied mix of both.
"""

import time
from typing import Callable, Optional

from flask import current_app
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from kitimer import db
from kitimer.models import TimerRecord
from .broker import SnapshotBroker, Subscription
from .errors import (
    InvalidDuration,
    NotConfigured,
    PermissionDenied,
    StoreUnavailable,
    TimerError,
)
from .snapshot import PAUSED, RUNNING, STOPPED, TimerSnapshot, validate_project_code


Authorizer = Callable[[object, str], bool]


def parse_duration_minutes(value, max_minutes: int = 0) -> int:
    """Whole minutes from form or JSON input; raises InvalidDuration otherwise."""
    if isinstance(value, bool):
        raise InvalidDuration('Duration must be a whole number of minutes')
    if isinstance(value, int):
        minutes = value
    elif isinstance(value, float) and value.is_integer():
        minutes = int(value)
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        minutes = int(value.strip())
    else:
        raise InvalidDuration('Duration must be a whole number of minutes')
    if minutes < 1:
        raise InvalidDuration('Please enter a valid duration of 1 minute or more.')
    if max_minutes and minutes > max_minutes:
        raise InvalidDuration(f'Duration cannot exceed {max_minutes} minutes')
    return minutes


class TimerStore:

    def __init__(
        self,
        broker: SnapshotBroker,
        authorizer: Authorizer,
        *,
        clock: Callable[[], float] = time.time,
        cas_attempts: int = 5,
        max_duration_minutes: int = 0,
    ) -> None:
        self.broker = broker
        self.clock = clock
        self._authorizer = authorizer
        self._cas_attempts = max(1, int(cas_attempts))
        self.max_duration_minutes = int(max_duration_minutes or 0)

    # ── reads ────────────────────────────────────────────────────────────

    def get(self, project_code: str) -> Optional[TimerSnapshot]:
        """Current snapshot, or None while the code awaits setup."""
        validate_project_code(project_code)
        try:
            record = self._load(project_code)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreUnavailable(f'Could not read timer {project_code}') from exc
        return record.to_snapshot() if record else None

    def subscribe(self, project_code: str) -> Subscription:
        validate_project_code(project_code)
        return self.broker.subscribe(project_code, lambda: self.get(project_code))

    # ── commands ─────────────────────────────────────────────────────────

    def configure(self, project_code: str, duration_minutes, actor=None) -> TimerSnapshot:
        """Create or overwrite the record as a stopped timer of the given length."""
        validate_project_code(project_code)
        self._authorize(actor, project_code, 'configure')
        seconds = parse_duration_minutes(duration_minutes, self.max_duration_minutes) * 60

        def decide(current, now):
            return {
                'status': STOPPED,
                'duration_seconds': seconds,
                'configured_seconds': seconds,
                'remaining_at_pause': seconds,
                'start_time': None,
            }

        snapshot = self._transition(project_code, decide)
        current_app.logger.info(f"[timer-configure] code={project_code} duration={seconds}s version={snapshot.version}")
        return snapshot

    def start(self, project_code: str, actor=None) -> TimerSnapshot:
        """Run the timer from its stopped duration or its paused remainder.

        Starting a running timer changes nothing.
        """
        validate_project_code(project_code)
        self._authorize(actor, project_code, 'start')

        def decide(current, now):
            if current is None or not current.duration_seconds:
                raise NotConfigured('Please set the timer duration before starting.')
            if current.status == RUNNING:
                return None
            duration = current.duration_seconds
            if current.status == PAUSED:
                duration = current.remaining_at_pause
            return {
                'status': RUNNING,
                'duration_seconds': duration,
                'configured_seconds': current.configured_seconds,
                'remaining_at_pause': None,
                'start_time': now,
            }

        snapshot = self._transition(project_code, decide)
        current_app.logger.info(f"[timer-start] code={project_code} duration={snapshot.duration_seconds}s start={snapshot.start_time} version={snapshot.version}")
        return snapshot

    def pause(self, project_code: str, actor=None) -> Optional[TimerSnapshot]:
        """Freeze a running timer.  Anything else is left as is."""
        validate_project_code(project_code)
        self._authorize(actor, project_code, 'pause')

        def decide(current, now):
            if current is None or current.status != RUNNING:
                return None
            elapsed = max(0.0, now - current.start_time)
            remaining = max(0.0, current.duration_seconds - elapsed)
            return {
                'status': PAUSED,
                'duration_seconds': current.duration_seconds,
                'configured_seconds': current.configured_seconds,
                'remaining_at_pause': remaining,
                'start_time': None,
            }

        snapshot = self._transition(project_code, decide)
        if snapshot is not None:
            current_app.logger.info(f"[timer-pause] code={project_code} remaining={snapshot.remaining_at_pause} version={snapshot.version}")
        return snapshot

    def reset(self, project_code: str, actor=None) -> TimerSnapshot:
        """Stop the timer and restore the full configured duration."""
        validate_project_code(project_code)
        self._authorize(actor, project_code, 'reset')

        def decide(current, now):
            if current is None or current.duration_seconds is None:
                raise NotConfigured('Cannot reset: Timer duration has not been set.')
            full = current.configured_seconds or current.duration_seconds
            return {
                'status': STOPPED,
                'duration_seconds': full,
                'configured_seconds': full,
                'remaining_at_pause': full,
                'start_time': None,
            }

        snapshot = self._transition(project_code, decide)
        current_app.logger.info(f"[timer-reset] code={project_code} duration={snapshot.duration_seconds}s version={snapshot.version}")
        return snapshot

    def toggle(self, project_code: str, actor=None) -> Optional[TimerSnapshot]:
        """Pause a running timer, start anything else."""
        current = self.get(project_code)
        if current is not None and current.status == RUNNING:
            return self.pause(project_code, actor)
        return self.start(project_code, actor)

    def wipe(self) -> int:
        """Administrative: delete every record.  Viewers are told the codes await setup."""
        try:
            codes = list(db.session.execute(select(TimerRecord.project_code)).scalars())
            db.session.execute(delete(TimerRecord))
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise StoreUnavailable('Could not wipe timer records') from exc
        for code in codes:
            self.broker.publish(code, None)
        current_app.logger.info(f"[timer-wipe] removed={len(codes)}")
        return len(codes)

    # ── internals ────────────────────────────────────────────────────────

    def _authorize(self, actor, project_code: str, action: str) -> None:
        if self._authorizer(actor, project_code):
            return
        current_app.logger.info(f"[timer-denied] code={project_code} action={action} actor={getattr(actor, 'id', None)}")
        raise PermissionDenied('You may not have permission to control the timer. Please ensure you are a signed-in facilitator.')

    def _load(self, project_code: str) -> Optional[TimerRecord]:
        stmt = (
            select(TimerRecord)
            .where(TimerRecord.project_code == project_code)
            .execution_options(populate_existing=True)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    def _transition(self, project_code: str, decide) -> Optional[TimerSnapshot]:
        """Apply ``decide(current, now)`` with compare-and-swap.

        ``decide`` returns the full next state, or None to leave the record
        alone (the current snapshot is returned and nothing is published).
        """
        for attempt in range(1, self._cas_attempts + 1):
            now = self.clock()
            try:
                record = self._load(project_code)
                current = record.to_snapshot() if record else None
                changes = decide(current, now)
                if changes is None:
                    db.session.rollback()
                    return current
                if record is None:
                    version = 1
                    db.session.add(TimerRecord(project_code=project_code, version=version, updated_at=now, **changes))
                    db.session.commit()
                else:
                    version = current.version + 1
                    result = db.session.execute(
                        update(TimerRecord)
                        .where(TimerRecord.project_code == project_code, TimerRecord.version == current.version)
                        .values(version=version, updated_at=now, **changes)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:
                        db.session.rollback()
                        current_app.logger.info(f"[timer-cas-retry] code={project_code} attempt={attempt} seen_version={current.version}")
                        continue
                    db.session.commit()
            except IntegrityError:
                # Another facilitator created the record first
                db.session.rollback()
                current_app.logger.info(f"[timer-cas-retry] code={project_code} attempt={attempt} concurrent create")
                continue
            except SQLAlchemyError as exc:
                db.session.rollback()
                raise StoreUnavailable(f'Could not update timer {project_code}') from exc
            except TimerError:
                db.session.rollback()
                raise

            snapshot = TimerSnapshot(project_code=project_code, version=version, **changes)
            self.broker.publish(project_code, snapshot)
            return snapshot

        raise StoreUnavailable(f'Timer {project_code} is changing too quickly, please try again')
