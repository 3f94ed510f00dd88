import queue

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.sql.expression import Update

from kitimer import db
from kitimer.models import TimerRecord
from kitimer.services.timers.errors import (
    CorruptRecord,
    InvalidDuration,
    InvalidProjectCode,
    NotConfigured,
    PermissionDenied,
    StoreUnavailable,
)
from kitimer.services.timers.projector import format_remaining, project
from kitimer.services.timers.snapshot import PAUSED, RUNNING, STOPPED
from kitimer.services.timers.store import parse_duration_minutes


def test_configure_creates_stopped_record(store, clock, facilitator):
    snap = store.configure('1234', 35, actor=facilitator)
    assert snap.status == STOPPED
    assert snap.duration_seconds == 2100
    assert snap.remaining_at_pause == 2100
    assert snap.start_time is None
    assert snap.version == 1
    # Immediately projecting the stopped snapshot shows the full duration
    assert project(snap, clock()) == 2100
    assert format_remaining(project(snap, clock())) == '35:00'

    stored = db.session.get(TimerRecord, '1234')
    assert stored.configured_seconds == 2100


def test_configure_overwrites_running_timer(store, clock, facilitator):
    store.configure('1234', 10, actor=facilitator)
    store.start('1234', actor=facilitator)
    clock.advance(30)
    snap = store.configure('1234', 5, actor=facilitator)
    assert snap.status == STOPPED
    assert snap.duration_seconds == 300
    assert snap.start_time is None
    assert snap.version == 3


@pytest.mark.parametrize('bad', [0, -3, 'abc', '', None, 2.5, True, '1.5', float('nan')])
def test_configure_rejects_bad_duration_and_keeps_record(store, clock, facilitator, bad):
    store.configure('1234', 20, actor=facilitator)
    with pytest.raises(InvalidDuration):
        store.configure('1234', bad, actor=facilitator)
    snap = store.get('1234')
    assert snap.duration_seconds == 1200
    assert snap.version == 1


def test_parse_duration_accepts_form_input():
    assert parse_duration_minutes('35') == 35
    assert parse_duration_minutes(' 7 ') == 7
    assert parse_duration_minutes(12.0) == 12
    with pytest.raises(InvalidDuration):
        parse_duration_minutes(61, max_minutes=60)
    assert parse_duration_minutes(60, max_minutes=60) == 60


@pytest.mark.parametrize('code', ['123', '12345', 'abcd', '12a4', '١٢٣٤', None])
def test_invalid_project_code(store, facilitator, code):
    with pytest.raises(InvalidProjectCode):
        store.configure(code, 5, actor=facilitator)


def test_mutations_require_facilitator(store, clock, facilitator, viewer_user):
    with pytest.raises(PermissionDenied):
        store.configure('1234', 5, actor=viewer_user)
    with pytest.raises(PermissionDenied):
        store.configure('1234', 5, actor=None)
    assert store.get('1234') is None

    store.configure('1234', 5, actor=facilitator)
    for command in (store.start, store.pause, store.reset, store.toggle):
        with pytest.raises(PermissionDenied):
            command('1234', actor=viewer_user)
    assert store.get('1234').status == STOPPED


def test_facilitator_email_domain(flask_app, store, clock, facilitator):
    flask_app.config['FACILITATOR_EMAIL_DOMAIN'] = '@knowinnovation.com'
    with pytest.raises(PermissionDenied):
        store.configure('1234', 5, actor=facilitator)
    facilitator.email = 'lead@KnowInnovation.com'
    db.session.commit()
    assert store.configure('1234', 5, actor=facilitator).duration_seconds == 300


def test_start_without_configuration(store, clock, facilitator):
    with pytest.raises(NotConfigured):
        store.start('4321', actor=facilitator)
    with pytest.raises(NotConfigured):
        store.reset('4321', actor=facilitator)


def test_start_sets_running_and_projects(store, clock, facilitator):
    store.configure('1234', 1, actor=facilitator)
    started = store.start('1234', actor=facilitator)
    assert started.status == RUNNING
    assert started.start_time == clock()
    assert started.remaining_at_pause is None
    clock.advance(15)
    assert project(started, clock()) == 45


def test_start_twice_keeps_start_time(store, clock, facilitator):
    store.configure('1234', 5, actor=facilitator)
    first = store.start('1234', actor=facilitator)
    clock.advance(4)
    second = store.start('1234', actor=facilitator)
    assert second.start_time == first.start_time
    assert second.version == first.version


def test_pause_captures_remaining(store, clock, facilitator):
    store.configure('1234', 10, actor=facilitator)
    store.start('1234', actor=facilitator)
    clock.advance(90.5)
    paused = store.pause('1234', actor=facilitator)
    assert paused.status == PAUSED
    assert paused.start_time is None
    assert paused.remaining_at_pause == pytest.approx(509.5)
    clock.advance(100)
    assert project(paused, clock()) == pytest.approx(509.5)


def test_pause_never_exceeds_run_duration(store, clock, facilitator):
    store.configure('1234', 1, actor=facilitator)
    store.start('1234', actor=facilitator)
    # Clock stepped backwards (e.g. NTP correction)
    clock.advance(-20)
    paused = store.pause('1234', actor=facilitator)
    assert paused.remaining_at_pause == 60
    store.start('1234', actor=facilitator)
    clock.advance(500)
    assert store.pause('1234', actor=facilitator).remaining_at_pause == 0


def test_pause_is_noop_when_not_running(store, clock, facilitator):
    assert store.pause('1234', actor=facilitator) is None
    store.configure('1234', 5, actor=facilitator)
    snap = store.pause('1234', actor=facilitator)
    assert snap.status == STOPPED
    assert snap.version == 1


def test_resume_from_pause_uses_remaining(store, clock, facilitator):
    store.configure('1234', 20, actor=facilitator)
    store.start('1234', actor=facilitator)
    clock.advance(600)
    paused = store.pause('1234', actor=facilitator)
    assert paused.remaining_at_pause == 600
    clock.advance(42)
    resumed = store.start('1234', actor=facilitator)
    assert resumed.duration_seconds == 600
    assert resumed.start_time == clock()
    clock.advance(10)
    assert project(resumed, clock()) == 590


def test_pause_start_pause_roundtrip(store, clock, facilitator):
    store.configure('1234', 3, actor=facilitator)
    store.start('1234', actor=facilitator)
    clock.advance(33.25)
    first = store.pause('1234', actor=facilitator)
    store.start('1234', actor=facilitator)
    second = store.pause('1234', actor=facilitator)
    assert second.remaining_at_pause == first.remaining_at_pause


@pytest.mark.parametrize('steps', [[], ['start'], ['start', 'pause'], ['start', 'pause', 'start']])
def test_reset_restores_full_duration(store, clock, facilitator, steps):
    store.configure('1234', 15, actor=facilitator)
    for step in steps:
        clock.advance(61)
        getattr(store, step)('1234', actor=facilitator)
    snap = store.reset('1234', actor=facilitator)
    assert snap.status == STOPPED
    assert snap.start_time is None
    assert snap.duration_seconds == 900
    assert snap.remaining_at_pause == snap.duration_seconds


def test_toggle_alternates(store, clock, facilitator):
    store.configure('1234', 5, actor=facilitator)
    assert store.toggle('1234', actor=facilitator).status == RUNNING
    clock.advance(5)
    assert store.toggle('1234', actor=facilitator).status == PAUSED
    assert store.toggle('1234', actor=facilitator).status == RUNNING


def test_subscribe_never_configured_yields_none(store):
    sub = store.subscribe('9999')
    assert sub.get(timeout=1) is None
    with pytest.raises(queue.Empty):
        sub.get(timeout=0.05)
    sub.cancel()


def test_subscribe_streams_every_mutation(store, clock, facilitator):
    sub = store.subscribe('1234')
    assert sub.get(timeout=1) is None
    store.configure('1234', 5, actor=facilitator)
    store.start('1234', actor=facilitator)
    store.start('1234', actor=facilitator)  # no-op, nothing published
    clock.advance(3)
    store.pause('1234', actor=facilitator)
    statuses = [sub.get(timeout=1).status for _ in range(3)]
    assert statuses == [STOPPED, RUNNING, PAUSED]
    with pytest.raises(queue.Empty):
        sub.get(timeout=0.05)
    sub.cancel()


def test_subscription_cancel_is_idempotent_and_ends_stream(store, facilitator):
    store.configure('1234', 5, actor=facilitator)
    sub = store.subscribe('1234')
    assert store.broker.subscriber_count('1234') == 1
    sub.cancel()
    sub.cancel()
    assert store.broker.subscriber_count('1234') == 0
    # Primed snapshot is still readable, then iteration ends
    assert [s.status for s in sub] == [STOPPED]
    store.start('1234', actor=facilitator)
    with pytest.raises(StopIteration):
        sub.get(timeout=0.05)


def test_subscriptions_are_scoped_to_code(store, facilitator):
    a = store.subscribe('1111')
    b = store.subscribe('2222')
    a.get(timeout=1)
    b.get(timeout=1)
    store.configure('1111', 5, actor=facilitator)
    assert a.get(timeout=1).project_code == '1111'
    with pytest.raises(queue.Empty):
        b.get(timeout=0.05)
    a.cancel()
    b.cancel()


def test_wipe_removes_records_and_notifies(store, facilitator):
    store.configure('1111', 5, actor=facilitator)
    store.configure('2222', 5, actor=facilitator)
    sub = store.subscribe('1111')
    sub.get(timeout=1)
    assert store.wipe() == 2
    assert store.get('1111') is None
    assert sub.get(timeout=1) is None
    sub.cancel()


def test_late_publish_does_not_roll_viewers_back(store, clock, facilitator, monkeypatch):
    store.configure('1234', 5, actor=facilitator)
    sub = store.subscribe('1234')
    sub.get(timeout=1)
    pushed = []
    store.broker.add_listener(lambda code, snap: pushed.append((snap.version, snap.status)))

    deliver = store.broker.publish
    held = []
    monkeypatch.setattr(store.broker, 'publish', lambda code, snap: held.append((code, snap)))
    store.start('1234', actor=facilitator)  # commits version 2, delivery delayed
    monkeypatch.setattr(store.broker, 'publish', deliver)
    clock.advance(2)
    store.pause('1234', actor=facilitator)  # version 3 goes out first

    assert deliver(*held[0]) is False
    assert pushed == [(3, PAUSED)]
    assert sub.get(timeout=1).status == PAUSED
    with pytest.raises(queue.Empty):
        sub.get(timeout=0.05)
    assert store.get('1234').status == PAUSED
    sub.cancel()


def test_late_subscriber_does_not_hide_pending_publish(store, facilitator, monkeypatch):
    store.configure('1234', 5, actor=facilitator)
    early = store.subscribe('1234')
    early.get(timeout=1)

    deliver = store.broker.publish
    held = []
    monkeypatch.setattr(store.broker, 'publish', lambda code, snap: held.append((code, snap)))
    store.start('1234', actor=facilitator)
    monkeypatch.setattr(store.broker, 'publish', deliver)
    late = store.subscribe('1234')
    assert late.get(timeout=1).version == 2

    assert deliver(*held[0]) is True
    assert early.get(timeout=1).version == 2
    with pytest.raises(queue.Empty):
        late.get(timeout=0.05)
    early.cancel()
    late.cancel()


def test_wipe_lets_recreated_record_through(store, facilitator):
    store.configure('1111', 5, actor=facilitator)
    store.start('1111', actor=facilitator)
    sub = store.subscribe('1111')
    assert sub.get(timeout=1).version == 2
    store.wipe()
    assert sub.get(timeout=1) is None
    store.configure('1111', 7, actor=facilitator)
    snap = sub.get(timeout=1)
    assert snap.version == 1
    assert snap.duration_seconds == 420
    sub.cancel()


def test_lost_race_is_re_evaluated(store, clock, facilitator, monkeypatch):
    store.configure('1234', 5, actor=facilitator)
    real_execute = db.session.execute
    lost = {'count': 0}

    class LostRace:
        rowcount = 0

    def racing_execute(stmt, *args, **kwargs):
        if isinstance(stmt, Update) and lost['count'] == 0:
            lost['count'] += 1
            return LostRace()
        return real_execute(stmt, *args, **kwargs)

    monkeypatch.setattr(db.session, 'execute', racing_execute)
    snap = store.start('1234', actor=facilitator)
    assert lost['count'] == 1
    assert snap.status == RUNNING
    assert snap.version == 2


def test_losing_every_race_surfaces_unavailable(store, clock, facilitator, monkeypatch):
    store.configure('1234', 5, actor=facilitator)
    real_execute = db.session.execute

    class LostRace:
        rowcount = 0

    def racing_execute(stmt, *args, **kwargs):
        if isinstance(stmt, Update):
            return LostRace()
        return real_execute(stmt, *args, **kwargs)

    monkeypatch.setattr(db.session, 'execute', racing_execute)
    with pytest.raises(StoreUnavailable):
        store.start('1234', actor=facilitator)
    monkeypatch.undo()
    assert store.get('1234').status == STOPPED


def test_database_failure_is_not_swallowed(store, clock, facilitator, monkeypatch):
    def broken_execute(stmt, *args, **kwargs):
        raise OperationalError('SELECT 1', {}, Exception('database is down'))

    monkeypatch.setattr(db.session, 'execute', broken_execute)
    with pytest.raises(StoreUnavailable):
        store.start('1234', actor=facilitator)
    with pytest.raises(StoreUnavailable):
        store.get('1234')


def test_corrupt_record_is_reported(store, facilitator):
    db.session.add(TimerRecord(project_code='6666', status=RUNNING, duration_seconds=60, start_time=None, version=1))
    db.session.commit()
    with pytest.raises(CorruptRecord):
        store.get('6666')
    with pytest.raises(StoreUnavailable):
        store.pause('6666', actor=facilitator)
