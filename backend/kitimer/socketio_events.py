from flask_socketio import join_room, leave_room, emit
from flask import request
from kitimer import socketio, get_timer_store
from kitimer.services.timers.errors import TimerError
from kitimer.services.timers.projector import view_payload
from kitimer.services.timers.snapshot import validate_project_code
from typing import Dict, Any


NAMESPACE = '/ws'

_sid_to_ctx: Dict[str, Dict[str, Any]] = {}


def _room(project_code: str) -> str:
    return f"timer:{project_code}"


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    _sid_to_ctx.pop(_get_sid(), None)


def handle_join_timer(data):
    project_code = (data or {}).get('project_code')
    try:
        validate_project_code(project_code)
        store = get_timer_store()
        snapshot = store.get(project_code)
    except TimerError as exc:
        emit('error', exc.to_dict())
        return
    # Switching codes: leave the previous room first so two countdowns never mix
    ctx = _sid_to_ctx.get(_get_sid())
    if ctx and ctx.get('project_code') != project_code:
        leave_room(_room(ctx['project_code']))
        emit('left', {'room': _room(ctx['project_code'])})
    join_room(_room(project_code))
    _sid_to_ctx[_get_sid()] = {'project_code': project_code}
    emit('joined', {'room': _room(project_code)})
    emit('timer_update', view_payload(project_code, snapshot, store.clock()))


def handle_leave_timer(data):
    project_code = (data or {}).get('project_code')
    if not project_code:
        emit('error', {'error': 'InvalidProjectCode', 'message': 'project_code is required'})
        return
    leave_room(_room(project_code))
    ctx = _sid_to_ctx.get(_get_sid())
    if ctx and ctx.get('project_code') == project_code:
        _sid_to_ctx.pop(_get_sid(), None)
    emit('left', {'room': _room(project_code)})


def handle_ping(data):
    emit('pong', data or {})


def make_room_publisher(flask_app):
    """Broker listener that pushes every committed snapshot to the code's room."""
    store = flask_app.extensions['timer_store']

    def publish(project_code, snapshot):
        # socketio.emit since this may run outside a Socket.IO request
        socketio.emit(
            'timer_update',
            view_payload(project_code, snapshot, store.clock()),
            to=_room(project_code),
            namespace=NAMESPACE,
        )

    return publish


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('join_timer', handle_join_timer, namespace=namespace)
        socketio.on_event('leave_timer', handle_leave_timer, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
