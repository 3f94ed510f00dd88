from flask import Blueprint, jsonify, request, current_app
from flask_login import current_user
from kitimer import get_timer_store
from kitimer.services.timers.errors import TimerError
from kitimer.services.timers.projector import view_payload


timers = Blueprint('timers', __name__)


@timers.errorhandler(TimerError)
def handle_timer_error(exc):
    current_app.logger.info(f"[timer-error] path={request.path} kind={exc.kind} message={exc.message}")
    return jsonify(exc.to_dict()), exc.status_code


def _payload(project_code, snapshot):
    store = get_timer_store()
    return jsonify(view_payload(project_code, snapshot, store.clock()))


@timers.route('/<string:project_code>', methods=['GET'])
def get_timer(project_code):
    # A code nobody configured yet is "awaiting setup", not a 404
    snapshot = get_timer_store().get(project_code)
    return _payload(project_code, snapshot)


@timers.route('/<string:project_code>/configure', methods=['POST'])
def configure_timer(project_code):
    data = request.get_json(silent=True) or {}
    duration = data.get('duration_minutes', data.get('durationMinutes'))
    snapshot = get_timer_store().configure(project_code, duration, actor=current_user)
    return _payload(project_code, snapshot)


@timers.route('/<string:project_code>/start', methods=['POST'])
def start_timer(project_code):
    snapshot = get_timer_store().start(project_code, actor=current_user)
    return _payload(project_code, snapshot)


@timers.route('/<string:project_code>/pause', methods=['POST'])
def pause_timer(project_code):
    store = get_timer_store()
    snapshot = store.pause(project_code, actor=current_user)
    if snapshot is None:
        snapshot = store.get(project_code)
    return _payload(project_code, snapshot)


@timers.route('/<string:project_code>/reset', methods=['POST'])
def reset_timer(project_code):
    snapshot = get_timer_store().reset(project_code, actor=current_user)
    return _payload(project_code, snapshot)


@timers.route('/<string:project_code>/toggle', methods=['POST'])
def toggle_timer(project_code):
    snapshot = get_timer_store().toggle(project_code, actor=current_user)
    return _payload(project_code, snapshot)
