import logging
import threading

import click

from kitimer.services.timers.broker import SnapshotBroker
from kitimer.services.timers.errors import StoreUnavailable
from kitimer.services.timers.viewer import View, ViewerSession


logger = logging.getLogger(__name__)


def _spawn(target, *args):
    thread = threading.Thread(target=target, args=args, daemon=True)
    thread.start()
    return thread


class PollingSource:
    """Subscription source for a viewer running in another process than the server.

    The database is the only thing both processes share, so the record is
    re-read every ``poll_interval`` seconds and republished whenever its
    version changes.  Each subscription gets its own poller, which stops
    when the subscription is cancelled or the source is closed.
    """

    def __init__(self, flask_app, store, poll_interval=2.0):
        self._app = flask_app
        self._store = store
        self._poll_interval = poll_interval
        self._broker = SnapshotBroker()
        self._lock = threading.Lock()
        self._pollers = []
        self._seen = {}

    @property
    def active_pollers(self):
        with self._lock:
            return sum(1 for _, thread in self._pollers if thread.is_alive())

    def subscribe(self, project_code):
        subscription = self._broker.subscribe(project_code, lambda: self._load(project_code))
        stop = threading.Event()
        thread = _spawn(self._poll, project_code, stop)
        with self._lock:
            self._pollers = [p for p in self._pollers if p[1].is_alive()]
            self._pollers.append((stop, thread))
        subscription.add_cancel_callback(stop.set)
        return subscription

    def close(self):
        with self._lock:
            pollers, self._pollers = self._pollers, []
        for stop, _ in pollers:
            stop.set()

    def poll_once(self, project_code):
        """Re-read the record; publishes and returns True when its version moved."""
        with self._app.app_context():
            snapshot = self._store.get(project_code)
        version = snapshot.version if snapshot else 0
        if version == self._seen.get(project_code):
            return False
        self._seen[project_code] = version
        self._broker.publish(project_code, snapshot)
        return True

    def _load(self, project_code):
        snapshot = self._store.get(project_code)
        self._seen[project_code] = snapshot.version if snapshot else 0
        return snapshot

    def _poll(self, project_code, stop):
        while not stop.wait(self._poll_interval):
            try:
                self.poll_once(project_code)
            except StoreUnavailable as exc:
                logger.warning(f"[watch-poll-failed] code={project_code} error={exc.message}")
        logger.debug(f"[watch-poll-stopped] code={project_code}")


def watch(flask_app, store, project_code, interval=1.0, poll_interval=2.0, stop=None):
    """Render ``project_code``'s countdown on one terminal line until interrupted."""
    stop = stop or threading.Event()

    def render(view: View):
        click.echo(f"\r{view.project_code}  {view.display}  {view.label:<20}", nl=False)

    source = PollingSource(flask_app, store, poll_interval=poll_interval)
    session = ViewerSession(
        render,
        interval=interval,
        spawn=_spawn,
        heartbeat_sec=flask_app.config.get('TIMER_HEARTBEAT_SEC', 0),
    )
    session.watch(project_code, source)
    try:
        while not stop.wait(0.5):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        session.close()
        source.close()
        click.echo()
