import os
import sys
import pytest

# Ensure the backend root (containing the `kitimer` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from kitimer import create_app, db, socketio, get_timer_store


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    MAX_DURATION_MINUTES = 0
    TICK_INTERVAL_SEC = 1
    TIMER_CAS_ATTEMPTS = 3
    FACILITATOR_EMAIL_DOMAIN = ''
    TIMER_HEARTBEAT_SEC = 0


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        import kitimer.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def store(flask_app):
    return get_timer_store(flask_app)


@pytest.fixture()
def clock(store):
    fake = FakeClock()
    store.clock = fake
    return fake


@pytest.fixture()
def facilitator(flask_app):
    from kitimer.models import User
    user = User(username='facilitator', email='facilitator@example.com', is_facilitator=True)
    user.set_password('password')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def viewer_user(flask_app):
    from kitimer.models import User
    user = User(username='viewer', email='viewer@example.com', is_facilitator=False)
    user.set_password('password')
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def facilitator_client(flask_app, facilitator):
    test_client = flask_app.test_client()
    res = test_client.post('/login', json={'username': 'facilitator', 'password': 'password'})
    assert res.status_code == 200
    return test_client


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass
