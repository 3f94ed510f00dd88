from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
import time
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # One store and broker per app; routes, socket handlers and CLI share them
    from kitimer.auth import can_control
    from kitimer.services.timers.broker import SnapshotBroker
    from kitimer.services.timers.store import TimerStore
    broker = SnapshotBroker()
    flask_app.extensions['timer_store'] = TimerStore(
        broker,
        can_control,
        clock=time.time,
        cas_attempts=flask_app.config.get('TIMER_CAS_ATTEMPTS', 5),
        max_duration_minutes=flask_app.config.get('MAX_DURATION_MINUTES', 0),
    )

    # Import and register blueprints here
    from kitimer.main import main
    flask_app.register_blueprint(main)

    from kitimer.api.timers import timers
    flask_app.register_blueprint(timers, url_prefix='/api/timers')

    # Register Socket.IO event handlers and push committed snapshots to rooms
    from kitimer.socketio_events import register_socketio_handlers, make_room_publisher
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))
    broker.add_listener(make_room_publisher(flask_app))

    # Flask-Login user loader
    from kitimer.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed facilitators
            users = ['facilitator1', 'facilitator2', 'facilitator3']
            for u in users:
                user = User(username=u, is_facilitator=True)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            click.echo('Database has been reset and seeded!')

    @click.command('timers-wipe')
    def timers_wipe_command():
        """Deletes every timer record (test isolation)."""
        with flask_app.app_context():
            removed = get_timer_store(flask_app).wipe()
            click.echo(f'Removed {removed} timer record(s).')

    @click.command('timers-watch')
    @click.argument('project_code')
    @click.option('--poll', 'poll_interval', default=2.0, show_default=True, help='Seconds between database reads.')
    def timers_watch_command(project_code, poll_interval):
        """Follows a project code's countdown in the terminal."""
        from kitimer.cli import watch
        with flask_app.app_context():
            watch(
                flask_app,
                get_timer_store(flask_app),
                project_code,
                interval=flask_app.config.get('TICK_INTERVAL_SEC', 1),
                poll_interval=poll_interval,
            )

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(timers_wipe_command)
    flask_app.cli.add_command(timers_watch_command)

    return flask_app


def get_timer_store(flask_app=None):
    if flask_app is None:
        from flask import current_app
        flask_app = current_app
    return flask_app.extensions['timer_store']
