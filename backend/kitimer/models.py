from kitimer import db, bcrypt
from flask_login import UserMixin
from kitimer.services.timers.snapshot import STOPPED, TimerSnapshot

class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    email = db.Column(db.String(255), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    is_facilitator = db.Column(db.Boolean, default=True, nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'email': self.email,
            'is_facilitator': self.is_facilitator,
        }

class TimerRecord(db.Model):
    __tablename__ = 'timer_record'
    project_code = db.Column(db.String(4), primary_key=True)
    status = db.Column(db.String(16), nullable=False, default=STOPPED) # stopped, running, paused
    duration_seconds = db.Column(db.Float, nullable=True) # duration of the current run; fractional after resuming from pause
    configured_seconds = db.Column(db.Integer, nullable=True) # duration last set by configure; reset restores it
    start_time = db.Column(db.Float, nullable=True) # epoch seconds, only while running
    remaining_at_pause = db.Column(db.Float, nullable=True) # frozen remaining seconds while paused/stopped
    version = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.Float, nullable=True)

    def to_snapshot(self):
        return TimerSnapshot.from_record(self)
