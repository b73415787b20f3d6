from typerace import db, bcrypt
from flask_login import UserMixin
import json
import random
import string
import time

ROOM_STATUSES = ('waiting', 'active')
GAME_MODES = ('practice', 'race', 'lesson')
DEFAULT_AVATAR = '🏎️'


def now_ms() -> int:
    return int(time.time() * 1000)


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
        }


def generate_room_code(length=5, now=None):
    """Generate a short join code not held by any non-expired room."""
    now = now if now is not None else now_ms()
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if not Room.query.filter(Room.code == code, Room.expires_at > now).first():
            return code


class Room(db.Model):
    __tablename__ = 'room'
    id = db.Column(db.Integer, primary_key=True)
    # Unique among non-expired rooms only; enforced at generation time
    code = db.Column(db.String(8), nullable=False, index=True)
    host_session_id = db.Column(db.String(128), nullable=False, index=True)
    host_name = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='waiting')  # waiting, active
    game_mode = db.Column(db.String(16), nullable=False, default='practice')  # practice, race, lesson
    settings = db.Column(db.Text, nullable=False)  # JSON-encoded settings dict
    target_text = db.Column(db.Text, nullable=True)
    race_start_time = db.Column(db.BigInteger, nullable=True)  # epoch ms countdown anchor
    race_end_time = db.Column(db.BigInteger, nullable=True)
    ready_participants = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of session ids
    race_epoch = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.BigInteger, nullable=False, default=now_ms)
    expires_at = db.Column(db.BigInteger, nullable=False)

    participants = db.relationship(
        'Participant', back_populates='room', lazy='dynamic', passive_deletes=True
    )

    def get_settings(self):
        try:
            return json.loads(self.settings) if self.settings else {}
        except ValueError:
            return {}

    def set_settings(self, value):
        self.settings = json.dumps(value)

    def get_ready(self):
        try:
            return json.loads(self.ready_participants) if self.ready_participants else []
        except ValueError:
            return []

    def set_ready(self, session_ids):
        # Keep a stable order so snapshots don't flicker
        self.ready_participants = json.dumps(sorted(set(session_ids)))

    def is_expired(self, now=None):
        return (now if now is not None else now_ms()) >= self.expires_at

    def to_dict(self):
        return {
            'id': self.id,
            'code': self.code,
            'host_session_id': self.host_session_id,
            'host_name': self.host_name,
            'status': self.status,
            'game_mode': self.game_mode,
            'settings': self.get_settings(),
            'target_text': self.target_text,
            'race_start_time': self.race_start_time,
            'race_end_time': self.race_end_time,
            'ready_participants': self.get_ready(),
            'race_epoch': self.race_epoch,
            'created_at': self.created_at,
            'expires_at': self.expires_at,
        }


class Participant(db.Model):
    __tablename__ = 'participant'
    __table_args__ = (
        db.UniqueConstraint('room_id', 'session_id', name='uq_participant_room_session'),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id', ondelete='CASCADE'), nullable=False, index=True)
    session_id = db.Column(db.String(128), nullable=False, index=True)
    name = db.Column(db.String(64), nullable=False)
    avatar = db.Column(db.String(16), nullable=False, default=DEFAULT_AVATAR)
    is_connected = db.Column(db.Boolean, nullable=False, default=True)
    is_ready = db.Column(db.Boolean, nullable=False, default=False)
    # Live stats
    wpm = db.Column(db.Float, nullable=False, default=0)
    accuracy = db.Column(db.Float, nullable=False, default=0)
    progress = db.Column(db.Float, nullable=False, default=0)
    words_typed = db.Column(db.Integer, nullable=False, default=0)
    time_elapsed = db.Column(db.Integer, nullable=False, default=0)
    is_finished = db.Column(db.Boolean, nullable=False, default=False)
    finish_time = db.Column(db.Integer, nullable=True)  # ms since race_start_time
    position = db.Column(db.Integer, nullable=True)
    typed_progress = db.Column(db.Integer, nullable=True)
    typed_text = db.Column(db.Text, nullable=True)
    # Epoch of the race this participant was stamped into at start; None when not racing
    race_epoch = db.Column(db.Integer, nullable=True)
    joined_at = db.Column(db.BigInteger, nullable=False, default=now_ms)
    last_seen = db.Column(db.BigInteger, nullable=False, default=now_ms)

    room = db.relationship('Room', back_populates='participants')

    def reset_race_fields(self):
        self.is_ready = False
        self.wpm = 0
        self.accuracy = 0
        self.progress = 0
        self.words_typed = 0
        self.time_elapsed = 0
        self.is_finished = False
        self.finish_time = None
        self.position = None
        self.typed_progress = None
        self.typed_text = None
        self.race_epoch = None

    def stats_dict(self):
        return {
            'wpm': self.wpm,
            'accuracy': self.accuracy,
            'progress': self.progress,
            'words_typed': self.words_typed,
            'time_elapsed': self.time_elapsed,
            'is_finished': self.is_finished,
        }

    def to_dict(self, host_session_id=None):
        return {
            'id': self.id,
            'room_id': self.room_id,
            'session_id': self.session_id,
            'name': self.name,
            'avatar': self.avatar,
            'is_connected': self.is_connected,
            'is_ready': self.is_ready,
            'is_host': host_session_id is not None and self.session_id == host_session_id,
            'stats': self.stats_dict(),
            'finish_time': self.finish_time,
            'position': self.position,
            'typed_progress': self.typed_progress,
            'typed_text': self.typed_text,
            'race_epoch': self.race_epoch,
            'joined_at': self.joined_at,
            'last_seen': self.last_seen,
        }


class RaceResult(db.Model):
    __tablename__ = 'race_result'
    __table_args__ = (
        db.UniqueConstraint('room_id', 'race_epoch', name='uq_race_result_room_epoch'),
    )
    id = db.Column(db.Integer, primary_key=True)
    room_id = db.Column(db.Integer, db.ForeignKey('room.id', ondelete='CASCADE'), nullable=False, index=True)
    race_epoch = db.Column(db.Integer, nullable=False)
    rankings = db.Column(db.Text, nullable=False)  # JSON-encoded list of ranking rows
    target_text = db.Column(db.Text, nullable=False, default='')
    total_racers = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.BigInteger, nullable=False, default=now_ms)

    def to_dict(self):
        return {
            'id': self.id,
            'room_id': self.room_id,
            'race_epoch': self.race_epoch,
            'rankings': json.loads(self.rankings) if self.rankings else [],
            'target_text': self.target_text,
            'total_racers': self.total_racers,
            'created_at': self.created_at,
        }
