import threading
from contextlib import contextmanager
from typing import Dict

from flask import current_app

from typerace import db
from typerace.errors import NotFoundError
from typerace.models import Room


class RoomLockRegistry:
    """Per-room locks so read-then-decide operations serialize per room.

    Owned by the Flask app (``app.extensions['room_locks']``). Row locks
    (``SELECT ... FOR UPDATE``) cover multi-process deployments on
    databases that support them; this covers the in-process case and SQLite.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[int, threading.RLock] = {}
        # Serializes room-code collision checks across creates
        self.create_lock = threading.Lock()

    def lock_for(self, room_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(room_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[room_id] = lock
            return lock

    def discard(self, room_id: int) -> None:
        with self._guard:
            self._locks.pop(room_id, None)

    def __len__(self):
        return len(self._locks)


def get_lock_registry() -> RoomLockRegistry:
    return current_app.extensions['room_locks']


@contextmanager
def room_transaction(room_id):
    """Lock the room, yield it, and commit once.

    Any exception rolls the whole unit back before propagating, so
    subscribers never see a partially applied mutation.
    """
    with get_lock_registry().lock_for(room_id):
        # Rows read before the lock may be stale
        db.session.expire_all()
        room = (
            Room.query.filter_by(id=room_id)
            .populate_existing()
            .with_for_update()
            .first()
        )
        if room is None:
            db.session.rollback()
            raise NotFoundError('Room not found')
        try:
            yield room
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
