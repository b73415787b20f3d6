"""Per-participant operations: readiness, progress, finish, kick.

Plain progress reports are single conditional UPDATEs on the reporter's
own row and never take the room lock. Anything that reads the room to
decide (finish positions, readiness during a countdown, kicks) runs under
``room_transaction``.
"""
from typing import Any, Dict

from flask import current_app

from typerace import db
from typerace.errors import NotFoundError, PreconditionError, ValidationError
from typerace.models import Participant, Room, now_ms
from .coordinator import (
    build_snapshot,
    get_snapshot,
    publish,
    require_host,
    require_participant,
    require_session_id,
)
from .locking import room_transaction
from .ranking import next_position, rank_participants
from .sync import get_sync_channel

# Wire names (camelCase from browser clients) -> column names
_STAT_ALIASES = {
    'wpm': 'wpm',
    'accuracy': 'accuracy',
    'progress': 'progress',
    'wordsTyped': 'words_typed',
    'words_typed': 'words_typed',
    'timeElapsed': 'time_elapsed',
    'time_elapsed': 'time_elapsed',
    'isFinished': 'is_finished',
    'is_finished': 'is_finished',
}


def parse_stats(stats) -> Dict[str, Any]:
    if not isinstance(stats, dict):
        raise ValidationError('stats must be an object')
    parsed: Dict[str, Any] = {}
    for key, value in stats.items():
        column = _STAT_ALIASES.get(key)
        if column is None:
            raise ValidationError(f'Unknown stat: {key}')
        if column == 'is_finished':
            if not isinstance(value, bool):
                raise ValidationError('isFinished must be a boolean')
            parsed[column] = value
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f'{key} must be a number')
        if value < 0:
            raise ValidationError(f'{key} must not be negative')
        parsed[column] = value
    for column in ('accuracy', 'progress'):
        if column in parsed:
            parsed[column] = min(float(parsed[column]), 100.0)
    for column in ('words_typed', 'time_elapsed'):
        if column in parsed:
            parsed[column] = int(parsed[column])
    parsed.setdefault('is_finished', False)
    if parsed['is_finished'] and 'time_elapsed' not in parsed:
        raise ValidationError('timeElapsed is required when finishing')
    return parsed


def _check_racing(room: Room, participant: Participant) -> None:
    if room.game_mode != 'race':
        return
    if room.status != 'active' or room.race_start_time is None:
        raise PreconditionError('No race in progress')
    if now_ms() < room.race_start_time:
        raise PreconditionError('The race has not started yet')
    if participant.race_epoch != room.race_epoch:
        raise PreconditionError('Not racing in the current race')


def _abort_countdown(room: Room) -> None:
    room.status = 'waiting'
    room.race_start_time = None
    room.race_end_time = None
    Participant.query.filter_by(room_id=room.id, race_epoch=room.race_epoch).update(
        {'race_epoch': None, 'is_finished': False, 'position': None, 'finish_time': None},
        synchronize_session='fetch',
    )
    current_app.logger.info(f"[race-abort] room={room.id} epoch={room.race_epoch}")


def set_ready(room_id, session_id, ready=True) -> Dict[str, Any]:
    """Self-service ready toggle.

    Un-readying during a race countdown aborts the start; once the
    anchor has passed readiness is frozen.
    """
    if not isinstance(ready, bool):
        raise ValidationError('ready must be a boolean')
    with room_transaction(room_id) as room:
        participant = require_participant(room, session_id)
        now = now_ms()
        if room.game_mode == 'race' and room.status == 'active':
            if room.race_start_time is None or now >= room.race_start_time:
                raise PreconditionError('The race has already started')
            if not ready and participant.race_epoch == room.race_epoch:
                _abort_countdown(room)
        participant.is_ready = ready
        participant.last_seen = now
        ready_ids = set(room.get_ready())
        if ready:
            ready_ids.add(participant.session_id)
        else:
            ready_ids.discard(participant.session_id)
        room.set_ready(ready_ids)
        snapshot = build_snapshot(room, now)
    publish(snapshot)
    return snapshot


def update_progress(room_id, session_id, stats, typed_progress=None, typed_text=None, epoch=None) -> Dict[str, Any]:
    """Apply a live stats report.

    Reports older than the stored one (by time elapsed), reports for a
    previous race epoch, and reports after finishing are dropped; the
    result carries ``applied`` so callers can tell.
    """
    session_id = require_session_id(session_id)
    parsed = parse_stats(stats)
    if typed_progress is not None and (isinstance(typed_progress, bool) or not isinstance(typed_progress, int) or typed_progress < 0):
        raise ValidationError('typed_progress must be a non-negative integer')
    if typed_text is not None and not isinstance(typed_text, str):
        raise ValidationError('typed_text must be a string')

    room = Room.query.filter_by(id=room_id).first()
    if not room:
        raise NotFoundError('Room not found')
    if room.game_mode == 'race' and epoch is not None and epoch != room.race_epoch:
        return dict(build_snapshot(room), applied=False)
    participant = require_participant(room, session_id)
    _check_racing(room, participant)

    if parsed['is_finished']:
        return record_finish(
            room_id, session_id, parsed['time_elapsed'], stats=parsed,
            typed_progress=typed_progress, typed_text=typed_text, epoch=room.race_epoch,
        )

    values = {k: v for k, v in parsed.items() if k != 'is_finished'}
    values['last_seen'] = now_ms()
    if typed_progress is not None:
        values['typed_progress'] = typed_progress
    if typed_text is not None:
        values['typed_text'] = typed_text
    stmt = (
        db.update(Participant)
        .where(Participant.id == participant.id, Participant.is_finished.is_(False))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if 'time_elapsed' in parsed:
        stmt = stmt.where(Participant.time_elapsed <= parsed['time_elapsed'])
    if room.game_mode == 'race':
        stmt = stmt.where(Participant.race_epoch == room.race_epoch)
    try:
        applied = db.session.execute(stmt).rowcount == 1
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    snapshot = get_snapshot(room_id)
    if applied:
        publish(snapshot)
    return dict(snapshot, applied=applied)


def record_finish(room_id, session_id, finish_time, stats=None, typed_progress=None, typed_text=None, epoch=None) -> Dict[str, Any]:
    """Mark a participant finished and assign their position exactly once."""
    if isinstance(finish_time, bool) or not isinstance(finish_time, (int, float)) or finish_time < 0:
        raise ValidationError('finish_time must be a non-negative number')
    finish_time = int(finish_time)

    applied = False
    position = None
    with room_transaction(room_id) as room:
        participant = require_participant(room, session_id)
        if room.game_mode == 'race' and epoch is not None and epoch != room.race_epoch:
            snapshot = build_snapshot(room)
        else:
            _check_racing(room, participant)
            if not participant.is_finished:
                if stats:
                    for column in ('wpm', 'accuracy', 'words_typed'):
                        if column in stats:
                            setattr(participant, column, stats[column])
                if typed_progress is not None:
                    participant.typed_progress = typed_progress
                if typed_text is not None:
                    participant.typed_text = typed_text
                # Kicked finishers leave gaps; never hand out a position twice
                highest = db.session.query(db.func.max(Participant.position)).filter(
                    Participant.room_id == room.id,
                    Participant.race_epoch == participant.race_epoch,
                    Participant.is_finished.is_(True),
                ).scalar()
                position = next_position(highest or 0)
                participant.position = position
                participant.finish_time = finish_time
                participant.time_elapsed = max(participant.time_elapsed or 0, finish_time)
                participant.progress = 100.0
                participant.is_finished = True
                participant.last_seen = now_ms()
                applied = True
            snapshot = build_snapshot(room)
    if applied:
        current_app.logger.info(
            f"[race-finish] room={room_id} session={session_id} "
            f"position={position} finish_time={finish_time}"
        )
        publish(snapshot)
    return dict(snapshot, applied=applied)


def set_name(room_id, session_id, name) -> Dict[str, Any]:
    name = name.strip() if isinstance(name, str) else ''
    if not name:
        raise ValidationError('Name is required')
    with room_transaction(room_id) as room:
        participant = require_participant(room, session_id)
        participant.name = name[:64]
        snapshot = build_snapshot(room)
    publish(snapshot)
    return snapshot


def set_avatar(room_id, session_id, avatar) -> Dict[str, Any]:
    avatar = avatar.strip() if isinstance(avatar, str) else ''
    if not avatar or len(avatar) > 16:
        raise ValidationError('avatar must be a short non-empty string')
    with room_transaction(room_id) as room:
        participant = require_participant(room, session_id)
        participant.avatar = avatar
        snapshot = build_snapshot(room)
    publish(snapshot)
    return snapshot


def disconnect(room_id, session_id) -> Dict[str, Any]:
    """Explicit leave: only flips ``is_connected``; stats stay as they were."""
    with room_transaction(room_id) as room:
        participant = require_participant(room, session_id)
        participant.is_connected = False
        participant.last_seen = now_ms()
        snapshot = build_snapshot(room)
    current_app.logger.info(f"[room-leave] room={room_id} session={session_id}")
    publish(snapshot)
    return snapshot


def kick(room_id, session_id, target_session_id) -> Dict[str, Any]:
    target_session_id = require_session_id(target_session_id)
    with room_transaction(room_id) as room:
        require_host(room, session_id)
        if target_session_id == room.host_session_id:
            raise ValidationError('The host cannot kick themselves')
        target = require_participant(room, target_session_id)
        code = room.code
        db.session.delete(target)
        ready_ids = set(room.get_ready())
        ready_ids.discard(target_session_id)
        room.set_ready(ready_ids)
        snapshot = build_snapshot(room)
    channel = get_sync_channel()
    channel.notify_removed(code, target_session_id)
    current_app.logger.info(f"[room-kick] room={room_id} target={target_session_id}")
    publish(snapshot)
    return snapshot


def list_participants(room_id):
    room = Room.query.filter_by(id=room_id).first()
    if not room:
        raise NotFoundError('Room not found')
    participants = Participant.query.filter_by(room_id=room.id).all()
    return [p.to_dict(room.host_session_id) for p in rank_participants(participants)]

