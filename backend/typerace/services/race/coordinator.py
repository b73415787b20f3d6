"""Room lifecycle: create, configure, start, end, reset, delete.

Every mutation runs inside ``room_transaction`` (one lock, one commit),
builds the post-write snapshot before committing, and publishes it to the
room's subscribers only after the commit succeeds. The returned snapshot
gives the caller read-your-writes consistency.
"""
import json
from typing import Any, Dict, Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from typerace import db
from typerace.errors import NotFoundError, PermissionDenied, PreconditionError, ValidationError
from typerace.models import GAME_MODES, ROOM_STATUSES, Participant, RaceResult, Room, generate_room_code, now_ms
from .locking import get_lock_registry, room_transaction
from .ranking import build_rankings, is_race_over, rank_participants
from .sync import get_sync_channel
from .text import generate_race_text

BASE_SETTINGS = {
    'mode': 'time',
    'duration': 30,
    'wordTarget': 25,
    'difficulty': 'medium',
    'punctuation': False,
    'numbers': False,
    'capitalization': False,
    'quoteLength': 'all',
    'ghostWriterEnabled': False,
    'ghostWriterSpeed': 60,
    'soundEnabled': False,
    'typingFontSize': 3.5,
    'textAlign': 'left',
}

# Races are short sprints on easier words
RACE_SETTINGS = {
    'mode': 'words',
    'wordTarget': 15,
    'difficulty': 'easy',
}

_NUMBER = (int, float)
SETTINGS_FIELDS = {
    'mode': str,
    'duration': _NUMBER,
    'wordTarget': int,
    'difficulty': str,
    'punctuation': bool,
    'numbers': bool,
    'capitalization': bool,
    'quoteLength': str,
    'ghostWriterEnabled': bool,
    'ghostWriterSpeed': _NUMBER,
    'soundEnabled': bool,
    'typingFontSize': _NUMBER,
    'textAlign': str,
    'presetText': (str, type(None)),
    'presetModeType': (str, type(None)),
    'theme': object,
    'plan': object,
    'planIndex': (int, type(None)),
}


def default_settings(game_mode: str) -> Dict[str, Any]:
    settings = dict(BASE_SETTINGS)
    if game_mode == 'race':
        settings.update(RACE_SETTINGS)
    return settings


# ---- shared helpers (also used by participants.py) ----

def require_session_id(session_id) -> str:
    if not isinstance(session_id, str) or not session_id.strip():
        raise ValidationError('session_id is required')
    return session_id.strip()


def require_host(room: Room, session_id) -> None:
    if room.host_session_id != require_session_id(session_id):
        raise PermissionDenied('Only the host may do that')


def require_participant(room: Room, session_id) -> Participant:
    participant = Participant.query.filter_by(room_id=room.id, session_id=require_session_id(session_id)).first()
    if not participant:
        raise NotFoundError('Participant not found')
    return participant


def clear_readiness(room: Room) -> None:
    Participant.query.filter_by(room_id=room.id, is_ready=True).update(
        {'is_ready': False}, synchronize_session='fetch'
    )
    room.set_ready([])


def build_snapshot(room: Room, now: Optional[int] = None) -> Dict[str, Any]:
    """Composite room + ranked participants view sent to clients."""
    now = now if now is not None else now_ms()
    participants = Participant.query.filter_by(room_id=room.id).all()
    payload = room.to_dict()
    payload['race_over'] = is_race_over(room, participants, now)
    return {
        'room': payload,
        'participants': [p.to_dict(room.host_session_id) for p in rank_participants(participants)],
        'server_time': now,
    }


def publish(snapshot: Dict[str, Any]) -> None:
    get_sync_channel().publish(snapshot)


def _find_live_room(code) -> Room:
    code = (code or '').strip().upper() if isinstance(code, str) else ''
    if not code:
        raise ValidationError('Room code is required')
    room = (
        Room.query.filter(Room.code == code, Room.expires_at > now_ms())
        .order_by(Room.created_at.desc())
        .first()
    )
    if not room:
        raise NotFoundError('Room not found')
    return room


def _check_setting(key: str, value) -> None:
    expected = SETTINGS_FIELDS.get(key)
    if expected is None:
        raise ValidationError(f'Unknown setting: {key}')
    if expected is object:
        return
    # bool is an int subclass; only boolean fields accept it
    if isinstance(value, bool) and expected is not bool:
        raise ValidationError(f'Invalid value for {key}')
    if not isinstance(value, expected):
        raise ValidationError(f'Invalid value for {key}')


def _positive_int(value, field: str, upper: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f'{field} must be an integer')
    if value < 1 or value > upper:
        raise ValidationError(f'{field} must be between 1 and {upper}')
    return value


def _word_target(settings: Dict[str, Any]) -> int:
    cap = int(current_app.config.get('MAX_WORD_COUNT', 500))
    try:
        target = int(settings.get('wordTarget') or BASE_SETTINGS['wordTarget'])
    except (TypeError, ValueError):
        target = BASE_SETTINGS['wordTarget']
    return max(1, min(target, cap))


# ---- operations ----

def create_room(host_name, host_session_id, game_mode='practice') -> Dict[str, Any]:
    host_name = host_name.strip() if isinstance(host_name, str) else ''
    if not host_name:
        raise ValidationError('Host name is required')
    session_id = require_session_id(host_session_id)
    mode = (game_mode or 'practice').strip().lower() if isinstance(game_mode, str) else 'practice'
    if mode not in GAME_MODES:
        raise ValidationError(f"game_mode must be one of {', '.join(GAME_MODES)}")

    cfg = current_app.config
    ttl_ms = int(cfg.get('ROOM_TTL_MINUTES', 15)) * 60 * 1000
    with get_lock_registry().create_lock:
        now = now_ms()
        room = Room(
            code=generate_room_code(int(cfg.get('ROOM_CODE_LENGTH', 5)), now),
            host_session_id=session_id,
            host_name=host_name[:64],
            status='waiting',
            game_mode=mode,
            race_epoch=0,
            created_at=now,
            expires_at=now + ttl_ms,
        )
        room.set_settings(default_settings(mode))
        room.set_ready([])
        db.session.add(room)
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
    current_app.logger.info(f"[room-create] room={room.id} code={room.code} mode={mode} host={session_id}")
    return {'room_id': room.id, 'code': room.code}


def join_room(code, session_id, name, verified_name=None) -> Dict[str, Any]:
    """Join by code, or reconnect the existing row for this session.

    Never creates a second row for the same (room, session); the name from
    the latest call wins.
    """
    session_id = require_session_id(session_id)
    display = verified_name or name
    display = display.strip() if isinstance(display, str) else ''
    if not display:
        raise ValidationError('Name is required')
    room_id = _find_live_room(code).id

    for attempt in range(2):
        try:
            with room_transaction(room_id) as room:
                now = now_ms()
                participant = Participant.query.filter_by(room_id=room.id, session_id=session_id).first()
                is_reconnect = participant is not None
                if participant is None:
                    participant = Participant(
                        room_id=room.id,
                        session_id=session_id,
                        name=display[:64],
                        is_connected=True,
                        is_ready=False,
                        joined_at=now,
                        last_seen=now,
                    )
                    db.session.add(participant)
                else:
                    participant.name = display[:64]
                    participant.is_connected = True
                    participant.last_seen = now
                db.session.flush()
                snapshot = build_snapshot(room, now)
                participant_payload = participant.to_dict(room.host_session_id)
            break
        except IntegrityError:
            # Another process inserted the same session first; retry as a reconnect
            if attempt:
                raise
            current_app.logger.info(f"[room-join-retry] room={room_id} session={session_id}")

    current_app.logger.info(
        f"[room-join] room={room_id} session={session_id} reconnect={is_reconnect}"
    )
    publish(snapshot)
    return dict(snapshot, participant=participant_payload, is_reconnect=is_reconnect)


def get_snapshot(room_id) -> Dict[str, Any]:
    room = Room.query.filter_by(id=room_id).first()
    if not room:
        raise NotFoundError('Room not found')
    return build_snapshot(room)


def get_snapshot_by_code(code) -> Dict[str, Any]:
    return build_snapshot(_find_live_room(code))


def update_settings(room_id, session_id, partial) -> Dict[str, Any]:
    if not isinstance(partial, dict) or not partial:
        raise ValidationError('settings must be a non-empty object')
    for key, value in partial.items():
        _check_setting(key, value)

    with room_transaction(room_id) as room:
        require_host(room, session_id)
        if room.game_mode == 'race' and room.status == 'active':
            raise PreconditionError('Settings cannot change once a race has started')
        merged = room.get_settings()
        merged.update(partial)
        room.set_settings(merged)
        clear_readiness(room)
        snapshot = build_snapshot(room)
    current_app.logger.info(f"[room-settings] room={room_id} keys={sorted(partial)}")
    publish(snapshot)
    return snapshot


def set_race_text(room_id, session_id, difficulty=None, word_count=None, custom_text=None) -> Dict[str, Any]:
    if custom_text is not None:
        if not isinstance(custom_text, str) or not custom_text.strip():
            raise ValidationError('Custom text must not be blank')
    if word_count is not None:
        _positive_int(word_count, 'word_count', int(current_app.config.get('MAX_WORD_COUNT', 500)))
    if difficulty is not None and not isinstance(difficulty, str):
        raise ValidationError('difficulty must be a string')

    with room_transaction(room_id) as room:
        require_host(room, session_id)
        if room.game_mode != 'race':
            raise PreconditionError('Race text can only be set in race rooms')
        if room.status != 'waiting':
            raise PreconditionError('Race text cannot change once a race has started')
        if custom_text is not None:
            room.target_text = ' '.join(custom_text.split())
        else:
            settings = room.get_settings()
            room.target_text = generate_race_text(
                difficulty or settings.get('difficulty'),
                word_count or _word_target(settings),
            )
        clear_readiness(room)
        snapshot = build_snapshot(room)
    current_app.logger.info(f"[race-text] room={room_id} custom={custom_text is not None}")
    publish(snapshot)
    return snapshot


def start_race(room_id, session_id, countdown_seconds=None) -> Dict[str, Any]:
    """Anchor the countdown at now + countdown and flip the room active.

    No server timer follows; clients derive the countdown from
    ``race_start_time``. Repeating the call on a started room is a no-op.
    """
    if countdown_seconds is None:
        countdown_seconds = int(current_app.config.get('DEFAULT_COUNTDOWN_SEC', 5))
    max_countdown = int(current_app.config.get('MAX_COUNTDOWN_SEC', 30))
    if isinstance(countdown_seconds, bool) or not isinstance(countdown_seconds, int):
        raise ValidationError('countdown_seconds must be an integer')
    if countdown_seconds < 0 or countdown_seconds > max_countdown:
        raise ValidationError(f'countdown_seconds must be between 0 and {max_countdown}')

    changed = False
    with room_transaction(room_id) as room:
        require_host(room, session_id)
        if room.game_mode != 'race':
            raise PreconditionError('Races can only be started in race rooms')
        if room.status == 'active' and room.race_start_time is not None:
            snapshot = build_snapshot(room)
        else:
            participants = Participant.query.filter_by(room_id=room.id).all()
            connected = [p for p in participants if p.is_connected]
            if not connected:
                raise PreconditionError('At least one connected participant is required')
            not_ready = [p.name for p in connected if not p.is_ready]
            if not_ready:
                raise PreconditionError(f"Waiting for: {', '.join(not_ready)}")
            if not room.target_text:
                settings = room.get_settings()
                room.target_text = generate_race_text(settings.get('difficulty'), _word_target(settings))
            now = now_ms()
            room.race_epoch = (room.race_epoch or 0) + 1
            room.race_start_time = now + countdown_seconds * 1000
            room.race_end_time = None
            room.status = 'active'
            for p in connected:
                p.race_epoch = room.race_epoch
            snapshot = build_snapshot(room, now)
            changed = True
    if changed:
        current_app.logger.info(
            f"[race-start] room={room_id} epoch={snapshot['room']['race_epoch']} "
            f"start={snapshot['room']['race_start_time']} racers={len(connected)}"
        )
        publish(snapshot)
    return snapshot


def end_race(room_id, session_id) -> Dict[str, Any]:
    changed = False
    with room_transaction(room_id) as room:
        session_id = require_session_id(session_id)
        if room.host_session_id != session_id and not Participant.query.filter_by(room_id=room.id, session_id=session_id).first():
            raise PermissionDenied('Only participants may end the race')
        if room.game_mode != 'race' or room.status != 'active' or room.race_start_time is None:
            raise PreconditionError('No race in progress')
        if room.race_end_time is None:
            room.race_end_time = now_ms()
            changed = True
        snapshot = build_snapshot(room)
    if changed:
        current_app.logger.info(f"[race-end] room={room_id} epoch={snapshot['room']['race_epoch']}")
        publish(snapshot)
    return snapshot


def save_results(room_id) -> Dict[str, Any]:
    """Archive the current race's rankings; repeat calls update in place."""
    with room_transaction(room_id) as room:
        if room.game_mode != 'race' or room.race_start_time is None:
            raise PreconditionError('No race to save results for')
        participants = Participant.query.filter_by(room_id=room.id).all()
        racers = [p for p in participants if p.race_epoch == room.race_epoch]
        rankings = build_rankings(racers, race_over=is_race_over(room, participants, now_ms()))
        result = RaceResult.query.filter_by(room_id=room.id, race_epoch=room.race_epoch).first()
        if result is None:
            result = RaceResult(room_id=room.id, race_epoch=room.race_epoch, created_at=now_ms())
            db.session.add(result)
        result.rankings = json.dumps(rankings)
        result.target_text = room.target_text or ''
        result.total_racers = len(racers)
        db.session.flush()
        payload = result.to_dict()
    current_app.logger.info(f"[race-results] room={room_id} epoch={payload['race_epoch']} racers={payload['total_racers']}")
    return payload


def get_results(room_id, race_epoch=None) -> Dict[str, Any]:
    query = RaceResult.query.filter_by(room_id=room_id)
    if race_epoch is not None:
        query = query.filter_by(race_epoch=race_epoch)
    result = query.order_by(RaceResult.race_epoch.desc()).first()
    if not result:
        raise NotFoundError('No results for this room')
    return result.to_dict()


def set_status(room_id, session_id, status) -> Dict[str, Any]:
    """Host toggle for practice and lesson rooms; races use start/reset."""
    if status not in ROOM_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ROOM_STATUSES)}")
    with room_transaction(room_id) as room:
        require_host(room, session_id)
        if room.game_mode == 'race':
            raise PreconditionError('Race rooms change status through start and reset')
        room.status = status
        snapshot = build_snapshot(room)
    publish(snapshot)
    return snapshot


def reset_for_new_race(room_id, session_id) -> Dict[str, Any]:
    """Return the room and every participant to the pre-race state in one commit."""
    with room_transaction(room_id) as room:
        require_host(room, session_id)
        room.status = 'waiting'
        room.race_start_time = None
        room.race_end_time = None
        room.target_text = None
        room.set_ready([])
        for p in Participant.query.filter_by(room_id=room.id).all():
            p.reset_race_fields()
        snapshot = build_snapshot(room)
    current_app.logger.info(f"[room-reset] room={room_id} epoch={snapshot['room']['race_epoch']}")
    publish(snapshot)
    return snapshot


def delete_room(room_id, session_id=None) -> Dict[str, Any]:
    """Delete participants, archived results and the room together.

    ``session_id=None`` is the system caller (TTL sweep) and skips the host check.
    """
    with room_transaction(room_id) as room:
        if session_id is not None:
            require_host(room, session_id)
        code = room.code
        RaceResult.query.filter_by(room_id=room.id).delete(synchronize_session=False)
        Participant.query.filter_by(room_id=room.id).delete(synchronize_session=False)
        db.session.delete(room)
    get_lock_registry().discard(room_id)
    current_app.logger.info(f"[room-delete] room={room_id} code={code}")
    get_sync_channel().notify_deleted(code)
    return {'deleted': True, 'room_id': room_id, 'code': code}


def sweep_expired_rooms(now=None) -> int:
    now = now if now is not None else now_ms()
    expired_ids = [r.id for r in Room.query.filter(Room.expires_at <= now).all()]
    swept = 0
    for rid in expired_ids:
        try:
            delete_room(rid)
            swept += 1
        except NotFoundError:
            continue
    current_app.logger.info(f"[room-sweep] swept={swept}")
    return swept

