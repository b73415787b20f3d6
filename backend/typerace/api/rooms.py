from flask import Blueprint, jsonify, request
from flask_login import current_user

from typerace.errors import RaceError
from typerace.services.race import coordinator, participants

rooms = Blueprint('rooms', __name__)


@rooms.errorhandler(RaceError)
def handle_race_error(exc):
    return jsonify(exc.to_dict()), exc.status_code


def _body():
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _session_id(data=None):
    if data is not None and data.get('session_id'):
        return data.get('session_id')
    return request.headers.get('X-Session-Id')


@rooms.route('/create', methods=['POST'])
def create_room():
    """
    Creates a new room. The host joins it separately via /join.
    """
    data = _body()
    created = coordinator.create_room(
        data.get('host_name'),
        data.get('session_id'),
        data.get('game_mode') or 'practice',
    )
    return jsonify(created), 201


@rooms.route('/join', methods=['POST'])
def join_room():
    """
    Joins by code, or reconnects this session's existing seat.
    """
    data = _body()
    verified_name = current_user.username if current_user.is_authenticated else None
    joined = coordinator.join_room(
        data.get('code'),
        data.get('session_id'),
        data.get('name'),
        verified_name=verified_name,
    )
    return jsonify(joined), 200 if joined['is_reconnect'] else 201


@rooms.route('/<string:code>/state', methods=['GET'])
def get_state_by_code(code):
    return jsonify(coordinator.get_snapshot_by_code(code))


@rooms.route('/id/<int:room_id>/state', methods=['GET'])
def get_state(room_id):
    return jsonify(coordinator.get_snapshot(room_id))


@rooms.route('/<int:room_id>/participants', methods=['GET'])
def list_participants(room_id):
    return jsonify(participants.list_participants(room_id))


@rooms.route('/<int:room_id>/settings', methods=['POST'])
def update_settings(room_id):
    data = _body()
    return jsonify(coordinator.update_settings(room_id, _session_id(data), data.get('settings')))


@rooms.route('/<int:room_id>/text', methods=['POST'])
def set_race_text(room_id):
    data = _body()
    return jsonify(coordinator.set_race_text(
        room_id,
        _session_id(data),
        difficulty=data.get('difficulty'),
        word_count=data.get('word_count'),
        custom_text=data.get('custom_text'),
    ))


@rooms.route('/<int:room_id>/ready', methods=['POST'])
def set_ready(room_id):
    data = _body()
    ready = data.get('ready', True)
    return jsonify(participants.set_ready(room_id, _session_id(data), ready))


@rooms.route('/<int:room_id>/start', methods=['POST'])
def start_race(room_id):
    data = _body()
    return jsonify(coordinator.start_race(room_id, _session_id(data), data.get('countdown_seconds')))


@rooms.route('/<int:room_id>/progress', methods=['POST'])
def update_progress(room_id):
    data = _body()
    return jsonify(participants.update_progress(
        room_id,
        _session_id(data),
        data.get('stats'),
        typed_progress=data.get('typed_progress'),
        typed_text=data.get('typed_text'),
        epoch=data.get('epoch'),
    ))


@rooms.route('/<int:room_id>/finish', methods=['POST'])
def record_finish(room_id):
    data = _body()
    return jsonify(participants.record_finish(
        room_id,
        _session_id(data),
        data.get('finish_time'),
        epoch=data.get('epoch'),
    ))


@rooms.route('/<int:room_id>/end', methods=['POST'])
def end_race(room_id):
    data = _body()
    return jsonify(coordinator.end_race(room_id, _session_id(data)))


@rooms.route('/<int:room_id>/results', methods=['POST'])
def save_results(room_id):
    return jsonify(coordinator.save_results(room_id)), 201


@rooms.route('/<int:room_id>/results', methods=['GET'])
def get_results(room_id):
    epoch = request.args.get('epoch', type=int)
    return jsonify(coordinator.get_results(room_id, epoch))


@rooms.route('/<int:room_id>/reset', methods=['POST'])
def reset_for_new_race(room_id):
    data = _body()
    return jsonify(coordinator.reset_for_new_race(room_id, _session_id(data)))


@rooms.route('/<int:room_id>/status', methods=['POST'])
def set_status(room_id):
    data = _body()
    return jsonify(coordinator.set_status(room_id, _session_id(data), data.get('status')))


@rooms.route('/<int:room_id>/name', methods=['POST'])
def set_name(room_id):
    data = _body()
    return jsonify(participants.set_name(room_id, _session_id(data), data.get('name')))


@rooms.route('/<int:room_id>/avatar', methods=['POST'])
def set_avatar(room_id):
    data = _body()
    return jsonify(participants.set_avatar(room_id, _session_id(data), data.get('avatar')))


@rooms.route('/<int:room_id>/disconnect', methods=['POST'])
def disconnect(room_id):
    data = _body()
    return jsonify(participants.disconnect(room_id, _session_id(data)))


@rooms.route('/<int:room_id>/kick', methods=['POST'])
def kick(room_id):
    data = _body()
    return jsonify(participants.kick(room_id, _session_id(data), data.get('target_session_id')))


@rooms.route('/<int:room_id>', methods=['DELETE'])
def delete_room(room_id):
    data = _body()
    session_id = _session_id(data)
    if not session_id:
        return jsonify({'error': 'session_id is required'}), 400
    return jsonify(coordinator.delete_room(room_id, session_id))
