from flask import current_app, request
from flask_socketio import emit, join_room, leave_room

from typerace import socketio
from typerace.errors import RaceError
from typerace.services.race import coordinator, participants
from typerace.services.race.sync import NAMESPACE, get_sync_channel


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect(auth=None):
    get_sync_channel().connect(_get_sid())
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(reason=None):
    # Transport loss only drops the subscription; participant rows are
    # changed by an explicit leave, never by a dropped socket
    ctx = get_sync_channel().disconnect(_get_sid())
    if ctx:
        current_app.logger.info(f"[ws-disconnect] code={ctx.get('code')} session={ctx.get('session_id')}")


def handle_subscribe(data):
    data = data or {}
    code = (data.get('code') or '').strip().upper()
    session_id = data.get('session_id')
    if not code:
        emit('error', {'message': 'code is required'})
        return
    try:
        snapshot = coordinator.get_snapshot_by_code(code)
    except RaceError as exc:
        emit('error', {'message': exc.message})
        return
    channel = get_sync_channel()
    join_room(channel.room_channel(code))
    if session_id:
        join_room(channel.session_channel(code, session_id))
    channel.subscribe(_get_sid(), code, session_id)
    emit('subscribed', {'room': channel.room_channel(code)})
    emit('state', snapshot)


def _drop_subscription(code: str):
    channel = get_sync_channel()
    ctx = channel.unsubscribe(_get_sid()) or {}
    leave_room(channel.room_channel(code))
    if ctx.get('session_id'):
        leave_room(channel.session_channel(code, ctx['session_id']))
    return ctx


def handle_unsubscribe(data):
    code = ((data or {}).get('code') or '').strip().upper()
    if not code:
        emit('error', {'message': 'code is required'})
        return
    _drop_subscription(code)
    emit('unsubscribed', {'room': get_sync_channel().room_channel(code)})


def handle_leave(data):
    """Explicit leave: unsubscribe and mark the participant disconnected."""
    data = data or {}
    code = (data.get('code') or '').strip().upper()
    if not code:
        emit('error', {'message': 'code is required'})
        return
    ctx = _drop_subscription(code)
    session_id = data.get('session_id') or ctx.get('session_id')
    try:
        room_id = coordinator.get_snapshot_by_code(code)['room']['id']
        participants.disconnect(room_id, session_id)
    except RaceError as exc:
        emit('error', {'message': exc.message})
        return
    emit('left', {'room': get_sync_channel().room_channel(code)})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('subscribe', handle_subscribe, namespace=namespace)
        socketio.on_event('unsubscribe', handle_unsubscribe, namespace=namespace)
        socketio.on_event('leave', handle_leave, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
