import threading
from typing import Any, Dict, List, Optional

from flask import current_app

NAMESPACE = '/ws'


class ClientSyncChannel:
    """Push the latest room snapshot to every subscriber of that room.

    One instance per app (``app.extensions['sync_channel']``). It tracks
    which socket is watching which room so handlers never share
    module-level state, and exposes an explicit connect/disconnect
    lifecycle per socket.
    """

    def __init__(self, socketio, namespace: str = NAMESPACE):
        self.socketio = socketio
        self.namespace = namespace
        self._lock = threading.Lock()
        self._subscriptions: Dict[str, Dict[str, Any]] = {}

    @staticmethod
    def room_channel(code: str) -> str:
        return f"room:{code.upper()}"

    @staticmethod
    def session_channel(code: str, session_id: str) -> str:
        return f"session:{code.upper()}:{session_id}"

    # ---- socket lifecycle ----
    def connect(self, sid: str) -> None:
        with self._lock:
            self._subscriptions.setdefault(sid, {})

    def subscribe(self, sid: str, code: str, session_id: Optional[str] = None) -> None:
        with self._lock:
            self._subscriptions[sid] = {'code': code.upper(), 'session_id': session_id}

    def unsubscribe(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            ctx = self._subscriptions.get(sid) or None
            if sid in self._subscriptions:
                self._subscriptions[sid] = {}
            return ctx

    def disconnect(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._subscriptions.pop(sid, None) or None

    def subscription(self, sid: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._subscriptions.get(sid) or None

    def subscribers(self, code: str) -> List[str]:
        code = code.upper()
        with self._lock:
            return [sid for sid, ctx in self._subscriptions.items() if ctx.get('code') == code]

    # ---- delivery ----
    def publish(self, snapshot: Dict[str, Any]) -> None:
        code = snapshot['room']['code']
        self._emit('state_update', snapshot, self.room_channel(code))

    def notify_removed(self, code: str, session_id: str, reason: str = 'kicked') -> None:
        payload = {'code': code, 'session_id': session_id, 'reason': reason}
        self._emit('removed', payload, self.session_channel(code, session_id))

    def notify_deleted(self, code: str) -> None:
        self._emit('room_deleted', {'code': code}, self.room_channel(code))

    def _emit(self, event: str, payload: Dict[str, Any], to: str) -> None:
        # The mutation is already committed; a failed push must not undo it
        try:
            self.socketio.emit(event, payload, to=to, namespace=self.namespace)
        except Exception as exc:
            current_app.logger.warning(f"[sync-emit-failed] event={event} to={to} error={exc}")


def get_sync_channel() -> ClientSyncChannel:
    return current_app.extensions['sync_channel']
