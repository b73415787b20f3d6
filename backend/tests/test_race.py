import threading

import pytest

from typerace import db, socketio
from typerace.errors import NotFoundError, PermissionDenied, PreconditionError, ValidationError
from typerace.models import Participant, Room, now_ms
from typerace.services.race import coordinator, participants
from typerace.services.race.locking import RoomLockRegistry, get_lock_registry
from typerace.services.race.sync import ClientSyncChannel


def _race(racers, countdown=0, host='host'):
    created = coordinator.create_room('Host', host, 'race')
    for sid in racers:
        coordinator.join_room(created['code'], sid, sid.upper())
    for sid in racers:
        participants.set_ready(created['room_id'], sid, True)
    coordinator.start_race(created['room_id'], host, countdown)
    return created


def _row(room_id, session_id):
    db.session.expire_all()
    return Participant.query.filter_by(room_id=room_id, session_id=session_id).first()


def test_concurrent_finishes_get_distinct_positions(file_app):
    sessions = [f'r{i}' for i in range(6)]
    created = _race(sessions)
    room_id = created['room_id']
    barrier = threading.Barrier(len(sessions))
    errors = []

    def finish(session_id, finish_time):
        with file_app.app_context():
            try:
                barrier.wait()
                participants.record_finish(room_id, session_id, finish_time)
            except Exception as exc:
                errors.append(exc)

    threads = [
        threading.Thread(target=finish, args=(sid, 3000 + idx))
        for idx, sid in enumerate(sessions)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    db.session.expire_all()
    rows = Participant.query.filter_by(room_id=room_id).all()
    assert sorted(p.position for p in rows) == [1, 2, 3, 4, 5, 6]
    by_position = sorted(rows, key=lambda p: p.position)
    seen = [p.last_seen for p in by_position]
    assert seen == sorted(seen)

    snapshot = coordinator.get_snapshot(room_id)
    assert snapshot['room']['race_over'] is True
    assert [p['position'] for p in snapshot['participants']] == [1, 2, 3, 4, 5, 6]


def test_finish_position_is_irrevocable(flask_app):
    created = _race(['a', 'b'])
    room_id = created['room_id']
    first = participants.record_finish(room_id, 'b', 2500)
    assert first['applied'] is True
    again = participants.record_finish(room_id, 'b', 1200)
    assert again['applied'] is False
    row = _row(room_id, 'b')
    assert row.position == 1
    assert row.finish_time == 2500
    assert row.progress == 100.0


def test_kicked_finisher_does_not_free_a_position(flask_app):
    created = _race(['a', 'b', 'c'])
    room_id = created['room_id']
    participants.record_finish(room_id, 'a', 2000)
    participants.record_finish(room_id, 'b', 2500)
    participants.kick(room_id, 'host', 'a')
    participants.record_finish(room_id, 'c', 3000)

    snapshot = coordinator.get_snapshot(room_id)
    positions = {p['session_id']: p['position'] for p in snapshot['participants']}
    assert positions == {'b': 2, 'c': 3}


def test_reports_rejected_during_countdown(flask_app):
    created = _race(['a', 'b'], countdown=None)
    room_id = created['room_id']
    with pytest.raises(PreconditionError):
        participants.update_progress(room_id, 'a', {'progress': 100, 'timeElapsed': 10, 'isFinished': True})
    with pytest.raises(PreconditionError):
        participants.record_finish(room_id, 'a', 10)
    with pytest.raises(PreconditionError):
        participants.update_progress(room_id, 'a', {'progress': 20, 'timeElapsed': 10})

    row = _row(room_id, 'a')
    assert row.is_finished is False
    assert row.position is None
    assert row.progress == 0


def test_countdown_abort_clears_race_fields(flask_app):
    created = _race(['a', 'b'], countdown=None)
    room_id = created['room_id']
    row = _row(room_id, 'a')
    row.is_finished = True
    row.position = 1
    row.finish_time = 10
    db.session.commit()

    participants.set_ready(room_id, 'b', False)
    row = _row(room_id, 'a')
    assert row.race_epoch is None
    assert row.is_finished is False
    assert row.position is None
    assert row.finish_time is None

    participants.set_ready(room_id, 'b', True)
    coordinator.start_race(room_id, 'host', 0)
    participants.record_finish(room_id, 'b', 1800)
    assert _row(room_id, 'b').position == 1


def test_settings_locked_while_race_active(flask_app):
    created = _race(['a'], countdown=None)
    room_id = created['room_id']
    with pytest.raises(PreconditionError):
        coordinator.update_settings(room_id, 'host', {'mode': 'time'})
    snapshot = coordinator.get_snapshot(room_id)
    assert snapshot['room']['settings']['mode'] == 'words'
    assert snapshot['room']['ready_participants'] == ['a']
    assert snapshot['room']['race_start_time'] is not None


def test_out_of_order_progress_is_dropped(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    newer = participants.update_progress(room_id, 'a', {'wpm': 60, 'progress': 40, 'timeElapsed': 2000})
    assert newer['applied'] is True
    older = participants.update_progress(room_id, 'a', {'wpm': 20, 'progress': 10, 'timeElapsed': 1000})
    assert older['applied'] is False
    row = _row(room_id, 'a')
    assert row.progress == 40
    assert row.wpm == 60


def test_progress_after_finish_is_dropped(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    participants.update_progress(room_id, 'a', {'progress': 100, 'timeElapsed': 5000, 'isFinished': True})
    late = participants.update_progress(room_id, 'a', {'progress': 50, 'timeElapsed': 6000})
    assert late['applied'] is False
    row = _row(room_id, 'a')
    assert row.is_finished is True
    assert row.progress == 100.0
    assert row.finish_time == 5000


def test_finishing_report_records_position(flask_app):
    created = _race(['a', 'b'])
    room_id = created['room_id']
    result = participants.update_progress(
        room_id, 'a', {'wpm': 88.5, 'accuracy': 97, 'wordsTyped': 15, 'timeElapsed': 9100, 'isFinished': True},
    )
    assert result['applied'] is True
    row = _row(room_id, 'a')
    assert row.position == 1
    assert row.wpm == 88.5
    assert row.words_typed == 15


def test_report_from_previous_epoch_is_ignored(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    coordinator.reset_for_new_race(room_id, 'host')
    participants.set_ready(room_id, 'a', True)
    coordinator.start_race(room_id, 'host', 0)

    stale = participants.update_progress(room_id, 'a', {'progress': 90, 'timeElapsed': 100}, epoch=1)
    assert stale['applied'] is False
    assert stale['room']['race_epoch'] == 2
    assert participants.record_finish(room_id, 'a', 100, epoch=1)['applied'] is False
    assert _row(room_id, 'a').progress == 0


def test_late_joiner_is_not_a_racer(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    coordinator.join_room(created['code'], 'late', 'Late')
    with pytest.raises(PreconditionError):
        participants.update_progress(room_id, 'late', {'progress': 5, 'timeElapsed': 100})

    participants.record_finish(room_id, 'a', 4000)
    snapshot = coordinator.get_snapshot(room_id)
    assert snapshot['room']['race_over'] is True


def test_progress_validation(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    with pytest.raises(ValidationError):
        participants.update_progress(room_id, 'a', {'wpm': -1})
    with pytest.raises(ValidationError):
        participants.update_progress(room_id, 'a', {'speed': 10})
    with pytest.raises(ValidationError):
        participants.update_progress(room_id, 'a', {'progress': 100, 'isFinished': True})
    with pytest.raises(ValidationError):
        participants.update_progress(room_id, 'a', 'fast')


def test_stats_are_clamped(flask_app):
    parsed = participants.parse_stats({'accuracy': 140, 'progress': 101.5, 'words_typed': 3.0})
    assert parsed['accuracy'] == 100.0
    assert parsed['progress'] == 100.0
    assert parsed['words_typed'] == 3
    assert parsed['is_finished'] is False


def test_unready_during_countdown_aborts_start(flask_app):
    created = _race(['a', 'b'], countdown=None)
    room_id = created['room_id']
    started = coordinator.get_snapshot(room_id)
    assert started['room']['status'] == 'active'
    assert started['room']['race_start_time'] > now_ms()
    text = started['room']['target_text']

    aborted = participants.set_ready(room_id, 'b', False)
    assert aborted['room']['status'] == 'waiting'
    assert aborted['room']['race_start_time'] is None
    assert aborted['room']['target_text'] == text
    assert aborted['room']['ready_participants'] == ['a']
    assert all(p['race_epoch'] is None for p in aborted['participants'])


def test_readiness_frozen_once_race_runs(flask_app):
    created = _race(['a'])
    with pytest.raises(PreconditionError):
        participants.set_ready(created['room_id'], 'a', False)


def test_start_requires_every_connected_participant_ready(flask_app):
    created = coordinator.create_room('Host', 'host', 'race')
    room_id = created['room_id']
    coordinator.join_room(created['code'], 'a', 'Ada')
    coordinator.join_room(created['code'], 'b', 'Bea')
    participants.set_ready(room_id, 'a', True)
    with pytest.raises(PreconditionError) as excinfo:
        coordinator.start_race(room_id, 'host', 0)
    assert 'Bea' in excinfo.value.message

    participants.disconnect(room_id, 'b')
    snapshot = coordinator.start_race(room_id, 'host', 0)
    racers = {p['session_id']: p['race_epoch'] for p in snapshot['participants']}
    assert racers == {'a': 1, 'b': None}


def test_start_permission_and_countdown_bounds(flask_app):
    created = coordinator.create_room('Host', 'host', 'race')
    coordinator.join_room(created['code'], 'a', 'Ada')
    participants.set_ready(created['room_id'], 'a', True)
    with pytest.raises(PermissionDenied):
        coordinator.start_race(created['room_id'], 'a', 0)
    with pytest.raises(ValidationError):
        coordinator.start_race(created['room_id'], 'host', 31)
    with pytest.raises(ValidationError):
        coordinator.start_race(created['room_id'], 'host', -1)


def test_end_race_marks_dnf_in_results(flask_app):
    created = _race(['a', 'b'])
    room_id = created['room_id']
    participants.record_finish(room_id, 'a', 3100)
    ended = coordinator.end_race(room_id, 'b')
    assert ended['room']['race_over'] is True
    end_time = ended['room']['race_end_time']
    assert coordinator.end_race(room_id, 'host')['room']['race_end_time'] == end_time

    saved = coordinator.save_results(room_id)
    rows = {row['session_id']: row for row in saved['rankings']}
    assert rows['a']['position'] == 1 and rows['a']['dnf'] is False
    assert rows['b']['position'] is None and rows['b']['dnf'] is True
    assert rows['b']['rank'] == 2
    assert saved['total_racers'] == 2

    resaved = coordinator.save_results(room_id)
    assert resaved['id'] == saved['id']
    assert coordinator.get_results(room_id)['race_epoch'] == 1


def test_results_kept_per_epoch(flask_app):
    created = _race(['a'])
    room_id = created['room_id']
    participants.record_finish(room_id, 'a', 2000)
    coordinator.save_results(room_id)
    coordinator.reset_for_new_race(room_id, 'host')
    participants.set_ready(room_id, 'a', True)
    coordinator.start_race(room_id, 'host', 0)
    participants.record_finish(room_id, 'a', 1500)
    coordinator.save_results(room_id)

    assert coordinator.get_results(room_id)['race_epoch'] == 2
    first = coordinator.get_results(room_id, race_epoch=1)
    assert first['rankings'][0]['finish_time'] == 2000
    with pytest.raises(NotFoundError):
        coordinator.get_results(room_id, race_epoch=7)


def test_expired_room_rejects_join_but_keeps_id_lookup(flask_app):
    created = coordinator.create_room('Host', 'host', 'practice')
    room = db.session.get(Room, created['room_id'])
    room.expires_at = now_ms() - 1
    db.session.commit()

    with pytest.raises(NotFoundError):
        coordinator.join_room(created['code'], 'a', 'Ada')
    with pytest.raises(NotFoundError):
        coordinator.get_snapshot_by_code(created['code'])
    assert coordinator.get_snapshot(created['room_id'])['room']['code'] == created['code']


def test_sweep_removes_only_expired_rooms(flask_app):
    stale = coordinator.create_room('Old', 'old', 'race')
    fresh = coordinator.create_room('New', 'new', 'race')
    coordinator.join_room(stale['code'], 'a', 'Ada')
    room = db.session.get(Room, stale['room_id'])
    room.expires_at = now_ms() - 1
    db.session.commit()

    assert coordinator.sweep_expired_rooms() == 1
    db.session.expire_all()
    assert db.session.get(Room, stale['room_id']) is None
    assert Participant.query.filter_by(room_id=stale['room_id']).count() == 0
    assert db.session.get(Room, fresh['room_id']) is not None


def test_room_codes_unique_among_live_rooms(flask_app, monkeypatch):
    first = coordinator.create_room('Host', 'h1', 'practice')
    picks = iter([list(first['code']), list('ZZZZ9')])
    monkeypatch.setattr('typerace.models.random.choices', lambda population, k: next(picks))
    second = coordinator.create_room('Host', 'h2', 'practice')
    assert second['code'] == 'ZZZZ9'


def test_expired_code_can_be_reused(flask_app, monkeypatch):
    first = coordinator.create_room('Host', 'h1', 'practice')
    room = db.session.get(Room, first['room_id'])
    room.expires_at = now_ms() - 1
    db.session.commit()
    monkeypatch.setattr('typerace.models.random.choices', lambda population, k: list(first['code']))
    second = coordinator.create_room('Host', 'h2', 'practice')
    assert second['code'] == first['code']
    assert coordinator.get_snapshot_by_code(first['code'])['room']['id'] == second['room_id']


def test_failed_mutation_leaves_room_untouched(flask_app):
    created = coordinator.create_room('Host', 'host', 'race')
    coordinator.join_room(created['code'], 'a', 'Ada')
    with pytest.raises(ValidationError):
        participants.kick(created['room_id'], 'host', 'host')
    with pytest.raises(NotFoundError):
        participants.kick(created['room_id'], 'host', 'ghost')
    snapshot = coordinator.get_snapshot(created['room_id'])
    assert [p['session_id'] for p in snapshot['participants']] == ['a']


def test_delete_discards_room_lock(flask_app):
    created = coordinator.create_room('Host', 'host', 'practice')
    registry = get_lock_registry()
    assert len(registry) == 0
    coordinator.join_room(created['code'], 'a', 'Ada')
    assert len(registry) == 1
    coordinator.delete_room(created['room_id'], 'host')
    assert len(registry) == 0
    with pytest.raises(NotFoundError):
        coordinator.get_snapshot(created['room_id'])


def test_lock_registry_reuses_locks():
    registry = RoomLockRegistry()
    assert registry.lock_for(1) is registry.lock_for(1)
    assert registry.lock_for(1) is not registry.lock_for(2)
    registry.discard(1)
    registry.discard(99)
    assert len(registry) == 1


def test_sync_channel_tracks_subscriptions(flask_app):
    channel = ClientSyncChannel(socketio)
    channel.connect('sid-1')
    assert channel.subscription('sid-1') is None
    channel.subscribe('sid-1', 'abcde', 's1')
    channel.subscribe('sid-2', 'ABCDE')
    assert sorted(channel.subscribers('AbCdE')) == ['sid-1', 'sid-2']
    assert channel.subscription('sid-1') == {'code': 'ABCDE', 'session_id': 's1'}

    assert channel.unsubscribe('sid-2') == {'code': 'ABCDE', 'session_id': None}
    assert channel.subscribers('ABCDE') == ['sid-1']
    assert channel.disconnect('sid-1') == {'code': 'ABCDE', 'session_id': 's1'}
    assert channel.subscribers('ABCDE') == []
    assert channel.room_channel('abcde') == 'room:ABCDE'
    assert channel.session_channel('abcde', 's1') == 'session:ABCDE:s1'


def test_failed_push_does_not_raise(flask_app):
    class BrokenSocket:
        def emit(self, *args, **kwargs):
            raise RuntimeError('transport down')

    channel = ClientSyncChannel(BrokenSocket())
    channel.notify_deleted('ABCDE')
    channel.publish({'room': {'code': 'ABCDE'}, 'participants': [], 'server_time': 0})
