from typing import Iterable, List


def _finished_key(p):
    finish_time = p.finish_time if p.finish_time is not None else float('inf')
    position = p.position if p.position is not None else float('inf')
    return (position, finish_time)


def _unfinished_key(p):
    return (-(p.progress or 0), -(p.words_typed or 0), p.joined_at or 0, p.id or 0)


def rank_participants(participants: Iterable) -> List:
    """Order participants for live display and results.

    Finished participants come first by position (finish time breaks ties),
    then everyone else by progress, words typed, and arrival order.
    """
    items = list(participants)
    finished = sorted((p for p in items if p.is_finished), key=_finished_key)
    unfinished = sorted((p for p in items if not p.is_finished), key=_unfinished_key)
    return finished + unfinished


def next_position(highest_position: int) -> int:
    # Caller must hold the room lock between reading and writing
    return highest_position + 1


def racers_for(room, participants: Iterable) -> List:
    """Connected participants stamped into the room's current race."""
    return [
        p for p in participants
        if p.is_connected and p.race_epoch is not None and p.race_epoch == room.race_epoch
    ]


def is_race_over(room, participants: Iterable, now: int) -> bool:
    """Derived 'race over' flag; never stored on the room."""
    if room.game_mode != 'race' or room.race_start_time is None:
        return False
    if room.race_end_time is not None:
        return True
    if room.status != 'active' or now < room.race_start_time:
        return False
    settings = room.get_settings()
    if settings.get('mode') == 'time':
        try:
            duration_ms = int(settings.get('duration') or 0) * 1000
        except (TypeError, ValueError):
            duration_ms = 0
        if duration_ms and now >= room.race_start_time + duration_ms:
            return True
    racers = racers_for(room, participants)
    return bool(racers) and all(p.is_finished for p in racers)


def is_dnf(participant, race_over: bool) -> bool:
    return race_over and not participant.is_finished


def build_rankings(participants: Iterable, race_over: bool = True) -> List[dict]:
    """Result rows in ranking order.

    ``rank`` is the display slot; ``position`` stays the irrevocable finish
    position so DNF rows keep None rather than borrowing a slot number.
    """
    rows = []
    for idx, p in enumerate(rank_participants(participants), start=1):
        rows.append({
            'rank': idx,
            'session_id': p.session_id,
            'name': p.name,
            'avatar': p.avatar,
            'position': p.position if p.is_finished else None,
            'wpm': p.wpm,
            'accuracy': p.accuracy,
            'progress': p.progress,
            'words_typed': p.words_typed,
            'finish_time': p.finish_time,
            'did_finish': bool(p.is_finished),
            'dnf': is_dnf(p, race_over),
        })
    return rows
