import csv
import io

from .errors import ValidationError
from .models import TIEBREAKER_TYPES

SORT_FIELDS = {
    'points': 'points',
    'matches': 'matches_played',
    'matchesPlayed': 'matches_played',
    'matches_played': 'matches_played',
    'name': 'ranger_name',
    'rangerName': 'ranger_name',
    'ranger_name': 'ranger_name',
}

# Statuses that never appear on a leaderboard
HIDDEN_STATUSES = ('pending', 'rejected')


def _field(participant, name, default=None):
    if isinstance(participant, dict):
        value = participant.get(name, default)
    else:
        value = getattr(participant, name, default)
    return default if value is None else value


def compute_leaderboard(participants, division_id=None, sort_by='points', sort_dir='desc',
                        search=None, min_matches=0):
    """Filter, sort and rank participants.

    Returns ``(rows, ties)``. Rank is positional after sorting. ``ties`` maps
    a points value to the participants sharing it; only groups of two or more
    are reported.
    """
    key = SORT_FIELDS.get(sort_by)
    if key is None:
        raise ValidationError(f'Unknown sort field: {sort_by}')
    if sort_dir not in ('asc', 'desc'):
        raise ValidationError(f'Unknown sort direction: {sort_dir}')

    pool = list(participants)
    if division_id:
        pool = [p for p in pool if _field(p, 'division_id') == division_id]
    if search and search.strip():
        needle = search.strip().lower()
        pool = [p for p in pool if needle in _field(p, 'ranger_name', '').lower()]
    if min_matches:
        pool = [p for p in pool if _field(p, 'matches_played', 0) >= min_matches]

    if key == 'ranger_name':
        def sort_key(p):
            return _field(p, 'ranger_name', '').lower()
    else:
        def sort_key(p):
            return _field(p, key, 0)
    pool.sort(key=sort_key, reverse=(sort_dir == 'desc'))

    groups = {}
    for p in pool:
        groups.setdefault(_field(p, 'points', 0), []).append(p)
    ties = {points: group for points, group in groups.items() if len(group) > 1}

    rows = []
    for rank, p in enumerate(pool, start=1):
        points = _field(p, 'points', 0)
        rows.append({
            'rank': rank,
            'participant': p,
            'id': _field(p, 'id'),
            'ranger_name': _field(p, 'ranger_name', ''),
            'illuvium_player_id': _field(p, 'illuvium_player_id', ''),
            'division_id': _field(p, 'division_id'),
            'status': _field(p, 'status'),
            'points': points,
            'matches_played': _field(p, 'matches_played', 0),
            'tied': points in ties,
        })
    return rows, ties


def visible_participants(tournament):
    return [p for p in tournament.participants if p.status not in HIDDEN_STATUSES]


def division_leaderboards(tournament, sort_by='points', sort_dir='desc', search=None):
    """One leaderboard per division, keyed by division id."""
    min_matches = tournament.scoring_system.min_matches_required if tournament.scoring_system else 0
    participants = visible_participants(tournament)
    boards = {}
    for division in tournament.divisions:
        boards[division.id] = compute_leaderboard(
            participants, division_id=division.id, sort_by=sort_by,
            sort_dir=sort_dir, search=search, min_matches=min_matches,
        )
    return boards


def rows_to_json(rows, ties):
    return {
        'rows': [{k: v for k, v in row.items() if k != 'participant'} for row in rows],
        'ties': {str(points): [_field(p, 'id') for p in group] for points, group in ties.items()},
    }


def leaderboard_csv(rows):
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(['Rank', 'Ranger Name', 'Player ID', 'Points', 'Matches'])
    for row in rows:
        writer.writerow([
            row['rank'],
            row['ranger_name'],
            row['illuvium_player_id'],
            row['points'],
            row['matches_played'],
        ])
    return output.getvalue()


# --- Tiebreakers ---
# Rules are stored and shown in order but not applied: none of the five types
# can be computed without per-round scores or HP data, which match results do
# not carry.

def validate_tiebreakers(rules):
    """Check a tiebreaker list and return it as ordered dicts."""
    normalized = []
    seen = set()
    for rule in rules or []:
        try:
            order = int(_field(rule, 'order'))
        except (TypeError, ValueError):
            raise ValidationError('Tiebreaker order must be an integer')
        if order < 1:
            raise ValidationError('Tiebreaker order starts at 1')
        if order in seen:
            raise ValidationError(f'Duplicate tiebreaker order: {order}')
        seen.add(order)
        rule_type = _field(rule, 'type')
        if rule_type not in TIEBREAKER_TYPES:
            raise ValidationError(f'Unknown tiebreaker type: {rule_type}')
        normalized.append({
            'order': order,
            'type': rule_type,
            'description': _field(rule, 'description', ''),
        })
    return ordered_tiebreakers(normalized)


def ordered_tiebreakers(rules):
    return sorted(rules, key=lambda r: _field(r, 'order', 0))
