"""Single-elimination bracket generation and result propagation.

Brackets are plain dictionaries so they can be stored as JSON on the
tournament row and returned from the API unchanged::

    {'rounds': [
        {'round_number': 1, 'matches': [
            {'id': 'r1m0', 'player1': {...}, 'player2': None, 'winner': None,
             'status': 'pending', 'start_time': None, 'match_code': None},
        ]},
    ]}

Players are small participant snapshots (``participant_ref``); ``None`` in a
player slot means the slot is still TBD, or a bye in round one.
"""
import copy

from .errors import NotFoundError, ValidationError

MATCH_STATUSES = ('pending', 'live', 'completed')


def next_power_of_two(n: int) -> int:
    if n < 1:
        raise ValidationError('Participant count must be at least 1')
    return 1 << (n - 1).bit_length()


def participant_ref(participant):
    if participant is None:
        return None
    if isinstance(participant, dict):
        return {
            'id': participant['id'],
            'ranger_name': participant.get('ranger_name'),
            'illuvium_player_id': participant.get('illuvium_player_id'),
        }
    return {
        'id': participant.id,
        'ranger_name': participant.ranger_name,
        'illuvium_player_id': participant.illuvium_player_id,
    }


def _new_match(round_number, index, player1=None, player2=None):
    return {
        'id': f'r{round_number}m{index}',
        'player1': player1,
        'player2': player2,
        'winner': None,
        'status': 'pending',
        'start_time': None,
        'match_code': None,
    }


def generate_bracket(participants):
    """Build a bracket from a seed-ordered participant list (index 0 is the top seed).

    The seed list is padded with byes up to the next power of two and round
    one pairs consecutive seeds. Later rounds start empty and fill as results
    come in. Byes are resolved immediately as walkovers.
    """
    seeds = [participant_ref(p) for p in participants]
    if not seeds:
        raise ValidationError('Cannot generate a bracket without participants')
    ids = [s['id'] for s in seeds]
    if len(set(ids)) != len(ids):
        raise ValidationError('A participant appears more than once in the seed list')

    size = next_power_of_two(len(seeds))
    total_rounds = max(1, size.bit_length() - 1)
    padded = seeds + [None] * (size - len(seeds))
    if len(padded) == 1:
        padded.append(None)

    first_round = [
        _new_match(1, i // 2, padded[i], padded[i + 1])
        for i in range(0, len(padded), 2)
    ]
    rounds = [{'round_number': 1, 'matches': first_round}]
    count = len(first_round)
    for number in range(2, total_rounds + 1):
        count //= 2
        rounds.append({
            'round_number': number,
            'matches': [_new_match(number, i) for i in range(count)],
        })
    bracket = {'rounds': rounds}
    _resolve_walkovers(bracket)
    return bracket


def _locate(bracket, match_id):
    for ri, rnd in enumerate(bracket.get('rounds', [])):
        for mi, match in enumerate(rnd['matches']):
            if match['id'] == match_id:
                return ri, mi, match
    raise NotFoundError(f'Match {match_id} not found in bracket')


def find_match(bracket, match_id):
    return _locate(bracket, match_id)[2]


def _next_match(bracket, round_index, match_index):
    rounds = bracket['rounds']
    if round_index + 1 >= len(rounds):
        return None
    return rounds[round_index + 1]['matches'][match_index // 2]


def _propagate(bracket, round_index, match_index, player):
    nxt = _next_match(bracket, round_index, match_index)
    if nxt is None:
        return
    slot = 'player1' if match_index % 2 == 0 else 'player2'
    nxt[slot] = player


def _resolve_walkovers(bracket):
    rounds = bracket['rounds']
    for ri, rnd in enumerate(rounds):
        for mi, match in enumerate(rnd['matches']):
            if match['status'] == 'completed':
                continue
            if ri > 0:
                feeders = rounds[ri - 1]['matches'][2 * mi:2 * mi + 2]
                if any(f['status'] != 'completed' for f in feeders):
                    continue
            players = [p for p in (match['player1'], match['player2']) if p]
            if len(players) == 2:
                continue
            match['status'] = 'completed'
            match['winner'] = players[0] if players else None
            if players:
                _propagate(bracket, ri, mi, players[0])


def set_winner(bracket, match_id, winner):
    """Record ``winner`` for a match and advance them into the next round.

    ``winner`` may be a participant id or anything ``participant_ref``
    accepts. Returns a new bracket; the input is not modified.
    """
    bracket = copy.deepcopy(bracket)
    ri, mi, match = _locate(bracket, match_id)
    if isinstance(winner, (str, int)):
        winner_id = winner
    else:
        winner_id = participant_ref(winner)['id']
    if ri > 0:
        feeders = bracket['rounds'][ri - 1]['matches'][2 * mi:2 * mi + 2]
        for slot, feeder in zip(('player1', 'player2'), feeders):
            if match[slot] is None and feeder['status'] != 'completed':
                raise ValidationError(
                    f'Match {match_id} is still waiting for the winner of {feeder["id"]}',
                    details={'match_id': match_id, 'feeder': feeder['id']},
                )
    players = {p['id']: p for p in (match['player1'], match['player2']) if p}
    if winner_id not in players:
        raise ValidationError(
            'Winner must be one of the players in the match',
            details={'match_id': match_id, 'winner_id': winner_id},
        )
    nxt = _next_match(bracket, ri, mi)
    if nxt is not None and nxt['status'] == 'completed':
        raise ValidationError(f'Match {nxt["id"]} has already been decided')
    match['winner'] = players[winner_id]
    match['status'] = 'completed'
    _propagate(bracket, ri, mi, players[winner_id])
    _resolve_walkovers(bracket)
    return bracket


def loser_of(match):
    """Return the player who lost a completed match, if there was one."""
    winner = match.get('winner')
    if not winner:
        return None
    for p in (match['player1'], match['player2']):
        if p and p['id'] != winner['id']:
            return p
    return None


def schedule_match(bracket, match_id, match_code=None, start_time=None):
    """Attach a lobby code and start time to a match and mark it live."""
    bracket = copy.deepcopy(bracket)
    match = _locate(bracket, match_id)[2]
    if match['status'] == 'completed':
        raise ValidationError(f'Match {match_id} is already completed')
    if not (match['player1'] and match['player2']):
        raise ValidationError(f'Match {match_id} is still waiting for players')
    match['match_code'] = match_code
    match['start_time'] = start_time
    match['status'] = 'live'
    return bracket


def champion(bracket):
    if not bracket or not bracket.get('rounds'):
        return None
    final = bracket['rounds'][-1]['matches']
    if len(final) != 1:
        return None
    return final[0]['winner']
