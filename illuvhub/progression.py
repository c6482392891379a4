import json
from datetime import datetime, timezone

from sqlalchemy.orm.exc import StaleDataError

from .bracket import find_match, generate_bracket, set_winner, schedule_match, loser_of
from .errors import (
    ConcurrencyConflict,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AuditLogEntry,
    Division,
    Phase,
    ScoringSystem,
    TiebreakerRule,
    Tournament,
    EXPECTED_POPULATIONS,
    PHASE_FORMATS,
    PHASE_STATUSES,
    PHASE_TYPES,
    ROUND_FORMATS,
    SCORING_TYPES,
    TOURNAMENT_FORMATS,
    TOURNAMENT_STATUSES,
    TOURNAMENT_TYPES,
)
from .standings import validate_tiebreakers

# Participants that can be seeded into a bracket
SEEDABLE_STATUSES = ('registered', 'checked-in', 'advanced')


def parse_timestamp(value):
    """Parse an ISO-8601 string (``Z`` suffix allowed) to a naive UTC datetime."""
    if value is None or isinstance(value, datetime):
        return value
    value = str(value).strip()
    if not value:
        return None
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    candidates = [value]
    if 'T' not in value and ' ' in value:
        candidates.append(value.replace(' ', 'T'))
    for candidate in candidates:
        try:
            parsed = datetime.fromisoformat(candidate)
        except ValueError:
            continue
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed
    raise ValidationError(f'Invalid timestamp: {value}')


def actor_name(user):
    if user is None:
        return 'admin'
    if isinstance(user, str):
        return user or 'admin'
    return getattr(user, 'name', None) or getattr(user, 'email', None) or 'admin'


def _choice(value, allowed, field):
    if value not in allowed:
        raise ValidationError(f'Invalid {field}: {value}', details={'allowed': list(allowed)})
    return value


def _positive_int(value, field, allow_none=False):
    if value is None and allow_none:
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be an integer')
    if number < 1:
        raise ValidationError(f'{field} must be positive')
    return number


def _non_negative_number(value, field):
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number')
    if number < 0:
        raise ValidationError(f'{field} must not be negative')
    return number


# --- Audit log and concurrency ---

def append_audit(session, tournament, action, user=None):
    entry = AuditLogEntry(tournament_id=tournament.id, action=action, user=actor_name(user),
                          timestamp=datetime.utcnow())
    session.add(entry)
    return entry


def audit_trail(tournament):
    return sorted(tournament.audit_log, key=lambda e: (e.timestamp or datetime.min, e.id or 0), reverse=True)


def check_version(tournament, expected):
    """Fail if the caller last saw a different version of the tournament."""
    if expected is None:
        return
    try:
        expected = int(expected)
    except (TypeError, ValueError):
        raise ValidationError('version must be an integer')
    if expected != tournament.version:
        raise ConcurrencyConflict(
            'Tournament was modified by someone else; reload and try again',
            details={'expected': expected, 'current': tournament.version},
        )


def touch(tournament):
    # Forces an UPDATE of the tournament row so the version check runs even
    # when only child rows changed.
    tournament.updated_at = datetime.utcnow()


def commit(session):
    try:
        session.commit()
    except StaleDataError:
        session.rollback()
        raise ConcurrencyConflict('Tournament was modified by someone else; reload and try again')


# --- Builder ---

def default_rounds():
    return [{
        'round_number': 1,
        'name': 'Round 1',
        'format': 'bo1',
        'start_time': None,
        'advancing_players': 16,
        'status': 'pending',
    }]


def next_legacy_round(rounds):
    """The round the builder appends: half the previous round's advancing players."""
    previous = rounds[-1]['advancing_players'] if rounds else 16
    number = len(rounds) + 1
    return {
        'round_number': number,
        'name': f'Round {number}',
        'format': 'bo1',
        'start_time': None,
        'advancing_players': (previous or 16) // 2,
        'status': 'pending',
    }


def _build_rounds(raw_rounds):
    rounds = []
    for i, raw in enumerate(raw_rounds, start=1):
        rounds.append({
            'round_number': i,
            'name': raw.get('name') or f'Round {i}',
            'format': _choice(raw.get('format', 'bo1'), ROUND_FORMATS, 'round format'),
            'start_time': raw.get('start_time'),
            'advancing_players': _positive_int(raw.get('advancing_players'), 'advancing_players',
                                               allow_none=True),
            'status': _choice(raw.get('status', 'pending'), PHASE_STATUSES, 'round status'),
        })
    return rounds


def _build_division(raw):
    name = (raw.get('name') or '').strip()
    if not name:
        raise ValidationError('Division name is required')
    elo = raw.get('elo_range') or {}
    elo_min = int(elo.get('min', raw.get('elo_min', 0)) or 0)
    elo_max = int(elo.get('max', raw.get('elo_max', 0)) or 0)
    if elo_min > elo_max:
        raise ValidationError(f'Division {name}: ELO minimum exceeds maximum')
    division = Division(
        name=name,
        elo_min=elo_min,
        elo_max=elo_max,
        expected_population=_choice(raw.get('expected_population', 'medium'),
                                    EXPECTED_POPULATIONS, 'expected_population'),
        prize_pool=_non_negative_number(raw.get('prize_pool', 0) or 0, 'prize_pool'),
        rewards=json.dumps(_build_rewards(raw.get('rewards') or [])),
    )
    if raw.get('id'):
        division.id = raw['id']
    return division


def _build_rewards(rewards):
    cleaned = []
    for r in rewards:
        cleaned.append({
            'placement': _positive_int(r.get('placement'), 'reward placement'),
            'reward': str(r.get('reward', '')),
        })
    return sorted(cleaned, key=lambda r: r['placement'])


def _build_phases(raw_phases):
    phases = []
    for position, raw in enumerate(raw_phases):
        name = (raw.get('name') or '').strip()
        if not name:
            raise ValidationError('Phase name is required')
        phase = Phase(
            position=position,
            name=name,
            type=_choice(raw.get('type', 'qualification'), PHASE_TYPES, 'phase type'),
            format=_choice(raw.get('format', 'gauntlet/custom'), PHASE_FORMATS, 'phase format'),
            start_time=parse_timestamp(raw.get('start_time')),
            end_time=parse_timestamp(raw.get('end_time')),
            status=_choice(raw.get('status', 'pending'), PHASE_STATUSES, 'phase status'),
            advancing_players=_positive_int(raw.get('advancing_players'), 'advancing_players',
                                            allow_none=True),
        )
        if raw.get('id'):
            phase.id = raw['id']
        if phase.start_time and phase.end_time and phase.end_time < phase.start_time:
            raise ValidationError(f'Phase {name} ends before it starts')
        phases.append(phase)
    if sum(1 for p in phases if p.status == 'live') > 1:
        raise ValidationError('Only one phase can be live at a time')
    return phases


def _build_scoring(raw):
    negative = bool(raw.get('negative_points', False))
    seen = set()
    points = []
    for row in raw.get('points') or []:
        placement = _positive_int(row.get('placement'), 'scoring placement')
        if placement in seen:
            raise ValidationError(f'Duplicate scoring placement: {placement}')
        seen.add(placement)
        try:
            value = float(row.get('points', 0))
        except (TypeError, ValueError):
            raise ValidationError('Scoring points must be numbers')
        if value < 0 and not negative:
            raise ValidationError('Negative points are not enabled for this scoring system')
        points.append({'placement': placement, 'points': value})
    min_matches = int(raw.get('min_matches_required', 0) or 0)
    if min_matches < 0:
        raise ValidationError('min_matches_required must not be negative')
    return ScoringSystem(
        type=_choice(raw.get('type', 'placement'), SCORING_TYPES, 'scoring type'),
        points=json.dumps(sorted(points, key=lambda r: r['placement'])),
        min_matches_required=min_matches,
        negative_points=negative,
    )


def validate_schedule(tournament):
    rs, re_, st, et = (tournament.registration_start, tournament.registration_end,
                       tournament.start_time, tournament.end_time)
    if rs and re_ and re_ < rs:
        raise ValidationError('Registration end must not precede registration start')
    if re_ and st and st < re_:
        raise ValidationError('Start time must not precede registration end')
    if rs and st and st < rs:
        raise ValidationError('Start time must not precede registration start')
    if st and et and et < st:
        raise ValidationError('End time must not precede start time')


def create_tournament(session, data, organizer=None):
    """Create a tournament from builder-wizard input."""
    name = (data.get('name') or '').strip()
    if not name or not data.get('start_time') or not data.get('registration_end'):
        raise ValidationError('Please fill in all required fields',
                              details={'required': ['name', 'start_time', 'registration_end']})
    t = Tournament(
        name=name,
        description=data.get('description', ''),
        organizer=actor_name(organizer) if organizer else data.get('organizer') or 'Tournament Organizer',
        status='upcoming',
        type=_choice(data.get('type', 'custom'), TOURNAMENT_TYPES, 'type'),
        format=_choice(data.get('format', 'single-elimination'), TOURNAMENT_FORMATS, 'format'),
        max_participants=_positive_int(data.get('max_participants', 32), 'max_participants'),
        current_participants=0,
        prize_pool=str(data.get('prize_pool', '') or ''),
        registration_start=parse_timestamp(data.get('registration_start')),
        registration_end=parse_timestamp(data.get('registration_end')),
        start_time=parse_timestamp(data.get('start_time')),
        end_time=parse_timestamp(data.get('end_time')),
        host_platform=data.get('host_platform') or 'Illuvium Arena',
        rules=data.get('rules', ''),
        check_in_required=bool(data.get('check_in_required', False)),
        join_requires_approval=bool(data.get('join_requires_approval', False)),
    )
    validate_schedule(t)
    raw_rounds = data.get('rounds')
    t.set_rounds(_build_rounds(raw_rounds) if raw_rounds else default_rounds())
    t.divisions = [_build_division(d) for d in data.get('divisions') or []]
    t.phases = _build_phases(data.get('phases') or [])
    if data.get('scoring_system'):
        t.scoring_system = _build_scoring(data['scoring_system'])
    t.tiebreakers = [TiebreakerRule(**rule) for rule in validate_tiebreakers(data.get('tiebreakers'))]
    session.add(t)
    session.flush()
    append_audit(session, t, f'Created tournament {t.name}', organizer)
    session.commit()
    return t


EDITABLE_FIELDS = ('name', 'description', 'prize_pool', 'host_platform', 'rules')


def update_tournament(session, tournament, data, user=None, expected_version=None):
    check_version(tournament, expected_version)
    for field in EDITABLE_FIELDS:
        if field in data:
            setattr(tournament, field, data[field] or '')
    if 'type' in data:
        tournament.type = _choice(data['type'], TOURNAMENT_TYPES, 'type')
    if 'format' in data:
        tournament.format = _choice(data['format'], TOURNAMENT_FORMATS, 'format')
    if 'max_participants' in data:
        new_max = _positive_int(data['max_participants'], 'max_participants')
        if new_max < tournament.current_participants:
            raise ValidationError('max_participants cannot drop below the current participant count')
        tournament.max_participants = new_max
    for field in ('registration_start', 'registration_end', 'start_time', 'end_time'):
        if field in data:
            setattr(tournament, field, parse_timestamp(data[field]))
    for field in ('check_in_required', 'join_requires_approval'):
        if field in data:
            setattr(tournament, field, bool(data[field]))
    if 'rounds' in data:
        tournament.set_rounds(_build_rounds(data['rounds'] or []))
    if 'tiebreakers' in data:
        rules = validate_tiebreakers(data['tiebreakers'])
        tournament.tiebreakers = []
        session.flush()
        tournament.tiebreakers = [TiebreakerRule(**rule) for rule in rules]
    if 'scoring_system' in data:
        scoring = _build_scoring(data['scoring_system']) if data['scoring_system'] else None
        if tournament.scoring_system is not None:
            # one scoring row per tournament; drop the old one before inserting
            tournament.scoring_system = None
            session.flush()
        tournament.scoring_system = scoring
    try:
        validate_schedule(tournament)
    except ValidationError:
        session.rollback()
        raise
    touch(tournament)
    append_audit(session, tournament, 'Edited tournament settings', user)
    commit(session)
    return tournament


def set_status(session, tournament, status, user=None, expected_version=None):
    """Move the tournament forward through upcoming, registration, live, completed."""
    check_version(tournament, expected_version)
    _choice(status, TOURNAMENT_STATUSES, 'status')
    current = TOURNAMENT_STATUSES.index(tournament.status)
    target = TOURNAMENT_STATUSES.index(status)
    if target <= current:
        raise InvalidTransitionError(f'Cannot move tournament from {tournament.status} to {status}')
    previous = tournament.status
    tournament.status = status
    touch(tournament)
    append_audit(session, tournament, f'Changed tournament status from {previous} to {status}', user)
    commit(session)
    return tournament


def delete_tournament(session, tournament):
    """Hard delete; participants, phases, divisions and audit entries go with it."""
    session.delete(tournament)
    session.commit()


# --- Phases ---

def find_phase(tournament, phase_id):
    for index, phase in enumerate(tournament.phases):
        if phase.id == phase_id:
            return index, phase
    raise NotFoundError(f'Phase {phase_id} not found')


def advance_phase(session, tournament, phase_id, user=None, expected_version=None):
    """Complete a phase and put the next one live.

    Phases after the next one are untouched. Completing the last phase does
    not complete the tournament; that is a separate status change.
    """
    check_version(tournament, expected_version)
    index, phase = find_phase(tournament, phase_id)
    if phase.status == 'completed':
        raise InvalidTransitionError(f'Phase {phase.name} is already completed')
    phases = tournament.phases
    next_phase = phases[index + 1] if index + 1 < len(phases) else None
    phase.status = 'completed'
    if next_phase is not None:
        next_phase.status = 'live'
        action = f'Advanced tournament phase from {phase.name} to {next_phase.name}'
    else:
        action = f'Completed final phase {phase.name}'
    touch(tournament)
    append_audit(session, tournament, action, user)
    commit(session)
    return tournament


# --- Divisions ---

def find_division(tournament, division_id):
    division = tournament.division(division_id)
    if division is None:
        raise NotFoundError(f'Division {division_id} not found')
    return division


def edit_division(session, tournament, division_id, updates, user=None, expected_version=None):
    check_version(tournament, expected_version)
    division = find_division(tournament, division_id)
    if 'name' in updates:
        name = (updates['name'] or '').strip()
        if not name:
            raise ValidationError('Division name is required')
        division.name = name
    elo = updates.get('elo_range') or {}
    elo_min = int(elo.get('min', updates.get('elo_min', division.elo_min)))
    elo_max = int(elo.get('max', updates.get('elo_max', division.elo_max)))
    if elo_min > elo_max:
        raise ValidationError('ELO minimum exceeds maximum')
    division.elo_min, division.elo_max = elo_min, elo_max
    if 'expected_population' in updates:
        division.expected_population = _choice(updates['expected_population'],
                                               EXPECTED_POPULATIONS, 'expected_population')
    if 'prize_pool' in updates:
        division.prize_pool = _non_negative_number(updates['prize_pool'], 'prize_pool')
    if 'rewards' in updates:
        division.rewards = json.dumps(_build_rewards(updates['rewards'] or []))
    touch(tournament)
    append_audit(session, tournament, f'Edited division {division.name}', user)
    commit(session)
    return division


def edit_prize(session, tournament, division_id, prize_pool, user=None, expected_version=None):
    check_version(tournament, expected_version)
    division = find_division(tournament, division_id)
    division.prize_pool = _non_negative_number(prize_pool, 'prize_pool')
    touch(tournament)
    append_audit(session, tournament,
                 f'Updated prize pool for division {division.name} to {division.prize_pool:g}', user)
    commit(session)
    return division


# --- Bracket ---

def build_bracket(session, tournament, user=None, seeds=None, expected_version=None):
    """Generate (or regenerate) the tournament bracket.

    ``seeds`` is an ordered list of participant ids, top seed first. Eligible
    participants missing from it are appended in registration order. When
    check-in is required only checked-in (or already advanced) players are
    seeded.
    """
    check_version(tournament, expected_version)
    if tournament.check_in_required:
        eligible = [p for p in tournament.participants if p.status in ('checked-in', 'advanced')]
    else:
        eligible = [p for p in tournament.participants if p.status in SEEDABLE_STATUSES]
    by_id = {p.id: p for p in eligible}
    ordered = []
    for pid in seeds or []:
        if pid not in by_id:
            raise NotFoundError(f'Participant {pid} is not eligible for seeding')
        if by_id[pid] not in ordered:
            ordered.append(by_id[pid])
    ordered.extend(p for p in eligible if p not in ordered)
    bracket = generate_bracket(ordered)
    tournament.set_bracket(bracket)
    touch(tournament)
    append_audit(session, tournament, f'Generated bracket with {len(ordered)} participants', user)
    commit(session)
    return bracket


def _require_bracket(tournament):
    bracket = tournament.bracket_data()
    if not bracket:
        raise NotFoundError('Bracket has not been generated')
    return bracket


def record_bracket_winner(session, tournament, match_id, winner_id, user=None, expected_version=None):
    """Set a match winner, advance them, and eliminate the loser.

    Correcting a decided match reinstates the player who was eliminated by
    the earlier result.
    """
    check_version(tournament, expected_version)
    current = _require_bracket(tournament)
    previous_loser = loser_of(find_match(current, match_id))
    bracket = set_winner(current, match_id, winner_id)
    tournament.set_bracket(bracket)
    match = find_match(bracket, match_id)
    loser = loser_of(match)
    by_id = {p.id: p for p in tournament.participants}
    if previous_loser and loser and previous_loser['id'] != loser['id']:
        reinstated = by_id.get(previous_loser['id'])
        if reinstated is not None and reinstated.status == 'eliminated':
            reinstated.status = 'checked-in' if tournament.check_in_required else 'registered'
            append_audit(session, tournament,
                         f'Reinstated {reinstated.ranger_name} after correcting match {match_id}', user)
    if loser:
        p = by_id.get(loser['id'])
        if p is not None and p.status not in ('eliminated', 'rejected'):
            p.status = 'eliminated'
    touch(tournament)
    append_audit(session, tournament,
                 f'Set winner of match {match_id} to {match["winner"]["ranger_name"]}', user)
    commit(session)
    return bracket


def record_match_schedule(session, tournament, match_id, match_code=None, start_time=None, user=None):
    bracket = schedule_match(_require_bracket(tournament), match_id, match_code, start_time)
    tournament.set_bracket(bracket)
    touch(tournament)
    append_audit(session, tournament, f'Scheduled match {match_id} with lobby code {match_code}', user)
    commit(session)
    return bracket
