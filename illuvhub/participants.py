"""Participant lifecycle: registration, review, check-in, elimination and removal.

Status flow::

    pending -> registered | rejected
    registered -> checked-in | eliminated | advanced
    checked-in -> eliminated | advanced

``eliminated`` and ``rejected`` are terminal. Admins may remove a
participant in any status.

The ``current_participants`` counter on the tournament is only changed with
conditional UPDATE statements so two concurrent registrations cannot both
take the last slot.
"""
import csv
import io
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from .errors import (
    CapacityError,
    DuplicateRegistrationError,
    IllHubError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .models import Tournament, TournamentParticipant
from .progression import append_audit

TERMINAL_STATUSES = ('eliminated', 'rejected')


def find_participant(session, tournament, participant_id):
    participant = (
        session.query(TournamentParticipant)
        .filter_by(tournament_id=tournament.id, id=participant_id)
        .first()
    )
    if participant is None:
        raise NotFoundError(f'Participant {participant_id} not found')
    return participant


def find_registration(session, tournament, illuvium_player_id):
    return (
        session.query(TournamentParticipant)
        .filter_by(tournament_id=tournament.id, illuvium_player_id=illuvium_player_id)
        .first()
    )


def _claim_slot(session, tournament):
    result = session.execute(
        update(Tournament)
        .where(Tournament.id == tournament.id)
        .where(Tournament.current_participants < Tournament.max_participants)
        .values(current_participants=Tournament.current_participants + 1,
                version=Tournament.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise CapacityError('Tournament is full',
                            details={'max_participants': tournament.max_participants})
    session.expire(tournament, ['current_participants', 'version'])


def _release_slot(session, tournament):
    session.execute(
        update(Tournament)
        .where(Tournament.id == tournament.id)
        .where(Tournament.current_participants > 0)
        .values(current_participants=Tournament.current_participants - 1,
                version=Tournament.version + 1)
        .execution_options(synchronize_session=False)
    )
    session.expire(tournament, ['current_participants', 'version'])


def _check_window(tournament, now=None):
    if tournament.status != 'registration':
        raise ValidationError('Registration is not open for this tournament')
    now = now or datetime.utcnow()
    if tournament.registration_start and now < tournament.registration_start:
        raise ValidationError('Registration has not started yet')
    if tournament.registration_end and now > tournament.registration_end:
        raise ValidationError('Registration has closed')


def register(session, tournament, ranger_name, illuvium_player_id, division_id=None,
             user=None, enforce_window=True, commit=True):
    ranger_name = (ranger_name or '').strip()
    illuvium_player_id = (illuvium_player_id or '').strip()
    if not ranger_name or not illuvium_player_id:
        raise ValidationError('Please fill in all fields',
                              details={'required': ['ranger_name', 'illuvium_player_id']})
    if enforce_window:
        _check_window(tournament)
    if find_registration(session, tournament, illuvium_player_id):
        raise DuplicateRegistrationError(
            f'Player {illuvium_player_id} is already registered for this tournament')
    if division_id and tournament.division(division_id) is None:
        raise NotFoundError(f'Division {division_id} not found')
    participant = TournamentParticipant(
        tournament_id=tournament.id,
        ranger_name=ranger_name,
        illuvium_player_id=illuvium_player_id,
        division_id=division_id or None,
        status='pending' if tournament.join_requires_approval else 'registered',
        registration_time=datetime.utcnow(),
        points=0,
        matches_played=0,
    )
    # savepoint: a lost race rolls back this row only, not earlier rows of a batch
    try:
        with session.begin_nested():
            _claim_slot(session, tournament)
            session.add(participant)
            session.flush()
    except IntegrityError:
        raise DuplicateRegistrationError(
            f'Player {illuvium_player_id} is already registered for this tournament')
    append_audit(session, tournament, f'Registered {ranger_name} ({illuvium_player_id})', user)
    if commit:
        session.commit()
    return participant


def _transition(session, tournament, participant, allowed_from, new_status, verb, user, commit=True):
    if participant.status not in allowed_from:
        raise InvalidTransitionError(
            f'Cannot {verb} {participant.ranger_name}: status is {participant.status}')
    previous = participant.status
    participant.status = new_status
    if new_status == 'rejected':
        _release_slot(session, tournament)
    append_audit(session, tournament,
                 f'Changed {participant.ranger_name} from {previous} to {new_status}', user)
    if commit:
        session.commit()
    return participant


def approve(session, tournament, participant, user=None):
    return _transition(session, tournament, participant, ('pending',), 'registered', 'approve', user)


def reject(session, tournament, participant, user=None):
    return _transition(session, tournament, participant, ('pending',), 'rejected', 'reject', user)


def check_in(session, tournament, participant, user=None):
    if not tournament.check_in_required:
        raise ValidationError('Check-in is not required for this tournament')
    return _transition(session, tournament, participant, ('registered',), 'checked-in', 'check in', user)


def eliminate(session, tournament, participant, user=None):
    allowed = ('registered', 'checked-in', 'advanced', 'pending')
    return _transition(session, tournament, participant, allowed, 'eliminated', 'eliminate', user)


def mark_advanced(session, tournament, participant, user=None):
    return _transition(session, tournament, participant, ('registered', 'checked-in'), 'advanced',
                       'advance', user)


def remove(session, tournament, participant, user=None, commit=True):
    if participant.status != 'rejected':
        _release_slot(session, tournament)
    append_audit(session, tournament,
                 f'Removed {participant.ranger_name} ({participant.illuvium_player_id})', user)
    session.delete(participant)
    if commit:
        session.commit()


def update_stats(session, tournament, participant, points=None, matches_played=None, user=None):
    """Admin correction of a participant's points and match count."""
    if points is not None:
        try:
            points = float(points)
        except (TypeError, ValueError):
            raise ValidationError('points must be a number')
        allow_negative = bool(tournament.scoring_system and tournament.scoring_system.negative_points)
        if points < 0 and not allow_negative:
            raise ValidationError('Negative points are not enabled for this tournament')
        participant.points = points
    if matches_played is not None:
        try:
            matches_played = int(matches_played)
        except (TypeError, ValueError):
            raise ValidationError('matches_played must be an integer')
        if matches_played < 0:
            raise ValidationError('matches_played must not be negative')
        participant.matches_played = matches_played
    append_audit(session, tournament,
                 f'Updated participant {participant.id}: Points={participant.points:g}, '
                 f'Matches={participant.matches_played}', user)
    session.commit()
    return participant


def award_placement(session, tournament, participant, placement, user=None):
    """Score one finished match for a participant from the placement table."""
    if tournament.scoring_system is None:
        raise ValidationError('Tournament has no scoring system')
    try:
        placement = int(placement)
    except (TypeError, ValueError):
        raise ValidationError('placement must be an integer')
    if placement < 1:
        raise ValidationError('placement must be positive')
    if participant.status in TERMINAL_STATUSES or participant.status == 'pending':
        raise InvalidTransitionError(f'{participant.ranger_name} is not an active participant')
    earned = tournament.scoring_system.points_for(placement)
    participant.points = (participant.points or 0) + earned
    participant.matches_played = (participant.matches_played or 0) + 1
    append_audit(session, tournament,
                 f'Recorded placement {placement} for {participant.ranger_name} (+{earned:g} points)', user)
    session.commit()
    return participant


# --- Bulk ---

def _row_value(row, *names):
    for name in names:
        value = row.get(name)
        if value is not None and str(value).strip():
            return str(value).strip()
    return None


def bulk_register(session, tournament, rows, user=None, enforce_window=False):
    """Register each row independently; one bad row never aborts the batch."""
    created = []
    errors = []
    for index, row in enumerate(rows, start=1):
        try:
            participant = register(
                session, tournament,
                _row_value(row, 'ranger_name', 'rangerName', 'Ranger Name'),
                _row_value(row, 'illuvium_player_id', 'illuviumPlayerId', 'Player ID'),
                division_id=_row_value(row, 'division_id', 'divisionId'),
                user=user, enforce_window=enforce_window, commit=False,
            )
        except IllHubError as exc:
            errors.append({'row': index, 'error': exc.message})
            continue
        created.append(participant)
    append_audit(session, tournament,
                 f'Imported {len(created)} participants ({len(errors)} failed)', user)
    session.commit()
    return {'created': created, 'errors': errors}


def import_csv(session, tournament, text, user=None):
    reader = csv.DictReader(io.StringIO(text or ''))
    if not reader.fieldnames:
        raise ValidationError('CSV file is empty')
    rows = [{(k or '').strip(): v for k, v in row.items()} for row in reader]
    return bulk_register(session, tournament, rows, user=user)


def bulk_remove(session, tournament, participant_ids, user=None):
    removed = []
    errors = []
    for index, pid in enumerate(participant_ids or [], start=1):
        try:
            participant = find_participant(session, tournament, pid)
        except NotFoundError as exc:
            errors.append({'row': index, 'error': exc.message})
            continue
        remove(session, tournament, participant, user=user, commit=False)
        removed.append(pid)
    session.commit()
    return {'removed': removed, 'errors': errors}
