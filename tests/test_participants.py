from datetime import datetime, timedelta

import pytest

from illuvhub import participants, progression
from illuvhub.errors import (
    CapacityError,
    DuplicateRegistrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from illuvhub.models import TournamentParticipant

from conftest import tournament_data


def count(session, t):
    return session.query(TournamentParticipant).filter_by(tournament_id=t.id).count()


def test_register_sets_status_and_counter(session, tournament):
    p = participants.register(session, tournament, 'Lena', '0xa11ce', division_id='div-master')
    assert p.status == 'registered'
    assert p.division_id == 'div-master'
    assert tournament.current_participants == 1


def test_duplicate_registration_rejected(session, tournament):
    participants.register(session, tournament, 'Lena', '0xa11ce')
    with pytest.raises(DuplicateRegistrationError):
        participants.register(session, tournament, 'Lena Again', '0xa11ce')
    assert count(session, tournament) == 1
    assert tournament.current_participants == 1


def test_register_requires_fields_and_known_division(session, tournament):
    with pytest.raises(ValidationError):
        participants.register(session, tournament, '', '0x1')
    with pytest.raises(NotFoundError):
        participants.register(session, tournament, 'Lena', '0x1', division_id='div-missing')
    assert tournament.current_participants == 0


def test_capacity_is_enforced(session, organizer):
    t = progression.create_tournament(session, tournament_data(max_participants=3), organizer=organizer)
    progression.set_status(session, t, 'registration')
    for i in range(3):
        participants.register(session, t, f'Ranger {i}', f'0x{i}')
    assert t.current_participants == 3
    with pytest.raises(CapacityError):
        participants.register(session, t, 'Late', '0xlate')
    assert t.current_participants == 3
    assert count(session, t) == 3


def test_registration_window(session, organizer):
    t = progression.create_tournament(session, tournament_data(), organizer=organizer)
    # still upcoming
    with pytest.raises(ValidationError):
        participants.register(session, t, 'Early', '0xearly')
    now = datetime.utcnow()
    progression.update_tournament(session, t, {
        'registration_start': (now - timedelta(days=3)).isoformat(),
        'registration_end': (now - timedelta(days=1)).isoformat(),
        'start_time': (now + timedelta(days=1)).isoformat(),
    })
    progression.set_status(session, t, 'registration')
    with pytest.raises(ValidationError):
        participants.register(session, t, 'Late', '0xlate')
    # organisers may still add people after the window closes
    p = participants.register(session, t, 'Late', '0xlate', enforce_window=False)
    assert p.status == 'registered'


def test_approval_flow(session, organizer):
    t = progression.create_tournament(session, tournament_data(join_requires_approval=True),
                                      organizer=organizer)
    progression.set_status(session, t, 'registration')
    a = participants.register(session, t, 'Alpha', '0xa')
    b = participants.register(session, t, 'Beta', '0xb')
    assert a.status == b.status == 'pending'
    assert t.current_participants == 2
    participants.approve(session, t, a, user=organizer)
    participants.reject(session, t, b, user=organizer)
    assert a.status == 'registered'
    assert b.status == 'rejected'
    # rejected players give their slot back
    assert t.current_participants == 1
    with pytest.raises(InvalidTransitionError):
        participants.approve(session, t, b)


def test_check_in_only_when_required(session, tournament):
    p = participants.register(session, tournament, 'Alpha', '0xa')
    with pytest.raises(ValidationError):
        participants.check_in(session, tournament, p)


def test_eliminate_is_terminal(session, tournament):
    p = participants.register(session, tournament, 'Alpha', '0xa')
    participants.eliminate(session, tournament, p)
    assert p.status == 'eliminated'
    with pytest.raises(InvalidTransitionError):
        participants.mark_advanced(session, tournament, p)
    with pytest.raises(InvalidTransitionError):
        participants.eliminate(session, tournament, p)


def test_remove_frees_slot(session, tournament):
    p = participants.register(session, tournament, 'Alpha', '0xa')
    participants.remove(session, tournament, p)
    assert tournament.current_participants == 0
    assert count(session, tournament) == 0
    actions = [e.action for e in progression.audit_trail(tournament)]
    assert 'Removed Alpha (0xa)' in actions


def test_update_stats_and_negative_points(session, tournament):
    p = participants.register(session, tournament, 'Alpha', '0xa')
    participants.update_stats(session, tournament, p, points=12, matches_played=4)
    assert p.points == 12
    assert p.matches_played == 4
    with pytest.raises(ValidationError):
        participants.update_stats(session, tournament, p, points=-1)
    actions = [e.action for e in progression.audit_trail(tournament)]
    assert f'Updated participant {p.id}: Points=12, Matches=4' in actions


def test_award_placement_uses_scoring_table(session, tournament):
    p = participants.register(session, tournament, 'Alpha', '0xa')
    with pytest.raises(ValidationError):
        participants.award_placement(session, tournament, p, 1)
    progression.update_tournament(session, tournament, {'scoring_system': {
        'points': [{'placement': 1, 'points': 10}, {'placement': 2, 'points': 6}],
    }})
    participants.award_placement(session, tournament, p, 1)
    participants.award_placement(session, tournament, p, 2)
    participants.award_placement(session, tournament, p, 7)
    assert p.points == 16
    assert p.matches_played == 3


def test_import_csv_partial_success(session, tournament):
    text = (
        'ranger_name,illuvium_player_id\n'
        'Alpha,0xa\n'
        ',0xmissing\n'
        'Beta,0xb\n'
        'Alpha Again,0xa\n'
    )
    result = participants.import_csv(session, tournament, text)
    assert [p.ranger_name for p in result['created']] == ['Alpha', 'Beta']
    assert [e['row'] for e in result['errors']] == [2, 4]
    assert count(session, tournament) == 2
    assert tournament.current_participants == 2


def test_import_csv_empty(session, tournament):
    with pytest.raises(ValidationError):
        participants.import_csv(session, tournament, '')


def test_bulk_register_stops_at_capacity_per_row(session, organizer):
    t = progression.create_tournament(session, tournament_data(max_participants=2), organizer=organizer)
    rows = [{'rangerName': f'R{i}', 'illuviumPlayerId': f'0x{i}'} for i in range(3)]
    result = participants.bulk_register(session, t, rows)
    assert len(result['created']) == 2
    assert result['errors'] == [{'row': 3, 'error': 'Tournament is full'}]


def test_bulk_register_keeps_earlier_rows_when_insert_races(session, tournament, monkeypatch):
    # another client wins the race: the lookup misses, the unique constraint fires
    monkeypatch.setattr(participants, 'find_registration', lambda session, t, player_id: None)
    rows = [
        {'ranger_name': 'Alpha', 'illuvium_player_id': '0xa'},
        {'ranger_name': 'Beta', 'illuvium_player_id': '0xb'},
        {'ranger_name': 'Alpha Again', 'illuvium_player_id': '0xa'},
    ]
    result = participants.bulk_register(session, tournament, rows)
    assert [p.ranger_name for p in result['created']] == ['Alpha', 'Beta']
    assert result['errors'][0]['row'] == 3
    session.expire_all()
    assert count(session, tournament) == 2
    assert tournament.current_participants == 2
    names = {p.ranger_name for p in session.query(TournamentParticipant).all()}
    assert names == {'Alpha', 'Beta'}


def test_bulk_remove_reports_missing(session, tournament):
    a = participants.register(session, tournament, 'Alpha', '0xa')
    b = participants.register(session, tournament, 'Beta', '0xb')
    result = participants.bulk_remove(session, tournament, [a.id, 'ghost', b.id])
    assert result['removed'] == [a.id, b.id]
    assert result['errors'][0]['row'] == 2
    assert tournament.current_participants == 0
