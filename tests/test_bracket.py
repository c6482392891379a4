import pytest

from illuvhub.bracket import (
    champion,
    find_match,
    generate_bracket,
    loser_of,
    next_power_of_two,
    schedule_match,
    set_winner,
)
from illuvhub.errors import NotFoundError, ValidationError


def players(n):
    return [{'id': f'p{i}', 'ranger_name': f'Ranger {i}', 'illuvium_player_id': f'0x{i}'}
            for i in range(1, n + 1)]


def test_next_power_of_two():
    assert [next_power_of_two(n) for n in (1, 2, 3, 5, 8, 9)] == [1, 2, 4, 8, 8, 16]
    with pytest.raises(ValidationError):
        next_power_of_two(0)


def test_five_players_pad_to_eight():
    bracket = generate_bracket(players(5))
    rounds = bracket['rounds']
    assert len(rounds) == 3
    assert [len(r['matches']) for r in rounds] == [4, 2, 1]
    first = rounds[0]['matches']
    assert first[0]['player1']['id'] == 'p1'
    assert first[0]['player2']['id'] == 'p2'
    # p5 sits against a bye and walks over
    assert first[2]['player1']['id'] == 'p5'
    assert first[2]['player2'] is None
    assert first[2]['status'] == 'completed'
    assert first[2]['winner']['id'] == 'p5'
    # an all-bye match completes with no winner
    assert first[3]['status'] == 'completed'
    assert first[3]['winner'] is None
    # p5 is alone in the round-two match fed by the two bye matches
    assert rounds[1]['matches'][1]['player1']['id'] == 'p5'
    assert rounds[1]['matches'][1]['winner']['id'] == 'p5'
    assert rounds[2]['matches'][0]['player2']['id'] == 'p5'


def test_match_ids_are_unique():
    bracket = generate_bracket(players(8))
    ids = [m['id'] for r in bracket['rounds'] for m in r['matches']]
    assert len(ids) == len(set(ids)) == 7


def test_single_participant_walks_over():
    bracket = generate_bracket(players(1))
    assert len(bracket['rounds']) == 1
    assert champion(bracket)['id'] == 'p1'


def test_generate_rejects_empty_and_duplicates():
    with pytest.raises(ValidationError):
        generate_bracket([])
    dup = players(2) + players(1)
    with pytest.raises(ValidationError):
        generate_bracket(dup)


def test_winner_propagates_to_parent_slot():
    bracket = generate_bracket(players(4))
    bracket = set_winner(bracket, 'r1m0', 'p2')
    bracket = set_winner(bracket, 'r1m1', 'p3')
    final = find_match(bracket, 'r2m0')
    assert final['player1']['id'] == 'p2'
    assert final['player2']['id'] == 'p3'
    bracket = set_winner(bracket, 'r2m0', 'p3')
    assert champion(bracket)['id'] == 'p3'


def test_set_winner_does_not_mutate_input():
    bracket = generate_bracket(players(4))
    updated = set_winner(bracket, 'r1m0', 'p1')
    assert find_match(bracket, 'r1m0')['winner'] is None
    assert find_match(updated, 'r1m0')['winner']['id'] == 'p1'


def test_winner_must_be_in_match():
    bracket = generate_bracket(players(4))
    with pytest.raises(ValidationError):
        set_winner(bracket, 'r1m0', 'p3')
    with pytest.raises(NotFoundError):
        set_winner(bracket, 'r9m9', 'p1')


def test_cannot_change_result_after_next_match_decided():
    bracket = generate_bracket(players(4))
    bracket = set_winner(bracket, 'r1m0', 'p1')
    bracket = set_winner(bracket, 'r1m1', 'p3')
    bracket = set_winner(bracket, 'r2m0', 'p1')
    with pytest.raises(ValidationError):
        set_winner(bracket, 'r1m0', 'p2')


def test_later_round_waits_for_both_feeders():
    bracket = generate_bracket(players(4))
    bracket = set_winner(bracket, 'r1m0', 'p1')
    with pytest.raises(ValidationError):
        set_winner(bracket, 'r2m0', 'p1')
    assert champion(bracket) is None
    bracket = set_winner(bracket, 'r1m1', 'p3')
    bracket = set_winner(bracket, 'r2m0', 'p1')
    final = find_match(bracket, 'r2m0')
    assert final['player2']['id'] == 'p3'
    assert champion(bracket)['id'] == 'p1'


def test_correcting_a_result_replaces_the_advanced_player():
    bracket = generate_bracket(players(4))
    bracket = set_winner(bracket, 'r1m0', 'p1')
    bracket = set_winner(bracket, 'r1m0', 'p2')
    assert find_match(bracket, 'r2m0')['player1']['id'] == 'p2'


def test_loser_of():
    bracket = set_winner(generate_bracket(players(2)), 'r1m0', 'p2')
    assert loser_of(find_match(bracket, 'r1m0'))['id'] == 'p1'


def test_schedule_match_marks_live():
    bracket = generate_bracket(players(4))
    bracket = schedule_match(bracket, 'r1m0', match_code='LOBBY1', start_time='2030-01-01T12:00:00Z')
    match = find_match(bracket, 'r1m0')
    assert match['status'] == 'live'
    assert match['match_code'] == 'LOBBY1'
    with pytest.raises(ValidationError):
        # waiting on both round-one results
        schedule_match(bracket, 'r2m0', match_code='LOBBY2')
