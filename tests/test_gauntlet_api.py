import threading
from datetime import datetime

import pytest
import requests

from illuvhub.errors import UpstreamFetchError
from illuvhub.gauntlet_api import GauntletClient, build_payload, normalize_game


class DummyResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError('no payload')
        return self._payload


def record(n):
    return {'id': f'g{n}', 'startTime': '2030-01-01T10:00:00Z', 'endTime': '2030-01-01T10:20:00Z',
            'players': ['a', 'b'], 'results': [{'player': 'a', 'rank': 1}, {'player': 'b', 'rank': 2}]}


def client(**kwargs):
    kwargs.setdefault('page_size', 2)
    kwargs.setdefault('backoff_factor', 0)
    return GauntletClient(url='https://gauntlet.test/search', token='secret', **kwargs)


def test_build_payload_defaults():
    payload = build_payload({'startDate': 's', 'endDate': 'e'}, page_size=50)
    assert payload == {'players': [], 'startDate': 's', 'endDate': 'e', 'mode': 'Ranked', 'count': 50}
    payload = build_payload({'cursor': 'abc', 'mode': 'Casual', 'count': 5})
    assert payload['cursor'] == 'abc'
    assert payload['mode'] == 'Casual'
    assert payload['count'] == 5


def test_normalize_field_variants():
    game = normalize_game({
        'gameId': 'x1',
        'createdAt': '2030-01-01T10:00:00Z',
        'end_time': '2030-01-01T10:05:30Z',
        'results': [{'player': 'a', 'rank': 1, 'rating': 1500, 'ratingChange': 12,
                     'level': 3, 'droneHealth': 40}],
    })
    assert game['id'] == 'x1'
    assert game['start_time'] == datetime(2030, 1, 1, 10, 0)
    assert (game['end_time'] - game['start_time']).total_seconds() == 330
    assert game['players'] == ['a']
    assert game['rounds'] == []
    assert game['results'][0] == {'player': 'a', 'rank': 1, 'rating': 1500, 'rating_change': 12,
                                  'level': 3, 'drone_health': 40}
    assert normalize_game({'_id': 'y'})['id'] == 'y'


def test_pagination_stops_on_short_page_even_with_cursor(monkeypatch):
    pages = [
        {'games': [record(1), record(2)], 'cursor': 'c1'},
        {'games': [record(3)], 'nextCursor': 'c2'},
        {'games': [record(4), record(5)], 'cursor': 'c3'},
    ]
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        return DummyResponse(200, pages[len(calls) - 1])

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    games = client().fetch_all_matches('2030-01-01T00:00:00Z', '2030-01-02T00:00:00Z')
    assert [g['id'] for g in games] == ['g1', 'g2', 'g3']
    assert len(calls) == 2
    assert 'cursor' not in calls[0]
    assert calls[1]['cursor'] == 'c1'
    assert calls[0]['count'] == 2


def test_pagination_stops_on_repeated_cursor(monkeypatch):
    def fake_post(url, json=None, headers=None, timeout=None):
        return DummyResponse(200, {'games': [record(1), record(2)], 'next_cursor': 'same'})

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    games = client().fetch_all_matches('s', 'e')
    assert len(games) == 4


def test_cancel_event_stops_fetch(monkeypatch):
    cancel = threading.Event()

    def fake_post(url, json=None, headers=None, timeout=None):
        cancel.set()
        return DummyResponse(200, {'games': [record(1), record(2)], 'cursor': json.get('cursor', '') + 'x'})

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    games = client().fetch_all_matches('s', 'e', cancel=cancel)
    assert len(games) == 2


def test_retry_on_server_error(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(headers)
        if len(calls) == 1:
            return DummyResponse(503)
        if len(calls) == 2:
            raise requests.ConnectionError('reset')
        return DummyResponse(200, {'games': [record(1)]})

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    games = client(max_retries=3).fetch_all_matches('s', 'e')
    assert len(games) == 1
    assert len(calls) == 3
    assert calls[0]['Authorization'] == 'token secret'


def test_client_errors_are_not_retried(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        return DummyResponse(401, {'message': 'bad token'})

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    with pytest.raises(UpstreamFetchError) as excinfo:
        client().fetch_all_matches('s', 'e')
    assert len(calls) == 1
    assert excinfo.value.status == 401
    assert excinfo.value.response == {'message': 'bad token'}


def test_failure_keeps_partial_results(monkeypatch):
    calls = []

    def fake_post(url, json=None, headers=None, timeout=None):
        calls.append(json)
        if len(calls) == 1:
            return DummyResponse(200, {'games': [record(1), record(2)], 'cursor': 'c1'})
        return DummyResponse(500)

    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post', fake_post)
    with pytest.raises(UpstreamFetchError) as excinfo:
        client(max_retries=2).fetch_all_matches('s', 'e')
    assert [g['id'] for g in excinfo.value.partial] == ['g1', 'g2']
    assert len(calls) == 3


def test_non_json_body_is_an_error(monkeypatch):
    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post',
                        lambda url, json=None, headers=None, timeout=None: DummyResponse(200))
    with pytest.raises(UpstreamFetchError):
        client().search({})


def test_empty_window_is_not_an_error(monkeypatch):
    monkeypatch.setattr('illuvhub.gauntlet_api.requests.post',
                        lambda url, json=None, headers=None, timeout=None: DummyResponse(200, {'games': []}))
    assert client().fetch_all_matches(datetime(2030, 1, 1), datetime(2030, 1, 2)) == []


def test_from_config():
    c = GauntletClient.from_config({'GAUNTLET_API_URL': 'u', 'GAUNTLET_API_TOKEN': '',
                                    'GAUNTLET_PAGE_SIZE': 10})
    assert c.url == 'u'
    assert c.page_size == 10
    assert 'Authorization' not in c.headers()
