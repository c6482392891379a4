"""Client for the Illuvium gauntlet match-data API.

All upstream field-name variants are folded into one canonical game shape by
``normalize_game``; nothing downstream should look at raw records.
"""
import logging
import time
from datetime import datetime, timezone

import requests

from .errors import UpstreamFetchError

logger = logging.getLogger(__name__)

DEFAULT_API_URL = 'https://api.illuvium-game.io/gamedata/public/v1/gauntlet/search'
DEFAULT_MODE = 'Ranked'
CURSOR_KEYS = ('cursor', 'nextCursor', 'next_cursor')
# Statuses worth another attempt; other 4xx responses will not change on retry.
RETRYABLE_STATUSES = (429, 500, 502, 503, 504)


def build_payload(body, page_size=100):
    """Shape a request body the way the upstream search endpoint accepts it."""
    body = body or {}
    payload = {
        'players': body.get('players') or [],
        'startDate': body.get('startDate'),
        'endDate': body.get('endDate'),
        'mode': body.get('mode') or DEFAULT_MODE,
        'count': body.get('count') or page_size,
    }
    if body.get('cursor'):
        payload['cursor'] = body['cursor']
    return payload


def next_cursor(page):
    for key in CURSOR_KEYS:
        if page.get(key):
            return page[key]
    return None


def _first(record, *keys):
    for key in keys:
        value = record.get(key)
        if value not in (None, ''):
            return value
    return None


def _to_datetime(value):
    if value in (None, ''):
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        # epoch milliseconds
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).replace(tzinfo=None)
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_result(raw):
    return {
        'player': _first(raw, 'player', 'playerId', 'player_id'),
        'rank': _first(raw, 'rank', 'placement'),
        'rating': _first(raw, 'rating'),
        'rating_change': _first(raw, 'ratingChange', 'rating_change'),
        'level': _first(raw, 'level'),
        'drone_health': _first(raw, 'droneHealth', 'drone_health'),
    }


def normalize_game(record):
    """Map one upstream game record to the canonical game dict."""
    results = [normalize_result(r) for r in record.get('results') or [] if isinstance(r, dict)]
    players = list(record.get('players') or [])
    if not players:
        players = [r['player'] for r in results if r['player']]
    return {
        'id': _first(record, 'id', 'gameId', '_id'),
        'start_time': _to_datetime(_first(record, 'startTime', 'start_time', 'createdAt')),
        'end_time': _to_datetime(_first(record, 'endTime', 'end_time')),
        'players': players,
        'results': results,
        'rounds': list(record.get('rounds') or []),
        'mode': record.get('mode'),
    }


class GauntletClient:
    def __init__(self, url=DEFAULT_API_URL, token=None, timeout=60, page_size=100,
                 max_retries=3, backoff_factor=0.5, max_pages=1000):
        self.url = url
        self.token = token
        self.timeout = timeout
        self.page_size = page_size
        self.max_retries = max(1, max_retries)
        self.backoff_factor = backoff_factor
        self.max_pages = max_pages

    @classmethod
    def from_config(cls, config):
        return cls(
            url=config.get('GAUNTLET_API_URL', DEFAULT_API_URL),
            token=config.get('GAUNTLET_API_TOKEN'),
            timeout=config.get('GAUNTLET_API_TIMEOUT', 60),
            page_size=config.get('GAUNTLET_PAGE_SIZE', 100),
            max_retries=config.get('GAUNTLET_MAX_RETRIES', 3),
            backoff_factor=config.get('GAUNTLET_BACKOFF', 0.5),
        )

    def headers(self):
        headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'token {self.token}'
        return headers

    def search(self, body):
        """POST one search request and return the decoded JSON page.

        Raises ``UpstreamFetchError`` for transport failures, HTTP errors and
        bodies that are not a JSON object.
        """
        payload = build_payload(body, self.page_size)
        try:
            response = requests.post(self.url, json=payload, headers=self.headers(),
                                     timeout=self.timeout)
        except requests.RequestException as exc:
            raise UpstreamFetchError('Failed to fetch from Illuvium API', details=str(exc))
        try:
            data = response.json()
        except ValueError:
            data = None
        if response.status_code >= 400:
            raise UpstreamFetchError(
                'Failed to fetch from Illuvium API',
                details=f'API returned status {response.status_code}',
                status=response.status_code,
                response=data,
            )
        if not isinstance(data, dict):
            raise UpstreamFetchError('Failed to fetch from Illuvium API',
                                     details='Response was not a JSON object',
                                     status=response.status_code)
        return data

    def _search_with_retry(self, body):
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.search(body)
            except UpstreamFetchError as exc:
                retryable = exc.status is None or exc.status in RETRYABLE_STATUSES
                if not retryable or attempt >= self.max_retries:
                    raise
                delay = self.backoff_factor * (2 ** (attempt - 1))
                logger.warning('Gauntlet API request failed (attempt %d/%d): %s; retrying in %.1fs',
                               attempt, self.max_retries, exc.details, delay)
                time.sleep(delay)

    def fetch_all_matches(self, start_date, end_date, players=None, cancel=None):
        """Follow the upstream cursor until the window is exhausted.

        Stops on a short page, a missing or repeated cursor, or when the
        ``cancel`` event is set. Returns normalized games. If a page still
        fails after retries, the games gathered so far travel on the raised
        ``UpstreamFetchError`` as ``partial``.
        """
        games = []
        cursor = None
        seen_cursors = set()
        for _ in range(self.max_pages):
            if cancel is not None and cancel.is_set():
                logger.info('Gauntlet fetch cancelled after %d games', len(games))
                break
            body = {
                'startDate': _format_date(start_date),
                'endDate': _format_date(end_date),
                'players': players or [],
                'count': self.page_size,
                'cursor': cursor,
            }
            try:
                page = self._search_with_retry(body)
            except UpstreamFetchError as exc:
                exc.partial = games
                raise
            records = page.get('games') or []
            games.extend(normalize_game(r) for r in records if isinstance(r, dict))
            cursor = next_cursor(page)
            if len(records) < self.page_size or not cursor or cursor in seen_cursors:
                break
            seen_cursors.add(cursor)
        return games


def _format_date(value):
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.isoformat() + 'Z'
        return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')
    return value
