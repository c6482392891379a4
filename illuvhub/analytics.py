"""Aggregates over normalized gauntlet games (see ``gauntlet_api.normalize_game``)."""
from collections import Counter
from datetime import datetime, timedelta

from .errors import ValidationError

TOP_PLAYER_SORTS = ('wins', 'rating', 'games')
RECENT_WINDOWS = {
    '24h': timedelta(hours=24),
    '3d': timedelta(days=3),
    '1w': timedelta(weeks=1),
    '30d': timedelta(days=30),
}


def match_seconds(game):
    start, end = game.get('start_time'), game.get('end_time')
    if not start or not end:
        return None
    return (end - start).total_seconds()


def _unique_players(games):
    seen = set()
    for game in games:
        seen.update(game.get('players') or [])
    return seen


def summarize(games):
    durations = [s for s in (match_seconds(g) for g in games) if s is not None]
    return {
        'matches': len(games),
        'players': len(_unique_players(games)),
        'avg_match_seconds': round(sum(durations) / len(durations)) if durations else 0,
    }


def game_winner(game):
    """The rank-1 player, or the highest-rated one when ranks are missing."""
    results = game.get('results') or []
    for r in results:
        if r.get('rank') == 1 and r.get('player'):
            return r['player']
    rated = [r for r in results if r.get('player') and r.get('rating') is not None]
    if not rated:
        return None
    return max(rated, key=lambda r: r['rating'])['player']


def player_stats(games):
    stats = {}
    # oldest first so the last rating seen is the latest one
    for game in sorted(games, key=lambda g: g.get('start_time') or datetime.min):
        for r in game.get('results') or []:
            player = r.get('player')
            if not player:
                continue
            entry = stats.setdefault(player, {'name': player, 'wins': 0, 'games': 0, 'rating': 0})
            entry['games'] += 1
            if r.get('rating') is not None:
                entry['rating'] = r['rating']
        winner = game_winner(game)
        if winner in stats:
            stats[winner]['wins'] += 1
    return stats


def top_players(games, sort_by='wins', limit=100):
    if sort_by not in TOP_PLAYER_SORTS:
        raise ValidationError(f'sort_by must be one of {", ".join(TOP_PLAYER_SORTS)}')
    rows = sorted(player_stats(games).values(), key=lambda s: s[sort_by], reverse=True)
    return rows[:limit] if limit else rows


def _day(game):
    start = game.get('start_time')
    return start.strftime('%Y-%m-%d') if start else None


def daily_active_users(games):
    days = {}
    for game in games:
        day = _day(game)
        if day:
            days.setdefault(day, set()).update(game.get('players') or [])
    return [{'date': day, 'users': len(players)} for day, players in sorted(days.items())]


def monthly_active_users(games):
    months = {}
    for game in games:
        start = game.get('start_time')
        if start:
            months.setdefault(start.strftime('%Y-%m'), set()).update(game.get('players') or [])
    return [{'month': month, 'users': len(players)} for month, players in sorted(months.items())]


def matches_by_day(games):
    counts = Counter(d for d in (_day(g) for g in games) if d)
    return [{'date': day, 'matches': n} for day, n in sorted(counts.items())]


def player_activity(games, limit=20):
    counts = Counter()
    for game in games:
        counts.update(game.get('players') or [])
    return [{'player': p, 'games': n} for p, n in counts.most_common(limit)]


def fun_facts(games):
    """Headline curiosities for the overview: label, value and a sub-line."""
    facts = []
    timed = [(match_seconds(g), g) for g in games]
    timed = [(s, g) for s, g in timed if s is not None]
    if timed:
        longest = max(timed, key=lambda t: t[0])
        shortest = min(timed, key=lambda t: t[0])
        facts.append({'label': 'Longest Match', 'value': f'{int(longest[0])} sec',
                      'sub': f'Game {longest[1].get("id")}'})
        facts.append({'label': 'Shortest Match', 'value': f'{int(shortest[0])} sec',
                      'sub': f'Game {shortest[1].get("id")}'})
    activity = player_activity(games, limit=1)
    if activity:
        facts.append({'label': 'Most Active Player', 'value': activity[0]['player'],
                      'sub': f'{activity[0]["games"]} games'})
    best_gain = None
    for game in games:
        for r in game.get('results') or []:
            change = r.get('rating_change')
            if change is not None and (best_gain is None or change > best_gain['rating_change']):
                best_gain = r
    if best_gain:
        facts.append({'label': 'Biggest Rating Gain', 'value': f'+{best_gain["rating_change"]}',
                      'sub': best_gain.get('player')})
    busiest = matches_by_day(games)
    if busiest:
        top = max(busiest, key=lambda d: d['matches'])
        facts.append({'label': 'Busiest Day', 'value': top['date'], 'sub': f'{top["matches"]} matches'})
    return facts


# --- Player search ---

def build_player_index(games):
    index = {}
    for game in games:
        winner = game_winner(game)
        for r in game.get('results') or []:
            player = r.get('player')
            if not player:
                continue
            entry = index.setdefault(player, {'player': player, 'total': 0, 'wins': 0, '_ranks': []})
            entry['total'] += 1
            if player == winner:
                entry['wins'] += 1
            if r.get('rank') is not None:
                entry['_ranks'].append(r['rank'])
    for entry in index.values():
        ranks = entry.pop('_ranks')
        entry['avg_rank'] = round(sum(ranks) / len(ranks), 2) if ranks else None
        entry['win_rate'] = round(entry['wins'] / entry['total'] * 100, 1) if entry['total'] else 0
    return index


def search_players(index, query, exact=False):
    query = (query or '').strip().lower()
    if not query:
        return []
    if exact:
        hits = [e for name, e in index.items() if name.lower() == query]
    else:
        hits = [e for name, e in index.items() if query in name.lower()]
    return sorted(hits, key=lambda e: (-e['total'], e['player']))


def player_matches(games, player):
    matches = [g for g in games if player in (g.get('players') or [])]
    return sorted(matches, key=lambda g: g.get('start_time') or datetime.min, reverse=True)


def recent_matches(games, window='24h', now=None):
    if window not in RECENT_WINDOWS:
        raise ValidationError(f'window must be one of {", ".join(RECENT_WINDOWS)}')
    now = now or datetime.utcnow()
    cutoff = now - RECENT_WINDOWS[window]
    recent = [g for g in games if g.get('start_time') and cutoff <= g['start_time'] <= now]
    return sorted(recent, key=lambda g: g['start_time'], reverse=True)


def serialize_game(game):
    data = dict(game)
    for key in ('start_time', 'end_time'):
        if data.get(key):
            data[key] = data[key].isoformat()
    return data


def dashboard(games, sort_by='wins'):
    return {
        'totals': summarize(games),
        'top_players': top_players(games, sort_by=sort_by),
        'daily_active_users': daily_active_users(games),
        'monthly_active_users': monthly_active_users(games),
        'matches_by_day': matches_by_day(games),
        'player_activity': player_activity(games),
        'fun_facts': fun_facts(games),
    }
