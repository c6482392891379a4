#!/usr/bin/env python
"""Populate the development database with a demo gauntlet tournament."""
from __future__ import annotations

import argparse
import json
from datetime import datetime, timedelta
from typing import Sequence

from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from illuvhub.app import create_app, db
from illuvhub import models, participants, progression


def ensure_roles() -> dict[str, models.Role]:
    """Ensure the default roles exist with up-to-date permissions."""
    roles: dict[str, models.Role] = {}
    for name, permissions in models.DEFAULT_ROLE_PERMISSIONS.items():
        role = db.session.query(models.Role).filter_by(name=name).first()
        if role is None:
            role = models.Role(name=name)
        role.permissions = json.dumps(permissions)
        role.level = models.DEFAULT_ROLE_LEVELS.get(name, 500)
        db.session.add(role)
        roles[name] = role
    db.session.commit()
    return roles


def ensure_user(name: str, email: str, role: models.Role, password: str, is_admin: bool = False) -> models.User:
    user = db.session.query(models.User).filter_by(email=email).first()
    if user is None:
        user = models.User(name=name, email=email, role=role, is_admin=is_admin)
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
    return user


def _iso(value: datetime) -> str:
    return value.replace(microsecond=0).isoformat() + "Z"


def ensure_tournament(name: str, organizer: models.User, now: datetime) -> models.Tournament:
    tournament = db.session.query(models.Tournament).filter_by(name=name).first()
    if tournament is not None:
        return tournament
    data = {
        "name": name,
        "description": "Weekly community gauntlet with ELO divisions.",
        "type": "gauntlet",
        "format": "single-elimination",
        "max_participants": 64,
        "prize_pool": "5000 ILV",
        "registration_start": _iso(now - timedelta(days=1)),
        "registration_end": _iso(now + timedelta(days=2)),
        "start_time": _iso(now + timedelta(days=3)),
        "end_time": _iso(now + timedelta(days=5)),
        "rules": "Ranked rules, no duplicate Illuvials.",
        "divisions": [
            {"name": "Master", "elo_range": {"min": 2000, "max": 3000}, "expected_population": "low",
             "prize_pool": 3000, "rewards": [{"placement": 1, "reward": "2000 ILV"},
                                             {"placement": 2, "reward": "1000 ILV"}]},
            {"name": "Challenger", "elo_range": {"min": 0, "max": 1999}, "expected_population": "high",
             "prize_pool": 2000, "rewards": [{"placement": 1, "reward": "2000 ILV"}]},
        ],
        "phases": [
            {"name": "Qualifiers", "type": "qualification", "format": "gauntlet/custom", "status": "live",
             "advancing_players": 16},
            {"name": "Knockout", "type": "knockout", "format": "bracket", "advancing_players": 2},
            {"name": "Finals", "type": "finals", "format": "bracket"},
        ],
        "scoring_system": {
            "type": "placement",
            "points": [{"placement": 1, "points": 10}, {"placement": 2, "points": 6},
                       {"placement": 3, "points": 3}, {"placement": 4, "points": 1}],
            "min_matches_required": 3,
        },
        "tiebreakers": [
            {"order": 1, "type": "highest-single-score", "description": "Best single match"},
            {"order": 2, "type": "lowest-hp-lost", "description": "Least drone damage taken"},
        ],
    }
    tournament = progression.create_tournament(db.session, data, organizer=organizer)
    progression.set_status(db.session, tournament, "registration", user=organizer)
    return tournament


def register_rangers(tournament: models.Tournament, rangers: Sequence[tuple[str, str, int]],
                     organizer: models.User) -> None:
    master, challenger = tournament.divisions[0], tournament.divisions[1]
    for ranger_name, player_id, elo in rangers:
        exists = db.session.query(models.TournamentParticipant).filter_by(
            tournament_id=tournament.id, illuvium_player_id=player_id
        ).first()
        if exists:
            continue
        division = master if elo >= master.elo_min else challenger
        participants.register(db.session, tournament, ranger_name, player_id,
                              division_id=division.id, user=organizer)


def build_sample_world(reset: bool = False) -> None:
    if reset:
        db.drop_all()
    db.create_all()
    roles = ensure_roles()
    admin = ensure_user("Admin User", "admin@example.com", roles["admin"], "admin123", is_admin=True)
    ensure_user("Morgan Reid", "morgan@example.com", roles["organizer"], "organizer123")
    ensure_user("Kira Lopez", "kira@example.com", roles["moderator"], "moderator123")

    now = datetime.utcnow()
    tournament = ensure_tournament("Obelisk Weekly Gauntlet", admin, now)

    rangers = [
        ("Lena Hart", "0xa11ce", 2310),
        ("Noah Kim", "0xb0b01", 2150),
        ("Eli Turner", "0xc4a7e", 2040),
        ("Zara Brooks", "0xd00d1", 1880),
        ("Theo White", "0xe1e1e", 1720),
        ("Maya Singh", "0xf00d5", 1640),
        ("Riley Chen", "0x12ab3", 1590),
        ("Sofia Martins", "0x34cd5", 1410),
        ("Jonah Price", "0x56ef7", 1300),
        ("Aria Wells", "0x78a9b", 1150),
    ]
    register_rangers(tournament, rangers, admin)

    for placement, entry in enumerate(tournament.participants[:4], start=1):
        if not entry.matches_played:
            participants.award_placement(db.session, tournament, entry, placement, user=admin)

    if tournament.bracket_data() is None:
        progression.build_bracket(db.session, tournament, user=admin)

    print(f"Database populated with demo tournament {tournament.name} ({tournament.id}).")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--reset", action="store_true", help="drop and recreate the database before loading data")
    args = parser.parse_args()

    app = create_app()
    with app.app_context():
        build_sample_world(reset=args.reset)


if __name__ == "__main__":
    main()
