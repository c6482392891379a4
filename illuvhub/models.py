from .app import db
from flask_login import UserMixin
from datetime import datetime
from sqlalchemy import UniqueConstraint
import uuid
import os
import hashlib
import json

# Permission groups and default role permissions
PERMISSION_GROUPS = {
    'tournaments': {
        'manage': 'Create and manage tournaments',
        'join': 'Register for tournaments',
        'approve_join': 'Approve or reject pending registrations',
        'delete': 'Permanently delete tournaments',
    },
    'analytics': {
        'view': 'View the gauntlet analytics dashboard',
    },
    'admin': {
        'panel': 'Access admin panel',
        'permissions': 'Manage roles and permissions',
    },
}


def all_permission_keys():
    keys = []
    for cat, perms in PERMISSION_GROUPS.items():
        for perm in perms:
            keys.append(f"{cat}.{perm}")
    return keys


DEFAULT_ROLE_PERMISSIONS = {
    'admin': {key: True for key in all_permission_keys()},
    'organizer': {
        'tournaments.manage': True,
        'tournaments.approve_join': True,
        'tournaments.join': True,
        'analytics.view': True,
    },
    'moderator': {
        'tournaments.approve_join': True,
        'analytics.view': True,
    },
    'user': {
        'tournaments.join': True,
        'analytics.view': True,
    },
}


DEFAULT_ROLE_LEVELS = {
    'admin': 0,
    'organizer': 100,
    'moderator': 300,
    'user': 500,
}

TOURNAMENT_STATUSES = ('upcoming', 'registration', 'live', 'completed')
TOURNAMENT_TYPES = ('standard', 'custom', 'practice', 'gauntlet')
TOURNAMENT_FORMATS = ('single-elimination', 'double-elimination', 'swiss', 'round-robin')
ROUND_FORMATS = ('bo1', 'bo3', 'bo5')
EXPECTED_POPULATIONS = ('high', 'medium', 'low', 'very-low')
PHASE_TYPES = ('qualification', 'sit-n-go', 'knockout', 'finals')
PHASE_FORMATS = ('gauntlet/custom', 'bracket', 'swiss')
PHASE_STATUSES = ('pending', 'live', 'completed')
PARTICIPANT_STATUSES = ('registered', 'checked-in', 'eliminated', 'advanced', 'pending', 'rejected')
SCORING_TYPES = ('placement', 'custom')
TIEBREAKER_TYPES = (
    'highest-single-score',
    'last-round-score',
    'lowest-hp-lost',
    'strongest-opponents',
    'random',
)


def new_id():
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


def _load_json(raw, default):
    try:
        return json.loads(raw) if raw else default
    except ValueError:
        return default


class Role(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    permissions = db.Column(db.Text, nullable=False, default='{}')
    level = db.Column(db.Integer, nullable=False, default=500)

    def permissions_dict(self):
        return json.loads(self.permissions or '{}')


class User(db.Model, UserMixin):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=True)
    name = db.Column(db.String(120), nullable=False)
    # In-game player id, used when a logged-in user registers themselves.
    player_id = db.Column(db.String(120), nullable=True)
    password_hash = db.Column(db.Text, nullable=True)
    salt = db.Column(db.String(32), nullable=True)
    is_admin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    last_login = db.Column(db.DateTime, nullable=True)
    role_id = db.Column(db.Integer, db.ForeignKey('role.id'))
    role = db.relationship('Role')
    permission_overrides = db.Column(db.Text, nullable=True)

    def set_password(self, pw):
        self.salt = os.urandom(16).hex()
        self.password_hash = hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def check_password(self, pw):
        if not self.password_hash or not self.salt:
            return False
        return self.password_hash == hashlib.sha256((self.salt + pw).encode()).hexdigest()

    def permission_overrides_dict(self):
        return _load_json(self.permission_overrides, {})

    def has_permission(self, key):
        if self.is_admin:
            return True
        overrides = self.permission_overrides_dict()
        if key in overrides:
            return overrides.get(key) == 'allow'
        if not self.role:
            return False
        return self.role.permissions_dict().get(key, False)

    @property
    def display_name(self):
        return self.name or self.email or 'admin'


class Tournament(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default='')
    organizer = db.Column(db.String(120), default='Tournament Organizer')
    status = db.Column(db.String(20), nullable=False, default='upcoming')
    type = db.Column(db.String(20), nullable=False, default='custom')
    format = db.Column(db.String(30), nullable=False, default='single-elimination')
    max_participants = db.Column(db.Integer, nullable=False, default=32)
    # Maintained by conditional UPDATEs in participants.py, never assigned directly.
    current_participants = db.Column(db.Integer, nullable=False, default=0)
    prize_pool = db.Column(db.Text, default='')
    registration_start = db.Column(db.DateTime, nullable=True)
    registration_end = db.Column(db.DateTime, nullable=True)
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    host_platform = db.Column(db.String(120), default='Illuvium Arena')
    rules = db.Column(db.Text, default='')
    check_in_required = db.Column(db.Boolean, default=False)
    join_requires_approval = db.Column(db.Boolean, default=False)
    # Legacy single-bracket round list, stored as JSON
    rounds = db.Column(db.Text, default='[]')
    bracket = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow)
    version = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {'version_id_col': version}

    def rounds_list(self):
        return _load_json(self.rounds, [])

    def set_rounds(self, rounds):
        self.rounds = json.dumps(rounds)

    def bracket_data(self):
        """Return the stored bracket dict, or ``None`` if none was generated."""
        return _load_json(self.bracket, None)

    def set_bracket(self, bracket):
        self.bracket = json.dumps(bracket) if bracket is not None else None

    def division(self, division_id):
        for d in self.divisions:
            if d.id == division_id:
                return d
        return None

    def to_dict(self, include_participants=False):
        data = {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'organizer': self.organizer,
            'status': self.status,
            'type': self.type,
            'format': self.format,
            'max_participants': self.max_participants,
            'current_participants': self.current_participants,
            'prize_pool': self.prize_pool,
            'registration_start': _iso(self.registration_start),
            'registration_end': _iso(self.registration_end),
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'host_platform': self.host_platform,
            'rules': self.rules,
            'check_in_required': bool(self.check_in_required),
            'join_requires_approval': bool(self.join_requires_approval),
            'rounds': self.rounds_list(),
            'divisions': [d.to_dict() for d in self.divisions],
            'phases': [p.to_dict() for p in self.phases],
            'tiebreakers': [tb.to_dict() for tb in self.tiebreakers],
            'scoring_system': self.scoring_system.to_dict() if self.scoring_system else None,
            'bracket': self.bracket_data(),
            'version': self.version,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class Division(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    name = db.Column(db.String(120), nullable=False)
    elo_min = db.Column(db.Integer, nullable=False, default=0)
    elo_max = db.Column(db.Integer, nullable=False, default=0)
    expected_population = db.Column(db.String(20), default='medium')
    prize_pool = db.Column(db.Float, default=0)
    rewards = db.Column(db.Text, default='[]')  # [{placement, reward}]

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('divisions', cascade='all, delete-orphan')
    )

    def rewards_list(self):
        return _load_json(self.rewards, [])

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'elo_range': {'min': self.elo_min, 'max': self.elo_max},
            'expected_population': self.expected_population,
            'prize_pool': self.prize_pool,
            'rewards': self.rewards_list(),
        }


class Phase(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    type = db.Column(db.String(20), nullable=False, default='qualification')
    format = db.Column(db.String(20), nullable=False, default='gauntlet/custom')
    start_time = db.Column(db.DateTime, nullable=True)
    end_time = db.Column(db.DateTime, nullable=True)
    status = db.Column(db.String(20), nullable=False, default='pending')
    advancing_players = db.Column(db.Integer, nullable=True)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('phases', cascade='all, delete-orphan', order_by='Phase.position')
    )

    __table_args__ = (UniqueConstraint('tournament_id', 'position', name='_tournament_phase_position_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'position': self.position,
            'name': self.name,
            'type': self.type,
            'format': self.format,
            'start_time': _iso(self.start_time),
            'end_time': _iso(self.end_time),
            'status': self.status,
            'advancing_players': self.advancing_players,
        }


class ScoringSystem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False, unique=True)
    type = db.Column(db.String(20), nullable=False, default='placement')
    points = db.Column(db.Text, default='[]')  # [{placement, points}]
    min_matches_required = db.Column(db.Integer, nullable=False, default=0)
    negative_points = db.Column(db.Boolean, default=False)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('scoring_system', uselist=False, cascade='all, delete-orphan')
    )

    def points_list(self):
        return _load_json(self.points, [])

    def points_for(self, placement):
        for row in self.points_list():
            if int(row.get('placement', 0)) == placement:
                return row.get('points', 0)
        return 0

    def to_dict(self):
        return {
            'type': self.type,
            'points': self.points_list(),
            'min_matches_required': self.min_matches_required,
            'negative_points': bool(self.negative_points),
        }


class TiebreakerRule(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    order = db.Column(db.Integer, nullable=False)
    type = db.Column(db.String(30), nullable=False)
    description = db.Column(db.Text, default='')

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('tiebreakers', cascade='all, delete-orphan', order_by='TiebreakerRule.order')
    )

    __table_args__ = (UniqueConstraint('tournament_id', 'order', name='_tournament_tiebreaker_order_uc'),)

    def to_dict(self):
        return {'order': self.order, 'type': self.type, 'description': self.description}


class TournamentParticipant(db.Model):
    id = db.Column(db.String(36), primary_key=True, default=new_id)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    ranger_name = db.Column(db.String(120), nullable=False)
    illuvium_player_id = db.Column(db.String(120), nullable=False)
    registration_time = db.Column(db.DateTime, default=datetime.utcnow)
    status = db.Column(db.String(20), nullable=False, default='registered')
    # Weak reference to Division.id; lookups only
    division_id = db.Column(db.String(36), nullable=True)
    points = db.Column(db.Float, default=0)
    matches_played = db.Column(db.Integer, default=0)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('participants', cascade='all, delete-orphan',
                           order_by='TournamentParticipant.registration_time')
    )

    __table_args__ = (UniqueConstraint('tournament_id', 'illuvium_player_id', name='_tournament_player_uc'),)

    def to_dict(self):
        return {
            'id': self.id,
            'ranger_name': self.ranger_name,
            'illuvium_player_id': self.illuvium_player_id,
            'registration_time': _iso(self.registration_time),
            'status': self.status,
            'division_id': self.division_id,
            'points': self.points or 0,
            'matches_played': self.matches_played or 0,
        }


class AuditLogEntry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    tournament_id = db.Column(db.String(36), db.ForeignKey('tournament.id'), nullable=False)
    action = db.Column(db.Text, nullable=False)
    user = db.Column(db.String(255), nullable=False, default='admin')
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)

    tournament = db.relationship(
        'Tournament',
        backref=db.backref('audit_log', cascade='all, delete-orphan')
    )

    def to_dict(self):
        return {
            'id': self.id,
            'action': self.action,
            'user': self.user,
            'timestamp': _iso(self.timestamp),
        }


class SiteLog(db.Model):
    __bind_key__ = 'logs'
    id = db.Column(db.Integer, primary_key=True)
    action = db.Column(db.String(200), nullable=False)
    result = db.Column(db.String(200), nullable=False)
    error = db.Column(db.Text, nullable=True)
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
    user_id = db.Column(db.Integer, nullable=True)
    # relationship loaded manually to avoid cross-db foreign key
