import json
import os
import sys
from datetime import datetime, timedelta

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from illuvhub.app import create_app, db
from illuvhub.models import Role, User, DEFAULT_ROLE_PERMISSIONS, DEFAULT_ROLE_LEVELS
from illuvhub import progression


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("ILLUVHUB_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("ILLUVHUB_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    monkeypatch.setenv("GAUNTLET_API_URL", "https://gauntlet.test/search")
    monkeypatch.setenv("GAUNTLET_API_TOKEN", "test-token")
    monkeypatch.setenv("GAUNTLET_PAGE_SIZE", "2")
    application = create_app()
    application.config['TESTING'] = True
    application.config['GAUNTLET_BACKOFF'] = 0
    with application.app_context():
        db.create_all()
        # set up default roles
        for name, perms in DEFAULT_ROLE_PERMISSIONS.items():
            role = Role(
                name=name,
                permissions=json.dumps(perms),
                level=DEFAULT_ROLE_LEVELS.get(name, 500),
            )
            db.session.add(role)
        db.session.commit()
        yield application
        db.session.remove()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


def make_user(session, email, role_name, password='secret', **kwargs):
    role = session.query(Role).filter_by(name=role_name).first()
    user = User(email=email, name=kwargs.pop('name', email.split('@')[0]), role=role, **kwargs)
    user.set_password(password)
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def organizer(session):
    return make_user(session, 'organizer@example.com', 'organizer', name='Olive Organizer')


def tournament_data(**overrides):
    now = datetime.utcnow()
    data = {
        'name': 'Gauntlet Cup',
        'registration_start': (now - timedelta(hours=1)).isoformat(),
        'registration_end': (now + timedelta(days=1)).isoformat(),
        'start_time': (now + timedelta(days=2)).isoformat(),
        'max_participants': 8,
        'divisions': [
            {'id': 'div-master', 'name': 'Master', 'elo_range': {'min': 2000, 'max': 3000}},
            {'id': 'div-open', 'name': 'Open', 'elo_range': {'min': 0, 'max': 1999}},
        ],
        'phases': [
            {'id': 'ph-qual', 'name': 'Qualifiers', 'type': 'qualification', 'status': 'live'},
            {'id': 'ph-ko', 'name': 'Knockout', 'type': 'knockout', 'format': 'bracket'},
            {'id': 'ph-final', 'name': 'Finals', 'type': 'finals', 'format': 'bracket'},
        ],
    }
    data.update(overrides)
    return data


@pytest.fixture
def tournament(session, organizer):
    t = progression.create_tournament(session, tournament_data(), organizer=organizer)
    progression.set_status(session, t, 'registration', user=organizer)
    return t
