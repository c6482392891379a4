from flask import (
    Flask,
    request,
    abort,
    Response,
    jsonify,
)
from flask_sqlalchemy import SQLAlchemy
from flask_login import (
    LoginManager,
    login_user,
    logout_user,
    login_required,
    current_user,
)
from datetime import datetime, timedelta
import os
import click
import json

from sqlalchemy import inspect, text

from .errors import IllHubError, UpstreamFetchError, ValidationError


db = SQLAlchemy()
login_manager = LoginManager()


def create_app():
    app = Flask(__name__)
    db_file = os.environ.get('ILLUVHUB_DB_PATH', 'illuvhub.db')
    log_db_file = os.environ.get('ILLUVHUB_LOG_DB_PATH', db_file.replace('.db', '_logs.db'))
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{db_file}'
    app.config['SQLALCHEMY_BINDS'] = {
        'logs': f'sqlite:///{log_db_file}',
    }
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SECRET_KEY'] = os.environ.get('FLASK_SECRET', 'dev-secret-change-me')
    app.config['GAUNTLET_API_URL'] = os.environ.get(
        'GAUNTLET_API_URL',
        'https://api.illuvium-game.io/gamedata/public/v1/gauntlet/search',
    )
    app.config['GAUNTLET_API_TOKEN'] = os.environ.get('GAUNTLET_API_TOKEN', '')
    app.config['GAUNTLET_API_TIMEOUT'] = int(os.environ.get('GAUNTLET_API_TIMEOUT', '60'))
    app.config['GAUNTLET_PAGE_SIZE'] = int(os.environ.get('GAUNTLET_PAGE_SIZE', '100'))
    app.config['GAUNTLET_MAX_RETRIES'] = int(os.environ.get('GAUNTLET_MAX_RETRIES', '3'))

    db.init_app(app)
    login_manager.init_app(app)

    # Databases created before optimistic locking, approval and divisions
    # existed lack these columns; add them in place so old files still load.
    with app.app_context():
        inspector = inspect(db.engine)
        if 'tournament' in inspector.get_table_names():
            columns = [c['name'] for c in inspector.get_columns('tournament')]
            if 'version' not in columns:
                db.session.execute(text('ALTER TABLE tournament ADD COLUMN version INTEGER DEFAULT 1'))
                db.session.execute(text('UPDATE tournament SET version=1 WHERE version IS NULL'))
                db.session.commit()
            if 'check_in_required' not in columns:
                db.session.execute(text('ALTER TABLE tournament ADD COLUMN check_in_required BOOLEAN DEFAULT 0'))
                db.session.execute(text('UPDATE tournament SET check_in_required=0 WHERE check_in_required IS NULL'))
                db.session.commit()
            if 'join_requires_approval' not in columns:
                db.session.execute(text('ALTER TABLE tournament ADD COLUMN join_requires_approval BOOLEAN DEFAULT 0'))
                db.session.execute(text('UPDATE tournament SET join_requires_approval=0 WHERE join_requires_approval IS NULL'))
                db.session.commit()
            if 'updated_at' not in columns:
                db.session.execute(text('ALTER TABLE tournament ADD COLUMN updated_at DATETIME'))
                db.session.commit()
        if 'tournament_participant' in inspector.get_table_names():
            columns = [c['name'] for c in inspector.get_columns('tournament_participant')]
            if 'division_id' not in columns:
                db.session.execute(text('ALTER TABLE tournament_participant ADD COLUMN division_id VARCHAR(36)'))
                db.session.commit()
        if 'user' in inspector.get_table_names():
            columns = [c['name'] for c in inspector.get_columns('user')]
            if 'player_id' not in columns:
                db.session.execute(text('ALTER TABLE user ADD COLUMN player_id VARCHAR(120)'))
                db.session.commit()
            if 'permission_overrides' not in columns:
                db.session.execute(text('ALTER TABLE user ADD COLUMN permission_overrides TEXT'))
                db.session.commit()
        if 'role' in inspector.get_table_names():
            columns = [c['name'] for c in inspector.get_columns('role')]
            if 'level' not in columns:
                db.session.execute(text('ALTER TABLE role ADD COLUMN level INTEGER DEFAULT 500'))
                db.session.execute(text('UPDATE role SET level=500 WHERE level IS NULL'))
                db.session.commit()
            from .models import DEFAULT_ROLE_LEVELS  # lazy import to avoid circular reference

            for role_name, level in DEFAULT_ROLE_LEVELS.items():
                db.session.execute(
                    text(
                        'UPDATE role SET level=:level WHERE name=:name AND (level IS NULL OR level != :level)'
                    ),
                    {'level': level, 'name': role_name},
                )
            db.session.commit()

    from .models import (
        User,
        Tournament,
        Role,
        SiteLog,
        DEFAULT_ROLE_PERMISSIONS,
        DEFAULT_ROLE_LEVELS,
    )
    from . import analytics, participants, progression, standings
    from .bracket import champion
    from .gauntlet_api import GauntletClient

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Login required'}), 401

    # ---------- Errors ----------
    @app.errorhandler(IllHubError)
    def handle_illhub_error(exc):
        db.session.rollback()
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(403)
    def forbidden(exc):
        return jsonify({'error': 'Forbidden'}), 403

    @app.errorhandler(404)
    def not_found(exc):
        return jsonify({'error': 'Not found'}), 404

    # ---------- CLI ----------
    @app.cli.command('db-init')
    def db_init():
        db.create_all()
        # Ensure default roles
        for name, perms in DEFAULT_ROLE_PERMISSIONS.items():
            level = DEFAULT_ROLE_LEVELS.get(name, 500)
            existing = db.session.query(Role).filter_by(name=name).first()
            if not existing:
                r = Role(name=name, permissions=json.dumps(perms), level=level)
                db.session.add(r)
            else:
                existing.permissions = json.dumps(perms)
                if existing.level != level:
                    existing.level = level
        db.session.commit()
        # Ensure a default admin account exists for first-time login
        if not db.session.query(User).filter_by(email="admin@example.com").first():
            admin_role = db.session.query(Role).filter_by(name='admin').first()
            u = User(email="admin@example.com", name="Admin", role=admin_role, is_admin=True)
            u.set_password("admin123")
            db.session.add(u)
            db.session.commit()
            print("Created default admin: admin@example.com / admin123")
        print("Database initialized.")

    @app.cli.command('create-admin')
    @click.option('--email', help='Email for the admin user')
    @click.option('--password', help='Password for the admin user')
    def create_admin(email, password):
        if not email:
            email = click.prompt("Admin email", default="admin@example.com")
        if not password:
            password = click.prompt("Password", hide_input=True, confirmation_prompt=True)
        if db.session.query(User).filter_by(email=email).first():
            print("User exists")
            return
        admin_role = db.session.query(Role).filter_by(name='admin').first()
        u = User(email=email, name="Admin", role=admin_role, is_admin=True)
        u.set_password(password)
        db.session.add(u)
        db.session.commit()
        print("Admin created.")

    @app.cli.command('fetch-matches')
    @click.option('--start', help='Window start (ISO 8601), defaults to 24 hours ago')
    @click.option('--end', help='Window end (ISO 8601), defaults to now')
    @click.option('--player', 'players', multiple=True, help='Restrict to a player id')
    def fetch_matches(start, end, players):
        end_dt = progression.parse_timestamp(end) or datetime.utcnow()
        start_dt = progression.parse_timestamp(start) or end_dt - timedelta(hours=24)
        client = GauntletClient.from_config(app.config)
        try:
            games = client.fetch_all_matches(start_dt, end_dt, players=list(players))
        except UpstreamFetchError as exc:
            click.echo(f"Fetch failed: {exc.details} ({len(exc.partial or [])} games before failure)", err=True)
            raise SystemExit(1)
        totals = analytics.summarize(games)
        print(f"Matches: {totals['matches']}")
        print(f"Unique players: {totals['players']}")
        print(f"Average match time: {totals['avg_match_seconds']} sec")
        for fact in analytics.fun_facts(games):
            print(f"{fact['label']}: {fact['value']} ({fact['sub']})")

    # ---------- Helpers ----------
    def require_permission(perm):
        if not current_user.is_authenticated or not current_user.has_permission(perm):
            log_site('unauthorized_access', 'failure', perm)
            abort(403)

    def require_any_permission(*perms):
        if current_user.is_authenticated and any(current_user.has_permission(p) for p in perms):
            return
        log_site('unauthorized_access', 'failure', ' or '.join(perms))
        abort(403)

    def log_site(action, result, error=None):
        log = SiteLog(action=action, result=result, error=error,
                      user_id=current_user.id if current_user.is_authenticated else None)
        db.session.add(log)
        db.session.commit()

    def get_tournament(tid):
        t = db.session.get(Tournament, tid)
        if not t:
            abort(404)
        return t

    def payload():
        return request.get_json(silent=True) or {}

    def actor():
        return current_user if current_user.is_authenticated else None

    def csv_response(body, filename):
        return Response(
            body,
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename={filename}'},
        )

    # ---------- Session ----------
    @app.route('/login', methods=['POST'])
    def login():
        data = payload() or request.form
        email = (data.get('email') or '').strip().lower()
        password = data.get('password') or ''
        u = db.session.query(User).filter_by(email=email).first()
        if u and u.check_password(password):
            login_user(u)
            u.last_login = datetime.utcnow()
            db.session.commit()
            log_site('login', 'success')
            return jsonify({'id': u.id, 'name': u.display_name, 'email': u.email})
        log_site('login', 'failure', 'invalid credentials')
        return jsonify({'error': 'Invalid credentials'}), 401

    @app.route('/logout', methods=['POST'])
    @login_required
    def logout():
        log_site('logout', 'success')
        logout_user()
        return jsonify({'ok': True})

    # ---------- Tournaments ----------
    @app.route('/tournaments')
    def list_tournaments():
        query = db.session.query(Tournament).order_by(Tournament.created_at.desc())
        status = request.args.get('status')
        if status:
            query = query.filter(Tournament.status == status)
        return jsonify([t.to_dict() for t in query.all()])

    @app.route('/tournaments', methods=['POST'])
    @login_required
    def create_tournament():
        require_permission('tournaments.manage')
        t = progression.create_tournament(db.session, payload(), organizer=current_user)
        log_site('tournament_create', 'success', t.name)
        return jsonify(t.to_dict()), 201

    @app.route('/t/<tid>')
    def view_tournament(tid):
        t = get_tournament(tid)
        data = t.to_dict(include_participants=True)
        data['champion'] = champion(t.bracket_data())
        return jsonify(data)

    @app.route('/t/<tid>', methods=['PATCH'])
    @login_required
    def edit_tournament(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        progression.update_tournament(db.session, t, data, user=current_user,
                                      expected_version=data.get('version'))
        return jsonify(t.to_dict())

    @app.route('/t/<tid>/status', methods=['POST'])
    @login_required
    def change_status(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        progression.set_status(db.session, t, data.get('status'), user=current_user,
                               expected_version=data.get('version'))
        return jsonify(t.to_dict())

    @app.route('/t/<tid>', methods=['DELETE'])
    @login_required
    def delete_tournament(tid):
        require_permission('tournaments.delete')
        t = get_tournament(tid)
        name = t.name
        progression.delete_tournament(db.session, t)
        log_site('delete_tournament', 'success', name)
        return jsonify({'deleted': tid})

    @app.route('/t/<tid>/audit-log')
    @login_required
    def tournament_audit_log(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        return jsonify([e.to_dict() for e in progression.audit_trail(t)])

    # ---------- Participants ----------
    @app.route('/t/<tid>/register', methods=['POST'])
    @login_required
    def register_participant(tid):
        require_any_permission('tournaments.join', 'tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        is_manager = current_user.has_permission('tournaments.manage')
        p = participants.register(
            db.session, t,
            data.get('ranger_name') or current_user.name,
            data.get('illuvium_player_id') or current_user.player_id,
            division_id=data.get('division_id'),
            user=current_user,
            enforce_window=not is_manager,
        )
        return jsonify(p.to_dict()), 201

    @app.route('/t/<tid>/participants/import', methods=['POST'])
    @login_required
    def import_participants(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        upload = request.files.get('file')
        text_body = upload.read().decode('utf-8-sig') if upload else request.get_data(as_text=True)
        result = participants.import_csv(db.session, t, text_body, user=current_user)
        log_site('participant_import', 'success', f"{len(result['created'])} created")
        return jsonify({
            'created': [p.to_dict() for p in result['created']],
            'errors': result['errors'],
        })

    @app.route('/t/<tid>/participants/bulk', methods=['POST'])
    @login_required
    def bulk_add_participants(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        rows = payload().get('participants') or []
        if not isinstance(rows, list):
            raise ValidationError('participants must be a list')
        result = participants.bulk_register(db.session, t, rows, user=current_user)
        return jsonify({
            'created': [p.to_dict() for p in result['created']],
            'errors': result['errors'],
        })

    @app.route('/t/<tid>/participants/bulk-remove', methods=['POST'])
    @login_required
    def bulk_remove_participants(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        result = participants.bulk_remove(db.session, t, payload().get('ids') or [], user=current_user)
        return jsonify(result)

    participant_actions = {
        'approve': (participants.approve, ('tournaments.approve_join', 'tournaments.manage')),
        'reject': (participants.reject, ('tournaments.approve_join', 'tournaments.manage')),
        'check-in': (participants.check_in, ('tournaments.manage',)),
        'eliminate': (participants.eliminate, ('tournaments.manage',)),
        'advance': (participants.mark_advanced, ('tournaments.manage',)),
    }

    @app.route('/t/<tid>/participants/<pid>/<action>', methods=['POST'])
    @login_required
    def participant_action(tid, pid, action):
        if action not in participant_actions:
            abort(404)
        handler, perms = participant_actions[action]
        require_any_permission(*perms)
        t = get_tournament(tid)
        p = participants.find_participant(db.session, t, pid)
        handler(db.session, t, p, user=current_user)
        return jsonify(p.to_dict())

    @app.route('/t/<tid>/participants/<pid>', methods=['DELETE'])
    @login_required
    def remove_participant(tid, pid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        p = participants.find_participant(db.session, t, pid)
        participants.remove(db.session, t, p, user=current_user)
        return jsonify({'removed': pid})

    @app.route('/t/<tid>/participants/<pid>', methods=['PATCH'])
    @login_required
    def edit_participant_stats(tid, pid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        p = participants.find_participant(db.session, t, pid)
        data = payload()
        participants.update_stats(db.session, t, p, points=data.get('points'),
                                  matches_played=data.get('matches_played'), user=current_user)
        return jsonify(p.to_dict())

    @app.route('/t/<tid>/participants/<pid>/placement', methods=['POST'])
    @login_required
    def record_placement(tid, pid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        p = participants.find_participant(db.session, t, pid)
        participants.award_placement(db.session, t, p, payload().get('placement'), user=current_user)
        return jsonify(p.to_dict())

    # ---------- Phases and divisions ----------
    @app.route('/t/<tid>/phases/<phase_id>/advance', methods=['POST'])
    @login_required
    def advance_phase(tid, phase_id):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        progression.advance_phase(db.session, t, phase_id, user=current_user,
                                  expected_version=payload().get('version'))
        return jsonify({'phases': [p.to_dict() for p in t.phases], 'version': t.version})

    @app.route('/t/<tid>/divisions/<division_id>', methods=['PATCH'])
    @login_required
    def edit_division(tid, division_id):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        division = progression.edit_division(db.session, t, division_id, data, user=current_user,
                                             expected_version=data.get('version'))
        return jsonify(division.to_dict())

    @app.route('/t/<tid>/divisions/<division_id>/prize', methods=['POST'])
    @login_required
    def edit_division_prize(tid, division_id):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        division = progression.edit_prize(db.session, t, division_id, data.get('prize_pool'),
                                          user=current_user, expected_version=data.get('version'))
        return jsonify(division.to_dict())

    # ---------- Bracket ----------
    @app.route('/t/<tid>/bracket')
    def view_bracket(tid):
        t = get_tournament(tid)
        return jsonify({'bracket': t.bracket_data(), 'version': t.version})

    @app.route('/t/<tid>/bracket', methods=['POST'])
    @login_required
    def generate_bracket(tid):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        bracket = progression.build_bracket(db.session, t, user=current_user, seeds=data.get('seeds'),
                                            expected_version=data.get('version'))
        return jsonify({'bracket': bracket, 'version': t.version})

    @app.route('/t/<tid>/bracket/<match_id>/winner', methods=['POST'])
    @login_required
    def set_bracket_winner(tid, match_id):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        bracket = progression.record_bracket_winner(db.session, t, match_id, data.get('winner_id'),
                                                    user=current_user,
                                                    expected_version=data.get('version'))
        return jsonify({'bracket': bracket, 'version': t.version})

    @app.route('/t/<tid>/bracket/<match_id>/schedule', methods=['POST'])
    @login_required
    def schedule_bracket_match(tid, match_id):
        require_permission('tournaments.manage')
        t = get_tournament(tid)
        data = payload()
        bracket = progression.record_match_schedule(db.session, t, match_id,
                                                    match_code=data.get('match_code'),
                                                    start_time=data.get('start_time'),
                                                    user=current_user)
        return jsonify({'bracket': bracket, 'version': t.version})

    # ---------- Leaderboard ----------
    @app.route('/t/<tid>/leaderboard')
    def leaderboard(tid):
        t = get_tournament(tid)
        min_matches = t.scoring_system.min_matches_required if t.scoring_system else 0
        rows, ties = standings.compute_leaderboard(
            standings.visible_participants(t),
            division_id=request.args.get('division'),
            sort_by=request.args.get('sort', 'points'),
            sort_dir=request.args.get('dir', 'desc'),
            search=request.args.get('q'),
            min_matches=min_matches,
        )
        if request.args.get('format') == 'csv':
            return csv_response(standings.leaderboard_csv(rows), f'leaderboard-{t.id}.csv')
        data = standings.rows_to_json(rows, ties)
        data['tiebreakers'] = [tb.to_dict() for tb in t.tiebreakers]
        return jsonify(data)

    # ---------- Gauntlet ----------
    @app.route('/api/gauntlet', methods=['POST'])
    def gauntlet_proxy():
        client = GauntletClient.from_config(app.config)
        try:
            data = client.search(payload())
        except UpstreamFetchError as exc:
            log_site('gauntlet_proxy', 'failure', exc.details)
            return jsonify(exc.to_dict()), exc.status or 500
        log_site('gauntlet_proxy', 'success')
        return jsonify(data)

    def analytics_window():
        end = progression.parse_timestamp(request.args.get('end')) or datetime.utcnow()
        start = progression.parse_timestamp(request.args.get('start')) or end - timedelta(hours=24)
        if start > end:
            raise ValidationError('start must not be after end')
        return start, end

    def fetch_games(start, end):
        """Fetch the window; on a mid-stream failure keep what arrived."""
        client = GauntletClient.from_config(app.config)
        try:
            return client.fetch_all_matches(start, end), None
        except UpstreamFetchError as exc:
            if not exc.partial:
                raise
            log_site('gauntlet_fetch', 'partial', exc.details)
            return exc.partial, exc

    @app.route('/api/analytics')
    @login_required
    def analytics_dashboard():
        require_permission('analytics.view')
        start, end = analytics_window()
        games, failure = fetch_games(start, end)
        data = analytics.dashboard(games, sort_by=request.args.get('sort', 'wins'))
        data['window'] = {'start': start.isoformat(), 'end': end.isoformat()}
        data['recent_matches'] = [analytics.serialize_game(g)
                                  for g in analytics.recent_matches(games, request.args.get('recent', '24h'), now=end)]
        if failure is not None:
            data['partial'] = True
            data['error'] = failure.to_dict()
        return jsonify(data)

    @app.route('/api/analytics/players')
    @login_required
    def analytics_players():
        require_permission('analytics.view')
        start, end = analytics_window()
        games, failure = fetch_games(start, end)
        index = analytics.build_player_index(games)
        query = request.args.get('q', '')
        exact = request.args.get('exact') in ('1', 'true')
        hits = analytics.search_players(index, query, exact=exact)
        data = {'players': hits}
        if len(hits) == 1:
            data['matches'] = [analytics.serialize_game(g)
                               for g in analytics.player_matches(games, hits[0]['player'])]
        if failure is not None:
            data['partial'] = True
            data['error'] = failure.to_dict()
        return jsonify(data)

    return app

app = create_app()
