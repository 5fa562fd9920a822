#!/usr/bin/env python3
"""
FoodSpin Server - JSON REST API for voting on dishes and spinning the wheel.

Routes are grouped by area (auth, foods, votes, wheel, favorites).  Every
user-specific route requires a logged-in session cookie and every voting
route takes the session id explicitly in its URL.
"""

import argparse
import json
import logging
import os
import random
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from typing import Dict, Optional

from dotenv import load_dotenv
from flask import Flask, jsonify, request, session
from werkzeug.exceptions import HTTPException

import database
import foodspin
from foodspin import (FoodSpinError, TallyError, SpinError, CandidateNotFoundError,
                      DuplicateCandidateError, SessionNotFoundError, VoteTally)
from app.services import (VoteSessionService, HistoryService, FavoritesService,
                          UserService, FoodCatalogService)

load_dotenv()

config = foodspin.load_config(os.getenv('FOODSPIN_CONFIG', 'config.json'))

# Initialize logging early so database module logs are captured
log_level = config['log_level']
foodspin.setup_logging(log_level)
server_logger = logging.getLogger('foodspin.server')
try:
    os.makedirs('logs', exist_ok=True)
    fh = logging.FileHandler('logs/foodspin_server.log')
    fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
    fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    server_logger.addHandler(fh)
except OSError:
    server_logger.warning('Could not create log file handler')

if config['database_url'] != database.DATABASE_URL:
    database.configure(config['database_url'])

DB_AVAILABLE = False


def ensure_db_available() -> bool:
    """Create the tables on first use; retry if the database was unavailable."""
    global DB_AVAILABLE
    if DB_AVAILABLE:
        return True
    try:
        DB_AVAILABLE = bool(database.init_db())
        if DB_AVAILABLE:
            server_logger.info('Database initialized successfully')
        return DB_AVAILABLE
    except Exception as e:
        server_logger.exception('Database init failed: %s', e)
        return False


app = Flask(__name__)
app.secret_key = config['secret_key'] or os.urandom(24)

vote_session_service = VoteSessionService(database)
history_service = HistoryService(database)
favorites_service = FavoritesService(database)
user_service = UserService(database)
food_catalog = FoodCatalogService()

# Random source for wheel spins; tests swap in a fixed sequence.
spin_random = random.Random()

# Most specific first
ERROR_STATUS = (
    (CandidateNotFoundError, 404),
    (SessionNotFoundError, 404),
    (DuplicateCandidateError, 409),
    (TallyError, 400),
    (SpinError, 400),
)


class DatabaseUnavailable(Exception):
    """Raised when a route needs the database and it cannot be reached."""


@contextmanager
def db_session():
    """Yield a SQLAlchemy session and always close it."""
    if not ensure_db_available() or database.SessionLocal is None:
        raise DatabaseUnavailable()
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def require_login(f):
    """Decorator to require user to be logged in"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not session.get('username'):
            return jsonify({'error': 'Not logged in'}), 401
        return f(*args, **kwargs)
    return decorated_function


def current_username() -> str:
    return session['username']


def _tally_payload(session_id: str, tally: VoteTally) -> Dict:
    return {
        'session_id': session_id,
        'dishes': tally.to_list(),
        'total_votes': tally.total_votes(),
    }


# ===========================================================================================
# Error handling
# ===========================================================================================

@app.errorhandler(FoodSpinError)
def handle_domain_error(e: FoodSpinError):
    for error_type, status in ERROR_STATUS:
        if isinstance(e, error_type):
            return jsonify({'error': str(e)}), status
    return jsonify({'error': str(e)}), 400


@app.errorhandler(DatabaseUnavailable)
def handle_database_unavailable(e):
    return jsonify({'error': 'Database not available'}), 503


@app.errorhandler(404)
def handle_not_found(e):
    return jsonify({'error': 'Route not found', 'path': request.path}), 404


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return jsonify({'error': e.description}), e.code
    server_logger.exception('Unhandled error on %s %s: %s', request.method, request.path, e)
    return jsonify({'error': 'Internal server error'}), 500


# ===========================================================================================
# Auth
# ===========================================================================================

@app.route('/api/auth/register', methods=['POST'])
def api_auth_register():
    """Register a new user"""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()
    server_logger.info('Register endpoint called for username=%s', username)

    if not username or not password:
        return jsonify({'error': 'Username and password required'}), 400

    with db_session() as db:
        success, message = user_service.register(
            db, username, password,
            email=(data.get('email') or '').strip(),
            display_name=(data.get('name') or '').strip())
    if not success:
        status = 409 if message == 'Username already exists' else 400
        return jsonify({'error': message}), status
    return jsonify({'message': message}), 201


@app.route('/api/auth/login', methods=['POST'])
def api_auth_login():
    """Log in a user"""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    password = (data.get('password') or '').strip()

    if not username or not password:
        return jsonify({'error': 'Username and password required'}), 400

    with db_session() as db:
        success, message = user_service.login(db, username, password)
    if not success:
        return jsonify({'error': message}), 401

    session['username'] = username
    server_logger.info('User logged in: %s', username)
    return jsonify({'message': message, 'username': username})


@app.route('/api/auth/logout', methods=['POST'])
def api_auth_logout():
    username = session.pop('username', None)
    if username:
        server_logger.info('User logged out: %s', username)
    return jsonify({'success': True})


@app.route('/api/auth/current')
@require_login
def api_auth_current():
    with db_session() as db:
        profile = user_service.get_profile(db, current_username())
    if profile is None:
        session.pop('username', None)
        return jsonify({'error': 'Not logged in'}), 401
    return jsonify(profile)


@app.route('/api/auth/change-password', methods=['POST'])
@require_login
def api_auth_change_password():
    data = request.get_json(silent=True) or {}
    current_password = data.get('currentPassword') or ''
    new_password = data.get('newPassword') or ''
    if not current_password or not new_password:
        return jsonify({'error': 'Current and new password required'}), 400

    with db_session() as db:
        success, message = user_service.change_password(
            db, current_username(), current_password, new_password)
    if not success:
        return jsonify({'error': message}), 400
    return jsonify({'message': message})


# ===========================================================================================
# Foods catalog
# ===========================================================================================

@app.route('/api/foods')
def api_foods():
    foods = food_catalog.list_foods(
        cuisine=request.args.get('cuisine'),
        price_range=request.args.get('priceRange'),
        search=request.args.get('search'),
    )
    return jsonify({'success': True, 'count': len(foods), 'foods': foods})


@app.route('/api/foods/<int:food_id>')
def api_food_detail(food_id: int):
    food = food_catalog.get_food(food_id)
    if food is None:
        return jsonify({'error': 'Food item not found'}), 404
    return jsonify({'success': True, 'food': food})


@app.route('/api/foods/spin/random')
@require_login
def api_foods_spin_random():
    """Pick a random restaurant, optionally narrowed by preferences."""
    preferences = None
    raw = request.args.get('preferences')
    if raw:
        try:
            preferences = json.loads(raw)
        except json.JSONDecodeError:
            return jsonify({'error': 'preferences must be valid JSON'}), 400
        if not isinstance(preferences, dict):
            return jsonify({'error': 'preferences must be a JSON object'}), 400

    food, options = food_catalog.pick_random(preferences, rng=spin_random)
    if food is None:
        return jsonify({'error': 'No foods match your preferences. Try adjusting your filters!'}), 404
    return jsonify({'success': True, 'result': food, 'total_options': options})


@app.route('/api/foods/meta/cuisines')
def api_foods_cuisines():
    return jsonify({'success': True, 'cuisines': food_catalog.cuisines()})


@app.route('/api/foods/meta/prices')
def api_foods_prices():
    return jsonify({'success': True, 'price_ranges': food_catalog.price_ranges()})


# ===========================================================================================
# Voting sessions
# ===========================================================================================

@app.route('/api/votes/session', methods=['POST'])
@require_login
def api_votes_create_session():
    """Create a voting session.

    Request body (JSON):
        dishes: list of at least two unique dish names (defaults to the
                standard four when omitted)
    """
    data = request.get_json(silent=True) or {}
    dishes = data.get('dishes', foodspin.DEFAULT_DISHES)
    if not isinstance(dishes, list) or not all(isinstance(d, str) for d in dishes):
        return jsonify({'error': 'dishes must be a list of names'}), 400

    with db_session() as db:
        try:
            session_id = vote_session_service.create_session(db, current_username(), dishes)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
        view = vote_session_service.get_view(db, current_username(), session_id)
    server_logger.info('Voting session %s created by %s', session_id, current_username())
    return jsonify({'message': 'Voting session created', **view}), 201


@app.route('/api/votes/session/<session_id>')
@require_login
def api_votes_get_session(session_id: str):
    with db_session() as db:
        view = vote_session_service.get_view(db, current_username(), session_id)
    return jsonify(view)


@app.route('/api/votes/session/<session_id>', methods=['DELETE'])
@require_login
def api_votes_close_session(session_id: str):
    """Close a voting session; it stops accepting votes and is cleaned up later."""
    with db_session() as db:
        closed = vote_session_service.close_session(db, current_username(), session_id)
    if not closed:
        return jsonify({'error': f"Voting session '{session_id}' not found"}), 404
    server_logger.info('Voting session %s closed by %s', session_id, current_username())
    return jsonify({'success': True, 'session_id': session_id})


@app.route('/api/votes/add/<session_id>/<path:dish_name>', methods=['POST'])
@require_login
def api_votes_add(session_id: str, dish_name: str):
    dish_name = dish_name.strip()
    with db_session() as db:
        tally = vote_session_service.atomic_increment(db, current_username(), session_id, dish_name)
    return jsonify({
        'success': True,
        'dish_name': dish_name,
        'new_vote_count': tally.get(dish_name).votes,
        **_tally_payload(session_id, tally),
    })


@app.route('/api/votes/remove/<session_id>/<path:dish_name>', methods=['POST'])
@require_login
def api_votes_remove(session_id: str, dish_name: str):
    """Remove one vote; a dish already at zero is left as it is."""
    dish_name = dish_name.strip()
    with db_session() as db:
        tally, changed = vote_session_service.atomic_decrement(
            db, current_username(), session_id, dish_name)
    return jsonify({
        'success': True,
        'changed': changed,
        'dish_name': dish_name,
        'new_vote_count': tally.get(dish_name).votes,
        **_tally_payload(session_id, tally),
    })


@app.route('/api/votes/session/<session_id>/dishes', methods=['POST'])
@require_login
def api_votes_add_dish(session_id: str):
    data = request.get_json(silent=True) or {}
    name = data.get('name')
    if not isinstance(name, str):
        return jsonify({'error': 'Dish name is required'}), 400

    with db_session() as db:
        try:
            tally = vote_session_service.add_candidate(db, current_username(), session_id, name)
        except ValueError as e:
            return jsonify({'error': str(e)}), 400
    return jsonify({'success': True, **_tally_payload(session_id, tally)}), 201


@app.route('/api/votes/session/<session_id>/dishes/<path:dish_name>', methods=['DELETE'])
@require_login
def api_votes_remove_dish(session_id: str, dish_name: str):
    with db_session() as db:
        tally = vote_session_service.remove_candidate(db, current_username(), session_id, dish_name)
    return jsonify({'success': True, **_tally_payload(session_id, tally)})


@app.route('/api/votes/session/<session_id>/reset', methods=['POST'])
@require_login
def api_votes_reset(session_id: str):
    with db_session() as db:
        tally = vote_session_service.reset_votes(db, current_username(), session_id)
    return jsonify({'success': True, **_tally_payload(session_id, tally)})


@app.route('/api/votes/session/<session_id>/odds')
@require_login
def api_votes_odds(session_id: str):
    """Preview each dish's chance of winning without spinning."""
    with db_session() as db:
        tally = vote_session_service.load_tally(db, current_username(), session_id)
    distribution = foodspin.compute_distribution(tally)
    return jsonify({
        'session_id': session_id,
        'distribution': [{'name': n, 'probability': p} for n, p in distribution.items()],
        'leaders': [c.name for c in tally.leaders()] if tally.total_votes() else [],
    })


# ===========================================================================================
# Wheel
# ===========================================================================================

@app.route('/api/wheel/spin/<session_id>', methods=['POST'])
@require_login
def api_wheel_spin(session_id: str):
    """Spin the wheel for a voting session and record the result.

    Request body (JSON, optional):
        cuisineType:  cuisine of the dishes, stored with the winner
        spinDuration: animation length in milliseconds (default 5000)
    """
    data = request.get_json(silent=True) or {}
    try:
        spin_duration = int(data.get('spinDuration') or 5000)
    except (TypeError, ValueError):
        return jsonify({'error': 'spinDuration must be a number'}), 400

    username = current_username()
    with db_session() as db:
        tally = vote_session_service.load_tally(db, username, session_id)
        outcome = foodspin.spin(tally, spin_random)
        entry = history_service.record_spin(
            db, username, outcome, tally,
            session_id=session_id,
            cuisine_type=data.get('cuisineType'),
            spin_duration=spin_duration,
        )
        history_id = entry.id if entry is not None else None
    if history_id is None:
        server_logger.warning('Spin for %s in session %s was not recorded', username, session_id)
    server_logger.info('Spin by %s in session %s -> %s', username, session_id, outcome.winner_name)
    return jsonify({
        'success': True,
        'history_id': history_id,
        **outcome.to_dict(),
        **_tally_payload(session_id, tally),
    })


@app.route('/api/wheel/history', methods=['POST'])
@require_login
def api_wheel_history_save():
    """Save a spin result computed by the client."""
    data = request.get_json(silent=True) or {}
    with db_session() as db:
        entry, message = history_service.record_client_result(db, current_username(), data)
        if entry is None:
            status = 500 if message == 'Failed to save history' else 400
            return jsonify({'error': message}), status
        payload = entry.to_dict()
    return jsonify({'message': message, 'history_entry': payload}), 201


@app.route('/api/wheel/history')
@require_login
def api_wheel_history():
    try:
        page = int(request.args.get('page', 1))
        limit = int(request.args.get('limit', 20))
    except ValueError:
        return jsonify({'error': 'page and limit must be integers'}), 400
    with db_session() as db:
        result = history_service.get_page(db, current_username(), page=page, limit=limit)
    return jsonify(result)


@app.route('/api/wheel/history/stats')
@require_login
def api_wheel_history_stats():
    with db_session() as db:
        stats = history_service.get_stats(db, current_username())
    return jsonify(stats)


@app.route('/api/wheel/history/<int:history_id>/favorite', methods=['POST'])
@require_login
def api_wheel_history_favorite(history_id: int):
    """Save a spin's winner to favorites."""
    with db_session() as db:
        favorite, message = favorites_service.add_from_history(db, current_username(), history_id)
        if favorite is None:
            status = 404 if message == 'History entry not found' else 400
            return jsonify({'error': message}), status
        payload = favorite.to_dict()
    return jsonify({'message': message, 'favorite': payload}), 201


# ===========================================================================================
# Favorites
# ===========================================================================================

@app.route('/api/favorites', methods=['POST'])
@require_login
def api_favorites_add():
    data = request.get_json(silent=True) or {}
    with db_session() as db:
        favorite, message = favorites_service.add(db, current_username(), data)
        if favorite is None:
            return jsonify({'error': message}), 400
        payload = favorite.to_dict()
    server_logger.info('Favorite added for %s: %s', current_username(), payload['dish_name'])
    return jsonify({'message': message, 'favorite': payload}), 201


@app.route('/api/favorites')
@require_login
def api_favorites_list():
    from_wheel: Optional[bool] = None
    if request.args.get('fromWheel') is not None:
        from_wheel = request.args.get('fromWheel') == 'true'
    with db_session() as db:
        favorites = favorites_service.get_all(
            db, current_username(),
            cuisine_type=request.args.get('cuisineType'),
            from_wheel=from_wheel,
            sort_by=request.args.get('sortBy', 'addedAt'),
            order=request.args.get('order', 'desc'),
        )
    return jsonify({'favorites': favorites})


@app.route('/api/favorites/<int:favorite_id>', methods=['DELETE'])
@require_login
def api_favorites_remove(favorite_id: int):
    with db_session() as db:
        removed = favorites_service.remove(db, current_username(), favorite_id)
    if not removed:
        return jsonify({'error': 'Favorite not found'}), 404
    return jsonify({'message': 'Removed from favorites successfully'})


# ===========================================================================================
# Misc
# ===========================================================================================

@app.route('/api/test')
def api_test():
    return jsonify({
        'message': 'FoodSpin backend is running!',
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'endpoints': {
            'auth': '/api/auth (register, login, logout, current, change-password)',
            'foods': '/api/foods (catalog, random pick)',
            'votes': '/api/votes (voting sessions)',
            'wheel': '/api/wheel (spin, history)',
            'favorites': '/api/favorites (CRUD operations)',
            'docs': '/api/openapi.json',
        },
    })


@app.route('/api/openapi.json')
def api_openapi_spec():
    """Serve the OpenAPI 3.0 specification as JSON."""
    from openapi_spec import build_spec
    server_url = request.url_root.rstrip('/')
    return jsonify(build_spec(server_url=server_url))


# ===========================================================================================
# Background cleanup
# ===========================================================================================

class VoteDataCleanupScheduler:
    """Background job that purges expired voting sessions and spin history."""

    def __init__(self, interval_hours: float = 6.0):
        self.interval_hours = interval_hours
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.last_run: Optional[datetime] = None
        self.last_counts: Dict[str, int] = {}
        self.lock = threading.Lock()
        self._stop_event = threading.Event()

    def run_once(self) -> Dict[str, int]:
        """Run one cleanup pass and return the deletion counts."""
        with db_session() as db:
            counts = database.cleanup_expired_data(db)
        with self.lock:
            self.last_run = datetime.now(timezone.utc)
            self.last_counts = counts
        return counts

    def run(self):
        """Background task that runs periodically"""
        while self.running:
            try:
                self.run_once()
            except Exception as e:
                server_logger.error(f'Error in cleanup scheduler: {e}')
            if self._stop_event.wait(self.interval_hours * 3600):
                break

    def start(self):
        """Start the background cleanup scheduler"""
        if self.running:
            return
        self.running = True
        self._stop_event.clear()
        self.thread = threading.Thread(target=self.run, daemon=True)
        self.thread.start()
        server_logger.info('Cleanup scheduler started (every %.1fh)', self.interval_hours)

    def stop(self):
        """Stop the background cleanup scheduler"""
        self.running = False
        self._stop_event.set()
        if self.thread:
            self.thread.join(timeout=5)
        server_logger.info('Cleanup scheduler stopped')


cleanup_scheduler = VoteDataCleanupScheduler(config['cleanup_interval_hours'])


def main():
    """Main entry point for the server"""
    parser = argparse.ArgumentParser(description='FoodSpin API server')
    parser.add_argument('--host', default=config['host'], help='Interface to bind')
    parser.add_argument('--port', type=int, default=config['port'], help='Port to listen on')
    parser.add_argument('--no-cleanup', action='store_true',
                        help='Do not start the background cleanup job')
    args = parser.parse_args()

    if not ensure_db_available():
        server_logger.warning('Starting without a database; most routes will return 503')

    if not args.no_cleanup:
        cleanup_scheduler.start()

    server_logger.info('FoodSpin server starting on http://%s:%d', args.host, args.port)
    try:
        app.run(host=args.host, port=args.port, debug=False)
    finally:
        cleanup_scheduler.stop()


if __name__ == "__main__":
    main()
