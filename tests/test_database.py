#!/usr/bin/env python3
"""
Tests for the database helpers: voting sessions with atomic vote updates,
wheel history, favorites and the retention cleanup.

Run with:
    python -m pytest tests/test_database.py
"""
import os
import shutil
import sys
import tempfile
import unittest
from datetime import timedelta
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from foodspin import (SessionNotFoundError, CandidateNotFoundError, DuplicateCandidateError,
                      CapacityExceededError, MinimumCandidatesError)
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker


# ---------------------------------------------------------------------------
# In-memory DB helper
# ---------------------------------------------------------------------------

def _make_session():
    engine = create_engine('sqlite:///:memory:', connect_args={"check_same_thread": False})
    database.Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)()


def _create_user(db, username='alice'):
    user = database.User(username=username, password='hash')
    db.add(user)
    db.commit()
    return db.query(database.User).filter_by(username=username).first()


class DatabaseTestCase(unittest.TestCase):

    def setUp(self):
        self.db = _make_session()
        self.user = _create_user(self.db)

    def tearDown(self):
        self.db.close()

    def _new_session(self, dishes=('Pizza', 'Burger', 'Sushi'), username='alice'):
        return database.create_vote_session(self.db, username, list(dishes)).session_id


# ===========================================================================
# Users
# ===========================================================================

class TestUsers(DatabaseTestCase):

    def test_none_db(self):
        self.assertIsNone(database.get_user_by_username(None, 'alice'))
        self.assertIsNone(database.create_user(None, 'bob', 'x'))

    def test_create_and_get(self):
        database.create_user(self.db, 'bob', 'hash', email='bob@example.com')
        user = database.get_user_by_username(self.db, 'bob')
        self.assertEqual(user.email, 'bob@example.com')

    def test_duplicate_username_returns_none(self):
        self.assertIsNone(database.create_user(self.db, 'alice', 'hash'))

    def test_update_password(self):
        self.assertTrue(database.update_user_password(self.db, 'alice', 'new-hash'))
        self.assertEqual(database.get_user_by_username(self.db, 'alice').password, 'new-hash')
        self.assertFalse(database.update_user_password(self.db, 'nobody', 'x'))


# ===========================================================================
# Voting sessions
# ===========================================================================

class TestVoteSessions(DatabaseTestCase):

    def test_create_seeds_dishes_at_zero(self):
        sid = self._new_session()
        tally = database.load_tally(self.db, 'alice', sid)
        self.assertEqual(tally.to_list(), [{'name': 'Pizza', 'votes': 0},
                                           {'name': 'Burger', 'votes': 0},
                                           {'name': 'Sushi', 'votes': 0}])

    def test_create_for_unknown_user(self):
        with self.assertRaises(SessionNotFoundError):
            database.create_vote_session(self.db, 'nobody', ['A', 'B'])

    def test_session_ids_are_unique(self):
        self.assertNotEqual(self._new_session(), self._new_session())

    def test_other_users_cannot_see_session(self):
        _create_user(self.db, 'bob')
        sid = self._new_session()
        self.assertIsNone(database.get_active_session(self.db, 'bob', sid))
        with self.assertRaises(SessionNotFoundError):
            database.load_tally(self.db, 'bob', sid)

    def test_expired_session_is_invisible(self):
        sid = self._new_session()
        vote_session = database.get_active_session(self.db, 'alice', sid)
        vote_session.expires_at = database._utcnow() - timedelta(minutes=1)
        self.db.commit()
        with self.assertRaises(SessionNotFoundError):
            database.increment_dish_vote(self.db, 'alice', sid, 'Pizza')

    def test_closed_session_is_invisible(self):
        sid = self._new_session()
        self.assertTrue(database.close_vote_session(self.db, 'alice', sid))
        self.assertIsNone(database.get_active_session(self.db, 'alice', sid))
        self.assertFalse(database.close_vote_session(self.db, 'alice', sid))

    def test_increment_updates_dish_and_total(self):
        sid = self._new_session()
        database.increment_dish_vote(self.db, 'alice', sid, 'Pizza')
        tally = database.increment_dish_vote(self.db, 'alice', sid, 'Pizza')
        self.assertEqual(tally.get('Pizza').votes, 2)
        self.assertEqual(database.get_active_session(self.db, 'alice', sid).total_votes, 2)

    def test_vote_ignores_surrounding_whitespace(self):
        sid = self._new_session()
        tally = database.increment_dish_vote(self.db, 'alice', sid, ' Pizza ')
        self.assertEqual(tally.get('Pizza').votes, 1)
        tally, changed = database.decrement_dish_vote(self.db, 'alice', sid, 'Pizza ')
        self.assertTrue(changed)
        self.assertEqual(tally.get('Pizza').votes, 0)

    def test_increment_unknown_dish(self):
        sid = self._new_session()
        with self.assertRaises(CandidateNotFoundError):
            database.increment_dish_vote(self.db, 'alice', sid, 'Ramen')

    def test_decrement(self):
        sid = self._new_session()
        database.increment_dish_vote(self.db, 'alice', sid, 'Sushi')
        tally, changed = database.decrement_dish_vote(self.db, 'alice', sid, 'Sushi')
        self.assertTrue(changed)
        self.assertEqual(tally.get('Sushi').votes, 0)

    def test_decrement_at_zero_is_noop(self):
        sid = self._new_session()
        tally, changed = database.decrement_dish_vote(self.db, 'alice', sid, 'Sushi')
        self.assertFalse(changed)
        self.assertEqual(tally.get('Sushi').votes, 0)
        self.assertEqual(database.get_active_session(self.db, 'alice', sid).total_votes, 0)

    def test_decrement_unknown_dish(self):
        sid = self._new_session()
        with self.assertRaises(CandidateNotFoundError):
            database.decrement_dish_vote(self.db, 'alice', sid, 'Ramen')

    def test_add_dish(self):
        sid = self._new_session()
        tally = database.add_session_dish(self.db, 'alice', sid, ' Tacos ')
        self.assertEqual(tally.names(), ['Pizza', 'Burger', 'Sushi', 'Tacos'])

    def test_add_duplicate_dish(self):
        sid = self._new_session()
        with self.assertRaises(DuplicateCandidateError):
            database.add_session_dish(self.db, 'alice', sid, 'Pizza')

    def test_add_dish_to_full_wheel(self):
        sid = self._new_session([f'Dish {i}' for i in range(12)])
        with self.assertRaises(CapacityExceededError):
            database.add_session_dish(self.db, 'alice', sid, 'Extra')

    def test_remove_dish_drops_its_votes(self):
        sid = self._new_session()
        database.increment_dish_vote(self.db, 'alice', sid, 'Burger')
        database.increment_dish_vote(self.db, 'alice', sid, 'Pizza')
        tally = database.remove_session_dish(self.db, 'alice', sid, 'Burger')
        self.assertEqual(tally.names(), ['Pizza', 'Sushi'])
        self.assertEqual(database.get_active_session(self.db, 'alice', sid).total_votes, 1)

    def test_remove_dish_with_padded_name(self):
        sid = self._new_session()
        tally = database.remove_session_dish(self.db, 'alice', sid, ' Sushi')
        self.assertEqual(tally.names(), ['Pizza', 'Burger'])

    def test_remove_unknown_dish(self):
        sid = self._new_session()
        with self.assertRaises(CandidateNotFoundError):
            database.remove_session_dish(self.db, 'alice', sid, 'Ramen')

    def test_remove_below_minimum(self):
        sid = self._new_session(['A', 'B'])
        with self.assertRaises(MinimumCandidatesError):
            database.remove_session_dish(self.db, 'alice', sid, 'A')

    def test_reset(self):
        sid = self._new_session()
        database.increment_dish_vote(self.db, 'alice', sid, 'Pizza')
        tally = database.reset_session_votes(self.db, 'alice', sid)
        self.assertEqual(tally.total_votes(), 0)
        self.assertEqual(database.get_active_session(self.db, 'alice', sid).total_votes, 0)


class TestConcurrentVotes(unittest.TestCase):
    """Two independent connections voting on the same session."""

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        engine = create_engine(f"sqlite:///{os.path.join(self.tmp, 'votes.db')}")
        database.Base.metadata.create_all(engine)
        self.engine = engine
        factory = sessionmaker(bind=engine)
        self.db_a = factory()
        self.db_b = factory()
        _create_user(self.db_a)
        self.sid = database.create_vote_session(self.db_a, 'alice', ['Pizza', 'Sushi']).session_id

    def tearDown(self):
        self.db_a.close()
        self.db_b.close()
        self.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def test_no_lost_updates(self):
        database.load_tally(self.db_b, 'alice', self.sid)
        database.increment_dish_vote(self.db_a, 'alice', self.sid, 'Sushi')
        tally = database.increment_dish_vote(self.db_b, 'alice', self.sid, 'Sushi')
        self.assertEqual(tally.get('Sushi').votes, 2)
        self.assertEqual(database.load_tally(self.db_a, 'alice', self.sid).total_votes(), 2)

    def test_decrement_race_stops_at_zero(self):
        database.increment_dish_vote(self.db_a, 'alice', self.sid, 'Pizza')
        _, first = database.decrement_dish_vote(self.db_a, 'alice', self.sid, 'Pizza')
        tally, second = database.decrement_dish_vote(self.db_b, 'alice', self.sid, 'Pizza')
        self.assertTrue(first)
        self.assertFalse(second)
        self.assertEqual(tally.get('Pizza').votes, 0)


class TestConcurrentDishChanges(unittest.TestCase):
    """Two connections adding or removing dishes on the same session.

    The second request validates against the dish list it read before the
    first request committed, so only the guarded write can keep the wheel
    within 2..12 dishes.
    """

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        engine = create_engine(f"sqlite:///{os.path.join(self.tmp, 'dishes.db')}")
        database.Base.metadata.create_all(engine)
        self.engine = engine
        factory = sessionmaker(bind=engine)
        self.db_a = factory()
        self.db_b = factory()
        _create_user(self.db_a)

    def tearDown(self):
        self.db_a.close()
        self.db_b.close()
        self.engine.dispose()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def _stale_dishes(self, sid):
        vote_session = database.get_active_session(self.db_b, 'alice', sid)
        return database._load_dishes(self.db_b, vote_session.id)

    def test_racing_removes_keep_two_dishes(self):
        sid = database.create_vote_session(self.db_a, 'alice', ['Pizza', 'Sushi', 'Tacos']).session_id
        stale = self._stale_dishes(sid)
        database.remove_session_dish(self.db_a, 'alice', sid, 'Pizza')
        with patch.object(database, '_load_dishes', return_value=stale):
            with self.assertRaises(MinimumCandidatesError):
                database.remove_session_dish(self.db_b, 'alice', sid, 'Sushi')
        self.assertEqual(database.load_tally(self.db_a, 'alice', sid).names(), ['Sushi', 'Tacos'])

    def test_racing_adds_stop_at_twelve_dishes(self):
        dishes = [f'Dish {i}' for i in range(11)]
        sid = database.create_vote_session(self.db_a, 'alice', dishes).session_id
        stale = self._stale_dishes(sid)
        database.add_session_dish(self.db_a, 'alice', sid, 'Ramen')
        with patch.object(database, '_load_dishes', return_value=stale):
            with self.assertRaises(CapacityExceededError):
                database.add_session_dish(self.db_b, 'alice', sid, 'Curry')
        tally = database.load_tally(self.db_a, 'alice', sid)
        self.assertEqual(len(tally), 12)
        self.assertNotIn('Curry', tally)

    def test_remove_keeps_total_in_step_with_rows(self):
        sid = database.create_vote_session(self.db_a, 'alice', ['Pizza', 'Sushi', 'Tacos']).session_id
        database.increment_dish_vote(self.db_a, 'alice', sid, 'Pizza')
        database.increment_dish_vote(self.db_b, 'alice', sid, 'Sushi')
        database.remove_session_dish(self.db_b, 'alice', sid, 'Pizza')
        self.assertEqual(database.get_active_session(self.db_b, 'alice', sid).total_votes, 1)


# ===========================================================================
# Wheel history
# ===========================================================================

class TestWheelHistory(DatabaseTestCase):

    def _add(self, winner='Pizza', cuisine=None):
        return database.add_wheel_history(
            self.db, 'alice',
            [{'name': 'Pizza', 'votes': 1}, {'name': 'Sushi', 'votes': 0}],
            {'name': winner, 'votes': 1, 'sector_index': 0, 'cuisine_type': cuisine})

    def test_none_db(self):
        self.assertIsNone(database.add_wheel_history(None, 'alice', [], {'name': 'x'}))
        self.assertEqual(database.get_wheel_history(None, 'alice'), ([], 0))

    def test_unknown_user(self):
        self.assertIsNone(database.add_wheel_history(self.db, 'nobody', [], {'name': 'x'}))

    def test_add_updates_user_stats(self):
        self._add()
        user = database.get_user_by_username(self.db, 'alice')
        self.assertEqual(user.total_spins, 1)
        self.assertIsNotNone(user.last_spin_at)

    def test_repeat_spin_detected(self):
        self._add('Pizza')
        second = self._add('Pizza')
        third = self._add('Sushi')
        self.assertTrue(second.repeat_spin)
        self.assertEqual(second.previous_winner, 'Pizza')
        self.assertFalse(third.repeat_spin)

    def test_to_dict(self):
        data = self._add(cuisine='Italian').to_dict()
        self.assertEqual(data['winner']['name'], 'Pizza')
        self.assertEqual(data['winner']['cuisine_type'], 'Italian')
        self.assertEqual(len(data['dishes']), 2)
        self.assertFalse(data['metadata']['marked_as_favorite'])

    def test_paging_newest_first(self):
        for winner in ('A', 'B', 'C'):
            self._add(winner)
        items, total = database.get_wheel_history(self.db, 'alice', page=1, limit=2)
        self.assertEqual(total, 3)
        self.assertEqual([i.winner_name for i in items], ['C', 'B'])
        items, _ = database.get_wheel_history(self.db, 'alice', page=2, limit=2)
        self.assertEqual([i.winner_name for i in items], ['A'])

    def test_expired_history_hidden(self):
        entry = self._add()
        entry.expires_at = database._utcnow() - timedelta(seconds=1)
        self.db.commit()
        self.assertEqual(database.get_wheel_history(self.db, 'alice'), ([], 0))

    def test_expired_entry_not_found_by_id(self):
        entry = self._add()
        self.assertIsNotNone(database.get_wheel_history_entry(self.db, 'alice', entry.id))
        entry.expires_at = database._utcnow() - timedelta(seconds=1)
        self.db.commit()
        self.assertIsNone(database.get_wheel_history_entry(self.db, 'alice', entry.id))

    def test_expired_history_left_out_of_stats(self):
        self._add('Pizza', 'Italian')
        old = self._add('Sushi', 'Japanese')
        old.expires_at = database._utcnow() - timedelta(seconds=1)
        self.db.commit()
        prefs = database.get_cuisine_preferences(self.db, 'alice')
        self.assertEqual([p['cuisine_type'] for p in prefs], ['Italian'])
        popular = database.get_popular_dishes(self.db, 'alice')
        self.assertEqual(popular, [{'name': 'Pizza', 'count': 1}])

    def test_stats(self):
        self._add('Pizza', 'Italian')
        self._add('Pasta', 'Italian')
        self._add('Pizza', 'Italian')
        self._add('Sushi', 'Japanese')
        prefs = database.get_cuisine_preferences(self.db, 'alice')
        self.assertEqual((prefs[0]['cuisine_type'], prefs[0]['count']), ('Italian', 3))
        popular = database.get_popular_dishes(self.db, 'alice', limit=2)
        self.assertEqual(popular[0], {'name': 'Pizza', 'count': 2})
        self.assertEqual(len(popular), 2)


# ===========================================================================
# Favorites
# ===========================================================================

class TestFavorites(DatabaseTestCase):

    def test_add_and_list(self):
        database.add_favorite(self.db, 'alice', 'Pizza', cuisine_type='Italian', rating=4)
        database.add_favorite(self.db, 'alice', 'Ramen', cuisine_type='Japanese', rating=5)
        names = [f.dish_name for f in database.get_favorites(self.db, 'alice', sort_by='rating')]
        self.assertEqual(names, ['Ramen', 'Pizza'])
        self.assertEqual(database.get_user_by_username(self.db, 'alice').total_favorites, 2)

    def test_duplicate_returns_none(self):
        database.add_favorite(self.db, 'alice', 'Pizza')
        self.assertIsNone(database.add_favorite(self.db, 'alice', 'Pizza'))

    def test_filters(self):
        database.add_favorite(self.db, 'alice', 'Pizza', cuisine_type='Italian')
        database.add_favorite(self.db, 'alice', 'Sushi', cuisine_type='Japanese',
                              from_wheel_result=True)
        self.assertEqual([f.dish_name for f in database.get_favorites(
            self.db, 'alice', cuisine_type='ital')], ['Pizza'])
        self.assertEqual([f.dish_name for f in database.get_favorites(
            self.db, 'alice', from_wheel=True)], ['Sushi'])

    def test_favorite_from_history_marks_entry(self):
        entry = database.add_wheel_history(self.db, 'alice', [], {'name': 'Pizza'})
        database.add_favorite(self.db, 'alice', 'Pizza', from_wheel_result=True,
                              wheel_history_id=entry.id)
        self.db.refresh(entry)
        self.assertTrue(entry.marked_as_favorite)

    def test_remove(self):
        favorite = database.add_favorite(self.db, 'alice', 'Pizza')
        self.assertTrue(database.remove_favorite(self.db, 'alice', favorite.id))
        self.assertFalse(database.remove_favorite(self.db, 'alice', favorite.id))
        self.assertEqual(database.get_user_by_username(self.db, 'alice').total_favorites, 0)

    def test_cannot_remove_other_users_favorite(self):
        _create_user(self.db, 'bob')
        favorite = database.add_favorite(self.db, 'alice', 'Pizza')
        self.assertFalse(database.remove_favorite(self.db, 'bob', favorite.id))


# ===========================================================================
# Retention cleanup
# ===========================================================================

class TestCleanup(DatabaseTestCase):

    def test_none_db(self):
        self.assertEqual(database.cleanup_expired_data(None),
                         {'sessions': 0, 'dishes': 0, 'history': 0})

    def test_live_data_kept(self):
        self._new_session()
        database.add_wheel_history(self.db, 'alice', [], {'name': 'Pizza'})
        self.assertEqual(database.cleanup_expired_data(self.db),
                         {'sessions': 0, 'dishes': 0, 'history': 0})

    def test_expired_sessions_and_history_removed(self):
        self._new_session(['A', 'B'])
        entry = database.add_wheel_history(self.db, 'alice', [], {'name': 'A'})
        favorite = database.add_favorite(self.db, 'alice', 'A', wheel_history_id=entry.id)
        later = database._utcnow() + timedelta(days=6)

        counts = database.cleanup_expired_data(self.db, now=later)

        self.assertEqual(counts, {'sessions': 1, 'dishes': 2, 'history': 1})
        self.assertEqual(self.db.query(database.SessionDish).count(), 0)
        self.db.refresh(favorite)
        self.assertIsNone(favorite.wheel_history_id)

    def test_closed_sessions_removed_after_a_day(self):
        sid = self._new_session(['A', 'B'])
        database.close_vote_session(self.db, 'alice', sid)
        now = database._utcnow()
        self.assertEqual(database.cleanup_expired_data(self.db, now=now)['sessions'], 0)
        counts = database.cleanup_expired_data(self.db, now=now + timedelta(hours=25))
        self.assertEqual(counts['sessions'], 1)


if __name__ == '__main__':
    unittest.main()
