#!/usr/bin/env python3
"""
Database models and configuration for FoodSpin.
Handles user accounts, voting sessions, wheel history and favorites.
"""

import os
import json
from sqlalchemy import (create_engine, Column, Integer, String, Boolean, DateTime, Text,
                        Float, ForeignKey, UniqueConstraint, CheckConstraint, update, delete,
                        insert, select, literal, func)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, relationship, aliased
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
import logging
import uuid

from foodspin import (VoteTally, MIN_CANDIDATES, MAX_CANDIDATES, SessionNotFoundError,
                      CandidateNotFoundError, DuplicateCandidateError, CapacityExceededError,
                      MinimumCandidatesError)

logger = logging.getLogger('foodspin.database')

# Database URL - PostgreSQL in production, SQLite file by default
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite:///foodspin.db')

# Retention windows
SESSION_TTL = timedelta(hours=24)
HISTORY_TTL = timedelta(days=5)

PRICE_RANGES = ('$', '$$', '$$$', '$$$$')

Base = declarative_base()


def _utcnow() -> datetime:
    """Naive UTC timestamp, matching what the columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def configure(database_url: str, **engine_kwargs):
    """(Re)bind the module-level engine and session factory to *database_url*.

    Extra keyword arguments go to :func:`sqlalchemy.create_engine`.
    """
    global engine, SessionLocal, DATABASE_URL
    DATABASE_URL = database_url
    try:
        engine = create_engine(database_url, echo=False, **engine_kwargs)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    except Exception as e:
        logger.warning(f"Database not available ({database_url}): {e}")
        engine = None
        SessionLocal = None
    return engine


engine = None
SessionLocal = None
configure(DATABASE_URL)


class User(Base):
    """User account and spin statistics."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    username = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)  # werkzeug password hash
    email = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    total_spins = Column(Integer, default=0)
    total_favorites = Column(Integer, default=0)
    last_spin_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    vote_sessions = relationship("VoteSession", back_populates="user", cascade="all, delete-orphan")
    favorites = relationship("UserFavorite", back_populates="user", cascade="all, delete-orphan")

    def stats(self) -> Dict:
        return {
            'total_spins': self.total_spins or 0,
            'total_favorites': self.total_favorites or 0,
            'last_spin_at': self.last_spin_at.isoformat() if self.last_spin_at else None,
        }


class VoteSession(Base):
    """A voting session: the dishes on one user's wheel and their votes."""
    __tablename__ = "vote_sessions"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(64), unique=True, index=True, default=lambda: uuid.uuid4().hex)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    total_votes = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)
    expires_at = Column(DateTime, default=lambda: _utcnow() + SESSION_TTL, index=True)

    # Relationships
    user = relationship("User", back_populates="vote_sessions")
    dishes = relationship("SessionDish", back_populates="vote_session",
                          order_by="SessionDish.position", cascade="all, delete-orphan")

    def to_dict(self) -> Dict:
        return {
            'session_id': self.session_id,
            'dishes': [d.to_dict() for d in self.dishes],
            'total_votes': self.total_votes or 0,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
        }


class SessionDish(Base):
    """One dish on a voting session's wheel."""
    __tablename__ = "session_dishes"
    __table_args__ = (
        UniqueConstraint('vote_session_id', 'name', name='uq_session_dish_name'),
        CheckConstraint('votes >= 0', name='ck_session_dish_votes'),
    )

    id = Column(Integer, primary_key=True)
    vote_session_id = Column(Integer, ForeignKey("vote_sessions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String(255), nullable=False)
    votes = Column(Integer, nullable=False, default=0)
    last_voted_at = Column(DateTime, default=_utcnow)

    # Relationships
    vote_session = relationship("VoteSession", back_populates="dishes")

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'votes': self.votes,
            'last_voted_at': self.last_voted_at.isoformat() if self.last_voted_at else None,
        }


class WheelHistory(Base):
    """Immutable record of one spin."""
    __tablename__ = "wheel_history"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String(64), nullable=True)
    dishes = Column(Text)  # JSON array of {name, votes, probability, cuisine_type}
    winner_name = Column(String(255), nullable=False, index=True)
    winner_votes = Column(Integer, default=0)
    winner_sector_index = Column(Integer, nullable=True)
    winner_cuisine_type = Column(String(100), nullable=True)
    spin_duration = Column(Integer, default=3000)  # milliseconds
    device_type = Column(String(20), default='desktop')  # 'mobile', 'desktop', 'tablet'
    marked_as_favorite = Column(Boolean, default=False)
    repeat_spin = Column(Boolean, default=False)
    previous_winner = Column(String(255), nullable=True)
    spun_at = Column(DateTime, default=_utcnow, index=True)
    expires_at = Column(DateTime, default=lambda: _utcnow() + HISTORY_TTL, index=True)

    def to_dict(self) -> Dict:
        try:
            dishes = json.loads(self.dishes) if self.dishes else []
        except json.JSONDecodeError:
            dishes = []
        return {
            'id': self.id,
            'session_id': self.session_id,
            'dishes': dishes,
            'winner': {
                'name': self.winner_name,
                'votes': self.winner_votes or 0,
                'sector_index': self.winner_sector_index,
                'cuisine_type': self.winner_cuisine_type,
            },
            'spin_duration': self.spin_duration,
            'metadata': {
                'device_type': self.device_type,
                'marked_as_favorite': bool(self.marked_as_favorite),
            },
            'analytics': {
                'repeat_spin': bool(self.repeat_spin),
                'previous_winner': self.previous_winner,
            },
            'spun_at': self.spun_at.isoformat() if self.spun_at else None,
        }


class UserFavorite(Base):
    """A dish the user saved to their favorites."""
    __tablename__ = "user_favorites"
    __table_args__ = (
        UniqueConstraint('user_id', 'dish_name', name='uq_user_favorite_dish'),
    )

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    dish_name = Column(String(255), nullable=False)
    cuisine_type = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    rating = Column(Float, nullable=True)  # 1-5
    price_range = Column(String(4), nullable=True)  # '$' .. '$$$$'
    from_wheel_result = Column(Boolean, default=False)
    wheel_history_id = Column(Integer, ForeignKey("wheel_history.id"), nullable=True)
    is_active = Column(Boolean, default=True)
    added_at = Column(DateTime, default=_utcnow)

    # Relationships
    user = relationship("User", back_populates="favorites")
    wheel_history = relationship("WheelHistory")

    def to_dict(self) -> Dict:
        data = {
            'id': self.id,
            'dish_name': self.dish_name,
            'cuisine_type': self.cuisine_type,
            'description': self.description,
            'rating': self.rating,
            'price_range': self.price_range,
            'from_wheel_result': bool(self.from_wheel_result),
            'wheel_history_id': self.wheel_history_id,
            'added_at': self.added_at.isoformat() if self.added_at else None,
        }
        if self.wheel_history is not None:
            data['wheel_history'] = {
                'spun_at': self.wheel_history.spun_at.isoformat() if self.wheel_history.spun_at else None,
                'winner': self.wheel_history.winner_name,
            }
        return data


def get_db():
    """Get database session."""
    if SessionLocal:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()
    else:
        yield None


def init_db():
    """Initialize database tables."""
    if engine:
        try:
            Base.metadata.create_all(bind=engine)
            logger.info("Database tables initialized successfully")
            return True
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            return False
    return False


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def get_user_by_username(db, username: str):
    """Get user from database."""
    if not db:
        return None
    try:
        return db.query(User).filter(User.username == username).first()
    except Exception as e:
        logger.error(f"Error getting user: {e}")
        return None


def create_user(db, username: str, password_hash: str, email: str = '', display_name: str = ''):
    """Create a new user.

    Returns:
        The new :class:`User`, or ``None`` if the username is taken or the
        insert failed.
    """
    if not db:
        return None
    try:
        user = User(
            username=username,
            password=password_hash,
            email=email or None,
            display_name=display_name or None,
        )
        db.add(user)
        db.commit()
        return user
    except IntegrityError:
        db.rollback()
        logger.info(f"Username already exists: {username}")
        return None
    except Exception as e:
        logger.error(f"Error creating user: {e}")
        db.rollback()
        return None


def update_user_password(db, username: str, password_hash: str) -> bool:
    if not db:
        return False
    try:
        user = db.query(User).filter(User.username == username).first()
        if not user:
            return False
        user.password = password_hash
        db.commit()
        return True
    except Exception as e:
        logger.error(f"Error updating password: {e}")
        db.rollback()
        return False


# ---------------------------------------------------------------------------
# Voting sessions
# ---------------------------------------------------------------------------
# The vote helpers raise domain errors instead of returning sentinels so that
# the HTTP layer can tell "session missing" from "dish missing".

def create_vote_session(db, username: str, dish_names: List[str]) -> VoteSession:
    """Create a voting session seeded with *dish_names* (all at zero votes).

    Names are expected to be validated already (see
    :class:`~app.services.vote_session_service.VoteSessionService`).

    Raises:
        SessionNotFoundError: If *username* does not exist.
    """
    user = db.query(User).filter(User.username == username).first()
    if not user:
        raise SessionNotFoundError(f"User '{username}' not found")
    vote_session = VoteSession(user_id=user.id)
    for position, name in enumerate(dish_names):
        vote_session.dishes.append(SessionDish(name=name, position=position, votes=0))
    db.add(vote_session)
    db.commit()
    logger.info(f"Created voting session {vote_session.session_id} for {username} "
                f"with {len(dish_names)} dishes")
    return vote_session


def get_active_session(db, username: str, session_id: str, now: Optional[datetime] = None,
                       lock: bool = False):
    """Return the caller's live (active, unexpired) session or ``None``.

    With *lock* the session row is selected ``FOR UPDATE`` so that dish
    changes on the same session run one after another.
    """
    if not db:
        return None
    now = now or _utcnow()
    query = (
        db.query(VoteSession)
        .join(User, VoteSession.user_id == User.id)
        .filter(
            User.username == username,
            VoteSession.session_id == session_id,
            VoteSession.is_active.is_(True),
            VoteSession.expires_at > now,
        )
    )
    if lock:
        query = query.with_for_update(of=VoteSession)
    return query.first()


def _require_session(db, username: str, session_id: str, lock: bool = False) -> VoteSession:
    vote_session = get_active_session(db, username, session_id, lock=lock)
    if vote_session is None:
        raise SessionNotFoundError(f"Voting session '{session_id}' not found")
    return vote_session


def _load_dishes(db, vote_session_pk: int) -> List[SessionDish]:
    return (
        db.query(SessionDish)
        .filter(SessionDish.vote_session_id == vote_session_pk)
        .order_by(SessionDish.position)
        .populate_existing()
        .all()
    )


def _dish_count(vote_session_pk: int):
    """Scalar subquery counting the dishes currently stored for a session."""
    other = aliased(SessionDish)
    return (
        select(func.count(other.id))
        .where(other.vote_session_id == vote_session_pk)
        .scalar_subquery()
    )


def _dish_exists(db, vote_session_pk: int, dish_name: str) -> bool:
    return db.query(SessionDish.id).filter(
        SessionDish.vote_session_id == vote_session_pk,
        SessionDish.name == dish_name,
    ).first() is not None


def load_tally(db, username: str, session_id: str) -> VoteTally:
    """Load a consistent snapshot of a session's dishes as a :class:`VoteTally`.

    Raises:
        SessionNotFoundError: If the session is missing, expired, closed or
            owned by someone else.
    """
    vote_session = _require_session(db, username, session_id)
    return VoteTally.from_records(d.to_dict() for d in _load_dishes(db, vote_session.id))


def _change_vote(db, username: str, session_id: str, dish_name: str, delta: int) -> bool:
    """Apply ``votes += delta`` to one dish with a single conditional UPDATE.

    Returns:
        ``True`` if a row was updated.  For a decrement, ``False`` means the
        dish had zero votes.

    Raises:
        SessionNotFoundError: Unknown session.
        CandidateNotFoundError: Unknown dish.
    """
    dish_name = (dish_name or '').strip()
    vote_session = _require_session(db, username, session_id)
    conditions = [
        SessionDish.vote_session_id == vote_session.id,
        SessionDish.name == dish_name,
    ]
    if delta < 0:
        conditions.append(SessionDish.votes > 0)
    try:
        result = db.execute(
            update(SessionDish)
            .where(*conditions)
            .values(votes=SessionDish.votes + delta, last_voted_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.execute(
                update(VoteSession)
                .where(VoteSession.id == vote_session.id)
                .values(total_votes=VoteSession.total_votes + delta, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if result.rowcount:
        return True
    if not _dish_exists(db, vote_session.id, dish_name):
        raise CandidateNotFoundError(f"Dish '{dish_name}' not found")
    return False


def increment_dish_vote(db, username: str, session_id: str, dish_name: str) -> VoteTally:
    """Atomically add one vote to *dish_name* and return the updated tally."""
    _change_vote(db, username, session_id, dish_name, 1)
    return load_tally(db, username, session_id)


def decrement_dish_vote(db, username: str, session_id: str, dish_name: str) -> Tuple[VoteTally, bool]:
    """Atomically remove one vote from *dish_name* unless it is already at zero.

    Returns:
        ``(tally, changed)`` where *changed* is ``False`` for the zero-vote no-op.
    """
    changed = _change_vote(db, username, session_id, dish_name, -1)
    return load_tally(db, username, session_id), changed


def add_session_dish(db, username: str, session_id: str, dish_name: str) -> VoteTally:
    """Append a dish to a session after checking the tally's rules.

    The row is written with ``INSERT ... SELECT`` guarded by the stored dish
    count, so two requests racing on an eleven-dish wheel cannot both land.
    """
    vote_session = _require_session(db, username, session_id, lock=True)
    tally = VoteTally.from_records(d.to_dict() for d in _load_dishes(db, vote_session.id))
    candidate = tally.add_candidate(dish_name)

    other = aliased(SessionDish)
    next_position = (
        select(func.coalesce(func.max(other.position), -1) + 1)
        .where(other.vote_session_id == vote_session.id)
        .scalar_subquery()
    )
    row = select(
        literal(vote_session.id, Integer()),
        next_position,
        literal(candidate.name, String()),
        literal(0, Integer()),
        literal(_utcnow(), DateTime()),
    ).where(_dish_count(vote_session.id) < MAX_CANDIDATES)
    try:
        result = db.execute(
            insert(SessionDish.__table__).from_select(
                ['vote_session_id', 'position', 'name', 'votes', 'last_voted_at'], row)
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateCandidateError(f"Dish '{candidate.name}' is already on the wheel")
    except Exception:
        db.rollback()
        raise
    if not result.rowcount:
        raise CapacityExceededError(f"Maximum {MAX_CANDIDATES} dishes reached")
    return load_tally(db, username, session_id)


def remove_session_dish(db, username: str, session_id: str, dish_name: str) -> VoteTally:
    """Remove a dish (and its votes) from a session.

    The ``DELETE`` only matches while more than :data:`~foodspin.MIN_CANDIDATES`
    dishes are stored, and the session total is recomputed from the rows that
    remain.
    """
    dish_name = (dish_name or '').strip()
    vote_session = _require_session(db, username, session_id, lock=True)
    tally = VoteTally.from_records(d.to_dict() for d in _load_dishes(db, vote_session.id))
    tally.remove_candidate(dish_name)

    remaining_votes = (
        select(func.coalesce(func.sum(SessionDish.votes), 0))
        .where(SessionDish.vote_session_id == vote_session.id)
        .scalar_subquery()
    )
    try:
        result = db.execute(
            delete(SessionDish)
            .where(
                SessionDish.vote_session_id == vote_session.id,
                SessionDish.name == dish_name,
                _dish_count(vote_session.id) > MIN_CANDIDATES,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            db.execute(
                update(VoteSession)
                .where(VoteSession.id == vote_session.id)
                .values(total_votes=remaining_votes, updated_at=_utcnow())
                .execution_options(synchronize_session=False)
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not result.rowcount:
        if not _dish_exists(db, vote_session.id, dish_name):
            raise CandidateNotFoundError(f"Dish '{dish_name}' not found")
        raise MinimumCandidatesError(f"Minimum {MIN_CANDIDATES} dishes required")
    return load_tally(db, username, session_id)


def reset_session_votes(db, username: str, session_id: str) -> VoteTally:
    """Set every dish in a session back to zero votes."""
    vote_session = _require_session(db, username, session_id)
    try:
        db.execute(
            update(SessionDish)
            .where(SessionDish.vote_session_id == vote_session.id)
            .values(votes=0)
            .execution_options(synchronize_session=False)
        )
        db.execute(
            update(VoteSession)
            .where(VoteSession.id == vote_session.id)
            .values(total_votes=0, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return load_tally(db, username, session_id)


def close_vote_session(db, username: str, session_id: str) -> bool:
    """Mark a session inactive.  Returns ``False`` if it was not found."""
    vote_session = get_active_session(db, username, session_id)
    if vote_session is None:
        return False
    vote_session.is_active = False
    db.commit()
    return True


# ---------------------------------------------------------------------------
# Wheel history
# ---------------------------------------------------------------------------

def add_wheel_history(db, username: str, dishes: List[Dict], winner: Dict,
                      session_id: Optional[str] = None, spin_duration: int = 3000,
                      device_type: str = 'desktop'):
    """Record a spin and bump the user's spin statistics.

    Args:
        db:            Database session
        username:      Owner of the record
        dishes:        List of dicts with ``name``, ``votes`` and optionally
                       ``probability`` / ``cuisine_type``
        winner:        Dict with ``name`` and optionally ``votes``,
                       ``sector_index``, ``cuisine_type``
        session_id:    Voting session the spin came from, if any
        spin_duration: Animation length in milliseconds

    Returns:
        The new :class:`WheelHistory` row, or ``None`` on failure.
    """
    if not db:
        return None
    try:
        user = db.query(User).filter(User.username == username).first()
        if not user:
            logger.error(f"User {username} not found")
            return None

        previous = (
            db.query(WheelHistory)
            .filter(WheelHistory.user_id == user.id)
            .order_by(WheelHistory.spun_at.desc(), WheelHistory.id.desc())
            .first()
        )
        now = _utcnow()
        entry = WheelHistory(
            user_id=user.id,
            session_id=session_id,
            dishes=json.dumps(dishes),
            winner_name=winner['name'],
            winner_votes=winner.get('votes', 0),
            winner_sector_index=winner.get('sector_index'),
            winner_cuisine_type=winner.get('cuisine_type'),
            spin_duration=spin_duration,
            device_type=device_type,
            previous_winner=previous.winner_name if previous else None,
            repeat_spin=bool(previous and previous.winner_name == winner['name']),
            spun_at=now,
            expires_at=now + HISTORY_TTL,
        )
        db.add(entry)
        user.total_spins = (user.total_spins or 0) + 1
        user.last_spin_at = now
        db.commit()
        return entry
    except Exception as e:
        logger.error(f"Error saving wheel history: {e}")
        db.rollback()
        return None


def get_wheel_history(db, username: str, page: int = 1, limit: int = 20,
                      now: Optional[datetime] = None) -> Tuple[List[WheelHistory], int]:
    """Return one page of unexpired history, newest first, plus the total count."""
    if not db:
        return [], 0
    now = now or _utcnow()
    try:
        query = (
            db.query(WheelHistory)
            .join(User, WheelHistory.user_id == User.id)
            .filter(User.username == username, WheelHistory.expires_at > now)
        )
        total = query.count()
        items = (
            query.order_by(WheelHistory.spun_at.desc(), WheelHistory.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return items, total
    except Exception as e:
        logger.error(f"Error getting wheel history: {e}")
        return [], 0


def get_wheel_history_entry(db, username: str, history_id: int, now: Optional[datetime] = None):
    if not db:
        return None
    now = now or _utcnow()
    return (
        db.query(WheelHistory)
        .join(User, WheelHistory.user_id == User.id)
        .filter(User.username == username, WheelHistory.id == history_id,
                WheelHistory.expires_at > now)
        .first()
    )


def get_cuisine_preferences(db, username: str, now: Optional[datetime] = None) -> List[Dict]:
    """Count wins per winner cuisine type for a user, most frequent first."""
    if not db:
        return []
    now = now or _utcnow()
    try:
        rows = (
            db.query(WheelHistory.winner_cuisine_type,
                     func.count(WheelHistory.id),
                     func.max(WheelHistory.spun_at))
            .join(User, WheelHistory.user_id == User.id)
            .filter(User.username == username, WheelHistory.expires_at > now)
            .group_by(WheelHistory.winner_cuisine_type)
            .order_by(func.count(WheelHistory.id).desc())
            .all()
        )
        return [{
            'cuisine_type': cuisine or 'Unknown',
            'count': count,
            'last_spun': last.isoformat() if last else None,
        } for cuisine, count, last in rows]
    except Exception as e:
        logger.error(f"Error getting cuisine preferences: {e}")
        return []


def get_popular_dishes(db, username: str, limit: int = 10,
                       now: Optional[datetime] = None) -> List[Dict]:
    """Most frequent winners for a user."""
    if not db:
        return []
    now = now or _utcnow()
    try:
        rows = (
            db.query(WheelHistory.winner_name, func.count(WheelHistory.id))
            .join(User, WheelHistory.user_id == User.id)
            .filter(User.username == username, WheelHistory.expires_at > now)
            .group_by(WheelHistory.winner_name)
            .order_by(func.count(WheelHistory.id).desc(), WheelHistory.winner_name)
            .limit(limit)
            .all()
        )
        return [{'name': name, 'count': count} for name, count in rows]
    except Exception as e:
        logger.error(f"Error getting popular dishes: {e}")
        return []


# ---------------------------------------------------------------------------
# Favorites
# ---------------------------------------------------------------------------

def get_favorite_by_dish(db, username: str, dish_name: str):
    if not db:
        return None
    return (
        db.query(UserFavorite)
        .join(User, UserFavorite.user_id == User.id)
        .filter(User.username == username, UserFavorite.dish_name == dish_name)
        .first()
    )


def add_favorite(db, username: str, dish_name: str, cuisine_type: Optional[str] = None,
                 description: Optional[str] = None, rating: Optional[float] = None,
                 price_range: Optional[str] = None, from_wheel_result: bool = False,
                 wheel_history_id: Optional[int] = None):
    """Add a favorite dish.

    Returns:
        The new :class:`UserFavorite`, or ``None`` when the user is unknown
        or the dish is already a favorite.
    """
    if not db:
        return None
    try:
        user = db.query(User).filter(User.username == username).first()
        if not user:
            return None
        favorite = UserFavorite(
            user_id=user.id,
            dish_name=dish_name,
            cuisine_type=cuisine_type,
            description=description,
            rating=rating,
            price_range=price_range,
            from_wheel_result=from_wheel_result,
            wheel_history_id=wheel_history_id,
        )
        db.add(favorite)
        user.total_favorites = (user.total_favorites or 0) + 1
        if wheel_history_id is not None:
            db.query(WheelHistory).filter(
                WheelHistory.id == wheel_history_id,
                WheelHistory.user_id == user.id,
            ).update({WheelHistory.marked_as_favorite: True}, synchronize_session=False)
        db.commit()
        return favorite
    except IntegrityError:
        db.rollback()
        logger.info(f"Favorite already exists for {username}: {dish_name}")
        return None
    except Exception as e:
        logger.error(f"Error adding favorite: {e}")
        db.rollback()
        return None


_FAVORITE_SORT_COLUMNS = {
    'added_at': UserFavorite.added_at,
    'dish_name': UserFavorite.dish_name,
    'rating': UserFavorite.rating,
}


def get_favorites(db, username: str, cuisine_type: Optional[str] = None,
                  from_wheel: Optional[bool] = None, sort_by: str = 'added_at',
                  order: str = 'desc') -> List[UserFavorite]:
    """List a user's active favorites.

    Args:
        cuisine_type: Case-insensitive substring filter on the cuisine type.
        from_wheel:   Only favorites that did (``True``) or did not
                      (``False``) come from a wheel result.
        sort_by:      ``added_at``, ``dish_name`` or ``rating``.
        order:        ``asc`` or ``desc``.
    """
    if not db:
        return []
    try:
        query = (
            db.query(UserFavorite)
            .join(User, UserFavorite.user_id == User.id)
            .filter(User.username == username, UserFavorite.is_active.is_(True))
        )
        if cuisine_type:
            query = query.filter(UserFavorite.cuisine_type.ilike(f"%{cuisine_type}%"))
        if from_wheel is not None:
            query = query.filter(UserFavorite.from_wheel_result.is_(from_wheel))
        column = _FAVORITE_SORT_COLUMNS.get(sort_by, UserFavorite.added_at)
        query = query.order_by(column.asc() if order == 'asc' else column.desc(),
                               UserFavorite.id.asc() if order == 'asc' else UserFavorite.id.desc())
        return query.all()
    except Exception as e:
        logger.error(f"Error getting favorites: {e}")
        return []


def remove_favorite(db, username: str, favorite_id: int) -> bool:
    """Delete one of the user's favorites.  Returns ``False`` if not found."""
    if not db:
        return False
    try:
        user = db.query(User).filter(User.username == username).first()
        if not user:
            return False
        favorite = db.query(UserFavorite).filter(
            UserFavorite.id == favorite_id,
            UserFavorite.user_id == user.id,
        ).first()
        if not favorite:
            return False
        db.delete(favorite)
        user.total_favorites = max(0, (user.total_favorites or 0) - 1)
        db.commit()
        return True
    except Exception as e:
        logger.error(f"Error removing favorite: {e}")
        db.rollback()
        return False


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

def cleanup_expired_data(db, now: Optional[datetime] = None) -> Dict[str, int]:
    """Delete expired voting sessions and spin history.

    Sessions go once they pass ``expires_at`` or once they have been inactive
    for a day; history goes once it passes ``expires_at``.

    Returns:
        Dict with ``sessions``, ``dishes`` and ``history`` deletion counts.
    """
    counts = {'sessions': 0, 'dishes': 0, 'history': 0}
    if not db:
        return counts
    now = now or _utcnow()
    try:
        stale_ids = [row.id for row in db.query(VoteSession.id).filter(
            (VoteSession.expires_at <= now)
            | ((VoteSession.is_active.is_(False)) & (VoteSession.updated_at < now - timedelta(days=1)))
        ).all()]
        if stale_ids:
            counts['dishes'] = db.query(SessionDish).filter(
                SessionDish.vote_session_id.in_(stale_ids)
            ).delete(synchronize_session=False)
            counts['sessions'] = db.query(VoteSession).filter(
                VoteSession.id.in_(stale_ids)
            ).delete(synchronize_session=False)

        expired_history = [row.id for row in db.query(WheelHistory.id).filter(
            WheelHistory.expires_at <= now
        ).all()]
        if expired_history:
            db.query(UserFavorite).filter(
                UserFavorite.wheel_history_id.in_(expired_history)
            ).update({UserFavorite.wheel_history_id: None}, synchronize_session=False)
            counts['history'] = db.query(WheelHistory).filter(
                WheelHistory.id.in_(expired_history)
            ).delete(synchronize_session=False)

        db.commit()
        logger.info("Cleanup removed %(sessions)d sessions, %(dishes)d dishes, "
                    "%(history)d history records", counts)
        return counts
    except Exception as e:
        logger.error(f"Error cleaning up expired data: {e}")
        db.rollback()
        return {'sessions': 0, 'dishes': 0, 'history': 0}
