"""Business logic for persisted voting sessions."""
from typing import Dict, List, Tuple

from foodspin import VoteTally, MIN_CANDIDATES, MinimumCandidatesError, SessionNotFoundError


class VoteSessionService:
    """Backs a shared :class:`~foodspin.VoteTally` with the database,
    delegating storage to the ``database`` module's helper functions.

    Every operation is keyed by the caller's username and an explicit
    *session_id*; nothing is remembered between calls.  Vote changes are
    single conditional updates in the database, so concurrent voters on the
    same session never overwrite each other.

    All methods accept a *db* SQLAlchemy session as the first argument so
    that callers (Flask route handlers) control the session lifecycle.
    Lookups of missing or expired sessions raise
    :class:`~foodspin.SessionNotFoundError`.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``create_vote_session``, ``load_tally``,
                ``increment_dish_vote``, ``decrement_dish_vote``,
                ``add_session_dish``, ``remove_session_dish``,
                ``reset_session_votes``, ``close_vote_session`` and
                ``get_active_session``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_session(self, db, username: str, dish_names: List[str]) -> str:
        """Start a new voting session with *dish_names* at zero votes.

        Args:
            db:         SQLAlchemy session.
            username:   Owner of the session.
            dish_names: Ordered, unique dish names (2 to 12 of them).

        Returns:
            The new session's public id.

        Raises:
            ValueError: A dish name is blank.
            DuplicateCandidateError: A dish name repeats.
            CapacityExceededError: More than twelve dishes.
            MinimumCandidatesError: Fewer than two dishes.
        """
        tally = VoteTally(dish_names)
        if len(tally) < MIN_CANDIDATES:
            raise MinimumCandidatesError(f"At least {MIN_CANDIDATES} dishes required")
        vote_session = self._db.create_vote_session(db, username, tally.names())
        return vote_session.session_id

    def load_tally(self, db, username: str, session_id: str) -> VoteTally:
        """Return a consistent snapshot of the session's tally."""
        return self._db.load_tally(db, username, session_id)

    def get_view(self, db, username: str, session_id: str) -> Dict:
        """Return the session as an API-ready dict (dishes, totals, timestamps)."""
        vote_session = self._db.get_active_session(db, username, session_id)
        if vote_session is None:
            raise SessionNotFoundError(f"Voting session '{session_id}' not found")
        return vote_session.to_dict()

    def atomic_increment(self, db, username: str, session_id: str,
                         dish_name: str) -> VoteTally:
        """Add one vote to *dish_name* and return the updated tally."""
        return self._db.increment_dish_vote(db, username, session_id, dish_name)

    def atomic_decrement(self, db, username: str, session_id: str,
                         dish_name: str) -> Tuple[VoteTally, bool]:
        """Remove one vote from *dish_name*.

        Returns:
            ``(tally, changed)``; *changed* is ``False`` when the dish was
            already at zero and nothing happened.
        """
        return self._db.decrement_dish_vote(db, username, session_id, dish_name)

    def add_candidate(self, db, username: str, session_id: str,
                      dish_name: str) -> VoteTally:
        return self._db.add_session_dish(db, username, session_id, dish_name)

    def remove_candidate(self, db, username: str, session_id: str,
                         dish_name: str) -> VoteTally:
        return self._db.remove_session_dish(db, username, session_id, dish_name)

    def reset_votes(self, db, username: str, session_id: str) -> VoteTally:
        return self._db.reset_session_votes(db, username, session_id)

    def close_session(self, db, username: str, session_id: str) -> bool:
        return self._db.close_vote_session(db, username, session_id)
