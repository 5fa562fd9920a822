"""Business logic for the wheel spin history."""
import math
from typing import Dict, List, Optional, Tuple

from foodspin import SelectionOutcome, VoteTally

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _count(value) -> int:
    """Parse a reported vote count; missing means zero."""
    count = int(value or 0)
    if count < 0:
        raise ValueError(f"negative vote count: {count}")
    return count


class HistoryService:
    """Records spins and pages through a user's spin history, delegating
    persistence to the ``database`` module's helper functions.

    History records are immutable once written; the only later change is
    the ``marked_as_favorite`` flag set when the winner is saved as a
    favorite.  Records expire five days after the spin.
    """

    def __init__(self, db_module) -> None:
        """
        Args:
            db_module: The imported ``database`` module (or any object that
                exposes ``add_wheel_history``, ``get_wheel_history``,
                ``get_cuisine_preferences`` and ``get_popular_dishes``).
        """
        self._db = db_module

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def record_spin(self, db, username: str, outcome: SelectionOutcome,
                    tally: VoteTally, session_id: Optional[str] = None,
                    cuisine_type: Optional[str] = None,
                    spin_duration: int = 5000):
        """Persist a server-side spin together with the tally it was drawn from.

        Returns:
            The new history row, or ``None`` on failure.
        """
        dishes = [
            {
                'name': c.name,
                'votes': c.votes,
                'probability': outcome.distribution.get(c.name, 0.0),
            }
            for c in tally
        ]
        winner = {
            'name': outcome.winner_name,
            'votes': outcome.winner_votes,
            'sector_index': outcome.sector_index,
            'cuisine_type': cuisine_type,
        }
        return self._db.add_wheel_history(db, username, dishes, winner,
                                          session_id=session_id,
                                          spin_duration=spin_duration)

    def record_client_result(self, db, username: str, data: Dict) -> Tuple[Optional[object], str]:
        """Persist a spin result reported by the client.

        Args:
            data: Request body with ``dishes`` (list of dicts with ``name``),
                  ``winner`` (dict with ``name``) and optional
                  ``spinDuration`` / ``deviceType``.

        Returns:
            ``(entry, message)``; *entry* is ``None`` when validation or the
            insert failed and *message* says why.
        """
        dishes = data.get('dishes')
        if not dishes or not isinstance(dishes, list):
            return None, 'Dishes array is required'
        winner = data.get('winner')
        if not isinstance(winner, dict) or not winner.get('name'):
            return None, 'Winner information is required'
        if not all(isinstance(d, dict) and d.get('name') for d in dishes):
            return None, 'Every dish needs a name'

        try:
            clean_dishes = [{
                'name': d['name'],
                'votes': _count(d.get('votes')),
                'cuisine_type': d.get('cuisineType') or d.get('cuisine_type'),
            } for d in dishes]
            winner_votes = _count(winner.get('totalVotes') or winner.get('votes'))
        except (TypeError, ValueError):
            return None, 'Votes must be non-negative whole numbers'
        try:
            spin_duration = int(data.get('spinDuration') or 3000)
        except (TypeError, ValueError):
            return None, 'Spin duration must be a number'

        clean_winner = {
            'name': winner['name'],
            'votes': winner_votes,
            'sector_index': winner.get('sectorIndex', winner.get('sector_index')),
            'cuisine_type': winner.get('cuisineType') or winner.get('cuisine_type'),
        }
        device_type = data.get('deviceType', 'desktop')
        if device_type not in ('mobile', 'desktop', 'tablet'):
            device_type = 'desktop'
        entry = self._db.add_wheel_history(
            db, username, clean_dishes, clean_winner,
            session_id=data.get('sessionId'),
            spin_duration=spin_duration,
            device_type=device_type,
        )
        if entry is None:
            return None, 'Failed to save history'
        return entry, 'History saved successfully'

    def get_page(self, db, username: str, page: int = 1,
                 limit: int = DEFAULT_PAGE_SIZE) -> Dict:
        """Return one page of history plus pagination metadata."""
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        items, total = self._db.get_wheel_history(db, username, page=page, limit=limit)
        total_pages = math.ceil(total / limit) if total else 0
        return {
            'history': [item.to_dict() for item in items],
            'pagination': {
                'current_page': page,
                'total_pages': total_pages,
                'total_items': total,
                'has_next': page < total_pages,
                'has_prev': page > 1,
            },
        }

    def get_stats(self, db, username: str, limit: int = 10) -> Dict[str, List[Dict]]:
        return {
            'cuisine_preferences': self._db.get_cuisine_preferences(db, username),
            'popular_dishes': self._db.get_popular_dishes(db, username, limit=limit),
        }
