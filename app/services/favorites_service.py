"""Business logic for the database-backed favorites list."""
from typing import Dict, List, Optional, Tuple

PRICE_RANGES = ('$', '$$', '$$$', '$$$$')

# API sort keys -> column names understood by ``database.get_favorites``
SORT_KEYS = {
    'addedAt': 'added_at',
    'added_at': 'added_at',
    'dishName': 'dish_name',
    'dish_name': 'dish_name',
    'rating': 'rating',
}


class FavoritesService:
    """Manages a user's favorite dishes, delegating persistence to the
    ``database`` module's helper functions.

    A dish can be a favorite only once per user.  Favorites saved from a
    spin remember the history record they came from and flag that record
    as marked.
    """

    def __init__(self, db_module) -> None:
        self._db = db_module

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(data: Dict) -> Optional[str]:
        """Return an error message for invalid favorite fields, else ``None``."""
        dish_name = data.get('dishName')
        if not isinstance(dish_name, str) or not dish_name.strip():
            return 'Dish name is required'
        rating = data.get('rating')
        if rating is not None:
            try:
                rating = float(rating)
            except (TypeError, ValueError):
                return 'Rating must be a number'
            if not 1 <= rating <= 5:
                return 'Rating must be between 1 and 5'
        price_range = data.get('priceRange')
        if price_range is not None and price_range not in PRICE_RANGES:
            return f"Price range must be one of {', '.join(PRICE_RANGES)}"
        return None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def add(self, db, username: str, data: Dict) -> Tuple[Optional[object], str]:
        """Add a favorite from an API request body.

        Args:
            data: Dict with ``dishName`` and optional ``cuisineType``,
                  ``description``, ``rating`` (1-5), ``priceRange``,
                  ``fromWheelResult`` and ``wheelHistoryId``.

        Returns:
            ``(favorite, message)``; *favorite* is ``None`` on failure.
        """
        error = self._validate(data)
        if error:
            return None, error
        dish_name = data['dishName'].strip()
        if self._db.get_favorite_by_dish(db, username, dish_name):
            return None, 'Dish already in favorites'
        rating = data.get('rating')
        favorite = self._db.add_favorite(
            db, username, dish_name,
            cuisine_type=data.get('cuisineType'),
            description=data.get('description'),
            rating=float(rating) if rating is not None else None,
            price_range=data.get('priceRange'),
            from_wheel_result=bool(data.get('fromWheelResult', False)),
            wheel_history_id=data.get('wheelHistoryId'),
        )
        if favorite is None:
            return None, 'Failed to add to favorites'
        return favorite, 'Added to favorites successfully'

    def add_from_history(self, db, username: str, history_id: int) -> Tuple[Optional[object], str]:
        """Save the winner of history record *history_id* as a favorite."""
        entry = self._db.get_wheel_history_entry(db, username, history_id)
        if entry is None:
            return None, 'History entry not found'
        return self.add(db, username, {
            'dishName': entry.winner_name,
            'cuisineType': entry.winner_cuisine_type,
            'fromWheelResult': True,
            'wheelHistoryId': entry.id,
        })

    def get_all(self, db, username: str, cuisine_type: Optional[str] = None,
                from_wheel: Optional[bool] = None, sort_by: str = 'addedAt',
                order: str = 'desc') -> List[Dict]:
        """Return the user's favorites as dicts, filtered and sorted."""
        favorites = self._db.get_favorites(
            db, username,
            cuisine_type=cuisine_type,
            from_wheel=from_wheel,
            sort_by=SORT_KEYS.get(sort_by, 'added_at'),
            order='asc' if order == 'asc' else 'desc',
        )
        return [f.to_dict() for f in favorites]

    def remove(self, db, username: str, favorite_id: int) -> bool:
        """Remove one favorite.  Returns ``False`` if it was not found."""
        return self._db.remove_favorite(db, username, favorite_id)
