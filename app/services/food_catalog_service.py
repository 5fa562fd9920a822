"""Business logic for the built-in restaurant catalog."""
import random
from typing import Dict, List, Optional, Tuple

SAMPLE_FOODS: List[Dict] = [
    {"id": 1, "name": "Pizza Palace",    "cuisine": "Italian",  "rating": 4.5, "price_range": "$$",
     "description": "Authentic Italian pizza with fresh ingredients",  "location": "Downtown",     "is_active": True},
    {"id": 2, "name": "Burger Joint",    "cuisine": "American", "rating": 4.2, "price_range": "$",
     "description": "Juicy burgers with homemade buns",                "location": "Food Court",   "is_active": True},
    {"id": 3, "name": "Sushi House",     "cuisine": "Japanese", "rating": 4.8, "price_range": "$$$",
     "description": "Fresh sushi and sashimi daily",                   "location": "Midtown",      "is_active": True},
    {"id": 4, "name": "Taco Fiesta",     "cuisine": "Mexican",  "rating": 4.3, "price_range": "$",
     "description": "Authentic Mexican tacos and burritos",            "location": "Street Food",  "is_active": True},
    {"id": 5, "name": "Curry Corner",    "cuisine": "Indian",   "rating": 4.6, "price_range": "$$",
     "description": "Spicy and flavorful Indian curries",              "location": "Little India", "is_active": True},
    {"id": 6, "name": "Pasta Paradise",  "cuisine": "Italian",  "rating": 4.4, "price_range": "$$",
     "description": "Handmade pasta with traditional sauces",          "location": "Downtown",     "is_active": True},
    {"id": 7, "name": "BBQ Barn",        "cuisine": "American", "rating": 4.7, "price_range": "$$$",
     "description": "Slow-cooked BBQ with smoky flavors",              "location": "Suburbs",      "is_active": True},
    {"id": 8, "name": "Dim Sum Delight", "cuisine": "Chinese",  "rating": 4.5, "price_range": "$$",
     "description": "Traditional dim sum and Chinese delicacies",      "location": "Chinatown",    "is_active": True},
]

BUDGET_PRICE_RANGES = {
    'low': '$',
    'medium': '$$',
    'high': '$$$',
}


class FoodCatalogService:
    """Read-only restaurant catalog with filtering and a uniform random pick.

    The catalog is held in memory; pass a different list to the
    constructor to serve another data set.
    """

    def __init__(self, foods: Optional[List[Dict]] = None) -> None:
        self._foods = list(foods if foods is not None else SAMPLE_FOODS)

    def _active(self) -> List[Dict]:
        return [f for f in self._foods if f.get('is_active', True)]

    def list_foods(self, cuisine: Optional[str] = None, price_range: Optional[str] = None,
                   search: Optional[str] = None) -> List[Dict]:
        """Return active foods matching every given filter.

        Args:
            cuisine:     Exact cuisine, case-insensitive; ``'all'`` disables it.
            price_range: Exact price range such as ``'$$'``; ``'all'`` disables it.
            search:      Case-insensitive substring of the name or description.
        """
        foods = self._active()
        if cuisine and cuisine != 'all':
            foods = [f for f in foods if f['cuisine'].lower() == cuisine.lower()]
        if price_range and price_range != 'all':
            foods = [f for f in foods if f['price_range'] == price_range]
        if search:
            needle = search.lower()
            foods = [f for f in foods
                     if needle in f['name'].lower() or needle in f['description'].lower()]
        return foods

    def get_food(self, food_id: int) -> Optional[Dict]:
        for food in self._foods:
            if food['id'] == food_id:
                return food
        return None

    def pick_random(self, preferences: Optional[Dict] = None, rng=None) -> Tuple[Optional[Dict], int]:
        """Pick one active food uniformly at random.

        Args:
            preferences: Optional dict with ``cuisines`` (list of names) and
                         ``budget`` (``low``, ``medium`` or ``high``).
            rng:         Random source with ``choice()``; defaults to :mod:`random`.

        Returns:
            ``(food, options)`` where *options* is how many foods were
            eligible; *food* is ``None`` when nothing matched.
        """
        foods = self._active()
        preferences = preferences or {}
        cuisines = [c.lower() for c in preferences.get('cuisines') or []]
        if cuisines:
            foods = [f for f in foods if f['cuisine'].lower() in cuisines]
        budget = preferences.get('budget')
        if budget:
            foods = [f for f in foods if f['price_range'] == BUDGET_PRICE_RANGES.get(budget)]
        if not foods:
            return None, 0
        return (rng or random).choice(foods), len(foods)

    def cuisines(self) -> List[str]:
        return sorted({f['cuisine'] for f in self._foods})

    def price_ranges(self) -> List[str]:
        return sorted({f['price_range'] for f in self._foods})
