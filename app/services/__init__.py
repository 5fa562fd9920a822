"""Services package: expose all concrete services from one import."""
from .vote_session_service import VoteSessionService
from .history_service import HistoryService
from .favorites_service import FavoritesService
from .user_service import UserService
from .food_catalog_service import FoodCatalogService

__all__ = [
    'VoteSessionService',
    'HistoryService',
    'FavoritesService',
    'UserService',
    'FoodCatalogService',
]
