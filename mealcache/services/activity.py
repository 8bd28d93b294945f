"""
Per-user favorites and view history.
The user id comes from the auth layer; this service only validates that one is present.
"""

import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from mealcache.core.abstractions import RecipeStore, UserActivityStore
from mealcache.core.keys import canonical_recipe_id
from mealcache.errors import InvalidKeyError, StoreWriteError
from mealcache.models import RecipeSummary, UserFavorite, ViewRecord

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 20


def _require_user(user_id: Optional[str]) -> str:
    if not user_id or not str(user_id).strip():
        raise InvalidKeyError(user_id, "User id required")
    return str(user_id).strip()


class UserActivityService:
    def __init__(self, activity_store: UserActivityStore, recipe_store: Optional[RecipeStore] = None):
        self._activity = activity_store
        self._recipes = recipe_store

    async def add_favorite(self, user_id: str, recipe: RecipeSummary) -> UserFavorite:
        """Favorite a recipe and make sure its summary is cached."""
        user_id = _require_user(user_id)
        favorite = UserFavorite(
            user_id=user_id,
            recipe_id=recipe.id,
            favorited_at=datetime.now(timezone.utc),
            title=recipe.title,
            image=recipe.image,
        )
        await self._activity.add_favorite(favorite)
        if self._recipes is not None:
            try:
                await self._recipes.put(recipe.id, recipe.summary_fields())
            except StoreWriteError as e:
                logger.warning("Favorited recipe %s but could not cache it: %s", recipe.id, e)
        logger.info("User %s favorited recipe %s", user_id, recipe.id)
        return favorite

    async def remove_favorite(self, user_id: str, recipe_id: Any) -> bool:
        return await self._activity.remove_favorite(
            _require_user(user_id), canonical_recipe_id(recipe_id)
        )

    async def is_favorite(self, user_id: str, recipe_id: Any) -> bool:
        return await self._activity.is_favorite(
            _require_user(user_id), canonical_recipe_id(recipe_id)
        )

    async def list_favorites(self, user_id: str) -> List[UserFavorite]:
        return await self._activity.list_favorites(_require_user(user_id))

    async def record_view(self, user_id: str, recipe_id: Any) -> ViewRecord:
        return await self._activity.record_view(
            _require_user(user_id), canonical_recipe_id(recipe_id), datetime.now(timezone.utc)
        )

    async def recently_viewed(self, user_id: str, limit: int = DEFAULT_RECENT_LIMIT) -> List[ViewRecord]:
        return await self._activity.recently_viewed(_require_user(user_id), limit)
