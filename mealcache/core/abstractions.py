"""
Abstractions for the remote recipe source, the persistent store, and the
upstream response cache. Enables component swapping and testability via
dependency injection.
"""

from datetime import datetime
from typing import Any, List, Mapping, Optional, Protocol, Sequence

from mealcache.models import (
    BatchWriteReport,
    CacheEntry,
    RecipeDetail,
    RecipeSummary,
    SearchFilters,
    UserFavorite,
    ViewRecord,
)


class RemoteRecipeSource(Protocol):
    """Abstract interface for the upstream recipe API (e.g. Spoonacular).

    Failures are raised as RemoteSourceError subclasses, never returned as
    empty results.
    """

    async def search(
        self, query: str, filters: Optional[SearchFilters] = None
    ) -> List[RecipeSummary]:
        """Search recipes by free-text query."""
        ...

    async def search_by_ingredients(
        self, ingredients: Sequence[str], number: int = 10
    ) -> List[RecipeSummary]:
        """Find recipes that use the given ingredients."""
        ...

    async def get_detail(self, recipe_id: int) -> RecipeDetail:
        """Fetch full recipe detail."""
        ...

    async def autocomplete_ingredient(self, prefix: str, number: int = 10) -> List[str]:
        """Suggest ingredient names for a prefix."""
        ...

    async def random_recipes(self, number: int = 10) -> List[RecipeSummary]:
        ...

    async def similar_recipes(self, recipe_id: int, number: int = 5) -> List[RecipeSummary]:
        ...


class RecipeStore(Protocol):
    """Abstract interface for the recipe document store.

    Writes are merge-writes: only supplied fields change.
    """

    async def get(self, recipe_id: int) -> Optional[CacheEntry]:
        ...

    async def put(self, recipe_id: int, fields: Mapping[str, Any]) -> None:
        """Merge-write one entry. Raises StoreWriteError."""
        ...

    async def put_batch(self, documents: Sequence[Mapping[str, Any]]) -> BatchWriteReport:
        """Merge-write many entries in independently committed chunks."""
        ...

    async def exists(self, recipe_id: int) -> bool:
        ...

    async def query(self, keyword: Optional[str], limit: int = 20) -> List[CacheEntry]:
        """Keyword match on title/summary, or a random sample when keyword is empty."""
        ...

    async def list_page(self, limit: int = 20, after_id: Optional[int] = None) -> List[CacheEntry]:
        ...

    async def count(self) -> int:
        ...

    async def count_with_details(self) -> int:
        ...

    async def ids_missing_details(self, limit: int = 10) -> List[int]:
        ...

    async def delete_older_than(self, cutoff: datetime) -> int:
        """Delete summary-only entries cached before cutoff. Returns count deleted."""
        ...


class UserActivityStore(Protocol):
    """Abstract interface for per-user favorites and view history."""

    async def add_favorite(self, favorite: UserFavorite) -> None:
        ...

    async def remove_favorite(self, user_id: str, recipe_id: int) -> bool:
        ...

    async def is_favorite(self, user_id: str, recipe_id: int) -> bool:
        ...

    async def list_favorites(self, user_id: str) -> List[UserFavorite]:
        ...

    async def record_view(self, user_id: str, recipe_id: int, viewed_at: datetime) -> ViewRecord:
        ...

    async def recently_viewed(self, user_id: str, limit: int = 20) -> List[ViewRecord]:
        ...


class ResponseCache(Protocol):
    """Abstract interface for caching raw upstream list responses (e.g. Redis)."""

    def is_available(self) -> bool:
        """True if cache is configured."""
        ...

    async def get_results(self, namespace: str, key: str) -> Optional[List[Any]]:
        """Get cached results. Returns None on miss."""
        ...

    async def set_results(self, namespace: str, key: str, results: List[Any]) -> None:
        ...
