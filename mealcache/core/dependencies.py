"""
Service construction and FastAPI dependency providers.

Services are built once by build_services() and kept on app.state; route
handlers reach them through Depends(get_cache_service), etc. Tests override
these providers with app.dependency_overrides.
"""

from dataclasses import dataclass
from typing import Any, Optional

from fastapi import Header, Request

from mealcache.adapters.spoonacular import SpoonacularAdapter
from mealcache.config import Settings
from mealcache.services.activity import UserActivityService
from mealcache.services.cache import create_response_cache
from mealcache.services.maintenance import CacheMaintenanceScheduler
from mealcache.services.recipe_cache import RecipeCacheService
from mealcache.services.storage import SQLiteRecipeStore


@dataclass
class Services:
    settings: Settings
    store: Any
    source: SpoonacularAdapter
    response_cache: Any
    cache_service: RecipeCacheService
    activity: UserActivityService
    scheduler: CacheMaintenanceScheduler


def build_store(settings: Settings) -> Any:
    """Build the configured RecipeStore (also a UserActivityStore)."""
    if settings.recipe_store == "firestore":
        # Imported lazily so SQLite deployments never load the GCP client
        from mealcache.adapters.firestore import FirestoreRecipeStore

        return FirestoreRecipeStore(
            project=settings.gcp_project,
            collection_name=settings.recipes_collection,
            max_batch_size=settings.store_batch_size,
        )
    return SQLiteRecipeStore(settings.sqlite_path, max_batch_size=settings.store_batch_size)


def build_services(settings: Settings, store: Optional[Any] = None) -> Services:
    store = store if store is not None else build_store(settings)
    response_cache = create_response_cache(settings.redis_url)
    source = SpoonacularAdapter(
        api_key=settings.spoonacular_api_key,
        base_url=settings.spoonacular_base_url,
        timeout=settings.upstream_timeout_seconds,
        cache=response_cache,
    )
    cache_service = RecipeCacheService(
        source,
        store,
        max_concurrent=settings.max_concurrent_fetches,
        batch_delay_seconds=settings.background_batch_delay_seconds,
    )
    scheduler = CacheMaintenanceScheduler(
        cache_service,
        interval_seconds=settings.maintenance_interval_seconds,
        fill_limit=settings.maintenance_fill_limit,
        stale_after=settings.stale_after,
    )
    return Services(
        settings=settings,
        store=store,
        source=source,
        response_cache=response_cache,
        cache_service=cache_service,
        activity=UserActivityService(store, store),
        scheduler=scheduler,
    )


# --- Providers ---


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_cache_service(request: Request) -> RecipeCacheService:
    """Provide RecipeCacheService. Used as Depends(get_cache_service)."""
    return get_services(request).cache_service


def get_activity_service(request: Request) -> UserActivityService:
    return get_services(request).activity


def get_scheduler(request: Request) -> CacheMaintenanceScheduler:
    return get_services(request).scheduler


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> Optional[str]:
    """Current user as asserted by the auth layer in front of this service."""
    if x_user_id is None or not x_user_id.strip():
        return None
    return x_user_id.strip()
