from typing import Any, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from mealcache.core.dependencies import (
    get_activity_service,
    get_cache_service,
    get_current_user_id,
    get_scheduler,
)
from mealcache.core.keys import canonical_recipe_id
from mealcache.errors import (
    InvalidKeyError,
    QuotaExceededError,
    RateLimitedError,
    RecipeCacheError,
    RecipeNotFoundError,
    StoreWriteError,
)
from mealcache.models import RecipeSummary, SearchFilters
from mealcache.services.activity import UserActivityService
from mealcache.services.maintenance import CacheMaintenanceScheduler
from mealcache.services.metrics import cache_ledger, current_request, start_request
from mealcache.services.recipe_cache import RecipeCacheService

router = APIRouter(prefix="/api")


def _http_error(error: RecipeCacheError) -> HTTPException:
    """Map a cache-layer error to the HTTP status callers act on."""
    if isinstance(error, InvalidKeyError):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, RecipeNotFoundError):
        return HTTPException(status_code=404, detail="Recipe not found")
    if isinstance(error, RateLimitedError):
        headers = None
        if error.retry_after is not None:
            headers = {"Retry-After": str(int(error.retry_after))}
        return HTTPException(
            status_code=429,
            detail={"code": "rate_limited", "message": str(error)},
            headers=headers,
        )
    if isinstance(error, QuotaExceededError):
        return HTTPException(
            status_code=503,
            detail={"code": "quota_exceeded", "message": str(error)},
        )
    if isinstance(error, StoreWriteError):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=502, detail={"code": "upstream_error", "message": str(error)})


def _require_user(user_id: Optional[str]) -> str:
    if user_id is None:
        raise HTTPException(status_code=401, detail="User id required")
    return user_id


def _summaries_to_response(recipes: List[RecipeSummary]) -> List[dict[str, Any]]:
    return [r.model_dump(mode="json") for r in recipes]


def _build_response(data: dict, include_metrics: bool = True) -> dict:
    """Build response dict, optionally including the request's cache accounting."""
    if include_metrics:
        ledger = current_request()
        if ledger is not None:
            cache_ledger.record_request(ledger)
            data = {**data, "_metrics": ledger.to_dict()}
    return data


# --- Recipes ---


@router.get("/recipes/search")
async def search_recipes(
    q: str = "",
    cuisine: Optional[str] = None,
    diet: Optional[str] = None,
    number: int = Query(default=10, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    """Search Spoonacular. Results are cached and their details fetched in the background."""
    start_request()
    filters = SearchFilters(cuisine=cuisine, diet=diet, number=number)
    try:
        recipes = await service.search(q, filters)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response({"recipes": _summaries_to_response(recipes)})


@router.get("/recipes/by-ingredients")
async def search_by_ingredients(
    ingredients: str = "",
    number: int = Query(default=10, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    """Find recipes using a comma-separated ingredient list."""
    start_request()
    names = [name.strip() for name in ingredients.split(",") if name.strip()]
    try:
        recipes = await service.search_by_ingredients(names, number)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response({"recipes": _summaries_to_response(recipes)})


@router.get("/recipes/random")
async def random_recipes(
    number: int = Query(default=10, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    start_request()
    try:
        recipes = await service.random_recipes(number)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response({"recipes": _summaries_to_response(recipes)})


@router.get("/recipes/category/{category}")
async def browse_category(
    category: str,
    limit: int = Query(default=20, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    """Recipes for a category; served from the cache when upstream is unavailable."""
    start_request()
    try:
        result = await service.browse_category(category, limit)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response(
        {"recipes": _summaries_to_response(result.recipes), "source": result.source}
    )


@router.get("/recipes/{recipe_id}/similar")
async def similar_recipes(
    recipe_id: str,
    number: int = Query(default=5, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    start_request()
    try:
        recipes = await service.similar_recipes(recipe_id, number)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response({"recipes": _summaries_to_response(recipes)})


@router.get("/recipes/{recipe_id}")
async def get_recipe(
    recipe_id: str,
    service: RecipeCacheService = Depends(get_cache_service),
):
    """Get full recipe details, from the cache when available."""
    start_request()
    try:
        lookup = await service.lookup_detail(recipe_id)
    except RecipeCacheError as e:
        raise _http_error(e)
    data = lookup.detail.model_dump(mode="json")
    data["_cache"] = {"hit": lookup.from_cache, "persisted": lookup.persisted}
    return _build_response(data)


@router.get("/ingredients/autocomplete")
async def autocomplete_ingredient(
    q: str = "",
    number: int = Query(default=10, ge=1, le=100),
    service: RecipeCacheService = Depends(get_cache_service),
):
    start_request()
    try:
        names = await service.autocomplete_ingredient(q, number)
    except RecipeCacheError as e:
        raise _http_error(e)
    return _build_response({"ingredients": names})


# --- Cache status ---


@router.get("/cache/stats")
async def cache_stats(service: RecipeCacheService = Depends(get_cache_service)):
    """How many cached recipes hold full details."""
    stats = await service.cache_stats()
    return stats.to_dict()


@router.get("/cache/background")
async def background_status(service: RecipeCacheService = Depends(get_cache_service)):
    last_run = service.last_run
    return {
        "pending_runs": service.background_pending,
        "last_run": last_run.to_dict() if last_run else None,
    }


@router.post("/cache/maintenance/run")
async def run_maintenance(scheduler: CacheMaintenanceScheduler = Depends(get_scheduler)):
    """Run one maintenance tick now. Skipped when a run is already in progress."""
    ran = await scheduler.tick()
    report = scheduler.last_report
    return {
        "ran": ran,
        "report": report.to_dict() if report and ran else None,
    }


# --- Favorites and views ---


@router.get("/users/me/favorites")
async def list_favorites(
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    favorites = await activity.list_favorites(_require_user(user_id))
    return {"favorites": [f.model_dump(mode="json") for f in favorites]}


@router.get("/users/me/favorites/{recipe_id}")
async def is_favorite(
    recipe_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    user_id = _require_user(user_id)
    try:
        recipe_key = canonical_recipe_id(recipe_id)
        favorite = await activity.is_favorite(user_id, recipe_key)
    except RecipeCacheError as e:
        raise _http_error(e)
    return {"recipe_id": recipe_key, "favorite": favorite}


@router.put("/users/me/favorites/{recipe_id}")
async def add_favorite(
    recipe_id: str,
    recipe: RecipeSummary,
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    """Favorite a recipe. The body is the recipe summary being favorited."""
    user_id = _require_user(user_id)
    try:
        if recipe.id != canonical_recipe_id(recipe_id):
            raise HTTPException(status_code=400, detail="Recipe id does not match body")
        favorite = await activity.add_favorite(user_id, recipe)
    except RecipeCacheError as e:
        raise _http_error(e)
    return favorite.model_dump(mode="json")


@router.delete("/users/me/favorites/{recipe_id}")
async def remove_favorite(
    recipe_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    try:
        removed = await activity.remove_favorite(_require_user(user_id), recipe_id)
    except RecipeCacheError as e:
        raise _http_error(e)
    if not removed:
        raise HTTPException(status_code=404, detail="Favorite not found")
    return {"message": "Favorite removed", "status": "success"}


@router.post("/users/me/views/{recipe_id}")
async def record_view(
    recipe_id: str,
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    try:
        view = await activity.record_view(_require_user(user_id), recipe_id)
    except RecipeCacheError as e:
        raise _http_error(e)
    return view.model_dump(mode="json")


@router.get("/users/me/views")
async def recently_viewed(
    limit: int = Query(default=20, ge=1, le=100),
    user_id: Optional[str] = Depends(get_current_user_id),
    activity: UserActivityService = Depends(get_activity_service),
):
    views = await activity.recently_viewed(_require_user(user_id), limit)
    return {"views": [v.model_dump(mode="json") for v in views]}


@router.get("/metrics")
def get_metrics():
    """Process totals: time spent, reads served from cache vs upstream, background runs."""
    return cache_ledger.to_dict()
