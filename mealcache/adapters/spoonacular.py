"""
Spoonacular API adapter with typed error mapping and data transformation.
Transforms upstream payloads into RecipeSummary / RecipeDetail models.
List responses are cached in Redis (24h TTL) via an injected ResponseCache.
"""

import logging
import time
from typing import Any, Callable, List, Optional, Sequence, TYPE_CHECKING

import httpx
from pydantic import ValidationError

from mealcache.core.keys import canonical_recipe_id
from mealcache.errors import (
    InvalidKeyError,
    QuotaExceededError,
    RateLimitedError,
    RecipeNotFoundError,
    TransientNetworkError,
    UpstreamResponseError,
)
from mealcache.models import (
    SUMMARY_FIELDS,
    RecipeDetail,
    RecipeSummary,
    SearchFilters,
)
from mealcache.services import prometheus_metrics
from mealcache.services.cache import NoOpResponseCache
from mealcache.validation import normalize_recipe_document

if TYPE_CHECKING:
    from mealcache.core.abstractions import ResponseCache

logger = logging.getLogger(__name__)

BASE_URL = "https://api.spoonacular.com"
IMAGE_BASE_URL = "https://img.spoonacular.com/recipes"
DEFAULT_TIMEOUT = 10.0

# HTTP statuses Spoonacular uses for exhausted daily points and request bursts
STATUS_QUOTA_EXCEEDED = 402
STATUS_RATE_LIMITED = 429


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _fill_image(raw: dict[str, Any]) -> dict[str, Any]:
    """Similar-recipe payloads carry only imageType; build the CDN URL from it."""
    if raw.get("image") or not raw.get("imageType") or raw.get("id") is None:
        return raw
    return {**raw, "image": f"{IMAGE_BASE_URL}/{raw['id']}-556x370.{raw['imageType']}"}


def transform_summary(raw: dict[str, Any]) -> RecipeSummary:
    """Transform a Spoonacular recipe object to a RecipeSummary."""
    data = normalize_recipe_document(_fill_image(raw))
    return RecipeSummary(**{k: v for k, v in data.items() if k in SUMMARY_FIELDS and v is not None})


def transform_detail(raw: dict[str, Any]) -> RecipeDetail:
    """Transform a Spoonacular /information payload to a RecipeDetail."""
    data = normalize_recipe_document(raw)
    return RecipeDetail(**{k: v for k, v in data.items() if v is not None})


class SpoonacularAdapter:
    """Adapter for the Spoonacular API. Raises RemoteSourceError subclasses on failure."""

    def __init__(
        self,
        api_key: str,
        base_url: str = BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        on_request_done: Optional[Callable[[float], None]] = None,
        cache: Optional["ResponseCache"] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._on_request_done = on_request_done
        self._cache = cache if cache is not None else NoOpResponseCache()
        self._transport = transport

    def _record_timing(self, elapsed_ms: float) -> None:
        """Call timing callback if configured."""
        prometheus_metrics.record_upstream_duration(elapsed_ms / 1000)
        if self._on_request_done is not None:
            try:
                self._on_request_done(elapsed_ms)
            except Exception as e:
                logger.debug("Timing callback error: %s", e)

    def _raise_for_status(
        self, operation: str, response: httpx.Response, recipe_id: Optional[int] = None
    ) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == STATUS_QUOTA_EXCEEDED:
            prometheus_metrics.record_upstream_call(operation, "quota_exceeded")
            logger.warning("Spoonacular quota exhausted during %s", operation)
            raise QuotaExceededError()
        if status == STATUS_RATE_LIMITED:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            prometheus_metrics.record_upstream_call(operation, "rate_limited")
            logger.warning("Spoonacular rate limited %s (retry_after=%s)", operation, retry_after)
            raise RateLimitedError(retry_after=retry_after)
        if status == 404:
            prometheus_metrics.record_upstream_call(operation, "not_found")
            raise RecipeNotFoundError(recipe_id if recipe_id is not None else response.url.path)
        if status >= 500:
            prometheus_metrics.record_upstream_call(operation, "server_error")
            logger.warning("Spoonacular HTTP error %s during %s", status, operation)
            raise TransientNetworkError(f"Spoonacular returned {status} for {operation}")
        prometheus_metrics.record_upstream_call(operation, "failure")
        logger.warning("Spoonacular HTTP error %s during %s", status, operation)
        raise UpstreamResponseError(
            f"Spoonacular returned {status} for {operation}", status_code=status
        )

    async def _get_json(
        self,
        operation: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        recipe_id: Optional[int] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        query = {**(params or {}), "apiKey": self.api_key}
        start = time.perf_counter()

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, params=query)
        except httpx.TimeoutException as e:
            logger.warning("Spoonacular %s timed out: %s", operation, e)
            prometheus_metrics.record_upstream_call(operation, "timeout")
            raise TransientNetworkError(f"Spoonacular {operation} timed out") from e
        except httpx.TransportError as e:
            logger.warning("Spoonacular connection failed: %s", e)
            prometheus_metrics.record_upstream_call(operation, "network_error")
            raise TransientNetworkError(f"Spoonacular {operation} failed: {e}") from e
        finally:
            self._record_timing((time.perf_counter() - start) * 1000)

        self._raise_for_status(operation, response, recipe_id)

        try:
            data = response.json()
        except ValueError as e:
            prometheus_metrics.record_upstream_call(operation, "failure")
            raise UpstreamResponseError(f"Malformed JSON from Spoonacular {operation}") from e
        prometheus_metrics.record_upstream_call(operation, "success")
        return data

    def _summaries(self, items: Any) -> List[RecipeSummary]:
        if not isinstance(items, list):
            raise UpstreamResponseError("Expected a list of recipes from Spoonacular")
        results: List[RecipeSummary] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            try:
                results.append(transform_summary(item))
            except (InvalidKeyError, ValidationError) as e:
                logger.warning("Failed to transform recipe %s: %s", item.get("id"), e)
        return results

    async def _cached_summaries(self, namespace: str, key: str) -> Optional[List[RecipeSummary]]:
        if not self._cache.is_available():
            return None
        cached = await self._cache.get_results(namespace, key)
        if cached is None:
            return None
        try:
            return [RecipeSummary(**item) for item in cached]
        except (InvalidKeyError, ValidationError, TypeError) as e:
            logger.debug("Discarding unreadable cached %s results: %s", namespace, e)
            return None

    async def _store_summaries(self, namespace: str, key: str, results: List[RecipeSummary]) -> None:
        if self._cache.is_available():
            await self._cache.set_results(namespace, key, [r.model_dump() for r in results])

    async def search(
        self, query: str, filters: Optional[SearchFilters] = None
    ) -> List[RecipeSummary]:
        """Search recipes via complexSearch. Returns [] for a blank query."""
        if not query or not str(query).strip():
            return []
        filters = filters or SearchFilters()
        cache_key = f"{query}|{filters.cuisine or ''}|{filters.diet or ''}|{filters.number}"

        cached = await self._cached_summaries("search", cache_key)
        if cached is not None:
            return cached

        params: dict[str, Any] = {
            "query": str(query).strip(),
            "number": filters.number,
            "addRecipeInformation": "true",
        }
        if filters.cuisine:
            params["cuisine"] = filters.cuisine
        if filters.diet:
            params["diet"] = filters.diet

        data = await self._get_json("search", "/recipes/complexSearch", params)
        if not isinstance(data, dict):
            raise UpstreamResponseError("Expected an object from complexSearch")
        results = self._summaries(data.get("results") or [])
        await self._store_summaries("search", cache_key, results)
        return results

    async def search_by_ingredients(
        self, ingredients: Sequence[str], number: int = 10
    ) -> List[RecipeSummary]:
        names = [i.strip() for i in ingredients if i and i.strip()]
        if not names:
            return []
        joined = ",".join(names)

        cached = await self._cached_summaries("ingredients", f"{joined}|{number}")
        if cached is not None:
            return cached

        data = await self._get_json(
            "search_by_ingredients",
            "/recipes/findByIngredients",
            # ranking=2 minimizes missing ingredients
            {"ingredients": joined, "number": number, "ranking": 2},
        )
        results = self._summaries(data)
        await self._store_summaries("ingredients", f"{joined}|{number}", results)
        return results

    async def get_detail(self, recipe_id: int) -> RecipeDetail:
        recipe_id = canonical_recipe_id(recipe_id)
        data = await self._get_json(
            "detail",
            f"/recipes/{recipe_id}/information",
            {"includeNutrition": "false"},
            recipe_id=recipe_id,
        )
        if not isinstance(data, dict):
            raise UpstreamResponseError(f"Expected an object for recipe {recipe_id}")
        try:
            return transform_detail(data)
        except (InvalidKeyError, ValidationError) as e:
            raise UpstreamResponseError(f"Unreadable detail for recipe {recipe_id}: {e}") from e

    async def autocomplete_ingredient(self, prefix: str, number: int = 10) -> List[str]:
        if not prefix or not prefix.strip():
            return []
        key = f"{prefix}|{number}"
        if self._cache.is_available():
            cached = await self._cache.get_results("autocomplete", key)
            if cached is not None:
                return [str(name) for name in cached]

        data = await self._get_json(
            "autocomplete",
            "/food/ingredients/autocomplete",
            {"query": prefix.strip(), "number": number},
        )
        if not isinstance(data, list):
            raise UpstreamResponseError("Expected a list from ingredient autocomplete")
        names = [str(item["name"]) for item in data if isinstance(item, dict) and item.get("name")]
        if self._cache.is_available():
            await self._cache.set_results("autocomplete", key, names)
        return names

    async def random_recipes(self, number: int = 10) -> List[RecipeSummary]:
        data = await self._get_json("random", "/recipes/random", {"number": number})
        if not isinstance(data, dict):
            raise UpstreamResponseError("Expected an object from random recipes")
        return self._summaries(data.get("recipes") or [])

    async def similar_recipes(self, recipe_id: int, number: int = 5) -> List[RecipeSummary]:
        recipe_id = canonical_recipe_id(recipe_id)
        data = await self._get_json(
            "similar",
            f"/recipes/{recipe_id}/similar",
            {"number": number},
            recipe_id=recipe_id,
        )
        return self._summaries(data)
