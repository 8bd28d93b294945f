"""
Tests for the Spoonacular adapter: transformation, error mapping, response caching, and integration.
"""

import json
import os
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from mealcache.adapters.spoonacular import (
    SpoonacularAdapter,
    transform_detail,
    transform_summary,
)
from mealcache.errors import (
    QuotaExceededError,
    RateLimitedError,
    RecipeNotFoundError,
    TransientNetworkError,
    UpstreamResponseError,
)
from mealcache.models import SearchFilters
from mealcache.services.cache import RedisResponseCache

# Sample /recipes/{id}/information response (trimmed from the real API)
SAMPLE_INFORMATION = {
    "id": 716429,
    "title": "Pasta with Garlic, Scallions, Cauliflower & Breadcrumbs",
    "image": "https://img.spoonacular.com/recipes/716429-556x370.jpg",
    "imageType": "jpg",
    "servings": 2,
    "readyInMinutes": 45,
    "vegetarian": False,
    "vegan": False,
    "glutenFree": False,
    "dairyFree": False,
    "summary": "Pasta with Garlic, Scallions, Cauliflower & Breadcrumbs might be just the main course you are searching for.",
    "extendedIngredients": [
        {"id": 1001, "name": "butter", "original": "1 tbsp butter", "amount": 1.0, "unit": "tbsp"},
        {"id": 10011135, "name": "cauliflower florets", "original": "2 cups cauliflower", "amount": 2.0, "unit": "cups"},
    ],
    "instructions": "<ol><li>Cook the pasta.</li><li>Toss with cauliflower.</li></ol>",
    "analyzedInstructions": [
        {
            "name": "",
            "steps": [
                {"number": 1, "step": "Cook the pasta according to the package."},
                {"number": 2, "step": "Toss with the cauliflower and breadcrumbs."},
            ],
        }
    ],
}

SAMPLE_SEARCH = {
    "results": [
        {"id": 715538, "title": "Bruschetta Style Pork & Pasta", "image": "https://img.spoonacular.com/recipes/715538-312x231.jpg", "readyInMinutes": 35},
        {"id": 716429, "title": "Pasta with Garlic", "image": "https://img.spoonacular.com/recipes/716429-312x231.jpg"},
    ],
    "offset": 0,
    "number": 2,
    "totalResults": 2,
}


def _adapter(handler, **kwargs) -> SpoonacularAdapter:
    return SpoonacularAdapter(api_key="test-key", transport=httpx.MockTransport(handler), **kwargs)


def _json(status: int, payload, headers=None):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=payload, headers=headers)

    return handler


def test_transform_detail():
    """Transformation maps the upstream payload to the canonical detail shape"""
    detail = transform_detail(SAMPLE_INFORMATION)

    assert detail.id == 716429
    assert detail.ready_in_minutes == 45
    assert detail.servings == 2
    assert [i.name for i in detail.ingredients] == ["butter", "cauliflower florets"]
    assert detail.instructions[0].step == "Cook the pasta according to the package."
    assert detail.has_full_details


def test_transform_summary_builds_image_from_image_type():
    """Similar-recipe payloads only carry imageType"""
    summary = transform_summary({"id": 209128, "title": "Dinner Tonight", "imageType": "jpg"})

    assert summary.image == "https://img.spoonacular.com/recipes/209128-556x370.jpg"


def test_transform_summary_ignores_detail_fields():
    summary = transform_summary(SAMPLE_INFORMATION)

    assert summary.id == 716429
    assert not hasattr(summary, "ingredients")


@pytest.mark.asyncio
async def test_search_sends_filters_and_api_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=SAMPLE_SEARCH)

    adapter = _adapter(handler)
    results = await adapter.search("pasta", SearchFilters(cuisine="italian", diet="vegetarian", number=2))

    assert seen["path"] == "/recipes/complexSearch"
    assert seen["params"]["apiKey"] == "test-key"
    assert seen["params"]["query"] == "pasta"
    assert seen["params"]["cuisine"] == "italian"
    assert seen["params"]["diet"] == "vegetarian"
    assert seen["params"]["number"] == "2"
    assert [r.id for r in results] == [715538, 716429]
    assert results[0].ready_in_minutes == 35


@pytest.mark.asyncio
async def test_search_blank_query_makes_no_request():
    def handler(request):
        raise AssertionError("No request expected")

    adapter = _adapter(handler)
    assert await adapter.search("   ") == []


@pytest.mark.asyncio
async def test_search_skips_untransformable_items():
    payload = {"results": [{"id": "not-a-number", "title": "Broken"}, {"id": 5, "title": "Fine"}]}
    adapter = _adapter(_json(200, payload))

    results = await adapter.search("x")
    assert [r.id for r in results] == [5]


@pytest.mark.asyncio
async def test_search_by_ingredients_uses_ranking():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"id": 73420, "title": "Apple Tart", "image": "x.jpg"}])

    adapter = _adapter(handler)
    results = await adapter.search_by_ingredients(["apples", " flour ", ""])

    assert seen["path"] == "/recipes/findByIngredients"
    assert seen["params"]["ingredients"] == "apples,flour"
    assert seen["params"]["ranking"] == "2"
    assert results[0].id == 73420


@pytest.mark.asyncio
async def test_get_detail():
    adapter = _adapter(_json(200, SAMPLE_INFORMATION))

    detail = await adapter.get_detail("716429")
    assert detail.id == 716429
    assert len(detail.instructions) == 2


@pytest.mark.asyncio
async def test_quota_exceeded_maps_402():
    adapter = _adapter(_json(402, {"status": "failure", "code": 402}))

    with pytest.raises(QuotaExceededError):
        await adapter.get_detail(7)


@pytest.mark.asyncio
async def test_rate_limited_maps_429_with_retry_after():
    adapter = _adapter(_json(429, {"status": "failure"}, headers={"Retry-After": "12"}))

    with pytest.raises(RateLimitedError) as exc_info:
        await adapter.search("pasta")
    assert exc_info.value.retry_after == 12.0


@pytest.mark.asyncio
async def test_not_found_maps_404():
    adapter = _adapter(_json(404, {"status": "failure"}))

    with pytest.raises(RecipeNotFoundError) as exc_info:
        await adapter.get_detail(99999999)
    assert exc_info.value.recipe_id == 99999999


@pytest.mark.asyncio
async def test_server_error_is_transient():
    adapter = _adapter(_json(503, {}))

    with pytest.raises(TransientNetworkError):
        await adapter.random_recipes()


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("Timed out", request=request)

    adapter = _adapter(handler)
    with pytest.raises(TransientNetworkError):
        await adapter.get_detail(42)


@pytest.mark.asyncio
async def test_connection_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("Cannot connect", request=request)

    adapter = _adapter(handler)
    with pytest.raises(TransientNetworkError):
        await adapter.autocomplete_ingredient("fl")


@pytest.mark.asyncio
async def test_other_client_error_is_upstream_error():
    adapter = _adapter(_json(401, {"message": "Invalid API key"}))

    with pytest.raises(UpstreamResponseError) as exc_info:
        await adapter.search("pasta")
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_malformed_json_is_upstream_error():
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    adapter = _adapter(handler)
    with pytest.raises(UpstreamResponseError):
        await adapter.get_detail(1)


@pytest.mark.asyncio
async def test_failures_are_never_empty_results():
    """A failed search raises instead of looking like 'no recipes'"""
    adapter = _adapter(_json(500, {}))

    with pytest.raises(TransientNetworkError):
        await adapter.search("pasta")


@pytest.mark.asyncio
async def test_autocomplete_returns_names():
    adapter = _adapter(_json(200, [{"name": "flour", "image": "flour.png"}, {"name": "flax seeds"}]))

    assert await adapter.autocomplete_ingredient("fl") == ["flour", "flax seeds"]


@pytest.mark.asyncio
async def test_similar_recipes():
    adapter = _adapter(_json(200, [{"id": 209128, "title": "Dinner Tonight", "imageType": "jpg"}]))

    results = await adapter.similar_recipes(715538)
    assert results[0].id == 209128
    assert results[0].image.endswith("209128-556x370.jpg")


@pytest.mark.asyncio
async def test_timing_callback_receives_elapsed_ms():
    timings = []
    adapter = _adapter(_json(200, SAMPLE_INFORMATION), on_request_done=timings.append)

    await adapter.get_detail(716429)
    assert len(timings) == 1
    assert timings[0] >= 0


@pytest.mark.asyncio
async def test_search_served_from_response_cache():
    """Cached search results skip the upstream request"""

    def handler(request):
        raise AssertionError("No request expected")

    redis_client = MagicMock()
    redis_client.get = AsyncMock(
        return_value=json.dumps([{"id": 715538, "title": "Bruschetta Style Pork & Pasta"}])
    )
    redis_client.set = AsyncMock()
    adapter = _adapter(handler, cache=RedisResponseCache(redis_client))

    results = await adapter.search("Pasta")
    assert [r.id for r in results] == [715538]
    redis_client.get.assert_awaited_once_with("spoonacular:search:pasta||10")


@pytest.mark.asyncio
async def test_search_results_written_to_response_cache():
    redis_client = MagicMock()
    redis_client.get = AsyncMock(return_value=None)
    redis_client.set = AsyncMock()
    adapter = _adapter(_json(200, SAMPLE_SEARCH), cache=RedisResponseCache(redis_client))

    await adapter.search("pasta")

    key, value = redis_client.set.await_args.args
    assert key == "spoonacular:search:pasta||10"
    assert [item["id"] for item in json.loads(value)] == [715538, 716429]
    assert redis_client.set.await_args.kwargs["ex"] == 86400


@pytest.mark.asyncio
async def test_response_cache_errors_degrade_to_upstream():
    redis_client = MagicMock()
    redis_client.get = AsyncMock(side_effect=ConnectionError("redis down"))
    redis_client.set = AsyncMock(side_effect=ConnectionError("redis down"))
    adapter = _adapter(_json(200, SAMPLE_SEARCH), cache=RedisResponseCache(redis_client))

    results = await adapter.search("pasta")
    assert len(results) == 2


@pytest.mark.integration
@pytest.mark.asyncio
async def test_get_detail_real_api():
    """Integration test: real Spoonacular lookup returns full details"""
    api_key = os.environ.get("SPOONACULAR_API_KEY")
    if not api_key:
        pytest.skip("SPOONACULAR_API_KEY not set")
    adapter = SpoonacularAdapter(api_key=api_key, timeout=15.0)

    detail = await adapter.get_detail(716429)
    assert detail.id == 716429
    assert detail.title
    assert len(detail.ingredients) > 0


@pytest.mark.integration
@pytest.mark.asyncio
async def test_search_real_api():
    api_key = os.environ.get("SPOONACULAR_API_KEY")
    if not api_key:
        pytest.skip("SPOONACULAR_API_KEY not set")
    adapter = SpoonacularAdapter(api_key=api_key, timeout=15.0)

    results = await adapter.search("pasta", SearchFilters(number=3))
    assert isinstance(results, list)
    for recipe in results:
        assert recipe.id > 0
