"""
Test fixtures for mealcache tests.
Uses FastAPI dependency overrides and an in-memory SQLite store for isolated components.
"""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from mealcache.core.dependencies import (
    get_activity_service,
    get_cache_service,
    get_scheduler,
)
from mealcache.errors import RecipeNotFoundError
from mealcache.main import app
from mealcache.models import Ingredient, InstructionStep, RecipeDetail, RecipeSummary
from mealcache.services.activity import UserActivityService
from mealcache.services.maintenance import CacheMaintenanceScheduler
from mealcache.services.metrics import cache_ledger
from mealcache.services.recipe_cache import RecipeCacheService
from mealcache.services.storage import SQLiteRecipeStore

# Disable Redis cache during tests (no Redis required)
os.environ.setdefault("REDIS_URL", "")


def make_summary(recipe_id: int, title: str = None) -> RecipeSummary:
    return RecipeSummary(
        id=recipe_id,
        title=title or f"Recipe {recipe_id}",
        image=f"https://img.spoonacular.com/recipes/{recipe_id}-312x231.jpg",
        ready_in_minutes=30,
        servings=4,
    )


def make_detail(recipe_id: int, title: str = None) -> RecipeDetail:
    return RecipeDetail(
        id=recipe_id,
        title=title or f"Recipe {recipe_id}",
        image=f"https://img.spoonacular.com/recipes/{recipe_id}-556x370.jpg",
        summary="A weeknight favorite.",
        ready_in_minutes=45,
        servings=2,
        ingredients=[
            Ingredient(id=1, name="flour", original="2 cups flour", amount=2, unit="cups"),
            Ingredient(id=2, name="egg", original="1 egg", amount=1, unit=""),
        ],
        instructions=[
            InstructionStep(number=1, step="Mix everything."),
            InstructionStep(number=2, step="Bake for 30 minutes."),
        ],
        vegetarian=True,
    )


class FakeRemoteSource:
    """In-process RemoteRecipeSource that records calls and in-flight concurrency."""

    def __init__(self, details=None, errors=None, gate: asyncio.Event = None):
        self.details = dict(details or {})
        self.errors = dict(errors or {})
        self.gate = gate
        self.search_results = []
        self.search_error = None
        self.detail_calls = []
        self.search_calls = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_detail(self, recipe_id):
        self.detail_calls.append(recipe_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if recipe_id in self.errors:
                raise self.errors[recipe_id]
            if recipe_id not in self.details:
                raise RecipeNotFoundError(recipe_id)
            return self.details[recipe_id]
        finally:
            self.in_flight -= 1

    async def _summaries(self, label):
        self.search_calls.append(label)
        if self.search_error is not None:
            raise self.search_error
        return list(self.search_results)

    async def search(self, query, filters=None):
        return await self._summaries(query)

    async def search_by_ingredients(self, ingredients, number=10):
        return await self._summaries(",".join(ingredients))

    async def random_recipes(self, number=10):
        return await self._summaries("random")

    async def similar_recipes(self, recipe_id, number=5):
        return await self._summaries(f"similar:{recipe_id}")

    async def autocomplete_ingredient(self, prefix, number=10):
        return [f"{prefix}our", f"{prefix}ax"][:number]


class RecordingSleep:
    """Stand-in for asyncio.sleep that records requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def store():
    """Fresh in-memory SQLite store for each test."""
    s = SQLiteRecipeStore()
    yield s
    s.close()


@pytest.fixture
def source():
    return FakeRemoteSource()


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def cache_service(source, store, recorded_sleep):
    return RecipeCacheService(source, store, sleep=recorded_sleep)


@pytest.fixture
def activity(store):
    return UserActivityService(store, store)


@pytest.fixture
def mock_cache_service():
    """Mock RecipeCacheService. Async methods are AsyncMocks returning empty results."""
    mock = MagicMock(spec=RecipeCacheService)
    mock.search.return_value = []
    mock.search_by_ingredients.return_value = []
    mock.random_recipes.return_value = []
    mock.similar_recipes.return_value = []
    mock.autocomplete_ingredient.return_value = []
    mock.last_run = None
    mock.background_pending = 0
    return mock


@pytest.fixture
def mock_scheduler():
    mock = MagicMock(spec=CacheMaintenanceScheduler)
    mock.tick = AsyncMock(return_value=True)
    mock.last_report = None
    return mock


@pytest.fixture
def client(mock_cache_service, activity, mock_scheduler):
    """Test client with dependency overrides for the cache, activity and scheduler services."""
    app.dependency_overrides[get_cache_service] = lambda: mock_cache_service
    app.dependency_overrides[get_activity_service] = lambda: activity
    app.dependency_overrides[get_scheduler] = lambda: mock_scheduler

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_cache_ledger():
    cache_ledger.reset()
    yield
    cache_ledger.reset()
