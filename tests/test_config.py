"""
Tests for environment-driven settings and service wiring.
"""

from datetime import timedelta

from mealcache.adapters.spoonacular import SpoonacularAdapter
from mealcache.config import Settings
from mealcache.core.dependencies import build_services
from mealcache.services.cache import NoOpResponseCache
from mealcache.services.storage import SQLiteRecipeStore


def test_defaults(monkeypatch):
    for name in ("SPOONACULAR_API_KEY", "RECIPE_STORE", "STORE_BATCH_SIZE", "STALE_AFTER_DAYS", "MAINTENANCE_ENABLED"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.recipe_store == "sqlite"
    assert settings.store_batch_size == 500
    assert settings.max_concurrent_fetches == 3
    assert settings.background_batch_delay_seconds == 2.0
    assert settings.maintenance_interval_seconds == 300.0
    assert settings.maintenance_fill_limit == 10
    assert settings.maintenance_enabled is True
    assert settings.stale_after is None


def test_from_env_overrides(monkeypatch):
    monkeypatch.setenv("SPOONACULAR_API_KEY", "abc")
    monkeypatch.setenv("RECIPE_STORE", "Firestore")
    monkeypatch.setenv("MAX_CONCURRENT_FETCHES", "2")
    monkeypatch.setenv("STALE_AFTER_DAYS", "30")
    monkeypatch.setenv("MAINTENANCE_ENABLED", "false")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    settings = Settings.from_env()

    assert settings.spoonacular_api_key == "abc"
    assert settings.recipe_store == "firestore"
    assert settings.max_concurrent_fetches == 2
    assert settings.stale_after == timedelta(days=30)
    assert settings.maintenance_enabled is False
    assert settings.log_level == "DEBUG"


def test_validate_reports_problems():
    settings = Settings(recipe_store="mongo", store_batch_size=1000, max_concurrent_fetches=0)

    problems = settings.validate()

    assert "SPOONACULAR_API_KEY is required" in problems
    assert any("RECIPE_STORE" in p for p in problems)
    assert any("STORE_BATCH_SIZE" in p for p in problems)
    assert any("MAX_CONCURRENT_FETCHES" in p for p in problems)


def test_validate_ok():
    assert Settings(spoonacular_api_key="abc").validate() == []


def test_build_services_wires_sqlite_store():
    settings = Settings(spoonacular_api_key="abc", max_concurrent_fetches=2, maintenance_fill_limit=4)

    services = build_services(settings)

    assert isinstance(services.store, SQLiteRecipeStore)
    assert isinstance(services.source, SpoonacularAdapter)
    assert isinstance(services.response_cache, NoOpResponseCache)
    assert services.cache_service.max_concurrent == 2
    assert services.cache_service.store is services.store
    assert services.scheduler.fill_limit == 4
    services.store.close()
