from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    spoonacular_api_key: str = ""
    spoonacular_base_url: str = "https://api.spoonacular.com"
    upstream_timeout_seconds: float = 10.0
    recipe_store: str = "sqlite"
    sqlite_path: str = ":memory:"
    gcp_project: Optional[str] = None
    recipes_collection: str = "recipes"
    redis_url: str = ""
    store_batch_size: int = 500
    max_concurrent_fetches: int = 3
    background_batch_delay_seconds: float = 2.0
    maintenance_enabled: bool = True
    maintenance_interval_seconds: float = 300.0
    maintenance_fill_limit: int = 10
    stale_after_days: int = 0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            spoonacular_api_key=os.getenv("SPOONACULAR_API_KEY", ""),
            spoonacular_base_url=os.getenv("SPOONACULAR_BASE_URL", cls.spoonacular_base_url),
            upstream_timeout_seconds=float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "10")),
            recipe_store=os.getenv("RECIPE_STORE", "sqlite").strip().lower(),
            sqlite_path=os.getenv("SQLITE_PATH", ":memory:"),
            gcp_project=os.getenv("GCP_PROJECT") or None,
            recipes_collection=os.getenv("RECIPES_COLLECTION", "recipes"),
            redis_url=os.getenv("REDIS_URL", ""),
            store_batch_size=int(os.getenv("STORE_BATCH_SIZE", "500")),
            max_concurrent_fetches=int(os.getenv("MAX_CONCURRENT_FETCHES", "3")),
            background_batch_delay_seconds=float(os.getenv("BACKGROUND_BATCH_DELAY_SECONDS", "2")),
            maintenance_enabled=_env_bool("MAINTENANCE_ENABLED", True),
            maintenance_interval_seconds=float(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "300")),
            maintenance_fill_limit=int(os.getenv("MAINTENANCE_FILL_LIMIT", "10")),
            stale_after_days=int(os.getenv("STALE_AFTER_DAYS", "0")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def stale_after(self) -> Optional[timedelta]:
        if self.stale_after_days <= 0:
            return None
        return timedelta(days=self.stale_after_days)

    def validate(self) -> list[str]:
        errors: list[str] = []

        if not self.spoonacular_api_key:
            errors.append("SPOONACULAR_API_KEY is required")

        if self.recipe_store not in ("sqlite", "firestore"):
            errors.append(f"RECIPE_STORE must be 'sqlite' or 'firestore', got {self.recipe_store!r}")

        if not 1 <= self.store_batch_size <= 500:
            errors.append("STORE_BATCH_SIZE must be between 1 and 500")

        if self.max_concurrent_fetches < 1:
            errors.append("MAX_CONCURRENT_FETCHES must be at least 1")

        if self.maintenance_interval_seconds <= 0:
            errors.append("MAINTENANCE_INTERVAL_SECONDS must be positive")

        return errors


def get_settings() -> Settings:
    return Settings.from_env()
