"""
Cache-first recipe service.

Detail reads check the persistent store before calling Spoonacular. Every
list of summaries seen from upstream is merge-written to the store, and the
missing details are fetched in the background in small throttled groups.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Sequence, Set

from mealcache.core.abstractions import RecipeStore, RemoteRecipeSource
from mealcache.core.keys import canonical_recipe_id, canonical_recipe_ids
from mealcache.errors import (
    QuotaExceededError,
    RateLimitedError,
    StoreWriteError,
    TransientNetworkError,
)
from mealcache.models import (
    BackgroundRunStatus,
    BatchWriteReport,
    BrowseResult,
    CacheStats,
    DetailLookup,
    FetchState,
    RecipeDetail,
    RecipeSummary,
    SearchFilters,
)
from mealcache.services import metrics, prometheus_metrics

logger = logging.getLogger(__name__)

# Upstream tolerates a handful of parallel requests; more trips the rate limiter
MAX_CONCURRENT_FETCHES = 3
BATCH_DELAY_SECONDS = 2.0
DEFAULT_FILL_LIMIT = 10

# Category names shown to users -> upstream search keywords
CATEGORY_QUERIES = {
    "western": "american burger steak",
    "bread": "bread baked goods",
    "soup": "soup",
    "dessert": "dessert cake",
    "coffee": "coffee drink beverage",
}


def category_search_query(category: str) -> str:
    return CATEGORY_QUERIES.get(category.strip().lower(), category.strip())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RecipeCacheService:
    """Coordinates reads between the recipe store and the remote recipe source."""

    def __init__(
        self,
        source: RemoteRecipeSource,
        store: RecipeStore,
        *,
        max_concurrent: int = MAX_CONCURRENT_FETCHES,
        batch_delay_seconds: float = BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self._source = source
        self._store = store
        self.max_concurrent = max_concurrent
        self.batch_delay_seconds = batch_delay_seconds
        self._sleep = sleep
        self._in_flight: Set[int] = set()
        # Shared by every run so overlapping runs together stay under the limit
        self._fetch_slots = asyncio.Semaphore(max_concurrent)
        self._background_tasks: Set[asyncio.Task] = set()
        self._last_run: Optional[BackgroundRunStatus] = None

    @property
    def store(self) -> RecipeStore:
        return self._store

    @property
    def last_run(self) -> Optional[BackgroundRunStatus]:
        """Status of the most recently finished background run, if any."""
        return self._last_run

    @property
    def background_pending(self) -> int:
        return len(self._background_tasks)

    # --- Detail reads ---

    async def lookup_detail(self, recipe_id: Any) -> DetailLookup:
        """
        Cache-first detail read.

        Raises InvalidKeyError for ids that cannot be canonicalized, and the
        RemoteSourceError raised by the source on a miss. A failed cache write
        after a successful fetch still returns the detail, with persisted=False.
        """
        recipe_id = canonical_recipe_id(recipe_id)

        with metrics.timed_store():
            entry = await self._store.get(recipe_id)
        if entry is not None and entry.has_full_details:
            metrics.record_served("detail", metrics.CACHE)
            prometheus_metrics.record_cache_hit("detail")
            logger.debug("Recipe %s served from cache", recipe_id)
            return DetailLookup(detail=entry.to_detail(), from_cache=True)

        metrics.record_served("detail", metrics.UPSTREAM)
        prometheus_metrics.record_cache_miss("detail")
        logger.debug("Recipe %s not cached with full details, fetching", recipe_id)
        with metrics.timed_upstream():
            detail = await self._source.get_detail(recipe_id)

        persisted = await self._persist_detail(recipe_id, detail)
        return DetailLookup(detail=detail, from_cache=False, persisted=persisted)

    async def get_detail(self, recipe_id: Any) -> RecipeDetail:
        return (await self.lookup_detail(recipe_id)).detail

    async def _persist_detail(self, recipe_id: int, detail: RecipeDetail) -> bool:
        fields = detail.detail_fields()
        fields["id"] = recipe_id
        try:
            with metrics.timed_store() as timer:
                await self._store.put(recipe_id, fields)
            prometheus_metrics.record_store_duration(timer.elapsed_ms / 1000)
            return True
        except StoreWriteError as e:
            prometheus_metrics.record_store_write_failure("detail")
            logger.warning("Fetched recipe %s but could not cache it: %s", recipe_id, e)
            return False

    # --- Summary writes ---

    async def cache_summaries(self, summaries: Sequence[RecipeSummary]) -> BatchWriteReport:
        """Merge-write summaries in chunks. Never calls the remote source."""
        if not summaries:
            return BatchWriteReport()
        documents = [s.summary_fields() for s in summaries]
        with metrics.timed_store():
            report = await self._store.put_batch(documents)
        if not report.all_committed:
            prometheus_metrics.record_store_write_failure("summaries")
            logger.warning(
                "Cached %d of %d summaries (%d chunks failed)",
                report.written,
                len(documents),
                sum(1 for c in report.chunks if not c.committed),
            )
        else:
            logger.info("Cached %d recipe summaries", report.written)
        return report

    async def _cache_and_populate(
        self, operation: str, summaries: List[RecipeSummary]
    ) -> List[RecipeSummary]:
        metrics.record_served(operation, metrics.UPSTREAM)
        await self.cache_summaries(summaries)
        self.schedule_background_population([s.id for s in summaries])
        return summaries

    # --- Upstream pass-through with caching ---

    async def search(
        self, query: str, filters: Optional[SearchFilters] = None
    ) -> List[RecipeSummary]:
        with metrics.timed_upstream():
            summaries = await self._source.search(query, filters)
        return await self._cache_and_populate("search", summaries)

    async def search_by_ingredients(
        self, ingredients: Sequence[str], number: int = 10
    ) -> List[RecipeSummary]:
        with metrics.timed_upstream():
            summaries = await self._source.search_by_ingredients(ingredients, number)
        return await self._cache_and_populate("ingredients", summaries)

    async def random_recipes(self, number: int = 10) -> List[RecipeSummary]:
        with metrics.timed_upstream():
            summaries = await self._source.random_recipes(number)
        return await self._cache_and_populate("random", summaries)

    async def similar_recipes(self, recipe_id: Any, number: int = 5) -> List[RecipeSummary]:
        recipe_id = canonical_recipe_id(recipe_id)
        with metrics.timed_upstream():
            summaries = await self._source.similar_recipes(recipe_id, number)
        return await self._cache_and_populate("similar", summaries)

    async def autocomplete_ingredient(self, prefix: str, number: int = 10) -> List[str]:
        with metrics.timed_upstream():
            return await self._source.autocomplete_ingredient(prefix, number)

    async def browse_category(self, category: str, limit: int = 20) -> BrowseResult:
        """
        Recipes for a category. Uses upstream search while it is reachable and
        falls back to cached entries (marked source="cache") when it is not.
        """
        try:
            recipes = await self.search(category_search_query(category), SearchFilters(number=limit))
            return BrowseResult(recipes=recipes, source="remote")
        except (QuotaExceededError, RateLimitedError, TransientNetworkError) as e:
            logger.warning("Upstream unavailable for category %r, serving cache: %s", category, e)

        with metrics.timed_store():
            entries = await self._store.query(category, limit)
            if not entries:
                entries = await self._store.query(None, limit)
        metrics.record_served("category", metrics.CACHE)
        return BrowseResult(recipes=[e.to_summary() for e in entries], source="cache")

    # --- Background population ---

    def schedule_background_population(self, recipe_ids: Iterable[Any]) -> Optional[asyncio.Task]:
        """Start populate_details as a tracked task. The caller does not wait for it."""
        ids = list(recipe_ids)
        if not ids:
            return None
        task = asyncio.create_task(self.populate_details(ids))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background detail population crashed", exc_info=exc)

    async def wait_for_background(self) -> None:
        """Wait until every scheduled background run has finished."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel background runs still in progress."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _select_pending(self, recipe_ids: Iterable[Any], status: BackgroundRunStatus) -> List[int]:
        ids, rejected = canonical_recipe_ids(recipe_ids)
        for e in rejected:
            logger.warning("Skipping background fetch: %s", e)
        status.skipped += len(rejected)

        pending: List[int] = []
        for recipe_id in ids:
            if recipe_id in self._in_flight:
                status.skipped += 1
                continue
            entry = await self._store.get(recipe_id)
            if entry is not None and entry.has_full_details:
                status.skipped += 1
                continue
            pending.append(recipe_id)
            status.outcomes[recipe_id] = FetchState.PENDING
        return pending

    async def _fetch_and_cache(self, recipe_id: int) -> bool:
        async with self._fetch_slots:
            detail = await self._source.get_detail(recipe_id)
        return await self._persist_detail(recipe_id, detail)

    async def populate_details(self, recipe_ids: Iterable[Any]) -> BackgroundRunStatus:
        """
        Fetch and cache details for ids that lack them.

        Ids are processed in groups of at most max_concurrent. Fetches from
        all runs share max_concurrent slots, so overlapping runs never have
        more than that many requests in flight. A group settles completely before the delay that precedes
        the next one. A failed id never aborts the others. QuotaExceededError
        halts the run once the current group has settled.
        """
        status = BackgroundRunStatus(started_at=_now())
        group: List[int] = []
        try:
            pending = await self._select_pending(recipe_ids, status)
            groups = [
                pending[i : i + self.max_concurrent]
                for i in range(0, len(pending), self.max_concurrent)
            ]
            if groups:
                logger.info(
                    "Background caching %d recipes in %d groups (%d skipped)",
                    len(pending),
                    len(groups),
                    status.skipped,
                )

            for index, group in enumerate(groups):
                if index > 0:
                    await self._sleep(self.batch_delay_seconds)

                for recipe_id in group:
                    self._in_flight.add(recipe_id)
                    status.outcomes[recipe_id] = FetchState.IN_FLIGHT
                    status.attempted += 1

                results = await asyncio.gather(
                    *(self._fetch_and_cache(recipe_id) for recipe_id in group),
                    return_exceptions=True,
                )

                quota_hit = False
                for recipe_id, result in zip(group, results):
                    self._in_flight.discard(recipe_id)
                    state = self._settle(recipe_id, result, status)
                    quota_hit = quota_hit or state is FetchState.QUOTA_HALTED
                group = []

                if quota_hit:
                    status.halted_early = True
                    logger.warning(
                        "Quota exhausted; halting background run after %d of %d recipes",
                        status.attempted,
                        len(pending),
                    )
                    break
        finally:
            for recipe_id in group:
                self._in_flight.discard(recipe_id)
            status.finished_at = _now()
            self._last_run = status

        logger.info(
            "Background caching finished: attempted=%d succeeded=%d failed=%d skipped=%d halted=%s",
            status.attempted,
            status.succeeded,
            status.failed,
            status.skipped,
            status.halted_early,
        )
        metrics.cache_ledger.record_background_run(
            attempted=status.attempted,
            succeeded=status.succeeded,
            failed=status.failed,
            skipped=status.skipped,
            halted=status.halted_early,
        )
        return status

    def _settle(self, recipe_id: int, result: Any, status: BackgroundRunStatus) -> FetchState:
        if result is True:
            state = FetchState.CACHED
            status.succeeded += 1
        elif isinstance(result, QuotaExceededError):
            state = FetchState.QUOTA_HALTED
            status.failed += 1
        elif isinstance(result, Exception) or result is False:
            state = FetchState.FAILED
            status.failed += 1
            if isinstance(result, RateLimitedError):
                logger.info("Rate limited while caching recipe %s", recipe_id)
            elif result is not False:
                logger.warning("Failed to cache recipe %s: %s", recipe_id, result)
        else:
            # CancelledError and other BaseExceptions
            raise result
        status.outcomes[recipe_id] = state
        prometheus_metrics.record_background_fetch(state.value)
        return state

    # --- Maintenance ---

    async def fill_missing_details(self, limit: int = DEFAULT_FILL_LIMIT) -> BackgroundRunStatus:
        """Populate details for up to limit cached entries that only hold a summary."""
        ids = await self._store.ids_missing_details(limit)
        if not ids:
            logger.info("All cached recipes have full details")
        return await self.populate_details(ids)

    async def cache_stats(self) -> CacheStats:
        return CacheStats(
            total=await self._store.count(),
            with_details=await self._store.count_with_details(),
        )

    async def prune_stale(self, max_age: timedelta) -> int:
        """Delete summary-only entries not refreshed within max_age."""
        deleted = await self._store.delete_older_than(_now() - max_age)
        if deleted:
            logger.info("Pruned %d stale summary-only recipes", deleted)
        return deleted
