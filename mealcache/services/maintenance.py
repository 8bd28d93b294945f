"""
Periodic cache maintenance.

Every interval the scheduler collects cache statistics, fills in details for
summary-only entries and optionally prunes stale ones. A tick that fires
while the previous run is still going is skipped, never queued.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Set

from mealcache.models import BackgroundRunStatus, CacheStats
from mealcache.services import prometheus_metrics
from mealcache.services.recipe_cache import DEFAULT_FILL_LIMIT, RecipeCacheService

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 300


@dataclass
class MaintenanceReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    stats: Optional[CacheStats] = None
    population: Optional[BackgroundRunStatus] = None
    pruned: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stats": self.stats.to_dict() if self.stats else None,
            "population": self.population.to_dict() if self.population else None,
            "pruned": self.pruned,
            "error": self.error,
        }


class CacheMaintenanceScheduler:
    """Process-lifetime timer driving RecipeCacheService maintenance."""

    def __init__(
        self,
        cache_service: RecipeCacheService,
        *,
        interval_seconds: float = MAINTENANCE_INTERVAL_SECONDS,
        fill_limit: int = DEFAULT_FILL_LIMIT,
        stale_after: Optional[timedelta] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._cache = cache_service
        self.interval_seconds = interval_seconds
        self.fill_limit = fill_limit
        self.stale_after = stale_after
        self._sleep = sleep
        self._loop_task: Optional[asyncio.Task] = None
        self._tick_tasks: Set[asyncio.Task] = set()
        self._busy = False
        self._stopped = False
        self.runs = 0
        self.skipped_ticks = 0
        self._last_report: Optional[MaintenanceReport] = None

    @property
    def is_running(self) -> bool:
        """True while a maintenance run is in progress."""
        return self._busy

    @property
    def started(self) -> bool:
        return self._loop_task is not None

    @property
    def last_report(self) -> Optional[MaintenanceReport]:
        return self._last_report

    def start(self) -> None:
        """Start the timer. Runs one tick immediately, then one per interval."""
        if self._stopped:
            raise RuntimeError("Maintenance scheduler cannot be restarted after stop()")
        if self._loop_task is not None:
            logger.warning("Maintenance scheduler already started")
            return
        logger.info("Starting cache maintenance every %.0fs", self.interval_seconds)
        self._loop_task = asyncio.create_task(self._timer_loop())

    async def stop(self) -> None:
        """Stop the timer and wait for an in-progress run to finish."""
        self._stopped = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
        if self._tick_tasks:
            await asyncio.gather(*list(self._tick_tasks), return_exceptions=True)
        logger.info("Stopped cache maintenance")

    async def _timer_loop(self) -> None:
        while True:
            self.fire()
            await self._sleep(self.interval_seconds)

    def fire(self) -> asyncio.Task:
        """Fire a tick without waiting for it, the way the timer does."""
        task = asyncio.create_task(self.tick())
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)
        return task

    async def tick(self) -> bool:
        """Run maintenance unless a run is already in progress. Returns False when skipped."""
        if self._busy:
            self.skipped_ticks += 1
            prometheus_metrics.record_maintenance_tick("skipped")
            logger.info("Maintenance run still in progress, skipping tick")
            return False

        self._busy = True
        try:
            self._last_report = await self.run_maintenance()
            self.runs += 1
        finally:
            self._busy = False
        return True

    async def run_maintenance(self) -> MaintenanceReport:
        report = MaintenanceReport(started_at=datetime.now(timezone.utc))
        try:
            stats = await self._cache.cache_stats()
            report.stats = stats
            logger.info(
                "Cache stats: %d/%d recipes have full details (%d%%)",
                stats.with_details,
                stats.total,
                stats.cache_percentage,
            )

            if stats.basic_only > 0:
                report.population = await self._cache.fill_missing_details(self.fill_limit)

            if self.stale_after is not None:
                report.pruned = await self._cache.prune_stale(self.stale_after)

            prometheus_metrics.record_maintenance_tick("ran")
        except Exception as e:
            # One bad run must not kill the process-lifetime timer
            logger.exception("Cache maintenance error: %s", e)
            report.error = str(e)
            prometheus_metrics.record_maintenance_tick("error")
        report.finished_at = datetime.now(timezone.utc)
        return report
