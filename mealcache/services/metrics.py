"""
Cache accounting for the /api/metrics endpoint and per-response `_metrics`.

Each API request opens a RequestLedger held in a ContextVar. The service
layer adds store and upstream time to it and notes where every read was
served from (the persistent cache or Spoonacular), per operation. When the
response is built the ledger is folded into the process-wide CacheLedger,
which also counts background population runs.
"""
import logging
import time
from collections import Counter
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Dict, Iterator, Optional

logger = logging.getLogger(__name__)

CACHE = "cache"
UPSTREAM = "upstream"

_ledger_var: ContextVar[Optional["RequestLedger"]] = ContextVar("request_ledger", default=None)


def _percent(part: int, whole: int) -> float:
    return round(100 * part / whole, 2) if whole else 0


@dataclass
class Timer:
    elapsed_ms: float = 0.0


@dataclass
class RequestLedger:
    store_ms: float = 0.0
    upstream_ms: float = 0.0
    # (operation, CACHE | UPSTREAM) -> reads
    served: Counter = field(default_factory=Counter)

    @property
    def cache_hits(self) -> int:
        return sum(n for (_, source), n in self.served.items() if source == CACHE)

    @property
    def upstream_reads(self) -> int:
        return sum(n for (_, source), n in self.served.items() if source == UPSTREAM)

    def to_dict(self) -> dict:
        return {
            "store_ms": round(self.store_ms, 2),
            "upstream_ms": round(self.upstream_ms, 2),
            "cache_hits": self.cache_hits,
            "upstream_reads": self.upstream_reads,
        }


def start_request() -> RequestLedger:
    """Open a fresh ledger for the current request. Call first in each API handler."""
    ledger = RequestLedger()
    _ledger_var.set(ledger)
    return ledger


def current_request() -> Optional[RequestLedger]:
    return _ledger_var.get()


def record_served(operation: str, source: str) -> None:
    """Note that a read for operation was answered from source (CACHE or UPSTREAM)."""
    ledger = _ledger_var.get()
    if ledger is not None:
        ledger.served[(operation, source)] += 1


@contextmanager
def _timed(attribute: str) -> Iterator[Timer]:
    timer = Timer()
    start = time.perf_counter()
    try:
        yield timer
    finally:
        timer.elapsed_ms = (time.perf_counter() - start) * 1000
        ledger = _ledger_var.get()
        if ledger is not None:
            setattr(ledger, attribute, getattr(ledger, attribute) + timer.elapsed_ms)


def timed_store():
    """Time a persistent store call into the current request."""
    return _timed("store_ms")


def timed_upstream():
    """Time a Spoonacular call into the current request."""
    return _timed("upstream_ms")


@dataclass
class BackgroundTotals:
    runs: int = 0
    halted_runs: int = 0
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "runs": self.runs,
            "halted_runs": self.halted_runs,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "success_rate_percent": _percent(self.succeeded, self.attempted),
        }


@dataclass
class CacheLedger:
    """Process-lifetime totals reported by /api/metrics."""

    requests: int = 0
    store_ms: float = 0.0
    upstream_ms: float = 0.0
    served: Counter = field(default_factory=Counter)
    background: BackgroundTotals = field(default_factory=BackgroundTotals)

    def record_request(self, ledger: RequestLedger) -> None:
        self.requests += 1
        self.store_ms += ledger.store_ms
        self.upstream_ms += ledger.upstream_ms
        self.served.update(ledger.served)
        logger.debug(
            "Request served: store=%.2fms upstream=%.2fms cache=%d upstream_reads=%d",
            ledger.store_ms,
            ledger.upstream_ms,
            ledger.cache_hits,
            ledger.upstream_reads,
        )

    def record_background_run(
        self, *, attempted: int, succeeded: int, failed: int, skipped: int, halted: bool
    ) -> None:
        totals = self.background
        totals.runs += 1
        totals.halted_runs += int(halted)
        totals.attempted += attempted
        totals.succeeded += succeeded
        totals.failed += failed
        totals.skipped += skipped

    def reset(self) -> None:
        self.requests = 0
        self.store_ms = 0.0
        self.upstream_ms = 0.0
        self.served = Counter()
        self.background = BackgroundTotals()

    def operations(self) -> Dict[str, dict]:
        names = sorted({operation for operation, _ in self.served})
        result = {}
        for name in names:
            hits = self.served[(name, CACHE)]
            upstream = self.served[(name, UPSTREAM)]
            result[name] = {
                CACHE: hits,
                UPSTREAM: upstream,
                "hit_rate_percent": _percent(hits, hits + upstream),
            }
        return result

    def to_dict(self) -> dict:
        return {
            "requests": self.requests,
            "time_ms": {
                "store": round(self.store_ms, 2),
                "upstream": round(self.upstream_ms, 2),
            },
            "operations": self.operations(),
            "background": self.background.to_dict(),
        }


cache_ledger = CacheLedger()
