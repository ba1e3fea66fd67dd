"""In-process read-through cache for the HTTP layer.

Entries are keyed by dataset name (``accounts``, ``account_tree``, ``budgets``...)
plus the request parameters that shaped them. Handlers invalidate the datasets
their writes touch.
"""

from __future__ import annotations

import time
from threading import Lock
from typing import Any, Callable, Hashable

import structlog

from .config import settings

logger = structlog.get_logger(__name__)

# Datasets whose content depends on postings, calibrations or rates.
LEDGER_DATASETS = ("accounts", "account_tree", "balances", "budgets", "dashboard", "reconciliation")


class ReadCache:
    def __init__(self, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = settings.CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[str, Hashable], tuple[float, Any]] = {}
        self._lock = Lock()

    def get_or_load(self, dataset: str, key: Hashable, loader: Callable[[], Any]) -> Any:
        now = self._clock()
        with self._lock:
            hit = self._entries.get((dataset, key))
            if hit is not None and hit[0] > now:
                return hit[1]
        value = loader()
        if self.ttl_seconds > 0:
            with self._lock:
                self._entries[(dataset, key)] = (now + self.ttl_seconds, value)
        return value

    def invalidate(self, *datasets: str) -> None:
        """Drop the named datasets, or everything when none are given."""
        with self._lock:
            if not datasets:
                self._entries.clear()
            else:
                for cache_key in [k for k in self._entries if k[0] in datasets]:
                    del self._entries[cache_key]
        logger.debug("cache_invalidated", datasets=list(datasets) or "all")

    def invalidate_ledger(self) -> None:
        self.invalidate(*LEDGER_DATASETS)


read_cache = ReadCache()


def get_read_cache() -> ReadCache:
    return read_cache
