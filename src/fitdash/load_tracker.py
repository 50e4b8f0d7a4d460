"""
Per-day load state for each resource class.

    UNLOADED --try_begin--> LOADING --finish--> LOADED
                               |
                               +------fail----> UNLOADED

try_begin is the only way into LOADING and is atomic, so at most one fetch per
(class, day) is ever in flight. A LOADING entry older than `loading_timeout`
seconds counts as UNLOADED again; the claim token handed out by try_begin
makes a late finish/fail from the abandoned load a no-op.
"""

import itertools
import logging
import threading
import time
from typing import Callable, Dict, Iterable, Optional, Tuple

from fitdash import config
from fitdash.models import LoadState, ResourceClass

log = logging.getLogger(__name__)


class LoadTracker:
    def __init__(self, loading_timeout: float = None, clock: Callable[[], float] = time.monotonic):
        self.loading_timeout = config.LOADING_TIMEOUT if loading_timeout is None else loading_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._claims = itertools.count(1)
        self._loaded = set()
        # (class, day) -> (claim, started_at)
        self._loading: Dict[Tuple[ResourceClass, str], Tuple[int, float]] = {}

    def _is_stale(self, started_at: float) -> bool:
        return self.loading_timeout > 0 and self._clock() - started_at >= self.loading_timeout

    def _status(self, key) -> LoadState:
        if key in self._loaded:
            return LoadState.LOADED
        entry = self._loading.get(key)
        if entry is not None and not self._is_stale(entry[1]):
            return LoadState.LOADING
        return LoadState.UNLOADED

    def status(self, resource: ResourceClass, day: str) -> LoadState:
        with self._lock:
            return self._status((resource, day))

    def try_begin(self, resource: ResourceClass, day: str) -> Optional[int]:
        """Claim (resource, day) for loading. Returns a claim token, or None if already loading/loaded."""
        key = (resource, day)
        with self._lock:
            if self._status(key) is not LoadState.UNLOADED:
                return None
            if key in self._loading:
                log.warning(f"⏱️ {resource.value} load for {day} timed out after {self.loading_timeout}s, retrying")
            claim = next(self._claims)
            self._loading[key] = (claim, self._clock())
            return claim

    def _release(self, key, claim: int) -> bool:
        entry = self._loading.get(key)
        if entry is None or entry[0] != claim:
            return False
        del self._loading[key]
        return True

    def finish(self, resource: ResourceClass, day: str, claim: int) -> bool:
        """LOADING -> LOADED. Ignored (returns False) if the claim is no longer current."""
        key = (resource, day)
        with self._lock:
            if not self._release(key, claim):
                log.debug(f"Ignoring stale finish for {resource.value} {day} (claim {claim})")
                return False
            self._loaded.add(key)
            return True

    def fail(self, resource: ResourceClass, day: str, claim: int) -> bool:
        """LOADING -> UNLOADED so a later pass retries."""
        key = (resource, day)
        with self._lock:
            if not self._release(key, claim):
                log.debug(f"Ignoring stale failure for {resource.value} {day} (claim {claim})")
                return False
            return True

    def forget(self, days: Iterable[str]):
        """LOADED -> UNLOADED for the given days (both classes). In-flight loads are left alone."""
        days = set(days)
        with self._lock:
            self._loaded = {key for key in self._loaded if key[1] not in days}

    def loaded_days(self, resource: ResourceClass):
        with self._lock:
            return sorted(day for cls, day in self._loaded if cls is resource)
