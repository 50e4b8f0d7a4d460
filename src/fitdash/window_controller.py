"""
Load passes for the visible window of one chart view.

Every pan/zoom calls load_range(). The pass claims the days it needs from the
LoadTracker before submitting anything to the thread pool, so overlapping
passes never fetch the same (class, day) twice. Fetches run on the pool;
merges and tracker transitions happen on the calling thread as results arrive.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List

from fitdash import config
from fitdash.day_keys import day_range, shift_day
from fitdash.fitbit_client import UNAVAILABLE, is_unavailable
from fitdash.load_tracker import LoadTracker
from fitdash.models import ResourceClass

log = logging.getLogger(__name__)

NO_DATA_NOTICE = ("No heart rate data was found for this period. "
                  "Check that your tracker has synced, or log in with Fitbit again.")

OVERLAY_PARTS = ('sleep_phases', 'workouts', 'summary', 'hrv')

# One fetch pool for every chart view in the process
_fetch_executor = ThreadPoolExecutor(max_workers=config.FETCH_WORKERS, thread_name_prefix="fitbit_fetch")


@dataclass
class LoadPassResult:
    days: List[str] = field(default_factory=list)
    fetched_heart_rate: List[str] = field(default_factory=list)
    fetched_overlay: List[str] = field(default_factory=list)
    failed_heart_rate: List[str] = field(default_factory=list)
    failed_overlay: List[str] = field(default_factory=list)
    evicted: List[str] = field(default_factory=list)


class WindowController:
    def __init__(self, client, store, sink, tracker: LoadTracker = None,
                 executor: ThreadPoolExecutor = None, retention_days: int = None):
        self.client = client
        self.store = store
        self.sink = sink
        self.tracker = tracker or LoadTracker()
        self.retention_days = config.RETENTION_DAYS if retention_days is None else retention_days
        self.executor = executor or _fetch_executor
        # merge + tracker transition of a day is atomic with respect to eviction
        self._settle_lock = threading.Lock()
        self._first_pass_lock = threading.Lock()
        self._first_pass_done = False

    @property
    def tz(self):
        return self.store.tz

    def default_window(self, now: datetime = None):
        """The window shown before the user has panned: the last DEFAULT_WINDOW_HOURS up to now."""
        now = now or datetime.now(self.tz)
        return now - timedelta(hours=config.DEFAULT_WINDOW_HOURS), now

    def _fetch_overlay_part(self, part: str, day: str):
        fetchers = {
            'sleep_phases': self.client.fetch_sleep_phases,
            'workouts': self.client.fetch_workouts,
            'summary': self.client.fetch_daily_summary,
            'hrv': self.client.fetch_hrv,
        }
        return fetchers[part](day)

    @staticmethod
    def _result_of(future, kind: str, day: str):
        try:
            return future.result()
        except Exception:
            log.exception(f"❌ Unexpected error fetching {kind} for {day}")
            return UNAVAILABLE

    def load_range(self, visible_start: datetime, visible_end: datetime) -> LoadPassResult:
        """Fetch and merge every day of the window not yet loaded or loading, then redraw."""
        result = LoadPassResult(days=day_range(visible_start, visible_end, self.tz))

        heart_rate_claims: Dict[str, int] = {}
        overlay_claims: Dict[str, int] = {}
        for day in result.days:
            claim = self.tracker.try_begin(ResourceClass.HEART_RATE, day)
            if claim is not None:
                heart_rate_claims[day] = claim
            claim = self.tracker.try_begin(ResourceClass.OVERLAY, day)
            if claim is not None:
                overlay_claims[day] = claim

        if heart_rate_claims or overlay_claims:
            log.info(f"📥 Load pass {result.days[0]}..{result.days[-1]}: "
                     f"{len(heart_rate_claims)} heart rate day(s), {len(overlay_claims)} overlay day(s) to fetch")
        else:
            log.debug(f"Load pass over {len(result.days)} day(s): everything loaded or in flight")

        futures = {}
        for day in heart_rate_claims:
            futures[self.executor.submit(self.client.fetch_heart_rate, day)] = ('heart_rate', day)
        for day in overlay_claims:
            for part in OVERLAY_PARTS:
                futures[self.executor.submit(self._fetch_overlay_part, part, day)] = (part, day)

        overlay_results: Dict[str, Dict[str, object]] = {day: {} for day in overlay_claims}
        for future in as_completed(futures):
            kind, day = futures[future]
            value = self._result_of(future, kind, day)
            if kind == 'heart_rate':
                self._settle(ResourceClass.HEART_RATE, day, heart_rate_claims[day], value, result)
            else:
                overlay_results[day][kind] = value
                if len(overlay_results[day]) == len(OVERLAY_PARTS):
                    self._settle(ResourceClass.OVERLAY, day, overlay_claims[day], overlay_results[day], result)

        self._redraw(visible_start, visible_end)
        if self.retention_days > 0:
            result.evicted = self._evict_outside(result.days)
        return result

    def _settle(self, resource: ResourceClass, day: str, claim: int, value, result: LoadPassResult):
        settle = self._settle_heart_rate if resource is ResourceClass.HEART_RATE else self._settle_overlay
        with self._settle_lock:
            try:
                settle(day, claim, value, result)
            except Exception:
                log.exception(f"❌ Could not merge {resource.value} for {day}, will retry on a later pass")
                self.tracker.fail(resource, day, claim)
                if resource is ResourceClass.HEART_RATE:
                    result.failed_heart_rate.append(day)
                else:
                    result.failed_overlay.append(day)

    def _settle_heart_rate(self, day: str, claim: int, samples, result: LoadPassResult):
        if is_unavailable(samples):
            self.tracker.fail(ResourceClass.HEART_RATE, day, claim)
            result.failed_heart_rate.append(day)
            log.warning(f"⚠️ Heart rate for {day} unavailable, will retry on a later pass")
            return
        count = self.store.merge_heart_rate(day, samples)
        self.tracker.finish(ResourceClass.HEART_RATE, day, claim)
        result.fetched_heart_rate.append(day)
        log.info(f"✅ Heart rate {day}: {count} samples")

    def _settle_overlay(self, day: str, claim: int, parts: Dict[str, object], result: LoadPassResult):
        if all(is_unavailable(value) for value in parts.values()):
            self.tracker.fail(ResourceClass.OVERLAY, day, claim)
            result.failed_overlay.append(day)
            log.warning(f"⚠️ All overlays for {day} unavailable, will retry on a later pass")
            return

        def available(value):
            return None if is_unavailable(value) else value

        missing = [part for part, value in parts.items() if is_unavailable(value)]
        self.store.merge_overlay(
            day,
            phases=available(parts['sleep_phases']),
            workouts=available(parts['workouts']),
            summary=available(parts['summary']),
            hrv=available(parts['hrv'])
        )
        self.tracker.finish(ResourceClass.OVERLAY, day, claim)
        result.fetched_overlay.append(day)
        if missing:
            log.info(f"✅ Overlays {day} (without {', '.join(missing)})")
        else:
            log.info(f"✅ Overlays {day}")

    def _redraw(self, visible_start: datetime, visible_end: datetime):
        snapshot = self.store.snapshot(visible_start, visible_end)
        self.sink.redraw(snapshot)

        with self._first_pass_lock:
            first_pass = not self._first_pass_done
            self._first_pass_done = True
        if first_pass and not snapshot.samples:
            log.warning("⚠️ Initial load found no heart rate samples")
            self.sink.notify(NO_DATA_NOTICE)

    def _evict_outside(self, visible_days: List[str]) -> List[str]:
        if not visible_days:
            return []
        keep_from = shift_day(visible_days[0], -self.retention_days)
        keep_to = shift_day(visible_days[-1], self.retention_days)
        with self._settle_lock:
            evicted = sorted(day for day in self._held_days() if day < keep_from or day > keep_to)
            if not evicted:
                return []
            removed = self.store.evict_days(evicted)
            self.tracker.forget(evicted)
        log.info(f"🧹 Evicted {len(evicted)} day(s) outside the retention window ({removed} samples)")
        return evicted

    def _held_days(self):
        days = set(self.store.resident_days())
        for resource in ResourceClass:
            days.update(self.tracker.loaded_days(resource))
        return days

    def close(self):
        """Drop everything this view holds. Fetches still running complete into the emptied store."""
        with self._settle_lock:
            days = self._held_days()
            removed = self.store.evict_days(days)
            self.tracker.forget(days)
        log.debug(f"Closed chart view: dropped {len(days)} day(s), {removed} samples")
