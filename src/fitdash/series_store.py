"""
In-memory merged series for one chart view.

Heart-rate samples live in one list sorted by UTC timestamp with a parallel
list of timestamps for bisect. Overlays are grouped by the day they were
fetched for, so a re-merge of a day replaces that day's phases and workouts
instead of duplicating them.
"""

import bisect
import threading
from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd

from fitdash.day_keys import day_bounds, day_range, local_instant, to_day_key, to_utc
from fitdash.models import (
    ChartSnapshot,
    DailySummary,
    HeartRateSample,
    HRVSummary,
    SleepPhase,
    TimeOfDaySample,
    WorkoutSession,
)


class SeriesStore:
    def __init__(self, tz: tzinfo):
        self.tz = tz
        self._lock = threading.RLock()
        self._times: List[datetime] = []
        self._samples: List[HeartRateSample] = []
        self._phases_by_day: Dict[str, List[SleepPhase]] = {}
        self._workouts_by_day: Dict[str, List[WorkoutSession]] = {}
        self.resting_hr_by_day: Dict[str, int] = {}
        self.summaries_by_day: Dict[str, DailySummary] = {}
        self.hrv_by_day: Dict[str, HRVSummary] = {}

    # --- merge ---

    def merge_heart_rate(self, day: str, samples: Iterable[TimeOfDaySample]) -> int:
        """
        Merge one day's (time of day, bpm) samples into the global series.

        All samples of a day fall inside that day's bounds, so only that slice of
        the sorted list is rebuilt. Times skipped by a spring-forward jump resolve
        with the pre-transition offset, which still lands inside the day. A
        repeated instant keeps the value merged last.

        Returns:
            Number of samples now stored for the day
        """
        incoming = {}
        for time_of_day, bpm in samples:
            timestamp = to_utc(local_instant(day, time_of_day, self.tz), self.tz)
            incoming[timestamp] = HeartRateSample(timestamp=timestamp, bpm=int(bpm))

        day_start, day_end = (to_utc(bound, self.tz) for bound in day_bounds(day, self.tz))
        with self._lock:
            lo = bisect.bisect_left(self._times, day_start)
            hi = bisect.bisect_left(self._times, day_end)
            merged = {sample.timestamp: sample for sample in self._samples[lo:hi]}
            merged.update(incoming)
            ordered = [merged[ts] for ts in sorted(merged)]
            self._samples[lo:hi] = ordered
            self._times[lo:hi] = [sample.timestamp for sample in ordered]
            return len(ordered)

    def merge_overlay(self, day: str, phases: Optional[List[SleepPhase]] = None,
                      workouts: Optional[List[WorkoutSession]] = None,
                      summary: Optional[DailySummary] = None,
                      hrv: Optional[HRVSummary] = None):
        """Store one day's overlays. None means "not available" and leaves that field untouched."""
        with self._lock:
            if phases is not None:
                self._phases_by_day[day] = list(phases)
            if workouts is not None:
                self._workouts_by_day[day] = list(workouts)
            if summary is not None:
                self.summaries_by_day[day] = summary
                if summary.resting_hr is not None:
                    self.resting_hr_by_day[day] = summary.resting_hr
            if hrv is not None:
                self.hrv_by_day[day] = hrv

    # --- query ---

    def query_samples_in_range(self, start: datetime, end: datetime) -> List[HeartRateSample]:
        """Samples with start <= timestamp < end, ascending."""
        start, end = to_utc(start, self.tz), to_utc(end, self.tz)
        with self._lock:
            lo = bisect.bisect_left(self._times, start)
            hi = bisect.bisect_left(self._times, end)
            return self._samples[lo:hi]

    def query_overlays_in_range(self, start: datetime, end: datetime) -> dict:
        start, end = to_utc(start, self.tz), to_utc(end, self.tz)
        # [start, end): a window ending at midnight does not pull in the next day's scalars
        days = day_range(start, max(start, end - timedelta(microseconds=1)), self.tz)
        with self._lock:
            phases = [phase for day_phases in self._phases_by_day.values()
                      for phase in day_phases if phase.overlaps(start, end)]
            workouts = [workout for day_workouts in self._workouts_by_day.values()
                        for workout in day_workouts if workout.overlaps(start, end)]
            return {
                'sleep_phases': sorted(phases, key=lambda p: p.start),
                'workouts': sorted(workouts, key=lambda w: w.start),
                'resting_hr_by_day': {d: self.resting_hr_by_day[d] for d in days if d in self.resting_hr_by_day},
                'summaries_by_day': {d: self.summaries_by_day[d] for d in days if d in self.summaries_by_day},
                'hrv_by_day': {d: self.hrv_by_day[d] for d in days if d in self.hrv_by_day},
            }

    def snapshot(self, start: datetime, end: datetime) -> ChartSnapshot:
        with self._lock:
            return ChartSnapshot(
                start=start,
                end=end,
                samples=self.query_samples_in_range(start, end),
                **self.query_overlays_in_range(start, end)
            )

    def sample_count(self, start: datetime = None, end: datetime = None) -> int:
        if start is None or end is None:
            return len(self._samples)
        return len(self.query_samples_in_range(start, end))

    def time_span(self) -> Optional[Tuple[datetime, datetime]]:
        with self._lock:
            if not self._times:
                return None
            return self._times[0], self._times[-1]

    def to_frame(self, start: datetime, end: datetime) -> pd.DataFrame:
        """Samples in [start, end) as a DataFrame with local-time `time` and `bpm` columns."""
        samples = self.query_samples_in_range(start, end)
        df = pd.DataFrame({
            'time': [s.timestamp for s in samples],
            'bpm': [s.bpm for s in samples],
        })
        df['time'] = pd.to_datetime(df['time'], utc=True).dt.tz_convert(self.tz)
        df['bpm'] = df['bpm'].astype('int64')
        return df

    # --- eviction ---

    def evict_days(self, days: Iterable[str]) -> int:
        """Drop samples and overlays of the given days. Returns the number of samples removed."""
        removed = 0
        with self._lock:
            for day in days:
                day_start, day_end = (to_utc(bound, self.tz) for bound in day_bounds(day, self.tz))
                lo = bisect.bisect_left(self._times, day_start)
                hi = bisect.bisect_left(self._times, day_end)
                removed += hi - lo
                del self._times[lo:hi]
                del self._samples[lo:hi]
                for per_day in (self._phases_by_day, self._workouts_by_day, self.resting_hr_by_day,
                                self.summaries_by_day, self.hrv_by_day):
                    per_day.pop(day, None)
        return removed

    def resident_days(self) -> List[str]:
        """Days that hold any merged data."""
        with self._lock:
            days = {to_day_key(sample.timestamp, self.tz) for sample in self._samples}
            for per_day in (self._phases_by_day, self._workouts_by_day, self.summaries_by_day, self.hrv_by_day):
                days.update(per_day)
            return sorted(days)
