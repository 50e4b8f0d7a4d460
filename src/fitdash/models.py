"""Data types shared by the client, the store and the chart."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple


class ResourceClass(str, Enum):
    HEART_RATE = "heart_rate"
    OVERLAY = "overlay"


class LoadState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"


class SleepStage(str, Enum):
    LIGHT = "light"
    DEEP = "deep"
    REM = "rem"
    WAKE = "wake"


# Fitbit "stages" levels map one to one; "classic" levels (older devices,
# short naps) are folded into the closest stage.
SLEEP_LEVEL_MAP = {
    'light': SleepStage.LIGHT,
    'deep': SleepStage.DEEP,
    'rem': SleepStage.REM,
    'wake': SleepStage.WAKE,
    'asleep': SleepStage.LIGHT,
    'restless': SleepStage.WAKE,
    'awake': SleepStage.WAKE,
}


# (time of day "HH:MM:SS", bpm) as returned by the intraday endpoint
TimeOfDaySample = Tuple[str, int]


@dataclass(frozen=True)
class HeartRateSample:
    timestamp: datetime
    bpm: int


@dataclass(frozen=True)
class SleepPhase:
    start: datetime
    end: datetime
    stage: SleepStage

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and self.end > start


@dataclass(frozen=True)
class WorkoutSession:
    start: datetime
    end: datetime
    activity_name: str
    calories: float = 0

    def overlaps(self, start: datetime, end: datetime) -> bool:
        # zero-length sessions still count when their instant is inside the window
        if self.start == self.end:
            return start <= self.start < end
        return self.start < end and self.end > start


@dataclass(frozen=True)
class DailySummary:
    day: str
    resting_hr: Optional[int] = None
    calories: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return self.resting_hr is None and self.calories is None


@dataclass(frozen=True)
class HRVSummary:
    day: str
    daily_rmssd: Optional[float] = None
    deep_rmssd: Optional[float] = None


@dataclass(frozen=True)
class ChartSnapshot:
    """Everything the chart needs to paint one visible range."""
    start: datetime
    end: datetime
    samples: List[HeartRateSample] = field(default_factory=list)
    sleep_phases: List[SleepPhase] = field(default_factory=list)
    workouts: List[WorkoutSession] = field(default_factory=list)
    resting_hr_by_day: Dict[str, int] = field(default_factory=dict)
    summaries_by_day: Dict[str, DailySummary] = field(default_factory=dict)
    hrv_by_day: Dict[str, HRVSummary] = field(default_factory=dict)
