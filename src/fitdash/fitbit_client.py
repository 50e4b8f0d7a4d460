"""
Fitbit Web API client - one read per resource per calendar day.

Every fetch returns either parsed data or UNAVAILABLE. Non-2xx replies
(including 429 rate limiting) and transport errors are logged here and never
raised, so callers only have to tell "no data" apart from "not available".
Requests go to the API directly with a bearer token, or through a forwarding
proxy that takes {url, method, headers} as JSON and replies with the upstream
status and body.
"""

import logging
from datetime import datetime, timedelta, tzinfo
from typing import List, Optional, Union

import requests

from fitdash import config
from fitdash.day_keys import local_instant, shift_day
from fitdash.logging_setup import TRACE
from fitdash.models import (
    SLEEP_LEVEL_MAP,
    DailySummary,
    HRVSummary,
    SleepPhase,
    TimeOfDaySample,
    WorkoutSession,
)

log = logging.getLogger(__name__)

MIN_PLAUSIBLE_BPM = 20
MAX_PLAUSIBLE_BPM = 250


class _Unavailable:
    """Sentinel for a resource that could not be fetched."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return '<UNAVAILABLE>'


UNAVAILABLE = _Unavailable()


def is_unavailable(result) -> bool:
    return result is UNAVAILABLE


def _parse_fitbit_datetime(value: str, tz: tzinfo) -> datetime:
    """Fitbit sends local "2025-03-25T23:30:00.000" or offset-qualified timestamps."""
    parsed = datetime.fromisoformat(value.strip().replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=tz)
    return parsed.astimezone(tz)


class FitbitClient:
    def __init__(self, access_token: str, tz: tzinfo, api_base: str = None,
                 proxy_url: str = None, timeout: float = None):
        self.access_token = access_token
        self.tz = tz
        self.api_base = (api_base or config.FITBIT_API_BASE).rstrip('/')
        self.proxy_url = config.FITBIT_PROXY_URL if proxy_url is None else proxy_url
        self.timeout = timeout or config.REQUEST_TIMEOUT

    # --- transport ---

    def _get_json(self, path: str, label: str) -> Union[dict, _Unavailable]:
        url = f"{self.api_base}{path}"
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            if self.proxy_url:
                response = requests.post(
                    self.proxy_url,
                    json={"url": url, "method": "GET", "headers": headers},
                    timeout=self.timeout
                )
            else:
                response = requests.get(url, headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            log.warning(f"⚠️ {label}: transport error for {url}: {e}")
            return UNAVAILABLE

        if response.status_code == 429:
            log.warning(f"⚠️ {label}: rate limit hit ({url})")
            return UNAVAILABLE
        if response.status_code != 200:
            log.warning(f"⚠️ {label}: error {response.status_code}: {response.text[:200]}")
            return UNAVAILABLE

        try:
            data = response.json()
        except ValueError:
            log.warning(f"⚠️ {label}: response was not JSON: {response.text[:200]}")
            return UNAVAILABLE
        if not isinstance(data, dict):
            log.warning(f"⚠️ {label}: unexpected payload type {type(data).__name__}")
            return UNAVAILABLE
        log.log(TRACE, f"{label}: 200 from {url}")
        return data

    # --- resources ---

    def fetch_heart_rate(self, day: str) -> Union[List[TimeOfDaySample], _Unavailable]:
        """Per-minute heart rate for one day as (time of day, bpm) pairs."""
        data = self._get_json(f"/1/user/-/activities/heart/date/{day}/1d/1min.json",
                              f"Heart rate {day}")
        if is_unavailable(data):
            return UNAVAILABLE

        dataset = (data.get('activities-heart-intraday') or {}).get('dataset') or []
        samples = []
        for entry in dataset:
            time_of_day = entry.get('time')
            try:
                bpm = int(entry.get('value'))
            except (TypeError, ValueError):
                continue
            if not time_of_day or not MIN_PLAUSIBLE_BPM <= bpm <= MAX_PLAUSIBLE_BPM:
                continue
            try:
                local_instant(day, time_of_day, self.tz)
            except (AttributeError, TypeError, ValueError):
                log.debug(f"Heart rate {day}: skipping unparseable time {time_of_day!r}")
                continue
            samples.append((time_of_day, bpm))
        log.debug(f"Heart rate {day}: {len(samples)} samples")
        return samples

    def fetch_sleep_phases(self, day: str) -> Union[List[SleepPhase], _Unavailable]:
        """Sleep stage intervals of every sleep log dated `day` (main sleep and naps)."""
        data = self._get_json(f"/1.2/user/-/sleep/date/{day}.json", f"Sleep {day}")
        if is_unavailable(data):
            return UNAVAILABLE

        phases = []
        for sleep_record in data.get('sleep', []):
            for entry in sleep_record.get('levels', {}).get('data', []):
                stage = SLEEP_LEVEL_MAP.get(entry.get('level'))
                seconds = entry.get('seconds') or 0
                if stage is None or seconds <= 0 or not entry.get('dateTime'):
                    continue
                try:
                    start = _parse_fitbit_datetime(entry['dateTime'], self.tz)
                except ValueError:
                    continue
                phases.append(SleepPhase(start=start, end=start + timedelta(seconds=seconds), stage=stage))
        return phases

    def fetch_workouts(self, day: str) -> Union[List[WorkoutSession], _Unavailable]:
        """Logged activities that started on `day`."""
        # The list endpoint takes one of beforeDate/afterDate; page back from the next day and filter
        next_day = shift_day(day, 1)
        data = self._get_json(
            f"/1/user/-/activities/list.json?beforeDate={next_day}&sort=desc&offset=0&limit=100",
            f"Workouts {day}"
        )
        if is_unavailable(data):
            return UNAVAILABLE

        workouts = []
        for activity in data.get('activities', []):
            start_time = activity.get('startTime') or ''
            if start_time[:10] != day:
                continue
            try:
                start = _parse_fitbit_datetime(start_time, self.tz)
            except ValueError:
                continue
            duration_ms = activity.get('duration') or activity.get('activeDuration') or 0
            workouts.append(WorkoutSession(
                start=start,
                end=start + timedelta(milliseconds=max(0, duration_ms)),
                activity_name=activity.get('activityName') or 'Activity',
                calories=max(0, activity.get('calories') or 0)
            ))
        return workouts

    def fetch_daily_summary(self, day: str) -> Union[DailySummary, _Unavailable]:
        """Resting heart rate and calories burned for `day`."""
        data = self._get_json(f"/1/user/-/activities/date/{day}.json", f"Daily summary {day}")
        if is_unavailable(data):
            return UNAVAILABLE

        summary = data.get('summary') or {}
        resting_hr = summary.get('restingHeartRate')
        calories = summary.get('caloriesOut')
        return DailySummary(
            day=day,
            resting_hr=int(resting_hr) if resting_hr else None,
            calories=float(calories) if calories is not None and calories >= 0 else None
        )

    def fetch_hrv(self, day: str) -> Union[Optional[HRVSummary], _Unavailable]:
        """Nightly RMSSD; None when the device recorded no HRV for `day`."""
        data = self._get_json(f"/1/user/-/hrv/date/{day}.json", f"HRV {day}")
        if is_unavailable(data):
            return UNAVAILABLE

        entries = data.get('hrv') or []
        if not entries:
            return None
        value = entries[0].get('value') or {}
        return HRVSummary(
            day=day,
            daily_rmssd=value.get('dailyRmssd'),
            deep_rmssd=value.get('deepRmssd')
        )
