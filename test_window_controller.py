import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from fitdash.fitbit_client import UNAVAILABLE
from fitdash.load_tracker import LoadTracker
from fitdash.models import DailySummary, HRVSummary, LoadState, ResourceClass, SleepPhase, SleepStage
from fitdash.series_store import SeriesStore
from fitdash.window_controller import NO_DATA_NOTICE, WindowController

UTC = timezone.utc
HR = ResourceClass.HEART_RATE
OVERLAY = ResourceClass.OVERLAY


class FakeClient:
    """Counts calls per (resource, day); responses can be overridden per resource and day."""

    def __init__(self):
        self.calls = Counter()
        self.responses = {}
        self.lock = threading.Lock()

    def _call(self, resource, day, default):
        with self.lock:
            self.calls[(resource, day)] += 1
            response = self.responses.get((resource, day), default)
        if callable(response):
            return response()
        return response

    def fetch_heart_rate(self, day):
        return self._call('heart_rate', day, [('12:00:00', 70), ('12:01:00', 72)])

    def fetch_sleep_phases(self, day):
        start = datetime.strptime(day, '%Y-%m-%d').replace(tzinfo=UTC) + timedelta(hours=1)
        return self._call('sleep', day, [SleepPhase(start, start + timedelta(minutes=30), SleepStage.DEEP)])

    def fetch_workouts(self, day):
        return self._call('workouts', day, [])

    def fetch_daily_summary(self, day):
        return self._call('summary', day, DailySummary(day, resting_hr=57, calories=2100))

    def fetch_hrv(self, day):
        return self._call('hrv', day, HRVSummary(day, daily_rmssd=38.0))

    def count(self, resource, day):
        with self.lock:
            return self.calls[(resource, day)]


class RecordingSink:
    def __init__(self):
        self.snapshots = []
        self.notices = []

    def redraw(self, snapshot):
        self.snapshots.append(snapshot)

    def notify(self, message):
        self.notices.append(message)


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=8)
    yield pool
    pool.shutdown(wait=True)


def make_controller(executor, client=None, retention_days=0):
    client = client or FakeClient()
    store = SeriesStore(UTC)
    sink = RecordingSink()
    controller = WindowController(client, store, sink, tracker=LoadTracker(loading_timeout=60),
                                  executor=executor, retention_days=retention_days)
    return controller, client, store, sink


def day_window(day, days=1):
    start = datetime.strptime(day, '%Y-%m-%d').replace(tzinfo=UTC)
    return start, start + timedelta(days=days) - timedelta(minutes=1)


def test_pass_loads_every_day_in_range(executor):
    controller, client, store, sink = make_controller(executor)
    result = controller.load_range(*day_window('2025-03-24', days=3))

    assert result.days == ['2025-03-24', '2025-03-25', '2025-03-26']
    for day in result.days:
        assert controller.tracker.status(HR, day) is LoadState.LOADED
        assert controller.tracker.status(OVERLAY, day) is LoadState.LOADED
        assert client.count('heart_rate', day) == 1
        assert client.count('hrv', day) == 1
    assert store.sample_count() == 6
    assert len(sink.snapshots) == 1
    assert len(sink.snapshots[0].samples) == 6
    assert sink.snapshots[0].resting_hr_by_day == {day: 57 for day in result.days}


def test_second_pass_over_same_range_fetches_nothing(executor):
    controller, client, store, sink = make_controller(executor)
    controller.load_range(*day_window('2025-03-25'))
    result = controller.load_range(*day_window('2025-03-25'))

    assert result.fetched_heart_rate == [] and result.fetched_overlay == []
    assert sum(client.calls.values()) == 5
    assert len(sink.snapshots) == 2


def test_overlapping_passes_fetch_each_day_once(executor):
    controller, client, store, sink = make_controller(executor)
    release = threading.Event()
    started = threading.Event()

    def slow_heart_rate():
        started.set()
        release.wait(5)
        return [('00:01:00', 60)]

    client.responses[('heart_rate', '2025-03-25')] = slow_heart_rate

    first = threading.Thread(target=controller.load_range, args=day_window('2025-03-25'))
    first.start()
    assert started.wait(5)

    # a second pan event while the first heart-rate fetch is still in flight
    result = controller.load_range(*day_window('2025-03-25'))
    assert result.fetched_heart_rate == []
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.LOADING

    release.set()
    first.join(5)
    assert client.count('heart_rate', '2025-03-25') == 1
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.LOADED
    assert store.sample_count() == 1


def test_many_concurrent_passes_issue_one_fetch_per_day(executor):
    controller, client, store, sink = make_controller(executor)
    barrier = threading.Barrier(8)

    def pan():
        barrier.wait()
        controller.load_range(*day_window('2025-03-24', days=2))

    threads = [threading.Thread(target=pan) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(10)

    for day in ('2025-03-24', '2025-03-25'):
        for resource in ('heart_rate', 'sleep', 'workouts', 'summary', 'hrv'):
            assert client.count(resource, day) == 1
    assert store.sample_count() == 4


def test_failed_heart_rate_is_retried_on_next_pass(executor):
    controller, client, store, sink = make_controller(executor)
    client.responses[('heart_rate', '2025-03-25')] = UNAVAILABLE

    result = controller.load_range(*day_window('2025-03-25'))
    assert result.failed_heart_rate == ['2025-03-25']
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.UNLOADED
    assert controller.tracker.status(OVERLAY, '2025-03-25') is LoadState.LOADED

    del client.responses[('heart_rate', '2025-03-25')]
    result = controller.load_range(*day_window('2025-03-25'))
    assert result.fetched_heart_rate == ['2025-03-25']
    assert client.count('heart_rate', '2025-03-25') == 2
    assert client.count('sleep', '2025-03-25') == 1
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.LOADED


def test_empty_heart_rate_day_is_not_retried(executor):
    controller, client, store, sink = make_controller(executor)
    client.responses[('heart_rate', '2025-03-25')] = []

    controller.load_range(*day_window('2025-03-25'))
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.LOADED

    controller.load_range(*day_window('2025-03-25'))
    assert client.count('heart_rate', '2025-03-25') == 1


def test_partial_overlay_failure_still_marks_day_loaded(executor):
    controller, client, store, sink = make_controller(executor)
    client.responses[('hrv', '2025-03-26')] = UNAVAILABLE

    controller.load_range(*day_window('2025-03-26'))
    assert controller.tracker.status(OVERLAY, '2025-03-26') is LoadState.LOADED
    assert '2025-03-26' not in store.hrv_by_day
    assert store.summaries_by_day['2025-03-26'].resting_hr == 57
    assert len(store.query_overlays_in_range(*day_window('2025-03-26'))['sleep_phases']) == 1

    calls_before = sum(client.calls.values())
    controller.load_range(*day_window('2025-03-26'))
    assert sum(client.calls.values()) == calls_before


def test_all_overlay_parts_failing_reverts_to_unloaded(executor):
    controller, client, store, sink = make_controller(executor)
    for resource in ('sleep', 'workouts', 'summary', 'hrv'):
        client.responses[(resource, '2025-03-25')] = UNAVAILABLE

    result = controller.load_range(*day_window('2025-03-25'))
    assert result.failed_overlay == ['2025-03-25']
    assert controller.tracker.status(OVERLAY, '2025-03-25') is LoadState.UNLOADED

    client.responses.clear()
    controller.load_range(*day_window('2025-03-25'))
    assert client.count('sleep', '2025-03-25') == 2
    assert controller.tracker.status(OVERLAY, '2025-03-25') is LoadState.LOADED


def test_unexpected_exception_is_treated_as_unavailable(executor):
    controller, client, store, sink = make_controller(executor)

    def boom():
        raise RuntimeError("socket closed")

    client.responses[('heart_rate', '2025-03-25')] = boom
    result = controller.load_range(*day_window('2025-03-25'))
    assert result.failed_heart_rate == ['2025-03-25']
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.UNLOADED
    assert len(sink.snapshots) == 1


def test_notice_only_after_empty_initial_pass(executor):
    controller, client, store, sink = make_controller(executor)
    client.responses[('heart_rate', '2025-03-25')] = []
    client.responses[('heart_rate', '2025-03-26')] = []

    controller.load_range(*day_window('2025-03-25'))
    assert sink.notices == [NO_DATA_NOTICE]

    controller.load_range(*day_window('2025-03-26'))
    assert sink.notices == [NO_DATA_NOTICE]


def test_no_notice_when_initial_pass_has_samples(executor):
    controller, client, store, sink = make_controller(executor)
    controller.load_range(*day_window('2025-03-25'))
    assert sink.notices == []


def test_days_outside_retention_window_are_evicted(executor):
    controller, client, store, sink = make_controller(executor, retention_days=1)
    controller.load_range(*day_window('2025-03-01'))
    assert store.sample_count() == 2

    result = controller.load_range(*day_window('2025-03-20'))
    assert result.evicted == ['2025-03-01']
    assert controller.tracker.status(HR, '2025-03-01') is LoadState.UNLOADED
    assert store.resident_days() == ['2025-03-20']

    # panning back refetches the evicted day
    controller.load_range(*day_window('2025-03-01'))
    assert client.count('heart_rate', '2025-03-01') == 2


def test_merge_error_settles_the_pass(executor):
    controller, client, store, sink = make_controller(executor)
    client.responses[('heart_rate', '2025-03-25')] = [('12:00:00.000', 70)]

    result = controller.load_range(*day_window('2025-03-25'))
    assert result.failed_heart_rate == ['2025-03-25']
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.UNLOADED
    assert controller.tracker.status(OVERLAY, '2025-03-25') is LoadState.LOADED
    assert len(sink.snapshots) == 1

    client.responses.clear()
    controller.load_range(*day_window('2025-03-25'))
    assert client.count('heart_rate', '2025-03-25') == 2
    assert store.sample_count() == 2


class EvictingStore(SeriesStore):
    """Starts an eviction on another thread right after each heart-rate merge."""

    def __init__(self, tz):
        super().__init__(tz)
        self.controller = None
        self.evictions = []

    def merge_heart_rate(self, day, samples):
        count = super().merge_heart_rate(day, samples)
        if self.controller is not None and not self.evictions:
            thread = threading.Thread(target=self.controller._evict_outside, args=(['2025-03-20'],))
            thread.start()
            thread.join(timeout=0.2)
            self.evictions.append(thread)
        return count


def test_eviction_never_splits_merge_from_finish(executor):
    client = FakeClient()
    store = EvictingStore(UTC)
    controller = WindowController(client, store, RecordingSink(), tracker=LoadTracker(loading_timeout=60),
                                  executor=executor, retention_days=1)
    store.controller = controller

    controller.load_range(*day_window('2025-03-01'))
    for thread in store.evictions:
        thread.join()

    status = controller.tracker.status(HR, '2025-03-01')
    resident = store.sample_count(*day_window('2025-03-01'))
    assert (status is LoadState.LOADED) == (resident > 0)

    controller.load_range(*day_window('2025-03-01'))
    assert store.sample_count(*day_window('2025-03-01')) == 2


def test_close_drops_everything_the_view_holds(executor):
    controller, client, store, sink = make_controller(executor)
    controller.load_range(*day_window('2025-03-25'))
    controller.close()

    assert store.sample_count() == 0
    assert store.resident_days() == []
    assert controller.tracker.status(HR, '2025-03-25') is LoadState.UNLOADED
