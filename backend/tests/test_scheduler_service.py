import pytest

from services import scheduler_service
from services.scheduler_service import MAINTENANCE_JOB_ID, parse_schedule_config


@pytest.fixture
def scheduler():
    yield scheduler_service.get_scheduler()
    scheduler_service.shutdown_scheduler()


class CountingCache:
    def __init__(self, evicted=3, error=None):
        self.evicted = evicted
        self.error = error
        self.calls = 0

    def evict_excess(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.evicted


@pytest.mark.parametrize("frequency, expected", [
    ("manual", None),
    ("", None),
    ("hourly", {"type": "interval", "hours": 1}),
    ("daily", {"type": "cron", "hour": 0, "minute": 0}),
    ("interval:30m", {"type": "interval", "minutes": 30}),
    ("interval:2h", {"type": "interval", "hours": 2}),
    ("interval:1d", {"type": "interval", "days": 1}),
    ("interval:0m", None),
    ("interval:xh", None),
    ("cron:15 3 * * 1", {
        "type": "cron", "minute": "15", "hour": "3", "day": "*", "month": "*", "day_of_week": "1",
    }),
    ("cron:15 3", None),
    ("every tuesday", None),
])
def test_parse_schedule_config(frequency, expected):
    assert parse_schedule_config(frequency) == expected


def test_run_cache_maintenance_reports_evictions():
    cache = CountingCache(evicted=3)
    assert scheduler_service.run_cache_maintenance(cache) == 3


def test_run_cache_maintenance_survives_errors():
    cache = CountingCache(error=RuntimeError("db down"))
    assert scheduler_service.run_cache_maintenance(cache) == 0
    assert cache.calls == 1


def test_schedule_lifecycle(scheduler):
    cache = CountingCache()

    assert scheduler_service.schedule_cache_maintenance(cache, "interval:2h") is True
    assert scheduler_service.schedule_cache_maintenance(cache, "cron:0 4 * * *") is True

    jobs = scheduler_service.get_scheduled_jobs()
    assert [job["job_id"] for job in jobs] == [MAINTENANCE_JOB_ID]
    assert jobs[0]["next_run_time"] is not None

    assert scheduler_service.pause_cache_maintenance() is True
    assert scheduler.get_job(MAINTENANCE_JOB_ID).next_run_time is None
    assert scheduler_service.resume_cache_maintenance() is True
    assert scheduler.get_job(MAINTENANCE_JOB_ID).next_run_time is not None

    assert scheduler_service.remove_cache_maintenance() is True
    assert scheduler_service.remove_cache_maintenance() is False
    assert scheduler_service.pause_cache_maintenance() is False


def test_manual_frequency_schedules_nothing(scheduler):
    assert scheduler_service.schedule_cache_maintenance(CountingCache(), "manual") is False
    assert scheduler_service.get_scheduled_jobs() == []
