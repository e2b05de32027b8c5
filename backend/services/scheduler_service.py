"""
Scheduler Service - APScheduler integration for periodic cache maintenance

The only job is eviction: SimilarityCacheService.evict_excess() runs on the
configured CACHE_MAINTENANCE_FREQUENCY so the cache stays under its ceiling
even when no writes arrive to trigger eviction inline.
"""

import logging
import re

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.config import CACHE_MAINTENANCE_FREQUENCY

logger = logging.getLogger(__name__)

MAINTENANCE_JOB_ID = "cache_maintenance"

PRESET_FREQUENCIES = {
    "hourly": {"type": "interval", "hours": 1},
    "daily": {"type": "cron", "hour": 0, "minute": 0},
    "weekly": {"type": "cron", "day_of_week": 0, "hour": 0, "minute": 0},
}
INTERVAL_UNITS = {"m": "minutes", "h": "hours", "d": "days"}
INTERVAL_RE = re.compile(r"^interval:(\d+)([mhd])$")
CRON_FIELDS = ("minute", "hour", "day", "month", "day_of_week")

_scheduler = None


def get_scheduler() -> BackgroundScheduler:
    """Return the process-wide scheduler, starting it on first use."""
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler()
        _scheduler.start()
        logger.info("Maintenance scheduler started")
    return _scheduler


def parse_schedule_config(frequency: str) -> dict:
    """
    Turn a frequency string into trigger settings.

    Accepted values: "manual", "hourly", "daily", "weekly",
    "interval:<n>m|h|d" and "cron:<5 cron fields>".

    Returns:
        dict with a "type" key ("interval" or "cron") plus trigger kwargs,
        or None for manual or unrecognised frequencies
    """
    if not frequency or frequency == "manual":
        return None

    if frequency in PRESET_FREQUENCIES:
        return dict(PRESET_FREQUENCIES[frequency])

    interval = INTERVAL_RE.match(frequency)
    if interval and int(interval.group(1)) > 0:
        return {"type": "interval", INTERVAL_UNITS[interval.group(2)]: int(interval.group(1))}

    if frequency.startswith("cron:"):
        fields = frequency[len("cron:"):].split()
        if len(fields) == len(CRON_FIELDS):
            return {"type": "cron", **dict(zip(CRON_FIELDS, fields))}

    logger.warning(f"Ignoring unrecognised maintenance frequency '{frequency}'")
    return None


def run_cache_maintenance(cache_service) -> int:
    """Evict cache entries above the ceiling; returns how many were evicted."""
    try:
        evicted = cache_service.evict_excess()
    except Exception as e:
        logger.error(f"Cache maintenance failed: {e}", exc_info=True)
        return 0
    logger.info(f"Cache maintenance evicted {evicted} entries")
    return evicted


def schedule_cache_maintenance(cache_service, frequency: str = CACHE_MAINTENANCE_FREQUENCY) -> bool:
    """
    Register (or replace) the maintenance job.

    Args:
        cache_service: SimilarityCacheService to maintain
        frequency: Frequency string, see parse_schedule_config

    Returns:
        bool: False when the frequency means "do not schedule"
    """
    config = parse_schedule_config(frequency)
    if not config:
        logger.info("Cache maintenance is manual, no job scheduled")
        return False

    kind = config.pop("type")
    trigger = IntervalTrigger(**config) if kind == "interval" else CronTrigger(**config)

    get_scheduler().add_job(
        run_cache_maintenance,
        trigger=trigger,
        args=[cache_service],
        id=MAINTENANCE_JOB_ID,
        name="Cache maintenance",
        replace_existing=True
    )
    logger.info(f"✓ Cache maintenance scheduled ({frequency})")
    return True


def _with_maintenance_job(action: str) -> bool:
    scheduler = get_scheduler()
    if scheduler.get_job(MAINTENANCE_JOB_ID) is None:
        return False
    getattr(scheduler, f"{action}_job")(MAINTENANCE_JOB_ID)
    logger.info(f"Cache maintenance job: {action}")
    return True


def remove_cache_maintenance() -> bool:
    return _with_maintenance_job("remove")


def pause_cache_maintenance() -> bool:
    return _with_maintenance_job("pause")


def resume_cache_maintenance() -> bool:
    return _with_maintenance_job("resume")


def get_scheduled_jobs() -> list:
    """Describe every scheduled job with its next run time."""
    return [
        {
            "job_id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        }
        for job in get_scheduler().get_jobs()
    ]


def shutdown_scheduler():
    """Stop the scheduler without waiting for running jobs."""
    global _scheduler
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Maintenance scheduler stopped")
