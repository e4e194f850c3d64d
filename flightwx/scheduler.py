"""
APScheduler setup for the periodic jobs.

  conflict check → every check_interval_minutes (fetches weather on a cache miss)
  weather sweep  → every sweep_interval_minutes

Run standalone with `python -m flightwx.scheduler`, or set RUN_SCHEDULER=true so
the API process runs the jobs in a background thread via `start_scheduler`.
"""
import logging
import logging.config

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from flightwx.config import Settings, get_settings
from flightwx.engine import RescheduleEngine

logger = logging.getLogger(__name__)

CHECK_JOB_ID = "conflict_check"
SWEEP_JOB_ID = "weather_sweep"


def run_conflict_check_job(engine: RescheduleEngine) -> None:
    """Batch pass over the lookahead window; failures are logged, never raised."""
    try:
        engine.check_all_active()
    except Exception:
        logger.exception("scheduled conflict check failed")


def run_weather_sweep_job(engine: RescheduleEngine) -> None:
    try:
        result = engine.sweep_weather()
        logger.info("scheduled weather sweep deleted %d observations", result["deleted"])
    except Exception:
        logger.exception("scheduled weather sweep failed")


def register_jobs(scheduler, engine: RescheduleEngine, settings: Settings):
    scheduler.add_job(
        run_conflict_check_job,
        trigger=IntervalTrigger(minutes=settings.check_interval_minutes),
        args=[engine],
        id=CHECK_JOB_ID,
        name="Weather conflict check",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_weather_sweep_job,
        trigger=IntervalTrigger(minutes=settings.sweep_interval_minutes),
        args=[engine],
        id=SWEEP_JOB_ID,
        name="Expired weather sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def start_scheduler(engine: RescheduleEngine, settings: Settings = None) -> BackgroundScheduler:
    settings = settings or get_settings()
    scheduler = register_jobs(BackgroundScheduler(timezone="UTC"), engine, settings)
    scheduler.start()
    logger.info("scheduler started: check every %d min, sweep every %d min",
                settings.check_interval_minutes, settings.sweep_interval_minutes)
    return scheduler


def main():
    from flightwx.database import SessionLocal, init_db

    settings = get_settings()
    logging.config.dictConfig(settings.get_log_config())
    init_db()

    engine = RescheduleEngine(SessionLocal, settings)
    scheduler = register_jobs(BlockingScheduler(timezone="UTC"), engine, settings)
    logger.info("running scheduler in the foreground (Ctrl+C to stop)")
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("scheduler stopped")
    finally:
        engine.shutdown()


if __name__ == "__main__":
    main()
