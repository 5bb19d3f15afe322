from celery import Celery
from celery.schedules import crontab

from evalharness.config import get_settings
from evalharness.log_setup import configure_logging

settings = get_settings()
configure_logging(settings.log_level)

celery_app = Celery(
    "evalharness",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["evalharness.workers.eval_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    # One batch must finish well inside the hard limit; the watchdog picks up anything that doesn't.
    task_time_limit=settings.eval_batch_time_limit_seconds,
    task_soft_time_limit=max(60, settings.eval_batch_time_limit_seconds - 60),
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "evalharness.workers.eval_tasks.process_eval_batch": {"queue": "eval.batch"},
        "evalharness.workers.eval_tasks.start_scheduled_eval": {"queue": "eval.batch"},
        "evalharness.workers.eval_tasks.eval_watchdog": {"queue": "eval.control"},
    },
    task_annotations={
        "evalharness.workers.eval_tasks.eval_watchdog": {
            "time_limit": 120,
            "soft_time_limit": 90,
        },
    },
)

beat_schedule = {
    "eval-watchdog": {
        "task": "evalharness.workers.eval_tasks.eval_watchdog",
        "schedule": float(settings.eval_watchdog_interval_seconds),
    },
}
if settings.eval_schedule_enabled:
    beat_schedule["eval-scheduled-run"] = {
        "task": "evalharness.workers.eval_tasks.start_scheduled_eval",
        "schedule": crontab(minute=0, hour=settings.eval_schedule_hour),
    }
celery_app.conf.beat_schedule = beat_schedule
