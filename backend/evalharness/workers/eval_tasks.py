"""Celery tasks that drive evaluation runs: batch continuation, scheduled start, watchdog."""
from typing import Optional

import structlog

from evalharness.config import get_settings
from evalharness.exceptions import EvalHarnessError, OffsetMismatchError, RunInProgressError, RunNotRunningError
from evalharness.models.base import SessionLocal
from evalharness.models.evaluation import RunType
from evalharness.services.batch_runner import BatchRunner, enqueue_next_batch
from evalharness.services.run_store import RunStore
from evalharness.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


@celery_app.task(name="evalharness.workers.eval_tasks.process_eval_batch")
def process_eval_batch(run_id: str, offset: int, authorization: Optional[str] = None):
    """Evaluate the batch of `run_id` starting at `offset`."""
    db = SessionLocal()
    try:
        outcome = BatchRunner(db).run_batch(run_id=run_id, offset=offset, authorization=authorization)
        return outcome.as_payload()
    except (OffsetMismatchError, RunNotRunningError) as e:
        # Redelivered or superseded message; the checkpoint has already moved on.
        logger.info("eval.batch.stale_delivery", run_id=run_id, offset=offset, reason=e.message)
        return {"success": False, "error": e.message}
    except EvalHarnessError as e:
        logger.error("eval.batch.rejected", run_id=run_id, offset=offset, error=e.message)
        return {"success": False, "error": e.message}
    finally:
        db.close()


@celery_app.task(name="evalharness.workers.eval_tasks.start_scheduled_eval")
def start_scheduled_eval():
    """Create a scheduled run and evaluate its first batch."""
    db = SessionLocal()
    try:
        outcome = BatchRunner(db).run_batch(run_type=RunType.scheduled.value)
        return outcome.as_payload()
    except RunInProgressError as e:
        logger.info("eval.schedule.skipped", reason=e.message)
        return {"success": False, "error": e.message}
    except EvalHarnessError as e:
        logger.error("eval.schedule.failed", error=e.message)
        return {"success": False, "error": e.message}
    finally:
        db.close()


@celery_app.task(name="evalharness.workers.eval_tasks.eval_watchdog")
def eval_watchdog():
    """Resume runs whose chain stalled; fail them once resume attempts run out."""
    settings = get_settings()
    db = SessionLocal()
    resumed, failed = [], []
    try:
        store = RunStore(db)
        for run in store.stalled_runs(settings.eval_stall_timeout_seconds):
            if run.resume_attempts >= settings.eval_max_resume_attempts:
                store.mark_failed(
                    run,
                    f"Stalled at offset {run.next_offset} of {run.total_questions} "
                    f"after {run.resume_attempts} resume attempts",
                )
                logger.error("eval.watchdog.run_failed", run_id=run.id, offset=run.next_offset)
                failed.append(run.id)
                continue
            store.touch(run, resume_attempts=run.resume_attempts + 1)
            try:
                enqueue_next_batch(run.id, run.next_offset, None)
            except Exception as exc:
                logger.error("eval.watchdog.enqueue_failed", run_id=run.id, error=str(exc))
                continue
            logger.warning("eval.watchdog.run_resumed", run_id=run.id, offset=run.next_offset, attempt=run.resume_attempts)
            resumed.append(run.id)
        return {"resumed": resumed, "failed": failed}
    finally:
        db.close()
