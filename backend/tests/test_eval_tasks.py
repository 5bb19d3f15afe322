from datetime import datetime, timedelta

import evalharness.workers.eval_tasks as eval_tasks
from conftest import ChainRecorder
from evalharness.config import get_settings
from evalharness.models.evaluation import EvalRun
from evalharness.services.batch_runner import BatchRunner
from evalharness.services.run_store import RunStore


def _patch_runner(monkeypatch, fake_assistant, chain):
    monkeypatch.setattr(
        eval_tasks,
        "BatchRunner",
        lambda db: BatchRunner(db, client_factory=fake_assistant, scheduler=chain, batch_size=15, allow_concurrent_runs=False),
    )


def _stall(db, run, attempts=0):
    run.last_progress_at = datetime.utcnow() - timedelta(seconds=get_settings().eval_stall_timeout_seconds + 60)
    run.resume_attempts = attempts
    db.commit()


def test_process_eval_batch_runs_the_checkpointed_batch(db, session_factory, make_questions, fake_assistant, chain, monkeypatch):
    make_questions(17)
    monkeypatch.setattr(eval_tasks, "SessionLocal", session_factory)
    _patch_runner(monkeypatch, fake_assistant, chain)
    run = RunStore(db).create_run("manual", "v1")

    payload = eval_tasks.process_eval_batch(run.id, 0)
    assert payload["status"] == "processing"
    assert chain.calls == [(run.id, 15, None)]

    payload = eval_tasks.process_eval_batch(run.id, 15)
    assert payload["status"] == "completed"
    assert payload["summary"]["total"] == 17


def test_stale_delivery_is_dropped(db, session_factory, make_questions, fake_assistant, chain, monkeypatch):
    make_questions(17)
    monkeypatch.setattr(eval_tasks, "SessionLocal", session_factory)
    _patch_runner(monkeypatch, fake_assistant, chain)
    run = RunStore(db).create_run("manual", "v1")
    eval_tasks.process_eval_batch(run.id, 0)

    payload = eval_tasks.process_eval_batch(run.id, 0)
    assert payload["success"] is False
    assert len(fake_assistant.asked) == 15


def test_scheduled_run_skips_when_one_is_running(db, session_factory, make_questions, fake_assistant, chain, monkeypatch):
    make_questions(17)
    monkeypatch.setattr(eval_tasks, "SessionLocal", session_factory)
    _patch_runner(monkeypatch, fake_assistant, chain)

    first = eval_tasks.start_scheduled_eval()
    assert first["status"] == "processing"
    assert db.get(EvalRun, first["run_id"]).run_type == "scheduled"

    second = eval_tasks.start_scheduled_eval()
    assert second["success"] is False
    assert db.query(EvalRun).count() == 1


def test_watchdog_resumes_stalled_runs(db, session_factory, make_questions, monkeypatch):
    make_questions(3)
    monkeypatch.setattr(eval_tasks, "SessionLocal", session_factory)
    recorder = ChainRecorder()
    monkeypatch.setattr(eval_tasks, "enqueue_next_batch", recorder)
    run = RunStore(db).create_run("manual", "v1")
    _stall(db, run)

    report = eval_tasks.eval_watchdog()
    assert report == {"resumed": [run.id], "failed": []}
    assert recorder.calls == [(run.id, 0, None)]

    db.expire_all()
    refreshed = db.get(EvalRun, run.id)
    assert refreshed.resume_attempts == 1
    assert refreshed.status == "running"

    assert eval_tasks.eval_watchdog() == {"resumed": [], "failed": []}


def test_watchdog_fails_runs_out_of_attempts(db, session_factory, make_questions, monkeypatch):
    make_questions(3)
    monkeypatch.setattr(eval_tasks, "SessionLocal", session_factory)
    recorder = ChainRecorder()
    monkeypatch.setattr(eval_tasks, "enqueue_next_batch", recorder)
    run = RunStore(db).create_run("manual", "v1")
    _stall(db, run, attempts=get_settings().eval_max_resume_attempts)

    report = eval_tasks.eval_watchdog()
    assert report == {"resumed": [], "failed": [run.id]}
    assert recorder.calls == []

    db.expire_all()
    refreshed = db.get(EvalRun, run.id)
    assert refreshed.status == "failed"
    assert "resume attempts" in refreshed.error_message
