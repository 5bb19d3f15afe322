"""
Migration script for checkpointed evaluation runs.

This script:
1. Creates eval_questions, eval_runs, eval_results, eval_feedback tables (if missing)
2. Adds checkpoint and liveness columns to an existing eval_runs table
3. Backfills next_offset / last_progress_at for runs created before checkpointing
4. Adds the one-result-per-question constraint on eval_results (PostgreSQL, best effort)

Run with:
    python -m migrations.migrate_eval_run_checkpoint_v1
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError

from evalharness.config import get_settings
from evalharness.models.evaluation import EvalFeedback, EvalQuestion, EvalResult, EvalRun

settings = get_settings()

RUN_COLUMNS = {
    "question_ids": "JSON",
    "next_offset": "INTEGER NOT NULL DEFAULT 0",
    "rules_version": "VARCHAR(24)",
    "last_progress_at": "TIMESTAMP",
    "resume_attempts": "INTEGER NOT NULL DEFAULT 0",
    "error_message": "TEXT",
}


def migrate_eval_run_checkpoint_v1():
    engine = create_engine(settings.database_url_sync, echo=True)
    with engine.begin() as conn:
        inspector = inspect(conn)
        tables = set(inspector.get_table_names())
        for model in (EvalQuestion, EvalRun, EvalResult, EvalFeedback):
            if model.__tablename__ not in tables:
                print(f"Creating table {model.__tablename__}")
                model.__table__.create(bind=conn)

        inspector = inspect(conn)
        cols = {c["name"] for c in inspector.get_columns("eval_runs")}
        for name, ddl in RUN_COLUMNS.items():
            if name not in cols:
                print(f"Adding column eval_runs.{name}")
                conn.execute(text(f"ALTER TABLE eval_runs ADD COLUMN {name} {ddl}"))

        conn.execute(text("UPDATE eval_runs SET last_progress_at = COALESCE(last_progress_at, started_at)"))
        conn.execute(
            text(
                "UPDATE eval_runs SET next_offset = total_questions "
                "WHERE status = 'completed' AND next_offset < total_questions"
            )
        )

        if conn.dialect.name != "postgresql":
            return
        constraints = {c["name"] for c in inspector.get_unique_constraints("eval_results")}
        if "uq_eval_results_run_question" not in constraints:
            try:
                with conn.begin_nested():
                    conn.execute(
                        text(
                            "ALTER TABLE eval_results ADD CONSTRAINT uq_eval_results_run_question "
                            "UNIQUE (run_id, question_id)"
                        )
                    )
            except SQLAlchemyError as exc:
                # Existing duplicate rows; resolve them manually and rerun.
                print(f"Skipping uq_eval_results_run_question: {exc}")


if __name__ == "__main__":
    print("Starting evaluation run checkpoint migration...")
    migrate_eval_run_checkpoint_v1()
    print("Migration complete")
