"""Persistence for evaluation runs and their results.

The run row is the job record: `next_offset` is the checkpoint and is only
ever advanced in the same commit as the batch that produced it.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from evalharness.exceptions import NoActiveQuestionsError, RunInProgressError, RunNotFoundError
from evalharness.models.evaluation import EvalQuestion, EvalResult, EvalRun, RunStatus, Verdict


@dataclass
class RunAggregates:
    passed: int = 0
    soft_passed: int = 0
    needs_review: int = 0
    failed: int = 0
    total_accuracy: float = 0.0
    total_grounding: float = 0.0

    @property
    def counted(self) -> int:
        return self.passed + self.soft_passed + self.needs_review + self.failed

    def add(self, verdict: str, accuracy: float, grounding: float) -> None:
        if verdict == Verdict.pass_.value:
            self.passed += 1
        elif verdict == Verdict.soft_pass.value:
            self.soft_passed += 1
        elif verdict == Verdict.needs_review.value:
            self.needs_review += 1
        else:
            self.failed += 1
        self.total_accuracy += accuracy
        self.total_grounding += grounding

    def merged(self, other: "RunAggregates") -> "RunAggregates":
        return RunAggregates(
            passed=self.passed + other.passed,
            soft_passed=self.soft_passed + other.soft_passed,
            needs_review=self.needs_review + other.needs_review,
            failed=self.failed + other.failed,
            total_accuracy=self.total_accuracy + other.total_accuracy,
            total_grounding=self.total_grounding + other.total_grounding,
        )

    def counts(self) -> Dict[str, int]:
        return {
            "passed": self.passed,
            "soft_passed": self.soft_passed,
            "needs_review": self.needs_review,
            "failed": self.failed,
        }


class RunStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # Runs

    def create_run(self, run_type: str, rules_version: str, allow_concurrent: bool = False) -> EvalRun:
        if not allow_concurrent:
            active = self.db.execute(
                select(EvalRun.id).where(EvalRun.status == RunStatus.running.value).limit(1)
            ).scalar_one_or_none()
            if active:
                raise RunInProgressError(f"Evaluation run {active} is still running")

        question_ids = list(
            self.db.execute(
                select(EvalQuestion.id)
                .where(EvalQuestion.is_active.is_(True))
                .order_by(EvalQuestion.created_at, EvalQuestion.id)
            ).scalars()
        )
        if not question_ids:
            raise NoActiveQuestionsError("No active test questions found")

        now = datetime.utcnow()
        run = EvalRun(
            run_type=run_type,
            status=RunStatus.running.value,
            total_questions=len(question_ids),
            question_ids=question_ids,
            next_offset=0,
            rules_version=rules_version,
            started_at=now,
            last_progress_at=now,
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)
        return run

    def get_run(self, run_id: str) -> EvalRun:
        run = self.db.get(EvalRun, run_id)
        if run is None:
            raise RunNotFoundError(f"Evaluation run {run_id} not found")
        return run

    def questions_for_run(self, run: EvalRun, offset: int, limit: int) -> List[EvalQuestion]:
        ids = list(run.question_ids or [])[offset:offset + limit]
        if not ids:
            return []
        by_id = {q.id: q for q in self.db.execute(select(EvalQuestion).where(EvalQuestion.id.in_(ids))).scalars()}
        return [by_id[qid] for qid in ids if qid in by_id]

    # Results

    def results_for_questions(self, run_id: str, question_ids: Sequence[int]) -> Dict[int, EvalResult]:
        if not question_ids:
            return {}
        return {
            result.question_id: result
            for result in self.db.execute(
                select(EvalResult).where(
                    EvalResult.run_id == run_id,
                    EvalResult.question_id.in_(list(question_ids)),
                )
            ).scalars()
        }

    def insert_results(self, results: Sequence[EvalResult]) -> None:
        # Flushed with the run update; the caller commits both together.
        self.db.add_all(list(results))
        self.db.flush()

    def aggregate_results(self, run_id: str) -> RunAggregates:
        """Totals over stored rows. Slots without a row (lost writes, deleted questions) are not in here."""
        rows = self.db.execute(
            select(
                EvalResult.verdict,
                func.count(EvalResult.id),
                func.coalesce(func.sum(EvalResult.accuracy), 0.0),
                func.coalesce(func.sum(EvalResult.grounding), 0.0),
            )
            .where(EvalResult.run_id == run_id)
            .group_by(EvalResult.verdict)
        ).all()
        aggregates = RunAggregates()
        for verdict, count, accuracy_sum, grounding_sum in rows:
            count = int(count or 0)
            if verdict == Verdict.pass_.value:
                aggregates.passed += count
            elif verdict == Verdict.soft_pass.value:
                aggregates.soft_passed += count
            elif verdict == Verdict.needs_review.value:
                aggregates.needs_review += count
            else:
                aggregates.failed += count
            aggregates.total_accuracy += float(accuracy_sum or 0.0)
            aggregates.total_grounding += float(grounding_sum or 0.0)
        return aggregates

    def results_for_run(self, run_id: str, verdict: Optional[str] = None) -> List[EvalResult]:
        query = select(EvalResult).where(EvalResult.run_id == run_id)
        if verdict:
            query = query.where(EvalResult.verdict == verdict)
        return list(self.db.execute(query.order_by(EvalResult.id)).scalars())

    # Run state transitions

    def _apply_aggregates(self, run: EvalRun, aggregates: RunAggregates, divisor: int) -> None:
        run.passed = aggregates.passed
        run.soft_passed = aggregates.soft_passed
        run.needs_review = aggregates.needs_review
        run.failed = aggregates.failed
        run.avg_accuracy = aggregates.total_accuracy / divisor if divisor else 0.0
        run.avg_grounding = aggregates.total_grounding / divisor if divisor else 0.0
        run.last_progress_at = datetime.utcnow()

    def save_progress(self, run: EvalRun, aggregates: RunAggregates, processed: int) -> None:
        self._apply_aggregates(run, aggregates, processed)
        run.next_offset = processed
        run.resume_attempts = 0
        self.db.commit()

    def finalize_run(self, run: EvalRun, aggregates: RunAggregates) -> None:
        self._apply_aggregates(run, aggregates, run.total_questions)
        run.next_offset = run.total_questions
        run.status = RunStatus.completed.value
        run.completed_at = datetime.utcnow()
        self.db.commit()

    def touch(self, run: EvalRun, resume_attempts: Optional[int] = None) -> None:
        run.last_progress_at = datetime.utcnow()
        if resume_attempts is not None:
            run.resume_attempts = resume_attempts
        self.db.commit()

    def mark_failed(self, run: EvalRun, message: str) -> None:
        run.status = RunStatus.failed.value
        run.error_message = message
        run.completed_at = datetime.utcnow()
        self.db.commit()

    def stalled_runs(self, stall_timeout_seconds: int) -> List[EvalRun]:
        cutoff = datetime.utcnow() - timedelta(seconds=stall_timeout_seconds)
        return list(
            self.db.execute(
                select(EvalRun)
                .where(EvalRun.status == RunStatus.running.value, EvalRun.last_progress_at < cutoff)
                .order_by(EvalRun.started_at)
            ).scalars()
        )
