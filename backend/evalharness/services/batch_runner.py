"""Bounded-batch evaluation runner.

One call evaluates at most `batch_size` questions of a run, commits the
results together with the run's updated counters and checkpoint, then
either hands the next offset to the scheduler or finalizes the run.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, ContextManager, Dict, List, Mapping, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from evalharness.config import get_settings
from evalharness.exceptions import OffsetMismatchError, RunNotRunningError
from evalharness.models.evaluation import EvalQuestion, EvalResult, EvalRun, RunStatus, RunType, Verdict
from evalharness.services.assistant import AssistantClient, AssistantError
from evalharness.services.feedback import load_known_false_positives
from evalharness.services.negation import NegationDetector, get_rule_set
from evalharness.services.run_store import RunAggregates, RunStore
from evalharness.services.scoring import ScoringEngine
from evalharness.services.verdict import classify_verdict

logger = structlog.get_logger(__name__)

BATCH_SIZE = 15

BatchScheduler = Callable[[str, int, Optional[str]], None]
ClientFactory = Callable[[Optional[str]], ContextManager[Any]]


def enqueue_next_batch(run_id: str, offset: int, authorization: Optional[str] = None) -> None:
    from evalharness.workers.eval_tasks import process_eval_batch

    process_eval_batch.apply_async(args=[run_id, offset], kwargs={"authorization": authorization})


@dataclass
class BatchOutcome:
    run_id: str
    status: str  # "processing" | "completed"
    processed: int
    total: int
    batch: RunAggregates = field(default_factory=RunAggregates)
    aggregates: RunAggregates = field(default_factory=RunAggregates)
    avg_accuracy: float = 0.0
    avg_grounding: float = 0.0

    @property
    def percent(self) -> int:
        return round(100 * self.processed / self.total) if self.total else 100

    def as_payload(self) -> Dict[str, Any]:
        if self.status == "completed":
            return {
                "success": True,
                "run_id": self.run_id,
                "status": "completed",
                "summary": {
                    "total": self.total,
                    **self.aggregates.counts(),
                    "avg_accuracy": self.avg_accuracy,
                    "avg_grounding": self.avg_grounding,
                },
            }
        return {
            "success": True,
            "run_id": self.run_id,
            "status": "processing",
            "progress": {"processed": self.processed, "total": self.total, "percent": self.percent},
            "batch_summary": self.batch.counts(),
        }


def _aggregates_from_run(run: EvalRun, processed: int) -> RunAggregates:
    return RunAggregates(
        passed=run.passed,
        soft_passed=run.soft_passed,
        needs_review=run.needs_review,
        failed=run.failed,
        total_accuracy=run.avg_accuracy * processed,
        total_grounding=run.avg_grounding * processed,
    )


def _outcome_from_run(run: EvalRun, batch: Optional[RunAggregates] = None) -> BatchOutcome:
    completed = run.status == RunStatus.completed.value
    return BatchOutcome(
        run_id=run.id,
        status="completed" if completed else "processing",
        processed=run.total_questions if completed else run.next_offset,
        total=run.total_questions,
        batch=batch or RunAggregates(),
        aggregates=_aggregates_from_run(run, run.next_offset),
        avg_accuracy=run.avg_accuracy,
        avg_grounding=run.avg_grounding,
    )


class BatchRunner:
    def __init__(
        self,
        db: Session,
        *,
        scorer: Optional[ScoringEngine] = None,
        client_factory: Optional[ClientFactory] = None,
        scheduler: Optional[BatchScheduler] = None,
        batch_size: Optional[int] = None,
        allow_concurrent_runs: Optional[bool] = None,
    ) -> None:
        settings = get_settings()
        self.db = db
        self.store = RunStore(db)
        self.scorer = scorer or ScoringEngine(
            NegationDetector(get_rule_set(settings.negation_rules_version)),
            structure_bonus=settings.completeness_structure_bonus,
        )
        self.client_factory = client_factory or AssistantClient
        self.scheduler = scheduler or enqueue_next_batch
        self.batch_size = max(1, int(batch_size or settings.eval_batch_size or BATCH_SIZE))
        self.allow_concurrent_runs = (
            settings.eval_allow_concurrent_runs if allow_concurrent_runs is None else allow_concurrent_runs
        )

    def _resolve_run(self, run_id: Optional[str], offset: Optional[int], run_type: str) -> tuple[EvalRun, int]:
        if run_id is None:
            run = self.store.create_run(
                run_type=run_type,
                rules_version=self.scorer.detector.rules.version,
                allow_concurrent=self.allow_concurrent_runs,
            )
            logger.info("eval.run.created", run_id=run.id, run_type=run_type, total=run.total_questions)
            return run, 0

        run = self.store.get_run(run_id)
        if run.status != RunStatus.running.value:
            raise RunNotRunningError(f"Evaluation run {run_id} is {run.status}")
        if offset is None:
            return run, run.next_offset
        if offset != run.next_offset:
            raise OffsetMismatchError(
                f"Evaluation run {run_id} is checkpointed at offset {run.next_offset}, not {offset}"
            )
        return run, offset

    def _evaluate(self, client: Any, run: EvalRun, question: EvalQuestion, false_positives: List[str]) -> EvalResult:
        expected_contains = list(question.expected_contains or [])
        expected_excludes = list(question.expected_excludes or [])
        result = EvalResult(
            run_id=run.id,
            question_id=question.id,
            question=question.question,
            expected_contains=expected_contains,
            expected_excludes=expected_excludes,
        )
        try:
            answer = client.ask(question.question)
        except Exception as exc:
            if isinstance(exc, AssistantError):
                logger.warning("eval.question.failed", run_id=run.id, question_id=question.id, error=str(exc))
            else:
                logger.exception("eval.question.error", run_id=run.id, question_id=question.id)
            result.answer = f"ERROR: {exc}"
            result.accuracy = result.grounding = result.completeness = result.overall_score = 0.0
            result.verdict = Verdict.fail.value
            result.issues = [f"Error: {exc}"]
            result.hallucinations = []
            return result

        card = self.scorer.score(answer, expected_contains, expected_excludes, false_positives)
        result.answer = answer
        result.accuracy = card.accuracy
        result.grounding = card.grounding
        result.completeness = card.completeness
        result.overall_score = card.overall
        result.verdict = classify_verdict(card.overall).value
        result.issues = card.issues
        result.hallucinations = card.hallucinations
        return result

    def run_batch(
        self,
        run_id: Optional[str] = None,
        offset: Optional[int] = None,
        run_type: str = RunType.manual.value,
        authorization: Optional[str] = None,
        carried_stats: Optional[Mapping[str, Any]] = None,
    ) -> BatchOutcome:
        run, offset = self._resolve_run(run_id, offset, run_type)
        total = run.total_questions
        slice_ids = list(run.question_ids or [])[offset:offset + self.batch_size]
        questions = self.store.questions_for_run(run, offset, self.batch_size)
        logger.info("eval.batch.start", run_id=run.id, offset=offset, size=len(slice_ids), total=total)

        # Run counters cover every slot before the checkpoint, stored row or not.
        prior = _aggregates_from_run(run, offset)
        if carried_stats:
            carried = {key: carried_stats.get(key) for key in prior.counts()}
            if carried != prior.counts():
                logger.warning("eval.batch.carried_stats_ignored", run_id=run.id, carried=carried, stored=prior.counts())

        false_positives = load_known_false_positives(self.db)
        answered = self.store.results_for_questions(run.id, slice_ids)

        batch = RunAggregates()
        found = {question.id for question in questions}
        for question_id in slice_ids:
            if question_id not in found:
                # Deleted after the snapshot; the slot still counts towards the total.
                logger.warning("eval.question.missing", run_id=run.id, question_id=question_id)
                batch.add(Verdict.fail.value, 0.0, 0.0)

        results: List[EvalResult] = []
        with self.client_factory(authorization) as client:
            for question in questions:
                existing = answered.get(question.id)
                if existing is not None:
                    logger.info("eval.question.already_scored", run_id=run.id, question_id=question.id)
                    batch.add(existing.verdict, existing.accuracy, existing.grounding)
                    continue
                result = self._evaluate(client, run, question, false_positives.get(question.id, []))
                batch.add(result.verdict, result.accuracy, result.grounding)
                results.append(result)

        stored: Optional[RunAggregates] = None
        try:
            self.store.insert_results(results)
            stored = self.store.aggregate_results(run.id)
        except SQLAlchemyError as exc:
            logger.error("eval.batch.persist_failed", run_id=run.id, offset=offset, error=str(exc))
            self.db.rollback()
            run = self.store.get_run(run.id)
            if run.next_offset != offset or run.status != RunStatus.running.value:
                logger.warning("eval.batch.superseded", run_id=run.id, offset=offset, checkpoint=run.next_offset)
                return _outcome_from_run(run)

        aggregates = prior.merged(batch)
        if stored is not None and stored.counts() != aggregates.counts():
            logger.warning(
                "eval.batch.stored_results_differ",
                run_id=run.id,
                stored=stored.counts(),
                counted=aggregates.counts(),
            )

        processed = offset + len(slice_ids)
        if processed < total:
            self.store.save_progress(run, aggregates, processed)
            logger.info("eval.batch.done", run_id=run.id, processed=processed, total=total, **batch.counts())
            try:
                self.scheduler(run.id, processed, authorization)
            except Exception as exc:
                # The watchdog resumes the run from its checkpoint.
                logger.error("eval.chain.enqueue_failed", run_id=run.id, offset=processed, error=str(exc))
            return BatchOutcome(
                run_id=run.id,
                status="processing",
                processed=processed,
                total=total,
                batch=batch,
                aggregates=aggregates,
                avg_accuracy=run.avg_accuracy,
                avg_grounding=run.avg_grounding,
            )

        self.store.finalize_run(run, aggregates)
        logger.info(
            "eval.run.completed",
            run_id=run.id,
            total=total,
            avg_accuracy=run.avg_accuracy,
            avg_grounding=run.avg_grounding,
            **aggregates.counts(),
        )
        return BatchOutcome(
            run_id=run.id,
            status="completed",
            processed=total,
            total=total,
            batch=batch,
            aggregates=aggregates,
            avg_accuracy=run.avg_accuracy,
            avg_grounding=run.avg_grounding,
        )
