"""Evaluation API routes - run trigger/continuation, run polling, reviewer feedback."""
from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session
from sqlalchemy import select
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any, Literal
from datetime import datetime

from evalharness.exceptions import MissingCredentialError, ResultNotFoundError, RunNotFoundError
from evalharness.models.base import get_db, get_sync_db
from evalharness.models.evaluation import EvalResult, EvalRun
from evalharness.services.batch_runner import BatchRunner
from evalharness.services.feedback import record_false_positive

router = APIRouter()


# ============================================================================
# Pydantic Schemas
# ============================================================================

class BatchStats(BaseModel):
    passed: int = 0
    soft_passed: int = 0
    needs_review: int = 0
    failed: int = 0
    total_accuracy: float = 0.0
    total_grounding: float = 0.0


class TriggerRequest(BaseModel):
    run_type: Literal["scheduled", "manual"] = "manual"
    run_id: Optional[str] = None
    offset: Optional[int] = Field(None, ge=0)
    # Accepted from older chained callers; aggregates are recomputed from stored results.
    batch_stats: Optional[BatchStats] = None


class RunResponse(BaseModel):
    id: str
    run_type: str
    status: str
    total_questions: int
    next_offset: int
    passed: int
    soft_passed: int
    needs_review: int
    failed: int
    avg_accuracy: float
    avg_grounding: float
    rules_version: Optional[str]
    resume_attempts: int
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    last_progress_at: datetime

    class Config:
        from_attributes = True


class ResultResponse(BaseModel):
    id: int
    run_id: str
    question_id: int
    question: str
    answer: str
    expected_contains: List[str]
    expected_excludes: List[str]
    accuracy: float
    grounding: float
    completeness: float
    overall_score: float
    verdict: str
    issues: List[str]
    hallucinations: List[str]
    created_at: datetime

    class Config:
        from_attributes = True


class FalsePositiveRequest(BaseModel):
    notes: Optional[str] = None


class FeedbackResponse(BaseModel):
    id: int
    question_id: int
    result_id: Optional[int]
    feedback_type: str
    false_positive_terms: List[str]
    notes: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


def get_batch_runner(db: Session = Depends(get_sync_db)) -> BatchRunner:
    return BatchRunner(db)


# ============================================================================
# Runs
# ============================================================================

@router.post("/runs")
def trigger_run(
    payload: TriggerRequest,
    authorization: Optional[str] = Header(None),
    runner: BatchRunner = Depends(get_batch_runner),
) -> Dict[str, Any]:
    """Start a run, or continue one at its checkpoint, and evaluate one batch."""
    if not authorization:
        raise MissingCredentialError("Missing authorization header")

    outcome = runner.run_batch(
        run_id=payload.run_id,
        offset=payload.offset,
        run_type=payload.run_type,
        authorization=authorization,
        carried_stats=payload.batch_stats.model_dump() if payload.batch_stats else None,
    )
    return outcome.as_payload()


@router.get("/runs", response_model=List[RunResponse])
async def list_runs(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db)
):
    """List the most recent runs."""
    query = select(EvalRun)
    if status:
        query = query.where(EvalRun.status == status)
    query = query.order_by(EvalRun.started_at.desc()).limit(limit)
    result = await db.execute(query)
    return [RunResponse.model_validate(run) for run in result.scalars().all()]


@router.get("/runs/{run_id}", response_model=RunResponse)
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    """Get a run's status and aggregates; poll this for completion."""
    run = await db.get(EvalRun, run_id)
    if not run:
        raise RunNotFoundError(f"Evaluation run {run_id} not found")
    return RunResponse.model_validate(run)


@router.get("/runs/{run_id}/results", response_model=List[ResultResponse])
async def list_run_results(
    run_id: str,
    verdict: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """List a run's results in the order they were evaluated."""
    run = await db.get(EvalRun, run_id)
    if not run:
        raise RunNotFoundError(f"Evaluation run {run_id} not found")

    query = select(EvalResult).where(EvalResult.run_id == run_id)
    if verdict:
        query = query.where(EvalResult.verdict == verdict)
    result = await db.execute(query.order_by(EvalResult.id))
    return [ResultResponse.model_validate(row) for row in result.scalars().all()]


# ============================================================================
# Feedback
# ============================================================================

@router.post("/results/{result_id}/false-positive", response_model=FeedbackResponse)
def mark_false_positive(
    result_id: int,
    payload: FalsePositiveRequest,
    db: Session = Depends(get_sync_db),
):
    """Record a result's flagged terms as acceptable for its question."""
    result = db.get(EvalResult, result_id)
    if not result:
        raise ResultNotFoundError(f"Evaluation result {result_id} not found")
    feedback = record_false_positive(db, result, notes=payload.notes)
    return FeedbackResponse.model_validate(feedback)
