"""Evaluation harness tables: question battery, runs, per-question results, reviewer feedback."""
from datetime import datetime
import enum
import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from evalharness.models.base import Base


class RunType(str, enum.Enum):
    scheduled = "scheduled"
    manual = "manual"


class RunStatus(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"  # only set by the watchdog once resume attempts are exhausted


class Verdict(str, enum.Enum):
    pass_ = "pass"
    soft_pass = "soft_pass"
    needs_review = "needs_review"
    fail = "fail"


FALSE_POSITIVE_FEEDBACK = "false_positive"


class EvalQuestion(Base):
    """Curated test case. Read-only to the harness apart from the activation flag."""

    __tablename__ = "eval_questions"

    id = Column(Integer, primary_key=True, index=True)
    question = Column(Text, nullable=False)
    expected_contains = Column(JSON, default=list)
    expected_excludes = Column(JSON, default=list)
    question_type = Column(String(40), nullable=True)  # definition, negative_knowledge, ...
    difficulty = Column(String(20), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class EvalRun(Base):
    """One execution of the full question battery, doubling as its own job record."""

    __tablename__ = "eval_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    run_type = Column(String(24), nullable=False, default=RunType.manual.value)
    status = Column(String(24), nullable=False, default=RunStatus.running.value, index=True)

    total_questions = Column(Integer, nullable=False, default=0)
    question_ids = Column(JSON, default=list)  # ordered snapshot taken at creation
    next_offset = Column(Integer, nullable=False, default=0)
    rules_version = Column(String(24), nullable=True)

    passed = Column(Integer, nullable=False, default=0)
    soft_passed = Column(Integer, nullable=False, default=0)
    needs_review = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    avg_accuracy = Column(Float, nullable=False, default=0.0)
    avg_grounding = Column(Float, nullable=False, default=0.0)

    # Liveness
    last_progress_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    resume_attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    results = relationship("EvalResult", back_populates="run", order_by="EvalResult.id")


class EvalResult(Base):
    """One scored answer. Append-only."""

    __tablename__ = "eval_results"
    __table_args__ = (UniqueConstraint("run_id", "question_id", name="uq_eval_results_run_question"),)

    id = Column(Integer, primary_key=True, index=True)
    run_id = Column(String(36), ForeignKey("eval_runs.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("eval_questions.id"), nullable=False, index=True)

    # Snapshot of the test case as asked
    question = Column(Text, nullable=False)
    expected_contains = Column(JSON, default=list)
    expected_excludes = Column(JSON, default=list)

    answer = Column(Text, nullable=False, default="")
    accuracy = Column(Float, nullable=False, default=0.0)
    grounding = Column(Float, nullable=False, default=0.0)
    completeness = Column(Float, nullable=False, default=0.0)
    overall_score = Column(Float, nullable=False, default=0.0)
    verdict = Column(String(24), nullable=False, index=True)
    issues = Column(JSON, default=list)
    hallucinations = Column(JSON, default=list)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    run = relationship("EvalRun", back_populates="results")


class EvalFeedback(Base):
    """Reviewer feedback on a result; `false_positive` rows feed hallucination suppression."""

    __tablename__ = "eval_feedback"

    id = Column(Integer, primary_key=True, index=True)
    question_id = Column(Integer, ForeignKey("eval_questions.id"), nullable=False, index=True)
    result_id = Column(Integer, ForeignKey("eval_results.id"), nullable=True)
    feedback_type = Column(String(40), nullable=False, default=FALSE_POSITIVE_FEEDBACK, index=True)
    false_positive_terms = Column(JSON, default=list)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
