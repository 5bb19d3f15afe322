"""Known false positives from reviewer feedback.

Loading fails open: if feedback can't be read, the batch runs without
suppression and may flag more hallucinations than usual.
"""
from __future__ import annotations

import re
from typing import Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from evalharness.exceptions import NoHallucinationsError
from evalharness.models.evaluation import FALSE_POSITIVE_FEEDBACK, EvalFeedback, EvalResult

logger = structlog.get_logger(__name__)

_HALLUCINATED_RE = re.compile(r"Hallucinated:\s*(.+)", re.IGNORECASE)


def _merge_terms(existing: List[str], incoming: List[str]) -> List[str]:
    seen = {term.lower() for term in existing}
    for term in incoming:
        key = term.lower()
        if key not in seen:
            seen.add(key)
            existing.append(term)
    return existing


def load_known_false_positives(db: Session) -> Dict[int, List[str]]:
    try:
        rows = db.execute(
            select(EvalFeedback.question_id, EvalFeedback.false_positive_terms)
            .where(EvalFeedback.feedback_type == FALSE_POSITIVE_FEEDBACK)
            .order_by(EvalFeedback.id)
        ).all()
    except SQLAlchemyError as exc:
        logger.warning("eval.feedback.load_failed", error=str(exc))
        db.rollback()
        return {}

    known: Dict[int, List[str]] = {}
    for question_id, terms in rows:
        if question_id is None or not isinstance(terms, list):
            continue
        cleaned = [str(term).strip() for term in terms if str(term or "").strip()]
        if cleaned:
            _merge_terms(known.setdefault(question_id, []), cleaned)
    logger.debug("eval.feedback.loaded", questions=len(known))
    return known


def terms_from_hallucinations(hallucinations: List[str]) -> List[str]:
    terms: List[str] = []
    for entry in hallucinations or []:
        match = _HALLUCINATED_RE.match(str(entry))
        terms.append(match.group(1).strip() if match else str(entry).strip())
    return [term for term in terms if term]


def record_false_positive(db: Session, result: EvalResult, notes: Optional[str] = None) -> EvalFeedback:
    terms = terms_from_hallucinations(result.hallucinations or [])
    if not terms:
        raise NoHallucinationsError(f"Result {result.id} has no hallucinations to mark as false positives")
    feedback = EvalFeedback(
        question_id=result.question_id,
        result_id=result.id,
        feedback_type=FALSE_POSITIVE_FEEDBACK,
        false_positive_terms=terms,
        notes=notes or "Marked as false positive - terms appeared in an acceptable context",
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    logger.info("eval.feedback.false_positive_recorded", question_id=result.question_id, terms=terms)
    return feedback
