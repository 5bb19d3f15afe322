from evalharness.models.base import Base
from evalharness.models.evaluation import (
    FALSE_POSITIVE_FEEDBACK,
    EvalFeedback,
    EvalQuestion,
    EvalResult,
    EvalRun,
    RunStatus,
    RunType,
    Verdict,
)

__all__ = [
    "Base",
    "EvalQuestion", "EvalRun", "EvalResult", "EvalFeedback",
    "RunType", "RunStatus", "Verdict", "FALSE_POSITIVE_FEEDBACK",
]
