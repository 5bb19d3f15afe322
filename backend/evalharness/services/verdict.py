"""Maps an overall score onto a verdict band. Lower edges are inclusive."""
from __future__ import annotations

from typing import Tuple

from evalharness.models.evaluation import Verdict


VERDICT_BANDS: Tuple[Tuple[float, Verdict], ...] = (
    (0.90, Verdict.pass_),
    (0.70, Verdict.soft_pass),
    (0.50, Verdict.needs_review),
)


def classify_verdict(overall: float) -> Verdict:
    for lower_edge, verdict in VERDICT_BANDS:
        if overall >= lower_edge:
            return verdict
    return Verdict.fail
