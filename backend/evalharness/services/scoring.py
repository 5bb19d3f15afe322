"""Answer scoring: accuracy, grounding, completeness and the weighted overall score."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from evalharness.services.negation import NegationDetector


HALLUCINATION_PENALTY = 0.25
ACCURACY_WEIGHT = 0.4
GROUNDING_WEIGHT = 0.4
COMPLETENESS_WEIGHT = 0.2

# (min answer length, score), checked longest first
COMPLETENESS_STEPS = ((300, 1.0), (150, 0.85), (50, 0.7))
COMPLETENESS_FLOOR = 0.5
STRUCTURE_BONUS = 0.1
STRUCTURE_MARKERS = ("-", "•", "\n")

MISSING_PREFIX = "Missing: "
HALLUCINATED_PREFIX = "Hallucinated: "


@dataclass
class ScoreCard:
    accuracy: float
    grounding: float
    completeness: float
    overall: float
    issues: List[str] = field(default_factory=list)
    hallucinations: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "accuracy": self.accuracy,
            "grounding": self.grounding,
            "completeness": self.completeness,
            "overall": self.overall,
            "issues": list(self.issues),
            "hallucinations": list(self.hallucinations),
        }


def completeness_for(answer: str, structure_bonus: bool = False) -> float:
    score = COMPLETENESS_FLOOR
    for min_length, step_score in COMPLETENESS_STEPS:
        if len(answer) >= min_length:
            score = step_score
            break
    if structure_bonus and any(marker in answer for marker in STRUCTURE_MARKERS):
        score = min(1.0, score + STRUCTURE_BONUS)
    return score


class ScoringEngine:
    def __init__(self, detector: Optional[NegationDetector] = None, structure_bonus: bool = False) -> None:
        self.detector = detector or NegationDetector()
        self.structure_bonus = structure_bonus

    def find_hallucinations(
        self,
        answer: str,
        expected_excludes: Iterable[str],
        known_false_positive_terms: Iterable[str] = (),
    ) -> List[str]:
        lower_answer = answer.lower()
        suppressed = {str(term).lower() for term in known_false_positive_terms}
        hallucinations: List[str] = []
        for term in expected_excludes:
            lower_term = str(term).lower()
            if not lower_term or lower_term in suppressed:
                continue
            if lower_term in lower_answer and not self.detector.is_negated(answer, term):
                hallucinations.append(f"{HALLUCINATED_PREFIX}{term}")
        return hallucinations

    def score(
        self,
        answer: str,
        expected_contains: Sequence[str],
        expected_excludes: Sequence[str],
        known_false_positive_terms: Sequence[str] = (),
    ) -> ScoreCard:
        answer = answer or ""
        lower_answer = answer.lower()

        issues: List[str] = []
        found = 0
        for term in expected_contains:
            if str(term).lower() in lower_answer:
                found += 1
            else:
                issues.append(f"{MISSING_PREFIX}{term}")
        accuracy = found / len(expected_contains) if expected_contains else 1.0

        hallucinations = self.find_hallucinations(answer, expected_excludes, known_false_positive_terms)
        grounding = max(0.0, 1.0 - HALLUCINATION_PENALTY * len(hallucinations))

        completeness = completeness_for(answer, self.structure_bonus)
        overall = ACCURACY_WEIGHT * accuracy + GROUNDING_WEIGHT * grounding + COMPLETENESS_WEIGHT * completeness

        return ScoreCard(
            accuracy=accuracy,
            grounding=grounding,
            completeness=completeness,
            overall=overall,
            issues=issues,
            hallucinations=hallucinations,
        )
