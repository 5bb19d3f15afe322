"""Negation-aware term detection.

A forbidden term that the assistant mentions only to deny it ("flatbed is not
a valid trailer here") is a correct answer, not a hallucination. Detection is
driven by a versioned rule set so that pattern changes are auditable per run.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, Optional, Pattern, Sequence, Tuple

from evalharness.exceptions import UnknownRuleSetError


CONTEXT_WINDOW_CHARS = 100


@dataclass(frozen=True)
class NegationRuleSet:
    version: str
    patterns: Tuple[Pattern[str], ...]

    @classmethod
    def from_strings(cls, version: str, patterns: Sequence[str]) -> "NegationRuleSet":
        return cls(version=version, patterns=tuple(re.compile(p, re.IGNORECASE) for p in patterns))

    def matches(self, text: str) -> bool:
        return any(pattern.search(text) for pattern in self.patterns)


NEGATION_RULES_V1 = NegationRuleSet.from_strings(
    "v1",
    [
        r"\bnot\s+(?:a\s+)?valid\b",
        r"\bare\s+not\b",
        r"\bis\s+not\b",
        r"\bisn't\b",
        r"\baren't\b",
        r"\bnot\s+(?:actually\s+)?(?:a\s+)?(?:real|actual|true|correct)\b",
        r"\binvalid\b",
        r"\bdo(?:es)?\s+not\s+exist\b",
        r"\bnever\s+(?:a\s+)?valid\b",
        r"\bshould\s+not\b",
        r"\bcannot\s+be\b",
        r"\bwon't\s+(?:be\s+)?(?:accepted|valid|recognized)\b",
        r"\bexcluded?\b",
        r"\bnot\s+(?:one\s+of\s+)?the\s+(?:valid|actual|real)\b",
    ],
)

RULE_SETS: Dict[str, NegationRuleSet] = {
    NEGATION_RULES_V1.version: NEGATION_RULES_V1,
}


def get_rule_set(version: str) -> NegationRuleSet:
    try:
        return RULE_SETS[version]
    except KeyError:
        raise UnknownRuleSetError(
            f"Unknown negation rule set: {version!r} (known: {', '.join(sorted(RULE_SETS))})"
        ) from None


def _occurrences(haystack: str, needle: str) -> Iterator[int]:
    index = haystack.find(needle)
    while index != -1:
        yield index
        index = haystack.find(needle, index + 1)


class NegationDetector:
    def __init__(self, rules: Optional[NegationRuleSet] = None, window: int = CONTEXT_WINDOW_CHARS) -> None:
        self.rules = rules or NEGATION_RULES_V1
        self.window = window

    def context_windows(self, answer_text: str, term: str) -> Iterator[str]:
        lower_answer = answer_text.lower()
        lower_term = term.lower()
        if not lower_term:
            return
        for index in _occurrences(lower_answer, lower_term):
            start = max(0, index - self.window)
            end = min(len(lower_answer), index + len(lower_term) + self.window)
            yield lower_answer[start:end]

    def is_negated(self, answer_text: str, term: str) -> bool:
        # A single negated occurrence suppresses the term for the whole answer.
        return any(self.rules.matches(context) for context in self.context_windows(answer_text, term))


def is_negated(answer_text: str, term: str) -> bool:
    return NegationDetector().is_negated(answer_text, term)
