import pytest

from evalharness.exceptions import UnknownRuleSetError
from evalharness.services.negation import (
    NEGATION_RULES_V1,
    NegationDetector,
    NegationRuleSet,
    get_rule_set,
    is_negated,
)


def test_negation_phrase_near_term_is_detected():
    assert is_negated("Use a refrigerated trailer set to 35°F; this is not a flatbed load.", "flatbed")
    assert is_negated("Flatbed trailers are invalid for frozen goods.", "flatbed")
    assert is_negated("A flatbed should not be used here.", "FLATBED")


def test_plain_mention_is_not_negated():
    assert not is_negated("This requires a flatbed trailer.", "flatbed")
    assert not is_negated("No mention of that trailer here.", "flatbed")


def test_negation_outside_window_is_ignored():
    answer = "This is not the point. " + ("x" * 150) + " Load it on a flatbed."
    assert not is_negated(answer, "flatbed")

    detector = NegationDetector(window=300)
    assert detector.is_negated(answer, "flatbed")


def test_any_negated_occurrence_suppresses_the_term():
    answer = "Book a flatbed. " + ("y" * 250) + " Actually a flatbed is not allowed."
    assert is_negated(answer, "flatbed")


def test_context_windows_cover_each_occurrence():
    detector = NegationDetector(window=5)
    windows = list(detector.context_windows("aaaaaTERMbbbbb cccccTERMddddd", "term"))
    assert windows == ["aaaaatermbbbbb", "ccccctermddddd"]
    assert list(detector.context_windows("anything", "")) == []


def test_rule_sets_are_versioned_and_injectable():
    assert get_rule_set("v1") is NEGATION_RULES_V1
    with pytest.raises(UnknownRuleSetError):
        get_rule_set("v999")

    custom = NegationRuleSet.from_strings("test", [r"\bnope\b"])
    detector = NegationDetector(custom)
    assert detector.rules.version == "test"
    assert detector.is_negated("Nope, no flatbed.", "flatbed")
    assert not detector.is_negated("This is not a flatbed load.", "flatbed")
