import pytest
from sqlalchemy.exc import OperationalError

from evalharness.exceptions import NoHallucinationsError
from evalharness.models.evaluation import EvalFeedback, EvalResult, EvalRun
from evalharness.services.feedback import (
    load_known_false_positives,
    record_false_positive,
    terms_from_hallucinations,
)


def _result(db, question, hallucinations):
    run = EvalRun(run_type="manual", status="completed", total_questions=1, question_ids=[question.id])
    db.add(run)
    db.flush()
    result = EvalResult(
        run_id=run.id,
        question_id=question.id,
        question=question.question,
        answer="This requires a flatbed trailer.",
        verdict="fail",
        hallucinations=hallucinations,
    )
    db.add(result)
    db.commit()
    return result


def test_terms_from_hallucinations_strips_prefix():
    assert terms_from_hallucinations(["Hallucinated: flatbed", "hallucinated:  dry van ", "reefer", ""]) == [
        "flatbed",
        "dry van",
        "reefer",
    ]


def test_record_false_positive_persists_terms(db, make_questions):
    (question,) = make_questions(1)
    result = _result(db, question, ["Hallucinated: flatbed", "Hallucinated: van"])

    feedback = record_false_positive(db, result, notes="context was fine")
    assert feedback.id is not None
    assert feedback.question_id == question.id
    assert feedback.result_id == result.id
    assert feedback.feedback_type == "false_positive"
    assert feedback.false_positive_terms == ["flatbed", "van"]
    assert feedback.notes == "context was fine"


def test_record_false_positive_requires_hallucinations(db, make_questions):
    (question,) = make_questions(1)
    result = _result(db, question, [])
    with pytest.raises(NoHallucinationsError):
        record_false_positive(db, result)
    assert db.query(EvalFeedback).count() == 0


def test_known_false_positives_are_grouped_per_question(db, make_questions):
    first, second = make_questions(2)
    db.add_all(
        [
            EvalFeedback(question_id=first.id, false_positive_terms=["flatbed", "van"]),
            EvalFeedback(question_id=first.id, false_positive_terms=["FLATBED", "reefer"]),
            EvalFeedback(question_id=second.id, false_positive_terms=["tanker"]),
            EvalFeedback(question_id=second.id, feedback_type="other", false_positive_terms=["ignored"]),
            EvalFeedback(question_id=second.id, false_positive_terms=None),
        ]
    )
    db.commit()

    known = load_known_false_positives(db)
    assert known == {first.id: ["flatbed", "van", "reefer"], second.id: ["tanker"]}


def test_known_false_positives_fail_open(db, monkeypatch):
    def broken_execute(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("feedback table missing"))

    monkeypatch.setattr(db, "execute", broken_execute)
    assert load_known_false_positives(db) == {}
