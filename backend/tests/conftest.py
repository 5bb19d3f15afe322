from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from evalharness.models.base import Base
from evalharness.models.evaluation import EvalQuestion

REEFER_CONTAINS = ["refrigerated", "35°F"]
REEFER_EXCLUDES = ["flatbed"]


@pytest.fixture
def sqlite_path(tmp_path):
    return tmp_path / "evalharness.db"


@pytest.fixture
def session_factory(sqlite_path):
    engine = create_engine(f"sqlite:///{sqlite_path}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_questions(db):
    def _make(count=1, contains=None, excludes=None, active=True, prefix="Question"):
        base_time = datetime.utcnow() - timedelta(hours=1)
        created = []
        for i in range(count):
            question = EvalQuestion(
                question=f"{prefix} {i}?",
                expected_contains=list(contains if contains is not None else ["alpha"]),
                expected_excludes=list(excludes if excludes is not None else []),
                is_active=active,
                created_at=base_time + timedelta(seconds=i),
            )
            db.add(question)
            created.append(question)
        db.commit()
        return created

    return _make


class FakeAssistant:
    """Stands in for both the client factory and the client it returns."""

    def __init__(self, answers=None, default="alpha " * 80):
        self.answers = dict(answers or {})
        self.default = default
        self.asked = []
        self.authorizations = []
        self.closed = 0

    def __call__(self, authorization=None):
        self.authorizations.append(authorization)
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed += 1

    def ask(self, question_text):
        self.asked.append(question_text)
        answer = self.answers.get(question_text, self.default)
        if isinstance(answer, Exception):
            raise answer
        return answer


class ChainRecorder:
    def __init__(self, error=None):
        self.calls = []
        self.error = error

    def __call__(self, run_id, offset, authorization=None):
        self.calls.append((run_id, offset, authorization))
        if self.error:
            raise self.error


@pytest.fixture
def fake_assistant():
    return FakeAssistant()


@pytest.fixture
def chain():
    return ChainRecorder()
