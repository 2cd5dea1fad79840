"""
Pytest configuration and fixtures for gradetags tests.

Every test gets its own in-memory SQLite database. The jobs and services
commit and roll back on their own, so sessions are not wrapped in an outer
transaction; isolation comes from a fresh engine per test.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Generator, List, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gradetags.models.db import (
    Assignment,
    AssignmentTagAggregate,
    AssignmentTagState,
    Base,
    Submission,
    TagDictionaryEntry,
)
from gradetags.taxonomy.config import PipelineConfig
from gradetags.taxonomy.normalize import normalize_tag_label
from gradetags.taxonomy.providers.base import LLMProvider, LLMResponse

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
OWNER = "teacher-1"


class FakeClock:
    """Deterministic clock; call it to read the time, ``advance`` to move it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


class FakeProvider(LLMProvider):
    """Provider that replays queued replies and records the prompts it saw.

    Queued items are strings (returned as content), dicts (JSON-encoded) or
    exceptions (raised).
    """

    def __init__(self, replies: Optional[List[Union[str, dict, Exception]]] = None):
        self.replies = list(replies or [])
        self.prompts: List[str] = []

    @property
    def provider_name(self) -> str:
        return "fake"

    @property
    def model_name(self) -> str:
        return "fake-model"

    def queue(self, *replies: Union[str, dict, Exception]) -> "FakeProvider":
        self.replies.extend(replies)
        return self

    def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 2000,
        temperature: float = 0.2,
        json_mode: bool = True,
    ) -> LLMResponse:
        self.prompts.append(user_prompt)
        if not self.replies:
            raise AssertionError("FakeProvider has no queued reply")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply, ensure_ascii=False)
        return LLMResponse(
            content=content,
            prompt_tokens=100,
            completion_tokens=50,
            total_tokens=150,
            finish_reason="stop",
            model="fake-model",
            duration_ms=12.0,
        )


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh SQLite in-memory engine with all tables."""
    engine = create_engine(
        "sqlite://",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},  # TestClient runs in another thread
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Session bound to the per-test engine."""
    session = sessionmaker(bind=test_engine)()
    yield session
    session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> PipelineConfig:
    """Default pipeline limits."""
    return PipelineConfig()


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


class DataFactory:
    """Inserts grading platform rows and taxonomy fixtures for one owner."""

    def __init__(self, session: Session, owner_id: str = OWNER):
        self.session = session
        self.owner_id = owner_id

    def assignment(
        self,
        assignment_id: str,
        domain: Optional[str] = "algebra",
        owner_id: Optional[str] = None,
        title: str = "",
    ) -> Assignment:
        assignment = Assignment(
            id=assignment_id,
            owner_id=owner_id or self.owner_id,
            title=title or f"Assignment {assignment_id}",
            domain=domain,
        )
        self.session.add(assignment)
        self.session.commit()
        return assignment

    def graded(
        self,
        assignment_id: str,
        issues: List[List[str]],
        owner_id: Optional[str] = None,
        key: str = "weaknesses",
    ) -> List[Submission]:
        """One graded submission per entry of ``issues``, each from its own student."""
        submissions = []
        for index, phrases in enumerate(issues):
            if key == "mistakes":
                grading = {"mistakes": [{"reason": phrase} for phrase in phrases]}
            else:
                grading = {key: phrases}
            submissions.append(
                Submission(
                    id=f"{assignment_id}-s{index}",
                    owner_id=owner_id or self.owner_id,
                    assignment_id=assignment_id,
                    student_id=f"student-{index}",
                    status="graded",
                    grading_result=grading,
                )
            )
        self.session.add_all(submissions)
        self.session.commit()
        return submissions

    def dictionary(
        self, labels: List[str], owner_id: Optional[str] = None
    ) -> List[TagDictionaryEntry]:
        entries = [
            TagDictionaryEntry(
                owner_id=owner_id or self.owner_id,
                label=label,
                normalized_label=normalize_tag_label(label),
            )
            for label in labels
        ]
        self.session.add_all(entries)
        self.session.commit()
        return entries

    def aggregates(
        self,
        assignment_id: str,
        counts: dict,
        owner_id: Optional[str] = None,
        model: str = "fake-model",
    ) -> None:
        self.session.add_all(
            AssignmentTagAggregate(
                owner_id=owner_id or self.owner_id,
                assignment_id=assignment_id,
                tag_label=label,
                tag_count=count,
                generated_at=T0,
                model=model,
                prompt_version="v1.0",
            )
            for label, count in counts.items()
        )
        self.session.commit()

    def state(self, assignment_id: str, owner_id: Optional[str] = None, **values):
        state = AssignmentTagState(
            owner_id=owner_id or self.owner_id,
            assignment_id=assignment_id,
            **values,
        )
        self.session.add(state)
        self.session.commit()
        return state


@pytest.fixture
def factory(db_session: Session) -> DataFactory:
    return DataFactory(db_session)


@pytest.fixture
def api_client(db_session: Session, provider: FakeProvider, config: PipelineConfig):
    """Create a test client for FastAPI with database and provider overrides."""
    from unittest.mock import patch

    from fastapi.testclient import TestClient

    from gradetags.api.app import app
    from gradetags.api.deps import get_pipeline_config, get_provider
    from gradetags.db.connection import get_db

    def override_get_db():
        try:
            yield db_session
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_provider] = lambda: provider
    app.dependency_overrides[get_pipeline_config] = lambda: config

    # The lifespan would otherwise connect to the configured database
    with patch("gradetags.api.app.init_engine"), patch(
        "gradetags.api.app.dispose_engine"
    ), patch("gradetags.api.app.setup_logging"):
        with TestClient(app) as client:
            yield client

    app.dependency_overrides.clear()
