"""
Pytest configuration and fixtures for Exam Forge Backend tests.

Provides:
- SQLite in-memory database for isolated tests
- Test client with dependency overrides
- Scripted provider clients with deterministic responses
- Sample data fixtures
"""
import json
import uuid
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine
from sqlmodel.pool import StaticPool

from app.core.db import get_session
from app.core.rate_limit import limiter
from app.main import app
from app.models import (
    Difficulty,
    GenerationTask,
    Material,
    Question,
    QuestionStatus,
    QuestionType,
    TaskStatus,
)
from app.services.llm_client import Availability, ProviderConfig
from app.services.task_orchestrator import TaskOrchestrator, get_orchestrator

SAMPLE_MATERIAL = (
    "Broadband pay structures collapse many narrow salary grades into a few wide bands. "
    "The main principle of broadbanding is to reward growth in skills rather than promotion. "
    "A pay band defines the minimum and maximum salary for a group of jobs. "
    "Managers must review band placement every year according to the company policy. "
    "Performance appraisal results are the standard input to pay adjustments within a band."
)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture(name="engine")
def engine_fixture():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="session")
def session_fixture(engine) -> Generator[Session, None, None]:
    """Create a database session for testing."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="session_factory")
def session_factory_fixture(engine) -> Callable[[], Session]:
    """Fresh sessions on the test engine, as background work uses them."""
    return lambda: Session(engine)


@pytest.fixture(name="mock_orchestrator")
def mock_orchestrator_fixture() -> MagicMock:
    """Orchestrator stand-in for route tests."""
    orchestrator = MagicMock(spec=TaskOrchestrator)
    orchestrator.create_task = AsyncMock()
    orchestrator.get_task_status = AsyncMock()
    orchestrator.cancel_task = AsyncMock()
    return orchestrator


@pytest.fixture(name="client")
def client_fixture(session: Session, mock_orchestrator: MagicMock) -> Generator[TestClient, None, None]:
    """Create a test client with database and orchestrator overrides."""

    def get_session_override():
        yield session

    app.dependency_overrides[get_session] = get_session_override
    app.dependency_overrides[get_orchestrator] = lambda: mock_orchestrator
    limiter.reset()
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


# =============================================================================
# Data Fixtures
# =============================================================================


@pytest.fixture(name="material")
def material_fixture(session: Session) -> Material:
    material = Material(title="Compensation management", content=SAMPLE_MATERIAL)
    session.add(material)
    session.commit()
    session.refresh(material)
    return material


@pytest.fixture(name="short_material")
def short_material_fixture(session: Session) -> Material:
    material = Material(title="Stub", content="Too short to use.")
    session.add(material)
    session.commit()
    session.refresh(material)
    return material


@pytest.fixture(name="make_task")
def make_task_fixture(session: Session, material: Material) -> Callable[..., GenerationTask]:
    """Factory for generation tasks on the sample material."""

    def _make(
        requested_count: int = 5,
        question_types: list[QuestionType] | None = None,
        status: TaskStatus = TaskStatus.PENDING,
        creator_id: uuid.UUID | None = None,
        knowledge_points: list[str] | None = None,
    ) -> GenerationTask:
        task = GenerationTask(
            material_id=material.id,
            requested_count=requested_count,
            question_types=question_types or [QuestionType.SINGLE_CHOICE],
            difficulty=Difficulty.MEDIUM,
            knowledge_points=knowledge_points or [],
            status=status,
            creator_id=creator_id,
            provider_key="openrouter",
            model_key="openai/gpt-4.1-mini",
        )
        session.add(task)
        session.commit()
        session.refresh(task)
        return task

    return _make


@pytest.fixture(name="task")
def task_fixture(make_task) -> GenerationTask:
    return make_task()


@pytest.fixture(name="make_question")
def make_question_fixture(session: Session, task: GenerationTask) -> Callable[..., Question]:
    """Factory for stored questions that pass automated screening by default."""

    def _make(
        status: QuestionStatus = QuestionStatus.AI_REVIEWING,
        question_type: QuestionType = QuestionType.SINGLE_CHOICE,
        task_id: uuid.UUID | None = None,
        **overrides: Any,
    ) -> Question:
        fields: dict[str, Any] = {
            "task_id": task_id or task.id,
            "question_type": question_type,
            "difficulty": Difficulty.MEDIUM,
            "stem": "Which statement about broadband pay structures matches the material",
            "options": {
                "A": "They add more salary grades",
                "B": "They merge narrow grades into wide bands",
                "C": "They remove pay ranges entirely",
                "D": "They apply only to executives",
            },
            "correct_answer": "B",
            "source_excerpt": "Broadband pay structures collapse many narrow salary grades into a few wide bands.",
            "reasoning": "B restates the definition in the material. A, C and D contradict it.",
            "conclusion": "The answer is B.",
            "quality_score": 88.0,
            "status": status,
        }
        if question_type == QuestionType.TRUE_FALSE:
            fields.update(
                stem="Broadband pay structures merge narrow salary grades into wide bands",
                options={"A": "True", "B": "False"},
                correct_answer="A",
                conclusion="The answer is A.",
            )
        elif question_type == QuestionType.MULTI_CHOICE:
            fields.update(correct_answer="BD", conclusion="The answer is BD.")
        fields.update(overrides)
        question = Question(**fields)
        session.add(question)
        session.commit()
        session.refresh(question)
        return question

    return _make


# =============================================================================
# Provider Fixtures
# =============================================================================


def question_json(
    question_type: QuestionType = QuestionType.SINGLE_CHOICE,
    quality_score: float = 85,
    **overrides: Any,
) -> str:
    """Model output for one well-formed question of ``question_type``."""
    payload: dict[str, Any] = {
        "stem": "Which statement about broadband pay structures matches the material",
        "options": {
            "A": "They add more salary grades",
            "B": "They merge narrow grades into wide bands",
            "C": "They remove pay ranges entirely",
            "D": "They apply only to executives",
        },
        "correct_answer": "B",
        "analysis": {
            "source_excerpt": "Broadband pay structures collapse many narrow salary grades into a few wide bands.",
            "reasoning": "B restates the definition in the material. A, C and D contradict it.",
            "conclusion": "The answer is B.",
        },
        "quality_score": quality_score,
    }
    if question_type == QuestionType.TRUE_FALSE:
        payload.update(
            stem="Broadband pay structures merge narrow salary grades into wide bands",
            options={"A": "True", "B": "False"},
            correct_answer="A",
        )
        payload["analysis"]["conclusion"] = "The answer is A."
    elif question_type == QuestionType.MULTI_CHOICE:
        payload["correct_answer"] = "BD"
        payload["analysis"]["conclusion"] = "The answer is BD."
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture(name="valid_response")
def valid_response_fixture() -> Callable[..., str]:
    return question_json


@pytest.fixture(name="provider_config")
def provider_config_fixture() -> ProviderConfig:
    return ProviderConfig(
        provider_key="openrouter",
        model="openai/gpt-4.1-mini",
        base_url="https://openrouter.ai/api/v1",
        api_key="test-key",
        timeout_seconds=5,
    )


@pytest.fixture(name="mock_provider")
def mock_provider_fixture() -> MagicMock:
    """Provider client whose responses each test scripts via ``generate_completion``."""
    provider = MagicMock()
    provider.is_available.return_value = Availability(available=True, reason="configured")
    provider.generate_completion = AsyncMock(return_value=question_json())
    return provider


@pytest.fixture(name="mock_manager")
def mock_manager_fixture(provider_config: ProviderConfig, mock_provider: MagicMock) -> MagicMock:
    manager = MagicMock()
    manager.snapshot.return_value = provider_config
    manager.client_for.return_value = mock_provider
    return manager


@pytest.fixture(name="make_orchestrator")
def make_orchestrator_fixture(mock_manager: MagicMock, session_factory) -> Callable[..., TaskOrchestrator]:
    """Orchestrator on the test database; keyword arguments override tuning knobs."""

    def _make(**overrides: Any) -> TaskOrchestrator:
        options: dict[str, Any] = {
            "slot_max_attempts": 3,
            "budget_factor": 2,
            "max_parallel": 3,
            "min_quality_score": 60,
            "call_timeout": 5,
            "task_timeout": 30,
            "auto_screen": False,
        }
        options.update(overrides)
        return TaskOrchestrator(provider_manager=mock_manager, session_factory=session_factory, **options)

    return _make
