"""
Tests for the task orchestrator.

Provider clients are scripted mocks; persistence uses the in-memory database.
"""
import asyncio
import logging
import re
import time
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from app import crud
from app.core.exceptions import (
    InvalidTaskRequestError,
    MaterialNotFoundError,
    MaterialTooShortError,
    ProviderError,
    ProviderErrorKind,
    TaskAlreadyFinishedError,
)
from app.models import (
    Difficulty,
    GenerationTask,
    Question,
    QuestionStatus,
    QuestionType,
    TaskStatus,
)
from app.services.llm_client import Availability


def _timeout_error() -> ProviderError:
    return ProviderError(ProviderErrorKind.TIMEOUT, "request timed out", provider="openrouter")


def _load_task(session: Session, task_id) -> GenerationTask:
    session.expire_all()
    return session.get(GenerationTask, task_id)


def _load_questions(session: Session, task_id) -> list[Question]:
    session.expire_all()
    return list(session.exec(select(Question).where(Question.task_id == task_id)).all())


class TestRunTask:
    """Tests for a task run against a working provider."""

    @pytest.mark.asyncio
    async def test_all_slots_accepted(self, session, make_task, make_orchestrator, provider_config):
        """Every slot succeeds on the first attempt."""
        task = make_task(requested_count=3)
        orchestrator = make_orchestrator()

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 3
        assert stored.generated_count == 3
        assert stored.success_rate == 100
        assert stored.progress == 100
        assert stored.shortfall_slots == []
        assert stored.completed_at is not None

        questions = _load_questions(session, task.id)
        assert len(questions) == 3
        assert {q.slot for q in questions} == {0, 1, 2}
        assert all(q.status == QuestionStatus.AI_REVIEWING for q in questions)
        assert not any(q.is_simulated for q in questions)

    @pytest.mark.asyncio
    async def test_slot_retries_after_two_timeouts(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """A slot that times out twice then succeeds records 2 retries."""
        task = make_task(requested_count=5)
        mock_provider.generate_completion.side_effect = [
            _timeout_error(),
            _timeout_error(),
        ] + [valid_response()] * 5
        orchestrator = make_orchestrator(max_parallel=1)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 5
        assert stored.slot_retries == {"0": 2}
        assert stored.attempts_used == 7
        assert mock_provider.generate_completion.await_count == 7

    @pytest.mark.asyncio
    async def test_per_call_timeout_counts_as_failed_attempt(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """A call exceeding the per-call timeout is abandoned and retried."""
        task = make_task(requested_count=1)
        calls = {"count": 0}

        async def slow_then_fast(prompt):
            calls["count"] += 1
            if calls["count"] == 1:
                await asyncio.sleep(5)
            return valid_response()

        mock_provider.generate_completion.side_effect = slow_then_fast
        orchestrator = make_orchestrator(call_timeout=0.05)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.slot_retries == {"0": 1}

    @pytest.mark.asyncio
    async def test_zero_accepted_fails(
        self, session, make_task, make_orchestrator, mock_provider, provider_config
    ):
        """Unparseable output on every attempt ends the task as failed."""
        task = make_task(requested_count=2)
        mock_provider.generate_completion.return_value = "I cannot help with that."
        orchestrator = make_orchestrator()

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.FAILED
        assert stored.accepted_count == 0
        assert stored.success_rate == 0
        assert stored.shortfall_slots == [0, 1]
        assert stored.error
        # Budget is 2 x requested
        assert stored.attempts_used == 4
        assert _load_questions(session, task.id) == []

    @pytest.mark.asyncio
    async def test_partial_success_completes_with_shortfall(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """Accepted >= 1 with a given-up slot still completes."""
        task = make_task(requested_count=2)
        mock_provider.generate_completion.side_effect = [valid_response()] + ["not json"] * 10
        orchestrator = make_orchestrator(max_parallel=1)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 1
        assert stored.generated_count == 1
        assert stored.success_rate == 50
        assert stored.shortfall_slots == [1]
        assert stored.slot_retries == {"1": 3}

    @pytest.mark.asyncio
    async def test_attempt_budget_is_shared_across_slots(
        self, session, make_task, make_orchestrator, mock_provider, provider_config
    ):
        """No more provider calls than the global budget allows."""
        task = make_task(requested_count=3)
        mock_provider.generate_completion.side_effect = _timeout_error()
        orchestrator = make_orchestrator(slot_max_attempts=5, budget_factor=1)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.FAILED
        assert mock_provider.generate_completion.await_count == 3
        assert stored.attempts_used == 3

    @pytest.mark.asyncio
    async def test_low_quality_candidate_is_retried(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """Candidates below the acceptance threshold are rejected."""
        task = make_task(requested_count=1)
        mock_provider.generate_completion.side_effect = [
            valid_response(quality_score=30),
            valid_response(quality_score=0.9),
        ]
        orchestrator = make_orchestrator()

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.slot_retries == {"0": 1}
        [question] = _load_questions(session, task.id)
        assert question.quality_score == 90

    @pytest.mark.asyncio
    async def test_repaired_candidate_requires_human_review(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response, caplog
    ):
        """A repaired true/false question is stored with its repair log."""
        task = make_task(requested_count=1, question_types=[QuestionType.TRUE_FALSE])
        mock_provider.generate_completion.return_value = valid_response(
            QuestionType.TRUE_FALSE,
            options=["Yes", "No", "Maybe"],
            correct_answer="correct",
        )
        orchestrator = make_orchestrator()

        with caplog.at_level(logging.INFO, logger="app.services.task_orchestrator"):
            await orchestrator.run_task(task.id, provider_config)

        assert _load_task(session, task.id).status == TaskStatus.COMPLETED
        [question] = _load_questions(session, task.id)
        assert question.options == {"A": "True", "B": "False"}
        assert question.correct_answer == "A"
        assert question.requires_human_review is True
        assert [a["kind"] for a in question.repair_actions] == ["option_count", "answer_format"]
        assert "repaired (option_count, answer_format) and flagged for human review" in caplog.text

    @pytest.mark.asyncio
    async def test_types_and_knowledge_points_round_robin(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """Slot i gets type i mod len(types) and knowledge point i mod len(points)."""
        task = make_task(
            requested_count=4,
            question_types=[QuestionType.SINGLE_CHOICE, QuestionType.MULTI_CHOICE],
            knowledge_points=["pay bands", "appraisal"],
        )

        async def by_type(prompt):
            if "multiple-choice" in prompt.user_prompt:
                return valid_response(QuestionType.MULTI_CHOICE)
            return valid_response()

        mock_provider.generate_completion.side_effect = by_type
        orchestrator = make_orchestrator()

        await orchestrator.run_task(task.id, provider_config)

        questions = sorted(_load_questions(session, task.id), key=lambda q: q.slot)
        assert [q.question_type for q in questions] == [
            QuestionType.SINGLE_CHOICE,
            QuestionType.MULTI_CHOICE,
            QuestionType.SINGLE_CHOICE,
            QuestionType.MULTI_CHOICE,
        ]
        assert [q.knowledge_point for q in questions] == ["pay bands", "appraisal", "pay bands", "appraisal"]

    @pytest.mark.asyncio
    async def test_multi_choice_answers_match_grammar(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """Every stored multi-choice answer is 2-4 sorted letters."""
        task = make_task(requested_count=3, question_types=[QuestionType.MULTI_CHOICE])
        mock_provider.generate_completion.side_effect = [
            valid_response(QuestionType.MULTI_CHOICE, correct_answer="D, B"),
            valid_response(QuestionType.MULTI_CHOICE, correct_answer="C"),
            valid_response(QuestionType.MULTI_CHOICE, correct_answer="abcd"),
        ]
        orchestrator = make_orchestrator(max_parallel=1)

        await orchestrator.run_task(task.id, provider_config)

        answers = [q.correct_answer for q in _load_questions(session, task.id)]
        assert sorted(answers) == ["ABCD", "AC", "BD"]
        assert all(re.fullmatch(r"[A-D]{2,4}", a) for a in answers)

    @pytest.mark.asyncio
    async def test_accepted_never_exceeds_requested(
        self, session, make_task, make_orchestrator, provider_config
    ):
        """Progress snapshots stay within 0..requested."""
        task = make_task(requested_count=4)
        orchestrator = make_orchestrator(max_parallel=3)
        snapshots = []

        original = crud.record_task_progress

        def spy(**kwargs):
            result = original(**kwargs)
            snapshots.append((result.accepted_count, result.progress))
            return result

        with patch("app.crud.record_task_progress", side_effect=spy):
            await orchestrator.run_task(task.id, provider_config)

        assert len(snapshots) == 4
        assert all(0 <= accepted <= 4 for accepted, _ in snapshots)
        progress = [p for _, p in snapshots]
        assert progress == sorted(progress)
        assert _load_task(session, task.id).accepted_count == 4

    @pytest.mark.asyncio
    async def test_auto_screen_moves_questions_to_pending(
        self, session, make_task, make_orchestrator, provider_config
    ):
        """With auto-screening on, good questions land in the human queue."""
        task = make_task(requested_count=2)
        orchestrator = make_orchestrator(auto_screen=True)

        await orchestrator.run_task(task.id, provider_config)

        questions = _load_questions(session, task.id)
        assert [q.status for q in questions] == [QuestionStatus.PENDING, QuestionStatus.PENDING]


class TestFallback:
    """Tests for the placeholder path."""

    @pytest.mark.asyncio
    async def test_unavailable_provider_uses_placeholders(
        self, session, make_task, make_orchestrator, mock_provider, provider_config
    ):
        """Unavailable provider: every slot simulated, success rate 100."""
        task = make_task(
            requested_count=4,
            question_types=[QuestionType.SINGLE_CHOICE, QuestionType.MULTI_CHOICE, QuestionType.TRUE_FALSE],
        )
        mock_provider.is_available.return_value = Availability(available=False, reason="no API key")
        orchestrator = make_orchestrator()

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 4
        assert stored.success_rate == 100
        assert stored.is_simulated is True
        mock_provider.generate_completion.assert_not_awaited()

        questions = _load_questions(session, task.id)
        assert len(questions) == 4
        assert all(q.is_simulated for q in questions)
        true_false = [q for q in questions if q.question_type == QuestionType.TRUE_FALSE]
        assert true_false[0].options == {"A": "True", "B": "False"}


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_after_two_accepted(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        """Cancel during the third call: 2 kept, in-flight result dropped, no more calls."""
        task = make_task(requested_count=5)
        orchestrator = make_orchestrator(max_parallel=1)
        calls = {"count": 0}

        async def respond(prompt):
            calls["count"] += 1
            if calls["count"] == 3:
                await orchestrator.cancel_task(task.id)
            return valid_response()

        mock_provider.generate_completion.side_effect = respond

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.CANCELLED
        assert stored.generated_count == 2
        assert stored.accepted_count == 2
        assert calls["count"] == 3
        assert len(_load_questions(session, task.id)) == 2

    @pytest.mark.asyncio
    async def test_cancel_finished_task_rejected(self, make_task, make_orchestrator):
        task = make_task(status=TaskStatus.COMPLETED)
        orchestrator = make_orchestrator()

        with pytest.raises(TaskAlreadyFinishedError):
            await orchestrator.cancel_task(task.id)

    @pytest.mark.asyncio
    async def test_cancel_pending_task_without_run(self, session, make_task, make_orchestrator):
        """A pending task not running in this process is cancelled directly."""
        task = make_task(requested_count=3)
        orchestrator = make_orchestrator()

        result = await orchestrator.cancel_task(task.id)

        assert result.status == TaskStatus.CANCELLED
        assert _load_task(session, task.id).shortfall_slots == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_running_tasks(
        self, session, material, make_orchestrator, mock_provider
    ):
        """Stopping the orchestrator marks in-flight tasks cancelled."""

        async def hang(prompt):
            await asyncio.sleep(10)

        mock_provider.generate_completion.side_effect = hang
        orchestrator = make_orchestrator()
        task = await orchestrator.create_task(
            material_id=material.id,
            question_count=2,
            question_types=[QuestionType.SINGLE_CHOICE],
        )
        await asyncio.sleep(0.2)

        await orchestrator.shutdown()

        assert _load_task(session, task.id).status == TaskStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_shutdown_during_write_keeps_stored_question(
        self, session, material, make_orchestrator
    ):
        """Stopping while a question is being written waits for it and counts it."""
        orchestrator = make_orchestrator(max_parallel=1)
        original = crud.record_task_progress

        def slow_progress(**kwargs):
            time.sleep(0.5)
            return original(**kwargs)

        with patch("app.crud.record_task_progress", side_effect=slow_progress):
            task = await orchestrator.create_task(
                material_id=material.id,
                question_count=3,
                question_types=[QuestionType.SINGLE_CHOICE],
            )
            await asyncio.sleep(0.2)
            await orchestrator.shutdown()

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.CANCELLED
        assert stored.accepted_count == 1
        assert stored.generated_count == len(_load_questions(session, task.id)) == 1
        assert stored.shortfall_slots == [1, 2]

    @pytest.mark.asyncio
    async def test_shutdown_while_finishing_keeps_first_status(
        self, session, make_task, make_orchestrator, provider_config
    ):
        """A shutdown arriving while ``completed`` is written does not replace it."""
        task = make_task(requested_count=1)
        orchestrator = make_orchestrator()
        original = crud.finish_generation_task
        statuses = []

        def slow_finish(**kwargs):
            statuses.append(kwargs["status"])
            time.sleep(0.4)
            return original(**kwargs)

        with patch("app.crud.finish_generation_task", side_effect=slow_finish):
            run = orchestrator.schedule(task.id, provider_config)
            while run.finishing is None:
                await asyncio.sleep(0.01)
            await orchestrator.shutdown()

        stored = _load_task(session, task.id)
        assert statuses == [TaskStatus.COMPLETED]
        assert stored.status == TaskStatus.COMPLETED
        assert stored.error is None


class TestTimeoutsAndErrors:
    """Tests for the task budget and fatal errors."""

    @pytest.mark.asyncio
    async def test_task_timeout_with_nothing_accepted_fails(
        self, session, make_task, make_orchestrator, mock_provider, provider_config
    ):
        task = make_task(requested_count=2)

        async def hang(prompt):
            await asyncio.sleep(10)

        mock_provider.generate_completion.side_effect = hang
        orchestrator = make_orchestrator(task_timeout=0.1)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.FAILED
        assert "time budget" in stored.error

    @pytest.mark.asyncio
    async def test_task_timeout_after_acceptance_completes(
        self, session, make_task, make_orchestrator, mock_provider, provider_config, valid_response
    ):
        task = make_task(requested_count=3)
        calls = {"count": 0}

        async def first_then_hang(prompt):
            calls["count"] += 1
            if calls["count"] > 1:
                await asyncio.sleep(10)
            return valid_response()

        mock_provider.generate_completion.side_effect = first_then_hang
        orchestrator = make_orchestrator(max_parallel=1, task_timeout=0.3)

        await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 1
        assert "time budget" in stored.error
        assert stored.shortfall_slots == [1, 2]

    @pytest.mark.asyncio
    async def test_timeout_during_write_keeps_counts_consistent(
        self, session, make_task, make_orchestrator, provider_config
    ):
        """A question whose write outlives the task budget is still counted."""
        task = make_task(requested_count=1)
        orchestrator = make_orchestrator(task_timeout=0.2)
        original = crud.record_task_progress

        def slow_progress(**kwargs):
            time.sleep(0.5)
            return original(**kwargs)

        with patch("app.crud.record_task_progress", side_effect=slow_progress):
            await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        questions = _load_questions(session, task.id)
        assert len(questions) == 1
        assert stored.status == TaskStatus.COMPLETED
        assert stored.accepted_count == 1
        assert stored.generated_count == len(questions)
        assert stored.progress == 100
        assert stored.shortfall_slots == []

    @pytest.mark.asyncio
    async def test_persistence_error_fails_task(
        self, session, make_task, make_orchestrator, provider_config
    ):
        """A failed question insert aborts the task."""
        task = make_task(requested_count=2)
        orchestrator = make_orchestrator()

        with patch(
            "app.crud.create_question",
            side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
        ):
            await orchestrator.run_task(task.id, provider_config)

        stored = _load_task(session, task.id)
        assert stored.status == TaskStatus.FAILED
        assert "disk I/O error" in stored.error


class TestCreateTask:
    """Tests for task creation."""

    @pytest.mark.asyncio
    async def test_create_task_snapshots_provider(
        self, session, material, make_orchestrator, mock_manager
    ):
        orchestrator = make_orchestrator()

        task = await orchestrator.create_task(
            material_id=material.id,
            question_count=2,
            question_types=[QuestionType.TRUE_FALSE],
            difficulty=Difficulty.EASY,
            knowledge_points=["pay bands"],
        )
        run = orchestrator.get_run(task.id)
        assert run is not None
        await run.handle

        stored = _load_task(session, task.id)
        assert stored.provider_key == "openrouter"
        assert stored.model_key == "openai/gpt-4.1-mini"
        assert stored.status == TaskStatus.COMPLETED
        mock_manager.snapshot.assert_called_once()

    @pytest.mark.asyncio
    async def test_create_task_unknown_material(self, make_orchestrator):
        orchestrator = make_orchestrator()

        with pytest.raises(MaterialNotFoundError):
            await orchestrator.create_task(
                material_id=uuid.uuid4(),
                question_count=1,
                question_types=[QuestionType.SINGLE_CHOICE],
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("count,types", [(0, [QuestionType.SINGLE_CHOICE]), (2, [])])
    async def test_create_task_rejects_empty_request(self, session, material, make_orchestrator, count, types):
        orchestrator = make_orchestrator()

        with pytest.raises(InvalidTaskRequestError):
            await orchestrator.create_task(material_id=material.id, question_count=count, question_types=types)

        session.expire_all()
        assert session.exec(select(GenerationTask)).all() == []

    @pytest.mark.asyncio
    async def test_create_task_material_too_short(self, short_material, make_orchestrator):
        orchestrator = make_orchestrator(min_material_length=100)

        with pytest.raises(MaterialTooShortError):
            await orchestrator.create_task(
                material_id=short_material.id,
                question_count=1,
                question_types=[QuestionType.SINGLE_CHOICE],
            )

    @pytest.mark.asyncio
    async def test_get_task_status(self, task, make_orchestrator):
        orchestrator = make_orchestrator()

        result = await orchestrator.get_task_status(task.id)

        assert result.id == task.id
        assert result.status == TaskStatus.PENDING


@pytest.mark.asyncio
async def test_run_skips_task_that_is_no_longer_pending(make_task, make_orchestrator, mock_provider, provider_config):
    task = make_task(status=TaskStatus.CANCELLED)
    orchestrator = make_orchestrator()

    await orchestrator.run_task(task.id, provider_config)

    mock_provider.generate_completion.assert_not_awaited()
