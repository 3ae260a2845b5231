"""
Task Orchestrator - Fulfil "generate N questions" requests in the background.

Each task runs as an asyncio task on the application loop:

1. Mark the task ``processing``
2. If the task's provider snapshot is unavailable, fill every slot with
   placeholder questions and finish
3. Otherwise a fixed pool of workers fills slots ``0..N-1``; each slot gets
   a limited number of attempts and all slots share a global attempt budget
4. Accepted questions are stored as ``ai_reviewing`` under a per-task lock
5. Finish as completed, failed or cancelled, then run automated screening

Database work runs in worker threads so the loop never blocks.
"""
import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from app import crud
from app.core.config import settings
from app.core.db import new_session
from app.core.exceptions import (
    AppError,
    InvalidTaskRequestError,
    MaterialNotFoundError,
    MaterialTooShortError,
    PersistenceError,
    ProviderError,
    TaskAlreadyFinishedError,
    TaskCancelledError,
    TaskNotFoundError,
)
from app.models import (
    Difficulty,
    GenerationTask,
    Question,
    QuestionStatus,
    QuestionType,
    TaskStatus,
    utcnow,
)
from app.schemas.questions import QuestionCandidate
from app.services.llm_client import ProviderConfig, ProviderManager, get_provider_manager
from app.services.placeholder_generator import generate_placeholders
from app.services.question_generator import (
    QuestionGeneratorService,
    SlotPlan,
    get_question_generator,
    plan_slots,
)
from app.services.response_validator import Err, RepairAction, Repaired
from app.services.review_service import ReviewService

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class TaskContext:
    """What a run needs from the stored task, read once at start."""

    task_id: uuid.UUID
    requested_count: int
    question_types: list[QuestionType]
    difficulty: Difficulty
    knowledge_points: list[str]
    material_text: str


@dataclass
class TaskRun:
    """In-memory state of one running task. Counters change under ``lock`` or from a pending write."""

    task_id: uuid.UUID
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    handle: asyncio.Task | None = None
    requested: int = 0
    budget: int = 0
    accepted: int = 0
    attempts_used: int = 0
    filled: set[int] = field(default_factory=set)
    slot_retries: dict[int, int] = field(default_factory=dict)
    writes: set[asyncio.Task] = field(default_factory=set)
    finishing: asyncio.Task | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def shortfall(self) -> list[int]:
        return sorted(set(range(self.requested)) - self.filled)


def _question_from_candidate(
    candidate: QuestionCandidate,
    *,
    task_id: uuid.UUID,
    slot: SlotPlan,
    repair_actions: list[RepairAction] | None = None,
    is_simulated: bool = False,
) -> Question:
    return Question(
        task_id=task_id,
        question_type=candidate.question_type,
        difficulty=slot.difficulty,
        stem=candidate.stem,
        options=dict(candidate.options),
        correct_answer=candidate.correct_answer,
        source_excerpt=candidate.source_excerpt,
        reasoning=candidate.reasoning,
        conclusion=candidate.conclusion,
        quality_score=candidate.quality_score,
        knowledge_point=slot.knowledge_point,
        slot=slot.index,
        repair_actions=[action.to_dict() for action in repair_actions or []],
        requires_human_review=bool(repair_actions),
        is_simulated=is_simulated,
        status=QuestionStatus.AI_REVIEWING,
    )


class TaskOrchestrator:
    """Creates generation tasks and drives them to a terminal state."""

    def __init__(
        self,
        provider_manager: ProviderManager | None = None,
        session_factory: Callable[[], Session] = new_session,
        *,
        slot_max_attempts: int | None = None,
        budget_factor: int | None = None,
        max_parallel: int | None = None,
        min_quality_score: float | None = None,
        call_timeout: float | None = None,
        task_timeout: float | None = None,
        excerpt_length: int | None = None,
        min_material_length: int | None = None,
        auto_screen: bool | None = None,
    ):
        self.provider_manager = provider_manager or get_provider_manager()
        self.session_factory = session_factory
        self.slot_max_attempts = slot_max_attempts or settings.GENERATION_SLOT_MAX_ATTEMPTS
        self.budget_factor = budget_factor or settings.GENERATION_ATTEMPT_BUDGET_FACTOR
        self.max_parallel = max_parallel or settings.GENERATION_MAX_PARALLEL
        self.min_quality_score = (
            settings.GENERATION_MIN_QUALITY_SCORE if min_quality_score is None else min_quality_score
        )
        self.call_timeout = call_timeout or settings.LLM_TIMEOUT_SECONDS
        self.task_timeout = task_timeout or settings.GENERATION_TASK_TIMEOUT_SECONDS
        self.excerpt_length = excerpt_length or settings.MATERIAL_EXCERPT_LENGTH
        self.min_material_length = (
            settings.MATERIAL_MIN_LENGTH if min_material_length is None else min_material_length
        )
        self.auto_screen = settings.REVIEW_AUTO_SCREEN if auto_screen is None else auto_screen
        self._runs: dict[uuid.UUID, TaskRun] = {}

    # =========================================================================
    # Database helpers
    # =========================================================================

    def _in_session(self, fn: Callable[..., T], *args: Any) -> T:
        with self.session_factory() as session:
            try:
                return fn(session, *args)
            except SQLAlchemyError as exc:
                session.rollback()
                raise PersistenceError(str(exc)) from exc

    async def _db(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._in_session, fn, *args)

    # =========================================================================
    # Public operations
    # =========================================================================

    async def create_task(
        self,
        *,
        material_id: uuid.UUID,
        question_count: int,
        question_types: list[QuestionType],
        difficulty: Difficulty = Difficulty.MEDIUM,
        knowledge_points: list[str] | None = None,
        creator_id: uuid.UUID | None = None,
    ) -> GenerationTask:
        """
        Persist a pending task and schedule it on the running loop.

        The active provider configuration is snapshotted here; later
        ``select_model`` calls do not affect this task.
        """
        if question_count < 1:
            raise InvalidTaskRequestError(f"question_count must be at least 1, got {question_count}")
        if not question_types:
            raise InvalidTaskRequestError("At least one question type is required")
        config = self.provider_manager.snapshot()

        def _create(session: Session) -> GenerationTask:
            material = crud.get_material(session=session, material_id=material_id)
            if material is None:
                raise MaterialNotFoundError(f"Material {material_id} not found")
            if len(material.content.strip()) < self.min_material_length:
                raise MaterialTooShortError(
                    f"Material {material_id} has fewer than {self.min_material_length} characters"
                )
            return crud.create_generation_task(
                session=session,
                material_id=material_id,
                requested_count=question_count,
                question_types=list(question_types),
                difficulty=difficulty,
                knowledge_points=list(knowledge_points or []),
                creator_id=creator_id,
                provider_key=config.provider_key,
                model_key=config.model,
            )

        task = await self._db(_create)
        logger.info(
            "Created task %s: %d question(s) on %s/%s",
            task.id,
            question_count,
            config.provider_key,
            config.model,
        )
        self.schedule(task.id, config)
        return task

    def schedule(self, task_id: uuid.UUID, config: ProviderConfig) -> TaskRun:
        run = self._runs.setdefault(task_id, TaskRun(task_id=task_id))
        run.handle = asyncio.create_task(self.run_task(task_id, config), name=f"generation-{task_id}")
        run.handle.add_done_callback(lambda _: self._runs.pop(task_id, None))
        return run

    def get_run(self, task_id: uuid.UUID) -> TaskRun | None:
        return self._runs.get(task_id)

    async def get_task_status(self, task_id: uuid.UUID) -> GenerationTask:
        def _load(session: Session) -> GenerationTask:
            task = crud.get_generation_task(session=session, task_id=task_id)
            if task is None:
                raise TaskNotFoundError(f"Task {task_id} not found")
            return task

        return await self._db(_load)

    async def cancel_task(self, task_id: uuid.UUID) -> GenerationTask:
        """
        Request cancellation.

        A scheduled or running task sees the flag before its next provider
        call and finishes as ``cancelled``. A pending task with no run in this
        process is marked cancelled directly.
        """
        task = await self.get_task_status(task_id)
        if TaskStatus(task.status).is_terminal:
            raise TaskAlreadyFinishedError(f"Task {task_id} is already {TaskStatus(task.status).value}")

        run = self._runs.get(task_id)
        if run is not None:
            run.cancel_event.set()
            logger.info("Cancellation requested for task %s", task_id)
            return task

        logger.info("Task %s has no active run, marking cancelled", task_id)
        return await self._db(
            lambda session: crud.finish_generation_task(
                session=session,
                task_id=task_id,
                status=TaskStatus.CANCELLED,
                accepted_count=task.accepted_count,
                slot_retries={},
                shortfall_slots=list(range(task.accepted_count, task.requested_count)),
                attempts_used=task.attempts_used,
            )
        )

    async def shutdown(self) -> None:
        """Cancel every in-flight task and wait for them to record it."""
        runs = list(self._runs.values())
        for run in runs:
            run.cancel_event.set()
            if run.handle is not None:
                run.handle.cancel()
        handles = [run.handle for run in runs if run.handle is not None]
        if handles:
            logger.info("Stopping %d running task(s)", len(handles))
            await asyncio.gather(*handles, return_exceptions=True)

    # =========================================================================
    # Run
    # =========================================================================

    def _start(self, session: Session, task_id: uuid.UUID) -> TaskContext | None:
        task = crud.get_generation_task(session=session, task_id=task_id)
        if task is None:
            raise TaskNotFoundError(f"Task {task_id} not found")
        if TaskStatus(task.status) != TaskStatus.PENDING:
            return None
        material_text = crud.get_material_text(session=session, material_id=task.material_id) or ""
        crud.update_generation_task(
            session=session,
            task_id=task_id,
            update_data={"status": TaskStatus.PROCESSING, "started_at": utcnow()},
        )
        return TaskContext(
            task_id=task.id,
            requested_count=task.requested_count,
            question_types=[QuestionType(t) for t in task.question_types],
            difficulty=Difficulty(task.difficulty),
            knowledge_points=list(task.knowledge_points or []),
            material_text=material_text,
        )

    async def run_task(self, task_id: uuid.UUID, config: ProviderConfig) -> None:
        run = self._runs.setdefault(task_id, TaskRun(task_id=task_id))
        try:
            context = await self._db(self._start, task_id)
            if context is None:
                logger.info("Task %s is no longer pending, skipping run", task_id)
                return
            run.requested = context.requested_count
            run.budget = max(context.requested_count, context.requested_count * self.budget_factor)
            logger.info("Task %s processing with budget of %d attempts", task_id, run.budget)

            if run.cancelled:
                await self._finish(run, TaskStatus.CANCELLED)
                return

            slots = plan_slots(
                context.requested_count,
                context.question_types,
                context.difficulty,
                context.knowledge_points,
            )
            client = self.provider_manager.client_for(config)
            availability = client.is_available()
            if not availability.available:
                logger.warning("Task %s: provider unavailable (%s), using placeholders", task_id, availability.reason)
                await self._run_placeholders(run, context, slots)
            else:
                generator = get_question_generator(
                    client, context.material_text, context.knowledge_points, self.excerpt_length
                )
                await self._run_slots(run, generator, slots)
        except asyncio.CancelledError:
            run.cancel_event.set()
            await self._drain_writes(run)
            await self._finish_safely(run, TaskStatus.CANCELLED, error="Interrupted by shutdown")
            raise
        except AppError as exc:
            logger.error("Task %s failed: %s", task_id, exc)
            await self._finish_safely(run, TaskStatus.FAILED, error=str(exc))
            return
        except Exception as exc:
            logger.exception("Task %s crashed", task_id)
            await self._finish_safely(run, TaskStatus.FAILED, error=f"Unexpected error: {exc}")
            return

        if self.auto_screen:
            await self._screen(task_id)

    async def _run_placeholders(self, run: TaskRun, context: TaskContext, slots: list[SlotPlan]) -> None:
        questions = [
            _question_from_candidate(candidate, task_id=run.task_id, slot=slot, is_simulated=True)
            for slot, candidate in zip(slots, generate_placeholders(slots, context.material_text))
        ]
        await self._db(lambda session: crud.create_questions_bulk(session=session, questions=questions))
        run.accepted = len(questions)
        run.filled = {slot.index for slot in slots}
        await self._finish(run, TaskStatus.COMPLETED, is_simulated=True)

    async def _run_slots(self, run: TaskRun, generator: QuestionGeneratorService, slots: list[SlotPlan]) -> None:
        queue: asyncio.Queue[SlotPlan] = asyncio.Queue()
        for slot in slots:
            queue.put_nowait(slot)

        workers = [
            asyncio.create_task(self._worker(run, generator, queue))
            for _ in range(min(self.max_parallel, len(slots)))
        ]
        error = None
        try:
            await asyncio.wait_for(asyncio.gather(*workers), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            error = f"Task exceeded its time budget of {self.task_timeout:g}s"
            logger.warning("Task %s: %s", run.task_id, error)
        finally:
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self._drain_writes(run)

        if run.cancelled:
            status = TaskStatus.CANCELLED
        elif run.accepted >= 1:
            status = TaskStatus.COMPLETED
        else:
            status = TaskStatus.FAILED
            error = error or "No generated question passed validation"
        await self._finish(run, status, error=error)

    async def _worker(self, run: TaskRun, generator: QuestionGeneratorService, queue: asyncio.Queue) -> None:
        while not run.cancelled:
            try:
                slot = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            await self._fill_slot(run, generator, slot)

    async def _fill_slot(self, run: TaskRun, generator: QuestionGeneratorService, slot: SlotPlan) -> None:
        for attempt in range(1, self.slot_max_attempts + 1):
            if run.cancelled:
                return
            async with run.lock:
                if run.attempts_used >= run.budget:
                    logger.info("Task %s: attempt budget exhausted at slot %d", run.task_id, slot.index)
                    return
                run.attempts_used += 1

            reason = await self._attempt(run, generator, slot, attempt)
            if reason is None:
                return
            if run.cancelled:
                return
            async with run.lock:
                run.slot_retries[slot.index] = run.slot_retries.get(slot.index, 0) + 1
            logger.warning(
                "Task %s slot %d attempt %d rejected: %s", run.task_id, slot.index, attempt, reason
            )

        logger.warning("Task %s: giving up on slot %d", run.task_id, slot.index)

    async def _attempt(
        self, run: TaskRun, generator: QuestionGeneratorService, slot: SlotPlan, attempt: int
    ) -> str | None:
        """One provider call. Returns ``None`` on acceptance, else the rejection reason."""
        try:
            result = await asyncio.wait_for(generator.generate(slot, attempt), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            return f"provider call exceeded {self.call_timeout:g}s"
        except ProviderError as exc:
            return str(exc)

        if isinstance(result, Err):
            return f"{type(result.error).__name__}: {result.error}"
        candidate = result.candidate
        if candidate.quality_score < self.min_quality_score:
            return f"quality score {candidate.quality_score:g} below {self.min_quality_score:g}"

        actions = result.actions if isinstance(result, Repaired) else []
        question = _question_from_candidate(candidate, task_id=run.task_id, slot=slot, repair_actions=actions)
        try:
            await self._accept(run, question, slot)
        except TaskCancelledError as exc:
            return str(exc)
        return None

    async def _accept(self, run: TaskRun, question: Question, slot: SlotPlan) -> None:
        # The question expires once stored, so read what the log needs first
        repairs = [action["kind"] for action in question.repair_actions] if question.requires_human_review else []
        async with run.lock:
            if run.cancelled:
                raise TaskCancelledError(f"Task {run.task_id} was cancelled, discarding slot {slot.index}")
            if run.accepted >= run.requested:
                return
            accepted = run.accepted + 1
            write = asyncio.ensure_future(self._store(run, question, slot.index, accepted, run.attempts_used))
            run.writes.add(write)
            write.add_done_callback(run.writes.discard)
            await asyncio.shield(write)
        logger.info(
            "Task %s slot %d accepted (%d/%d)%s",
            run.task_id,
            slot.index,
            accepted,
            run.requested,
            f", repaired ({', '.join(repairs)}) and flagged for human review" if repairs else "",
        )

    async def _store(
        self, run: TaskRun, question: Question, slot_index: int, accepted: int, attempts: int
    ) -> None:
        """Write an accepted question and the progress it makes. Finishes even if the worker is cancelled."""

        def _write(session: Session) -> None:
            crud.create_question(session=session, question=question)
            crud.record_task_progress(
                session=session, task_id=run.task_id, accepted_count=accepted, attempts_used=attempts
            )

        await self._db(_write)
        run.accepted = max(run.accepted, accepted)
        run.filled.add(slot_index)

    async def _drain_writes(self, run: TaskRun) -> None:
        while run.writes:
            done, _ = await asyncio.wait(set(run.writes))
            run.writes.difference_update(done)

    # =========================================================================
    # Finish
    # =========================================================================

    async def _finish(
        self, run: TaskRun, status: TaskStatus, error: str | None = None, is_simulated: bool = False
    ) -> GenerationTask:
        """
        Record the terminal state once per run.

        A later call, such as a shutdown arriving while ``completed`` is being
        written, waits for the first write instead of replacing it.
        """
        if run.finishing is None:
            run.finishing = asyncio.ensure_future(self._record_finish(run, status, error, is_simulated))
        return await asyncio.shield(run.finishing)

    async def _record_finish(
        self, run: TaskRun, status: TaskStatus, error: str | None, is_simulated: bool
    ) -> GenerationTask:
        task = await self._db(
            lambda session: crud.finish_generation_task(
                session=session,
                task_id=run.task_id,
                status=status,
                accepted_count=run.accepted,
                slot_retries=dict(run.slot_retries),
                shortfall_slots=run.shortfall(),
                attempts_used=run.attempts_used,
                error=error,
                is_simulated=is_simulated,
            )
        )
        logger.info(
            "Task %s %s: %d/%d accepted, %d attempt(s)",
            run.task_id,
            status.value,
            run.accepted,
            run.requested,
            run.attempts_used,
        )
        return task

    async def _finish_safely(self, run: TaskRun, status: TaskStatus, error: str | None = None) -> None:
        try:
            await self._finish(run, status, error=error)
        except (AppError, LookupError):
            logger.exception("Task %s: could not record status %s", run.task_id, status.value)

    async def _screen(self, task_id: uuid.UUID) -> None:
        def _screen_task(session: Session) -> int:
            return len(ReviewService(session).screen_task(task_id))

        try:
            screened = await self._db(_screen_task)
        except AppError:
            logger.exception("Task %s: automated screening failed", task_id)
            return
        logger.info("Task %s: screened %d question(s)", task_id, screened)


_orchestrator: TaskOrchestrator | None = None


def get_orchestrator() -> TaskOrchestrator:
    """Get the process-wide task orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = TaskOrchestrator()
    return _orchestrator
