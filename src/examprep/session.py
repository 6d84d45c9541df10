import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

import redis

from .clock import Clock
from .durations import DurationResolver
from .errors import (
    ConfigurationFault,
    ConflictingSession,
    InvalidTransition,
    NoQuestionsAvailable,
    SessionNotFound,
)
from .loaders import QuestionLoader
from .models import (
    AnswerFeedback,
    CompletedAttempt,
    CompletionReason,
    ConflictResolution,
    QuestionRef,
    QuestionView,
    QuizMode,
    QuizSelection,
    SessionConfig,
    SessionDraft,
    SessionStatus,
    SessionView,
    TimerSnapshot,
)
from .redis_session import SessionStorage
from .submission import AttemptRecorder, SubmissionGuard, build_attempt
from .timer import CountdownTimer, TimerHandle

logger = logging.getLogger(__name__)

TickListener = Callable[[str, int], None]


class ExamSession:
    """Lifecycle of one quiz attempt.

    INITIALIZING -> ACTIVE -> AWAITING_SUBMISSION -> COMPLETED, with ERRORED
    when initialisation fails and ABANDONED when the user walks away. All
    draft and timer-snapshot I/O for the session goes through here.
    """

    def __init__(
        self,
        session_id: str,
        user_id: str,
        context_id: str,
        selection: QuizSelection,
        clock: Clock,
        timer: CountdownTimer,
        recorder: AttemptRecorder,
        storage: SessionStorage,
        on_tick: Optional[TickListener] = None,
    ):
        self.session_id = session_id
        self.user_id = user_id
        self.context_id = context_id
        self.selection = selection
        self.config: Optional[SessionConfig] = None
        self.status = SessionStatus.INITIALIZING
        self.questions: List[QuestionRef] = []
        self.current_index = 0
        self.answers: Dict[str, str] = {}
        self.time_spent: Dict[str, int] = {}
        self.first_shown: Dict[str, datetime] = {}
        self.started_at: Optional[datetime] = None
        self.feedback_visible = False
        self.timer_handle: Optional[TimerHandle] = None
        self.guard = SubmissionGuard()
        self.clock = clock
        self.timer = timer
        self.recorder = recorder
        self.storage = storage
        self.on_tick = on_tick
        self._by_id: Dict[str, QuestionRef] = {}

    # --- Initialisation ---
    async def initialize(
        self,
        loader: QuestionLoader,
        resolver: DurationResolver,
        allow_untimed_fallback: bool = False,
    ):
        """Resolve the duration, load questions and go ACTIVE.

        Any failure leaves the session ERRORED with nothing written to durable
        storage.
        """
        try:
            self.config = self._resolve_config(resolver, allow_untimed_fallback)
            questions = await loader.load_questions(
                self.config.exam_type, self.config.subject, self.config.year
            )
            if not questions:
                raise NoQuestionsAvailable("Question loader returned no questions")
            self._set_questions(questions)
            self._activate()
        except Exception:
            self._abort()
            raise

    def _resolve_config(
        self, resolver: DurationResolver, allow_untimed_fallback: bool
    ) -> SessionConfig:
        selection = self.selection
        if selection.mode == QuizMode.PRACTICE:
            return SessionConfig.from_selection(selection)
        try:
            duration = resolver.resolve(selection.exam_type, selection.subject, selection.year)
        except ConfigurationFault:
            if not allow_untimed_fallback:
                raise
            logger.warning(
                f"No duration rule for {selection.exam_type.value}; "
                f"session {self.session_id} falls back to untimed"
            )
            untimed = selection.model_copy(update={"mode": QuizMode.PRACTICE})
            return SessionConfig.from_selection(untimed)
        return SessionConfig.from_selection(selection, duration)

    def _set_questions(self, questions: List[QuestionRef]):
        self.questions = list(questions)
        self._by_id = {q.id: q for q in self.questions}
        # Fixed once per session
        self.feedback_visible = self.config.mode == QuizMode.PRACTICE

    def _activate(self):
        self.started_at = self.clock.now()
        self.current_index = 0
        self._mark_shown(0)
        self.status = SessionStatus.ACTIVE
        self._save_draft()
        if self.config.is_timed:
            self.timer_handle = self.timer.start(
                self.session_id,
                self.config.duration_seconds,
                self._handle_tick,
                self._handle_expire,
                self.context_id,
            )
        logger.info(
            f"Session {self.session_id} started [{self.config.quiz_mode_identifier}, "
            f"{self.config.exam_type.value}, {len(self.questions)} questions]"
        )

    def _abort(self):
        """Undo a half-done start: no timer, no snapshot, no draft."""
        self.status = SessionStatus.ERRORED
        handle, self.timer_handle = self.timer_handle, None
        try:
            if handle is not None:
                self.timer.stop(handle)
            self.storage.delete_snapshot(self.session_id)
            self.storage.delete_draft(self.session_id)
        except redis.RedisError as e:
            logger.error(f"Could not clean up failed session {self.session_id}: {e}")

    @classmethod
    def from_draft(
        cls,
        draft: SessionDraft,
        questions: List[QuestionRef],
        snapshot: Optional[TimerSnapshot],
        context_id: str,
        clock: Clock,
        timer: CountdownTimer,
        recorder: AttemptRecorder,
        storage: SessionStorage,
        on_tick: Optional[TickListener] = None,
    ) -> "ExamSession":
        """Rebuild a live session after a reload, continuing the stored countdown."""
        session = cls(
            draft.session_id,
            draft.user_id,
            context_id,
            draft.config,
            clock,
            timer,
            recorder,
            storage,
            on_tick,
        )
        session.config = draft.config
        session._set_questions(questions)
        session.current_index = draft.current_index
        session.answers = dict(draft.answers)
        session.time_spent = dict(draft.time_spent)
        session.first_shown = dict(draft.first_shown)
        session.started_at = draft.started_at
        session.status = SessionStatus.ACTIVE
        if session.config.is_timed:
            if snapshot is None:
                # Snapshot lost: the deadline still follows from the start instant
                snapshot = TimerSnapshot(
                    session_id=draft.session_id,
                    expires_at=draft.started_at
                    + timedelta(seconds=session.config.duration_seconds),
                    context_id=context_id,
                )
            session.timer_handle = timer.restore(
                snapshot, session._handle_tick, session._handle_expire, context_id
            )
        session._save_draft()
        logger.info(f"Session {session.session_id} resumed in context {context_id}")
        return session

    @classmethod
    async def resume(
        cls,
        session_id: str,
        context_id: str,
        resolution: Optional[ConflictResolution],
        loader: QuestionLoader,
        clock: Clock,
        timer: CountdownTimer,
        recorder: AttemptRecorder,
        storage: SessionStorage,
        on_tick: Optional[TickListener] = None,
    ) -> Optional["ExamSession"]:
        """Resume a session from its durable draft after a reload.

        A draft or snapshot held by another context is a conflict: without a
        resolution it raises ConflictingSession; DISCARD deletes both and
        returns None so the caller can start fresh; RESUME takes it over.
        """
        draft = storage.load_draft(session_id)
        if draft is None:
            raise SessionNotFound(f"No session {session_id} to resume")
        snapshot = storage.load_snapshot(session_id)
        holder = snapshot.context_id if snapshot else draft.context_id
        if holder != context_id:
            if resolution is None:
                raise ConflictingSession(
                    f"Session {session_id} is open in another context", session_id, holder
                )
            if resolution == ConflictResolution.DISCARD:
                storage.delete_snapshot(session_id)
                storage.delete_draft(session_id)
                logger.info(f"Session {session_id} discarded by context {context_id}")
                return None
            logger.warning(f"Context {context_id} takes over session {session_id} from {holder}")

        questions = await loader.fetch_questions(draft.question_ids)
        if [q.id for q in questions] != draft.question_ids:
            raise NoQuestionsAvailable(f"Questions of session {session_id} are no longer available")
        return cls.from_draft(
            draft, questions, snapshot, context_id, clock, timer, recorder, storage, on_tick
        )

    def take_over(self, context_id: str):
        """Move a live session to another context, rewriting its durable state."""
        self.context_id = context_id
        if self.timer_handle is not None and self.timer_handle.active:
            self.timer_handle.context_id = context_id
            self.storage.save_snapshot(self.timer_handle.snapshot())
        self._save_draft()

    # --- Answering and navigation ---
    def record_answer(self, question_id: str, answer: str) -> AnswerFeedback:
        self._require_active("session_read_only")
        if self._time_is_up():
            raise InvalidTransition("Time is up for this session", reason="time_expired")
        question = self._by_id.get(question_id)
        if question is None:
            raise InvalidTransition(
                f"Question {question_id} is not part of this session",
                reason="unknown_question",
            )
        answer = str(answer).strip().upper()
        if answer not in question.options:
            raise InvalidTransition(
                f"{answer!r} is not an option of question {question_id}",
                reason="invalid_option",
            )

        now = self.clock.now()
        first_shown = self.first_shown.setdefault(question_id, now)
        self.time_spent[question_id] = int((now - first_shown).total_seconds())
        # Last write wins
        self.answers[question_id] = answer
        self._save_draft()

        if not self.feedback_visible:
            return AnswerFeedback(question_id=question_id, answer=answer, feedback_visible=False)
        return AnswerFeedback(
            question_id=question_id,
            answer=answer,
            feedback_visible=True,
            is_correct=answer == question.correct,
            correct_answer=question.correct,
            explanation=question.explanation,
        )

    def advance(self) -> bool:
        self._require_active("session_read_only")
        if self.current_index >= len(self.questions) - 1:
            return False
        self._move_to(self.current_index + 1)
        return True

    def previous(self) -> bool:
        self._require_active("session_read_only")
        if self.current_index == 0:
            return False
        self._move_to(self.current_index - 1)
        return True

    def go_to(self, index: int):
        self._require_active("session_read_only")
        if not 0 <= index < len(self.questions):
            raise InvalidTransition(
                f"Index {index} is outside 0..{len(self.questions) - 1}",
                reason="index_out_of_range",
            )
        self._move_to(index)

    def _move_to(self, index: int):
        self.current_index = index
        self._mark_shown(index)
        self._save_draft()

    def _mark_shown(self, index: int):
        if self.questions:
            self.first_shown.setdefault(self.questions[index].id, self.clock.now())

    # --- Completion ---
    async def submit(self) -> CompletedAttempt:
        """Manual submission. Repeated calls return the same attempt."""
        if self.guard.claimed:
            return self._settled_attempt()
        self._require_active("not_active")
        if self.config.is_timed and not self._time_is_up():
            raise InvalidTransition(
                "Timed sessions can only be submitted once time is up",
                reason="time_remaining",
            )
        attempt, won = self._complete(CompletionReason.MANUAL)
        if won:
            await self.recorder.record(attempt)
        return attempt

    def abandon(self):
        """Stop without completing. Never builds or saves an attempt."""
        if self.status == SessionStatus.ABANDONED:
            return
        if self.status in (SessionStatus.COMPLETED, SessionStatus.AWAITING_SUBMISSION):
            raise InvalidTransition("Session is already completed", reason="already_completed")
        if self.timer_handle is not None:
            self.timer.stop(self.timer_handle)
        self.storage.delete_snapshot(self.session_id)
        self.storage.delete_draft(self.session_id)
        self.status = SessionStatus.ABANDONED
        logger.info(f"Session {self.session_id} abandoned")

    def _handle_tick(self, remaining: int):
        if self.on_tick:
            self.on_tick(self.session_id, remaining)

    def _handle_expire(self):
        if self.status != SessionStatus.ACTIVE:
            return
        logger.info(f"Session {self.session_id} ran out of time")
        attempt, won = self._complete(CompletionReason.EXPIRED)
        if won:
            self.recorder.record_later(attempt)

    def _complete(self, reason: CompletionReason) -> Tuple[CompletedAttempt, bool]:
        if not self.guard.claim():
            return self._settled_attempt(), False
        self.status = SessionStatus.AWAITING_SUBMISSION
        if self.timer_handle is not None:
            self.timer.stop(self.timer_handle)
        attempt = build_attempt(
            self.session_id,
            self.user_id,
            self.config,
            self.questions,
            self.answers,
            self.time_spent,
            self.started_at,
            self.clock.now(),
            reason,
        )
        self.guard.settle(attempt)
        self.status = SessionStatus.COMPLETED
        self.feedback_visible = True
        self.storage.delete_snapshot(self.session_id)
        self.storage.delete_draft(self.session_id)
        logger.info(
            f"Session {self.session_id} completed ({reason.value}): "
            f"{attempt.score}/{attempt.total_questions}"
        )
        return attempt, True

    def _settled_attempt(self) -> CompletedAttempt:
        if self.guard.attempt is None:
            raise InvalidTransition("Session is being completed", reason="completion_in_progress")
        return self.guard.attempt

    # --- Views ---
    @property
    def attempt(self) -> Optional[CompletedAttempt]:
        return self.guard.attempt

    @property
    def remaining_seconds(self) -> Optional[int]:
        if self.timer_handle is None:
            return None
        return self.timer_handle.remaining()

    def view(self) -> SessionView:
        questions = []
        for question in self.questions:
            answer = self.answers.get(question.id)
            visible = self.status == SessionStatus.COMPLETED or (
                self.feedback_visible and answer is not None
            )
            questions.append(
                QuestionView(
                    id=question.id,
                    text=question.text,
                    options=dict(question.options),
                    answer=answer,
                    feedback_visible=visible,
                    is_correct=(answer == question.correct) if visible else None,
                    correct_answer=question.correct if visible else None,
                    explanation=question.explanation if visible else None,
                )
            )
        return SessionView(
            session_id=self.session_id,
            status=self.status,
            config=self.config,
            current_index=self.current_index,
            total_questions=len(self.questions),
            answered_count=len(self.answers),
            questions=questions,
            feedback_visible=self.feedback_visible,
            completed=self.status == SessionStatus.COMPLETED,
            timer_active=self.timer_handle is not None and self.timer_handle.active,
            remaining_seconds=self.remaining_seconds,
            attempt=self.attempt,
            sync_status=self.recorder.sync_status(self.session_id) if self.attempt else None,
        )

    def to_draft(self) -> SessionDraft:
        return SessionDraft(
            session_id=self.session_id,
            user_id=self.user_id,
            context_id=self.context_id,
            config=self.config,
            question_ids=[q.id for q in self.questions],
            current_index=self.current_index,
            answers=dict(self.answers),
            time_spent=dict(self.time_spent),
            first_shown=dict(self.first_shown),
            started_at=self.started_at,
        )

    # --- Internals ---
    def _require_active(self, reason: str):
        if self.status != SessionStatus.ACTIVE:
            raise InvalidTransition(
                f"Session {self.session_id} is {self.status.value}", reason=reason
            )

    def _time_is_up(self) -> bool:
        return self.timer_handle is not None and self.timer_handle.remaining() == 0

    def _save_draft(self):
        self.storage.save_draft(self.to_draft())
