import uuid
from datetime import timedelta
from typing import Dict, List, Optional

import redis
from pydantic import BaseModel

from .clock import Clock, Scheduler, SystemClock
from .config import settings
from .durations import DurationResolver, DurationRuleStore
from .errors import ConflictingSession, SessionNotFound
from .loaders import QuestionLoader
from .models import (
    AnswerFeedback,
    CompletedAttempt,
    ConflictResolution,
    DurationRule,
    ExamType,
    QuizSelection,
    SelectionMethod,
    SessionStatus,
    SessionView,
)
from .redis_session import SessionStorage
from .session import ExamSession, TickListener
from .submission import AttemptRecorder, AttemptStore
from .timer import CountdownTimer


class SessionHandle(BaseModel):
    session_id: str
    context_id: str


class ExamEngine:
    """Entry point for the UI: starts, drives, resumes and records exam sessions."""

    def __init__(
        self,
        rule_store: DurationRuleStore,
        loaders: Dict[SelectionMethod, QuestionLoader],
        storage: SessionStorage,
        attempt_store: AttemptStore,
        scheduler: Scheduler,
        clock: Optional[Clock] = None,
        recorder: Optional[AttemptRecorder] = None,
        on_tick: Optional[TickListener] = None,
        retain_finished: timedelta = timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES),
    ):
        self.rule_store = rule_store
        self.resolver = DurationResolver(rule_store)
        self.loaders = loaders
        self.storage = storage
        self.attempt_store = attempt_store
        self.scheduler = scheduler
        self.clock = clock or SystemClock()
        self.timer = CountdownTimer(self.clock, scheduler, storage)
        self.recorder = recorder or AttemptRecorder(attempt_store, storage, scheduler)
        self.on_tick = on_tick
        self.retain_finished = retain_finished
        self._sessions: Dict[str, ExamSession] = {}

    @classmethod
    def create(
        cls,
        client: redis.Redis,
        loaders: Dict[SelectionMethod, QuestionLoader],
        attempt_store: AttemptStore,
        scheduler: Scheduler,
        clock: Optional[Clock] = None,
    ) -> "ExamEngine":
        rule_store = DurationRuleStore(client)
        rule_store.ensure_defaults()
        return cls(
            rule_store,
            loaders,
            SessionStorage(client),
            attempt_store,
            scheduler,
            clock=clock,
        )

    # --- Sessions ---
    async def start_session(
        self,
        selection: QuizSelection,
        user_id: str,
        context_id: str,
        allow_untimed_fallback: bool = False,
    ) -> SessionHandle:
        self._evict_finished()
        session = ExamSession(
            str(uuid.uuid4()),
            user_id,
            context_id,
            selection,
            self.clock,
            self.timer,
            self.recorder,
            self.storage,
            self.on_tick,
        )
        await session.initialize(
            self.loaders[selection.selection_method], self.resolver, allow_untimed_fallback
        )
        self._sessions[session.session_id] = session
        return SessionHandle(session_id=session.session_id, context_id=context_id)

    async def resume_session(
        self,
        session_id: str,
        context_id: str,
        resolution: Optional[ConflictResolution] = None,
    ) -> Optional[SessionHandle]:
        """Reattach a context to a session. Returns None when the session was discarded."""
        live = self._sessions.get(session_id)
        if live is not None and live.status == SessionStatus.ACTIVE:
            if live.context_id != context_id:
                if resolution is None:
                    raise ConflictingSession(
                        f"Session {session_id} is open in another context",
                        session_id,
                        live.context_id,
                    )
                if resolution == ConflictResolution.DISCARD:
                    live.abandon()
                    self._drop(session_id)
                    return None
                live.take_over(context_id)
            return SessionHandle(session_id=session_id, context_id=context_id)
        if live is not None and live.status == SessionStatus.COMPLETED:
            return SessionHandle(session_id=session_id, context_id=live.context_id)

        draft_loader = self._id_loader()
        session = await ExamSession.resume(
            session_id,
            context_id,
            resolution,
            draft_loader,
            self.clock,
            self.timer,
            self.recorder,
            self.storage,
            self.on_tick,
        )
        if session is None:
            return None
        self._sessions[session_id] = session
        return SessionHandle(session_id=session_id, context_id=context_id)

    def get_state(self, session_id: str) -> SessionView:
        return self._get(session_id).view()

    def record_answer(self, session_id: str, question_id: str, answer: str) -> AnswerFeedback:
        return self._get(session_id).record_answer(question_id, answer)

    def advance(self, session_id: str) -> bool:
        return self._get(session_id).advance()

    def previous(self, session_id: str) -> bool:
        return self._get(session_id).previous()

    def go_to(self, session_id: str, index: int):
        self._get(session_id).go_to(index)

    async def submit(self, session_id: str) -> CompletedAttempt:
        return await self._get(session_id).submit()

    def abandon(self, session_id: str):
        """Leave a session. Finished sessions are only dropped from the registry."""
        session = self._get(session_id)
        if session.status == SessionStatus.ACTIVE:
            session.abandon()
        self._drop(session_id)

    async def list_attempts(self, user_id: str) -> List[CompletedAttempt]:
        return await self.attempt_store.list_attempts(user_id)

    # --- Duration rules ---
    def upsert_rule(self, rule: DurationRule) -> DurationRule:
        return self.rule_store.upsert_rule(rule)

    def delete_rule(
        self, exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> bool:
        return self.rule_store.delete_rule(exam_type, subject, year)

    def list_rules(self) -> List[DurationRule]:
        return self.rule_store.list_rules()

    def resolve_duration(
        self, exam_type: ExamType, subject: Optional[str] = None, year: Optional[int] = None
    ) -> int:
        return self.resolver.resolve(exam_type, subject, year)

    # --- Internals ---
    def _get(self, session_id: str) -> ExamSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"No live session {session_id}")
        return session

    def _id_loader(self) -> QuestionLoader:
        return self.loaders.get(SelectionMethod.BY_SUBJECT) or next(iter(self.loaders.values()))

    def _evict_finished(self):
        cutoff = self.clock.now() - self.retain_finished
        for session_id in [
            sid
            for sid, s in self._sessions.items()
            if s.attempt is not None and s.attempt.completed_at < cutoff
        ]:
            self._drop(session_id)

    def _drop(self, session_id: str):
        del self._sessions[session_id]
        self.recorder.forget(session_id)
