import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import closing
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence

import redis

from .clock import Scheduler
from .config import settings
from .database import get_connection
from .errors import TransientPersistenceFailure
from .models import (
    AnswerRecord,
    CompletedAttempt,
    CompletionReason,
    QuestionRef,
    SessionConfig,
    SyncStatus,
)
from .redis_session import SessionStorage

logger = logging.getLogger(__name__)


# --- Completion guard ---
class SubmissionGuard:
    """At-most-once completion claim for one session.

    `claim()` is a compare-and-set: the first caller gets True, every later
    caller gets False and should use `attempt` instead of building its own.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.attempt: Optional[CompletedAttempt] = None

    def claim(self) -> bool:
        # Never released: a claimed session stays claimed
        return self._lock.acquire(blocking=False)

    @property
    def claimed(self) -> bool:
        return self._lock.locked()

    def settle(self, attempt: CompletedAttempt):
        if self.attempt is not None:
            raise RuntimeError("attempt already settled")
        self.attempt = attempt


def build_attempt(
    session_id: str,
    user_id: str,
    config: SessionConfig,
    questions: Sequence[QuestionRef],
    answers: Mapping[str, str],
    time_spent: Mapping[str, int],
    started_at: datetime,
    completed_at: datetime,
    reason: CompletionReason,
) -> CompletedAttempt:
    """Score a finished session. Unanswered questions count as incorrect."""
    records = []
    for question in questions:
        answer = answers.get(question.id)
        records.append(
            AnswerRecord(
                question_id=question.id,
                answer=answer,
                correct_answer=question.correct,
                is_correct=answer is not None and answer == question.correct,
                time_spent_seconds=time_spent.get(question.id, 0),
            )
        )
    return CompletedAttempt(
        session_id=session_id,
        user_id=user_id,
        config=config,
        answers=records,
        score=sum(1 for r in records if r.is_correct),
        total_questions=len(records),
        elapsed_seconds=max(0, int((completed_at - started_at).total_seconds())),
        completed_at=completed_at,
        completion_reason=reason,
    )


# --- Persistence store ---
class AttemptStore(ABC):
    @abstractmethod
    async def save_attempt(self, attempt: CompletedAttempt):
        """Persist an attempt. Raises TransientPersistenceFailure when unreachable."""

    @abstractmethod
    async def list_attempts(self, user_id: str) -> List[CompletedAttempt]:
        """Attempts of a user, most recently completed first."""


class SQLiteAttemptStore(AttemptStore):
    """Attempt store on the service SQLite database.

    Saving is keyed on session id, so saving the same attempt twice keeps a
    single row.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path

    async def save_attempt(self, attempt: CompletedAttempt):
        await asyncio.to_thread(self._insert, attempt)

    async def list_attempts(self, user_id: str) -> List[CompletedAttempt]:
        return await asyncio.to_thread(self._select, user_id)

    def _insert(self, attempt: CompletedAttempt):
        try:
            with closing(get_connection(self.path)) as conn, conn:
                conn.execute(
                    "INSERT OR IGNORE INTO attempts (session_id, user_id, completed_at, payload) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        attempt.session_id,
                        attempt.user_id,
                        attempt.completed_at.isoformat(),
                        attempt.model_dump_json(),
                    ),
                )
        except sqlite3.OperationalError as e:
            raise TransientPersistenceFailure(f"Could not save attempt: {e}") from e

    def _select(self, user_id: str) -> List[CompletedAttempt]:
        with closing(get_connection(self.path)) as conn:
            rows = conn.execute(
                "SELECT payload FROM attempts WHERE user_id = ? ORDER BY completed_at DESC",
                (user_id,),
            ).fetchall()
        return [CompletedAttempt.model_validate_json(payload) for (payload,) in rows]


# --- Recorder ---
class AttemptRecorder:
    """Persists completed attempts, retrying transient failures in the background.

    The first save is attempted immediately. A failed attempt is queued in
    durable client storage and retried with exponential backoff; once the
    retries are used up it stays queued as `pending` until `flush_pending`
    gets it through.
    """

    def __init__(
        self,
        store: AttemptStore,
        storage: SessionStorage,
        scheduler: Scheduler,
        max_retries: int = settings.RETRY_MAX_ATTEMPTS,
        base_delay: float = settings.RETRY_BASE_DELAY,
        max_delay: float = settings.RETRY_MAX_DELAY,
    ):
        self.store = store
        self.storage = storage
        self.scheduler = scheduler
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._status: Dict[str, SyncStatus] = {}
        self._unsynced: Dict[str, CompletedAttempt] = {}

    def sync_status(self, session_id: str) -> Optional[SyncStatus]:
        status = self._status.get(session_id)
        if status is None and self._safe_is_pending(session_id):
            return SyncStatus.PENDING
        return status

    def forget(self, session_id: str):
        """Drop the status of a synced attempt. Unsynced ones stay tracked."""
        if self._status.get(session_id) == SyncStatus.SYNCED:
            del self._status[session_id]

    def retry_delay(self, retry_number: int) -> float:
        return min(self.max_delay, self.base_delay * (2 ** retry_number))

    async def record(self, attempt: CompletedAttempt) -> SyncStatus:
        try:
            await self.store.save_attempt(attempt)
        except TransientPersistenceFailure as e:
            logger.warning(f"Saving attempt {attempt.session_id} failed, will retry: {e}")
            self._queue(attempt)
            self._status[attempt.session_id] = SyncStatus.RETRYING
            self._schedule_retry(attempt, 0)
            return SyncStatus.RETRYING
        self._mark_synced(attempt.session_id)
        logger.info(f"Attempt {attempt.session_id} saved")
        return SyncStatus.SYNCED

    def record_later(self, attempt: CompletedAttempt) -> "asyncio.Future":
        return self.scheduler.spawn(self.record(attempt))

    async def flush_pending(self) -> int:
        """Retry every queued attempt once. Returns how many got through."""
        queued = {a.session_id: a for a in self._safe_pending()}
        queued.update(self._unsynced)
        synced = 0
        for attempt in queued.values():
            if self._status.get(attempt.session_id) == SyncStatus.RETRYING:
                continue
            try:
                await self.store.save_attempt(attempt)
            except TransientPersistenceFailure as e:
                logger.warning(f"Attempt {attempt.session_id} still unsynced: {e}")
                self._unsynced[attempt.session_id] = attempt
                self._status[attempt.session_id] = SyncStatus.PENDING
                continue
            self._mark_synced(attempt.session_id)
            synced += 1
        if queued:
            logger.info(f"Flushed {synced}/{len(queued)} pending attempts")
        return synced

    # --- Internals ---
    def _schedule_retry(self, attempt: CompletedAttempt, retry_number: int):
        delay = self.retry_delay(retry_number)
        self.scheduler.call_later(
            delay, lambda: self.scheduler.spawn(self._retry(attempt, retry_number + 1))
        )

    async def _retry(self, attempt: CompletedAttempt, retry_number: int):
        try:
            await self.store.save_attempt(attempt)
        except TransientPersistenceFailure as e:
            if retry_number >= self.max_retries:
                self._status[attempt.session_id] = SyncStatus.PENDING
                logger.warning(
                    f"Attempt {attempt.session_id} not saved after {retry_number} retries, "
                    f"kept for later sync: {e}"
                )
                return
            logger.info(f"Retry {retry_number} for attempt {attempt.session_id} failed: {e}")
            self._schedule_retry(attempt, retry_number)
            return
        self._mark_synced(attempt.session_id)
        logger.info(f"Attempt {attempt.session_id} saved on retry {retry_number}")

    def _queue(self, attempt: CompletedAttempt):
        self._unsynced[attempt.session_id] = attempt
        try:
            self.storage.queue_attempt(attempt)
        except redis.RedisError as e:
            logger.error(f"Could not queue attempt {attempt.session_id} durably: {e}")

    def _mark_synced(self, session_id: str):
        self._status[session_id] = SyncStatus.SYNCED
        self._unsynced.pop(session_id, None)
        try:
            self.storage.remove_pending(session_id)
        except redis.RedisError as e:
            logger.error(f"Could not clear queued attempt {session_id}: {e}")

    def _safe_pending(self) -> List[CompletedAttempt]:
        try:
            return self.storage.pending_attempts()
        except redis.RedisError as e:
            logger.error(f"Could not read queued attempts: {e}")
            return []

    def _safe_is_pending(self, session_id: str) -> bool:
        try:
            return self.storage.is_pending(session_id)
        except redis.RedisError:
            return session_id in self._unsynced
