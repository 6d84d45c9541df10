import asyncio
from datetime import timedelta

import pytest

from examprep.database import init_db
from examprep.errors import TransientPersistenceFailure
from examprep.models import (
    CompletionReason,
    ExamType,
    QuizMode,
    SelectionMethod,
    SessionConfig,
    SyncStatus,
)
from examprep.submission import (
    AttemptRecorder,
    SQLiteAttemptStore,
    SubmissionGuard,
    build_attempt,
)

from conftest import MemoryAttemptStore, make_questions

CONFIG = SessionConfig(
    exam_type=ExamType.JAMB,
    mode=QuizMode.TIMED,
    selection_method=SelectionMethod.BY_SUBJECT,
    subject="mathematics",
    duration_seconds=600,
)


def make_attempt(clock, session_id="s1", user_id="user-1", answers=None, offset=0):
    started = clock.now() + timedelta(seconds=offset)
    return build_attempt(
        session_id,
        user_id,
        CONFIG,
        make_questions(4),
        answers if answers is not None else {"q1": "A", "q2": "B"},
        {"q1": 12, "q2": 30},
        started,
        started + timedelta(seconds=95),
        CompletionReason.MANUAL,
    )


def test_guard_claims_once():
    guard = SubmissionGuard()

    assert guard.claim()
    assert not guard.claim()
    assert guard.claimed


def test_guard_settles_once(clock):
    guard = SubmissionGuard()
    guard.claim()
    guard.settle(make_attempt(clock))

    with pytest.raises(RuntimeError):
        guard.settle(make_attempt(clock))


def test_build_attempt_scores_unanswered_as_incorrect(clock):
    attempt = make_attempt(clock)

    assert attempt.score == 1
    assert attempt.total_questions == 4
    assert attempt.score_percentage == 25.0
    assert attempt.elapsed_seconds == 95
    assert attempt.quiz_mode_identifier == "timed-by-subject"
    assert [r.answer for r in attempt.answers] == ["A", "B", None, None]
    assert [r.is_correct for r in attempt.answers] == [True, False, False, False]
    assert attempt.answers[1].time_spent_seconds == 30
    assert attempt.answers[3].time_spent_seconds == 0


def test_retry_delay_backs_off_and_caps(storage, scheduler):
    recorder = AttemptRecorder(MemoryAttemptStore(), storage, scheduler)

    assert [recorder.retry_delay(n) for n in range(3)] == [1, 2, 4]
    assert recorder.retry_delay(10) == 30


def test_record_retries_until_synced(clock, storage, scheduler):
    store = MemoryAttemptStore(failures=2)
    recorder = AttemptRecorder(store, storage, scheduler)
    attempt = make_attempt(clock)

    async def scenario():
        assert await recorder.record(attempt) == SyncStatus.RETRYING
        assert storage.is_pending("s1")

        scheduler.advance(1)
        await scheduler.settle()
        assert recorder.sync_status("s1") == SyncStatus.RETRYING

        scheduler.advance(2)
        await scheduler.settle()

    asyncio.run(scenario())

    assert recorder.sync_status("s1") == SyncStatus.SYNCED
    assert store.calls == 3
    assert store.saved == {"s1": attempt}
    assert not storage.is_pending("s1")


def test_exhausted_retries_leave_attempt_pending(clock, storage, scheduler):
    store = MemoryAttemptStore(failures=100)
    recorder = AttemptRecorder(store, storage, scheduler)
    attempt = make_attempt(clock)

    async def scenario():
        await recorder.record(attempt)
        for delay in (1, 2, 4):
            scheduler.advance(delay)
            await scheduler.settle()

        assert recorder.sync_status("s1") == SyncStatus.PENDING
        assert store.calls == 4
        assert scheduler.pending_calls == 0

        # A recorder started later still sees the queued attempt
        fresh = AttemptRecorder(store, storage, scheduler)
        assert fresh.sync_status("s1") == SyncStatus.PENDING

        store.failures = 0
        assert await fresh.flush_pending() == 1
        assert fresh.sync_status("s1") == SyncStatus.SYNCED

    asyncio.run(scenario())

    assert store.saved == {"s1": attempt}
    assert storage.pending_attempts() == []


def test_flush_pending_keeps_failures_queued(clock, storage, scheduler):
    store = MemoryAttemptStore(failures=100)
    storage.queue_attempt(make_attempt(clock))
    recorder = AttemptRecorder(store, storage, scheduler)

    synced = asyncio.run(recorder.flush_pending())

    assert synced == 0
    assert recorder.sync_status("s1") == SyncStatus.PENDING
    assert storage.is_pending("s1")


def test_sqlite_store_saves_each_session_once(tmp_path, clock):
    path = str(tmp_path / "attempts.db")
    init_db(path)
    store = SQLiteAttemptStore(path)
    older = make_attempt(clock, session_id="s1")
    newer = make_attempt(clock, session_id="s2", offset=3600)

    async def scenario():
        await store.save_attempt(older)
        await store.save_attempt(older)
        await store.save_attempt(newer)
        await store.save_attempt(make_attempt(clock, session_id="s3", user_id="someone-else"))
        return await store.list_attempts("user-1")

    attempts = asyncio.run(scenario())

    assert [a.session_id for a in attempts] == ["s2", "s1"]
    assert attempts[1] == older


def test_sqlite_store_reports_transient_failure(tmp_path, clock):
    # No schema: the insert fails with an operational error
    store = SQLiteAttemptStore(str(tmp_path / "missing.db"))

    with pytest.raises(TransientPersistenceFailure):
        asyncio.run(store.save_attempt(make_attempt(clock)))
