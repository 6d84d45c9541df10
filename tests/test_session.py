import asyncio
from datetime import timedelta

import pytest
import redis

from examprep.errors import ConfigurationFault, InvalidTransition, NoQuestionsAvailable, SessionNotFound
from examprep.models import (
    CompletionReason,
    DurationRule,
    ExamType,
    QuizMode,
    QuizSelection,
    SelectionMethod,
    SessionStatus,
)

PRACTICE = QuizSelection(
    exam_type=ExamType.JAMB,
    mode=QuizMode.PRACTICE,
    selection_method=SelectionMethod.BY_SUBJECT,
    subject="mathematics",
)
TIMED = QuizSelection(
    exam_type=ExamType.JAMB,
    mode=QuizMode.TIMED,
    selection_method=SelectionMethod.BY_SUBJECT,
    subject="mathematics",
)


@pytest.fixture
def five_second_rule(rule_store):
    rule_store.upsert_rule(
        DurationRule(exam_type=ExamType.JAMB, subject="mathematics", duration_seconds=5)
    )


def test_practice_session_gives_immediate_feedback(engine):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        state = engine.get_state(handle.session_id)
        assert state.status == SessionStatus.ACTIVE
        assert state.timer_active is False
        assert state.remaining_seconds is None
        assert state.config.duration_seconds is None

        feedback = engine.record_answer(handle.session_id, "q1", "b")
        assert feedback.feedback_visible
        assert feedback.answer == "B"
        assert feedback.is_correct is False
        assert feedback.correct_answer == "A"
        assert feedback.explanation == "Explanation 1"

        view = engine.get_state(handle.session_id)
        assert view.questions[0].feedback_visible
        assert not view.questions[1].feedback_visible

    asyncio.run(scenario())


def test_timed_session_hides_feedback_until_completion(engine, scheduler, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")
        for qid in ("q1", "q2", "q3"):
            feedback = engine.record_answer(handle.session_id, qid, "A")
            assert not feedback.feedback_visible
            assert feedback.is_correct is None
            assert feedback.explanation is None

        state = engine.get_state(handle.session_id)
        assert state.timer_active and state.remaining_seconds == 5
        assert not any(q.feedback_visible for q in state.questions)

        scheduler.advance(5)
        state = engine.get_state(handle.session_id)
        assert state.completed
        assert all(q.feedback_visible and q.is_correct for q in state.questions)
        await scheduler.settle()

    asyncio.run(scenario())


def test_manual_submit_rejected_while_time_remains(engine, scheduler, attempt_store, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")
        scheduler.advance(2)

        with pytest.raises(InvalidTransition) as excinfo:
            await engine.submit(handle.session_id)
        assert excinfo.value.reason == "time_remaining"
        assert engine.get_state(handle.session_id).status == SessionStatus.ACTIVE

        scheduler.advance(3)
        await scheduler.settle()
        attempt = await engine.submit(handle.session_id)

        assert attempt.completion_reason == CompletionReason.EXPIRED
        assert list(attempt_store.saved) == [handle.session_id]
        assert attempt_store.calls == 1

    asyncio.run(scenario())


def test_expiry_completes_unanswered_session(engine, scheduler, attempt_store, storage, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")

        scheduler.advance(5)
        await scheduler.settle()

        state = engine.get_state(handle.session_id)
        assert state.status == SessionStatus.COMPLETED
        attempt = state.attempt
        assert attempt.score == 0
        assert attempt.total_questions == 3
        assert all(r.answer is None and not r.is_correct for r in attempt.answers)
        assert attempt.elapsed_seconds == 5
        assert attempt_store.saved[handle.session_id] == attempt
        assert storage.load_snapshot(handle.session_id) is None
        assert storage.load_draft(handle.session_id) is None

    asyncio.run(scenario())


def test_expiry_and_manual_submit_race_yields_one_attempt(engine, scheduler, clock, attempt_store, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")
        # Deadline passed but the expiry tick has not run yet
        clock.current += timedelta(seconds=5)

        attempt = await engine.submit(handle.session_id)
        scheduler.advance(1)
        await scheduler.settle()
        again = await engine.submit(handle.session_id)

        assert again is attempt
        assert attempt.completion_reason == CompletionReason.MANUAL
        assert attempt_store.calls == 1

    asyncio.run(scenario())


def test_double_submit_is_idempotent(engine, attempt_store):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        engine.record_answer(handle.session_id, "q1", "A")

        first, second = await asyncio.gather(
            engine.submit(handle.session_id), engine.submit(handle.session_id)
        )

        assert first is second
        assert first.score == 1
        assert len(attempt_store.saved) == 1
        assert attempt_store.calls == 1

    asyncio.run(scenario())


def test_last_answer_wins(engine):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        engine.record_answer(handle.session_id, "q2", "A")
        engine.record_answer(handle.session_id, "q2", "C")

        attempt = await engine.submit(handle.session_id)
        record = next(r for r in attempt.answers if r.question_id == "q2")

        assert record.answer == "C"
        assert not record.is_correct
        assert attempt.score == 0

    asyncio.run(scenario())


def test_answer_after_completion_is_rejected(engine):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        await engine.submit(handle.session_id)

        with pytest.raises(InvalidTransition) as excinfo:
            engine.record_answer(handle.session_id, "q1", "A")
        assert excinfo.value.reason == "session_read_only"

        with pytest.raises(InvalidTransition):
            engine.advance(handle.session_id)

    asyncio.run(scenario())


def test_invalid_answers_are_rejected(engine):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")

        with pytest.raises(InvalidTransition) as excinfo:
            engine.record_answer(handle.session_id, "nope", "A")
        assert excinfo.value.reason == "unknown_question"

        with pytest.raises(InvalidTransition) as excinfo:
            engine.record_answer(handle.session_id, "q1", "E")
        assert excinfo.value.reason == "invalid_option"

    asyncio.run(scenario())


def test_navigation_keeps_answers(engine, storage):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        engine.record_answer(handle.session_id, "q1", "A")

        assert engine.advance(handle.session_id)
        assert engine.advance(handle.session_id)
        assert not engine.advance(handle.session_id)
        assert engine.previous(handle.session_id)
        engine.go_to(handle.session_id, 0)
        assert not engine.previous(handle.session_id)

        with pytest.raises(InvalidTransition) as excinfo:
            engine.go_to(handle.session_id, 3)
        assert excinfo.value.reason == "index_out_of_range"

        state = engine.get_state(handle.session_id)
        assert state.current_index == 0
        assert state.questions[0].answer == "A"
        assert storage.load_draft(handle.session_id).current_index == 0

    asyncio.run(scenario())


def test_time_spent_counts_from_first_display(engine, clock):
    async def scenario():
        handle = await engine.start_session(PRACTICE, "user-1", "tab-1")
        clock.current += timedelta(seconds=10)
        engine.advance(handle.session_id)
        clock.current += timedelta(seconds=7)
        engine.record_answer(handle.session_id, "q2", "A")
        clock.current += timedelta(seconds=3)
        engine.record_answer(handle.session_id, "q2", "B")

        attempt = await engine.submit(handle.session_id)
        spent = {r.question_id: r.time_spent_seconds for r in attempt.answers}

        assert spent == {"q1": 0, "q2": 10, "q3": 0}

    asyncio.run(scenario())


def test_abandon_cancels_timer_without_recording(engine, scheduler, storage, attempt_store, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")
        engine.abandon(handle.session_id)

        scheduler.advance(10)
        await scheduler.settle()

        assert attempt_store.calls == 0
        assert storage.load_snapshot(handle.session_id) is None
        assert storage.load_draft(handle.session_id) is None
        with pytest.raises(SessionNotFound):
            engine.get_state(handle.session_id)

    asyncio.run(scenario())


def test_no_questions_aborts_creation(engine, loader, redis_client):
    loader.questions = []

    async def scenario():
        with pytest.raises(NoQuestionsAvailable):
            await engine.start_session(PRACTICE, "user-1", "tab-1")

    asyncio.run(scenario())
    assert not redis_client.keys("test:draft:*")
    assert not redis_client.keys("test:snapshot:*")


def test_configuration_fault_unless_untimed_fallback(engine, redis_client, rule_store):
    redis_client.delete(rule_store.key)

    async def scenario():
        with pytest.raises(ConfigurationFault):
            await engine.start_session(TIMED, "user-1", "tab-1")

        handle = await engine.start_session(
            TIMED, "user-1", "tab-1", allow_untimed_fallback=True
        )
        state = engine.get_state(handle.session_id)
        assert state.config.mode == QuizMode.PRACTICE
        assert not state.timer_active

    asyncio.run(scenario())


def test_running_session_keeps_its_duration(engine, rule_store, five_second_rule):
    async def scenario():
        handle = await engine.start_session(TIMED, "user-1", "tab-1")
        rule_store.upsert_rule(
            DurationRule(exam_type=ExamType.JAMB, subject="mathematics", duration_seconds=900)
        )

        state = engine.get_state(handle.session_id)
        assert state.config.duration_seconds == 5
        assert state.remaining_seconds == 5

    asyncio.run(scenario())


def test_failed_draft_write_leaves_no_timer_or_attempt(engine, storage, scheduler, attempt_store, monkeypatch, five_second_rule):
    def unreachable(draft):
        raise redis.ConnectionError("redis down")

    monkeypatch.setattr(storage, "save_draft", unreachable)

    async def scenario():
        with pytest.raises(redis.ConnectionError):
            await engine.start_session(TIMED, "user-1", "tab-1")

        assert scheduler.pending_calls == 0
        scheduler.advance(10)
        await scheduler.settle()

    asyncio.run(scenario())
    assert attempt_store.calls == 0


def test_failed_timer_start_removes_written_snapshot(engine, scheduler, attempt_store, redis_client, monkeypatch, five_second_rule):
    def no_loop(delay, callback):
        raise RuntimeError("no running event loop")

    monkeypatch.setattr(scheduler, "call_later", no_loop)

    async def scenario():
        with pytest.raises(RuntimeError):
            await engine.start_session(TIMED, "user-1", "tab-1")

        assert scheduler.pending_calls == 0
        scheduler.advance(10)
        await scheduler.settle()

    asyncio.run(scenario())
    assert attempt_store.calls == 0
    assert not redis_client.keys("test:draft:*")
    assert not redis_client.keys("test:snapshot:*")
