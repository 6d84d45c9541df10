import asyncio
import heapq
import itertools
from datetime import datetime, timedelta, timezone
from typing import List

import fakeredis
import pytest

from examprep.clock import Clock, Scheduler
from examprep.durations import DurationRuleStore
from examprep.engine import ExamEngine
from examprep.errors import NoQuestionsAvailable, TransientPersistenceFailure
from examprep.loaders import QuestionLoader
from examprep.models import ExamType, QuestionRef, SelectionMethod
from examprep.redis_session import SessionStorage
from examprep.submission import AttemptRecorder, AttemptStore


class FakeClock(Clock):
    def __init__(self, start: datetime = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)):
        self.current = start

    def now(self) -> datetime:
        return self.current


class _Call:
    def __init__(self, callback):
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler(Scheduler):
    """Fires `call_later` callbacks only when the test advances the fake clock."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._queue = []
        self._seq = itertools.count()
        self.spawned = []

    def call_later(self, delay, callback):
        call = _Call(callback)
        due = self.clock.now() + timedelta(seconds=delay)
        heapq.heappush(self._queue, (due, next(self._seq), call))
        return call

    def spawn(self, coro):
        task = asyncio.ensure_future(coro)
        self.spawned.append(task)
        return task

    @property
    def pending_calls(self) -> int:
        return sum(1 for _, _, call in self._queue if not call.cancelled)

    def advance(self, seconds: float):
        target = self.clock.now() + timedelta(seconds=seconds)
        while self._queue and self._queue[0][0] <= target:
            due, _, call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self.clock.current = max(self.clock.current, due)
            call.callback()
        self.clock.current = target

    async def settle(self):
        """Wait for everything spawned so far, including tasks spawned meanwhile."""
        done = 0
        while done < len(self.spawned):
            pending = self.spawned[done:]
            done = len(self.spawned)
            await asyncio.gather(*pending)


class MemoryAttemptStore(AttemptStore):
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.saved = {}
        self.calls = 0

    async def save_attempt(self, attempt):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise TransientPersistenceFailure("backend unreachable")
        self.saved.setdefault(attempt.session_id, attempt)

    async def list_attempts(self, user_id):
        attempts = [a for a in self.saved.values() if a.user_id == user_id]
        return sorted(attempts, key=lambda a: a.completed_at, reverse=True)


class StaticLoader(QuestionLoader):
    def __init__(self, questions: List[QuestionRef]):
        self.questions = questions
        self.calls = []

    async def load_questions(self, exam_type, subject=None, year=None):
        self.calls.append((exam_type, subject, year))
        if not self.questions:
            raise NoQuestionsAvailable("empty bank")
        return list(self.questions)

    async def fetch_questions(self, question_ids):
        by_id = {q.id: q for q in self.questions}
        return [by_id[qid] for qid in question_ids if qid in by_id]


def make_questions(count: int = 3) -> List[QuestionRef]:
    return [
        QuestionRef(
            id=f"q{i}",
            text=f"Question {i}",
            options={"A": "alpha", "B": "beta", "C": "gamma", "D": "delta"},
            correct="A",
            explanation=f"Explanation {i}",
            exam_type=ExamType.JAMB,
            subject="mathematics",
            year=2021,
        )
        for i in range(1, count + 1)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def storage(redis_client):
    return SessionStorage(redis_client, prefix="test")


@pytest.fixture
def rule_store(redis_client):
    store = DurationRuleStore(redis_client, prefix="test")
    store.ensure_defaults()
    return store


@pytest.fixture
def attempt_store():
    return MemoryAttemptStore()


@pytest.fixture
def loader():
    return StaticLoader(make_questions(3))


@pytest.fixture
def recorder(attempt_store, storage, scheduler):
    return AttemptRecorder(attempt_store, storage, scheduler)


@pytest.fixture
def engine(rule_store, loader, storage, attempt_store, scheduler, clock, recorder):
    return ExamEngine(
        rule_store,
        {method: loader for method in SelectionMethod},
        storage,
        attempt_store,
        scheduler,
        clock=clock,
        recorder=recorder,
    )
