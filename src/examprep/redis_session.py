from datetime import timedelta
from typing import List, Optional

import redis

from .config import settings
from .models import CompletedAttempt, SessionDraft, TimerSnapshot

redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)


class SessionStorage:
    """Durable client-side state: timer snapshots, session drafts and unsynced attempts.

    Snapshots and drafts are keyed per session id and expire after the session
    timeout. Attempts waiting for persistence are kept in a hash keyed by session
    id so re-queueing the same attempt never duplicates it.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        prefix: str = settings.REDIS_PREFIX,
        ttl: timedelta = timedelta(minutes=settings.SESSION_TIMEOUT_MINUTES),
    ):
        self.client = client if client is not None else redis_client
        self.prefix = prefix
        self.ttl = ttl

    def _key(self, kind: str, session_id: str) -> str:
        return f"{self.prefix}:{kind}:{session_id}"

    @property
    def pending_key(self) -> str:
        return f"{self.prefix}:pending_attempts"

    # --- Timer snapshots ---
    def save_snapshot(self, snapshot: TimerSnapshot):
        self.client.set(
            self._key("snapshot", snapshot.session_id),
            snapshot.model_dump_json(),
            ex=self.ttl,
        )

    def load_snapshot(self, session_id: str) -> Optional[TimerSnapshot]:
        raw = self.client.get(self._key("snapshot", session_id))
        if not raw:
            return None
        return TimerSnapshot.model_validate_json(raw)

    def delete_snapshot(self, session_id: str):
        self.client.delete(self._key("snapshot", session_id))

    # --- Drafts ---
    def save_draft(self, draft: SessionDraft):
        self.client.set(
            self._key("draft", draft.session_id),
            draft.model_dump_json(),
            ex=self.ttl,
        )

    def load_draft(self, session_id: str) -> Optional[SessionDraft]:
        raw = self.client.get(self._key("draft", session_id))
        if not raw:
            return None
        return SessionDraft.model_validate_json(raw)

    def delete_draft(self, session_id: str):
        self.client.delete(self._key("draft", session_id))

    # --- Unsynced attempts ---
    def queue_attempt(self, attempt: CompletedAttempt):
        self.client.hset(self.pending_key, attempt.session_id, attempt.model_dump_json())

    def pending_attempts(self) -> List[CompletedAttempt]:
        return [
            CompletedAttempt.model_validate_json(raw)
            for raw in self.client.hvals(self.pending_key)
        ]

    def is_pending(self, session_id: str) -> bool:
        return bool(self.client.hexists(self.pending_key, session_id))

    def remove_pending(self, session_id: str):
        self.client.hdel(self.pending_key, session_id)
