import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .clock import Clock, Scheduler
from .models import TimerSnapshot
from .redis_session import SessionStorage

logger = logging.getLogger(__name__)

TickCallback = Callable[[int], None]
ExpireCallback = Callable[[], None]


def format_time(seconds: int) -> str:
    """Render a number of seconds as MM:SS."""
    minutes, secs = divmod(max(0, int(seconds)), 60)
    return f"{minutes:02d}:{secs:02d}"


class TimerHandle:
    """One running countdown. Created by `CountdownTimer`, never directly."""

    def __init__(
        self,
        session_id: str,
        context_id: str,
        expires_at: datetime,
        clock: Clock,
        on_tick: Optional[TickCallback],
        on_expire: ExpireCallback,
    ):
        self.session_id = session_id
        self.context_id = context_id
        self.expires_at = expires_at
        self.on_tick = on_tick
        self.on_expire = on_expire
        self.paused_remaining: Optional[int] = None
        self.expired = False
        self.stopped = False
        self._clock = clock
        self._scheduled: Any = None

    @property
    def active(self) -> bool:
        return not (self.expired or self.stopped)

    @property
    def paused(self) -> bool:
        return self.paused_remaining is not None

    def remaining(self) -> int:
        if self.expired:
            return 0
        if self.paused:
            return self.paused_remaining
        delta = (self.expires_at - self._clock.now()).total_seconds()
        return max(0, math.ceil(delta))

    def snapshot(self) -> TimerSnapshot:
        return TimerSnapshot(
            session_id=self.session_id,
            expires_at=self.expires_at,
            context_id=self.context_id,
            paused_remaining=self.paused_remaining,
        )


class CountdownTimer:
    """Countdown anchored to an absolute expiration instant.

    Every tick recomputes the remaining time from the stored instant, so missed
    or late ticks never make the countdown drift, and a reloaded session picks
    up exactly where the stored instant says it should be. The snapshot written
    at start is what `restore` reads back after a reload.
    """

    TICK_SECONDS = 1.0

    def __init__(self, clock: Clock, scheduler: Scheduler, storage: SessionStorage):
        self.clock = clock
        self.scheduler = scheduler
        self.storage = storage

    def start(
        self,
        session_id: str,
        duration_seconds: int,
        on_tick: Optional[TickCallback],
        on_expire: ExpireCallback,
        context_id: str,
    ) -> TimerHandle:
        if duration_seconds <= 0:
            raise ValueError("duration must be positive")
        expires_at = self.clock.now() + timedelta(seconds=duration_seconds)
        handle = TimerHandle(
            session_id, context_id, expires_at, self.clock, on_tick, on_expire
        )
        self.storage.save_snapshot(handle.snapshot())
        logger.info(f"Timer started for {session_id}: {duration_seconds}s")
        self._schedule(handle, self._next_delay(handle))
        return handle

    def restore(
        self,
        snapshot: TimerSnapshot,
        on_tick: Optional[TickCallback],
        on_expire: ExpireCallback,
        context_id: Optional[str] = None,
    ) -> TimerHandle:
        """Rebuild a countdown from a stored snapshot instead of restarting it."""
        handle = TimerHandle(
            snapshot.session_id,
            context_id or snapshot.context_id,
            snapshot.expires_at,
            self.clock,
            on_tick,
            on_expire,
        )
        handle.paused_remaining = snapshot.paused_remaining
        self.storage.save_snapshot(handle.snapshot())
        logger.info(
            f"Timer restored for {snapshot.session_id}: {handle.remaining()}s left"
        )
        if not handle.paused:
            # First tick runs on the loop, so an already-passed instant expires there
            self._schedule(handle, 0)
        return handle

    def stop(self, handle: TimerHandle):
        if not handle.active:
            return
        handle.stopped = True
        self._cancel(handle)
        self.storage.delete_snapshot(handle.session_id)
        logger.info(f"Timer stopped for {handle.session_id}")

    def pause(self, handle: TimerHandle):
        if not handle.active or handle.paused:
            return
        handle.paused_remaining = handle.remaining()
        self._cancel(handle)
        self.storage.save_snapshot(handle.snapshot())

    def resume(self, handle: TimerHandle):
        if not handle.active or not handle.paused:
            return
        # New instant from the frozen remainder; elapsed ticks are never counted
        handle.expires_at = self.clock.now() + timedelta(seconds=handle.paused_remaining)
        handle.paused_remaining = None
        self.storage.save_snapshot(handle.snapshot())
        self._schedule(handle, self._next_delay(handle))

    # --- Internals ---
    def _next_delay(self, handle: TimerHandle) -> float:
        until_expiry = (handle.expires_at - self.clock.now()).total_seconds()
        return max(0.0, min(self.TICK_SECONDS, until_expiry))

    def _schedule(self, handle: TimerHandle, delay: float):
        handle._scheduled = self.scheduler.call_later(delay, lambda: self._tick(handle))

    def _cancel(self, handle: TimerHandle):
        if handle._scheduled is not None:
            handle._scheduled.cancel()
            handle._scheduled = None

    def _tick(self, handle: TimerHandle):
        handle._scheduled = None
        if not handle.active or handle.paused:
            return
        remaining = handle.remaining()
        if handle.on_tick:
            handle.on_tick(remaining)
            if not handle.active:
                return
        if remaining > 0:
            self._schedule(handle, self._next_delay(handle))
            return
        handle.expired = True
        self.storage.delete_snapshot(handle.session_id)
        logger.info(f"Timer expired for {handle.session_id}")
        handle.on_expire()
