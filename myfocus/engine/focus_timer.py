"""集中タイマー（ポモドーロのセッション）.

タイマーパネルは TaskBinding のミラーの 1 つで、セッション開始時にバインド中の
タスクを記録する。経過時間は単調時計で測り、一時停止中の時間は数えない。
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from typing import Any

from myfocus.engine.check_cycle import Sleep
from myfocus.engine.events import EventBus, SessionFinished, TimerTick
from myfocus.engine.task_binding import TaskBinding
from myfocus.errors import TimerNotActiveError
from myfocus.logger import logger
from myfocus.model.models import (
    CurrentTask,
    FocusSession,
    SessionStatus,
    SessionType,
    utcnow,
)

log = logger.getChild("focus_timer")

TICK_SECONDS = 1.0


class FocusTimer:
    """One focus/break session at a time.

    While a session is active a ``TimerTick`` is published every
    ``tick_seconds``; when the remaining time reaches zero the session is
    completed and ``SessionFinished`` is published.
    """

    def __init__(
        self,
        bus: EventBus,
        tasks: TaskBinding | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
        sleep: Sleep = asyncio.sleep,
        tick_seconds: float = TICK_SECONDS,
    ) -> None:
        self.bus = bus
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._now = now
        self._sleep = sleep

        self.session: FocusSession | None = None
        self.bound_task: CurrentTask | None = None
        self._elapsed_before = 0.0
        self._running_since: float | None = None
        self._ticker: asyncio.Task[None] | None = None

        if tasks is not None:
            tasks.subscribe(self._on_task_changed)

    def _on_task_changed(self, task: CurrentTask | None) -> None:
        self.bound_task = task

    @property
    def running(self) -> bool:
        return self.session is not None and self.session.status is SessionStatus.ACTIVE

    def elapsed_seconds(self) -> int:
        elapsed = self._elapsed_before
        if self._running_since is not None:
            elapsed += self._clock() - self._running_since
        if self.session is not None:
            elapsed = min(elapsed, self.session.duration_seconds)
        return int(elapsed)

    def remaining_seconds(self) -> int:
        if self.session is None:
            return 0
        return max(0, self.session.duration_seconds - self.elapsed_seconds())

    # ------------------------------------------------------------------
    # operations

    def start(
        self,
        session_type: SessionType = SessionType.FOCUS,
        duration_minutes: int = 25,
    ) -> FocusSession:
        """新しいセッションを始める。実行中のセッションは中止扱いで終わる."""
        if duration_minutes <= 0:
            msg = "duration_minutes must be positive"
            raise ValueError(msg)
        if self.session is not None:
            self.stop()

        session = FocusSession(
            session_type=session_type,
            duration_minutes=duration_minutes,
            task_id=self.bound_task.task_id if self.bound_task else None,
            started_at=self._now(),
        )
        self.session = session
        self._elapsed_before = 0.0
        self._running_since = self._clock()
        self._ticker = asyncio.get_running_loop().create_task(
            self._tick(session), name=f"myfocus-timer-{session.id}"
        )
        log.info("%s session started (%d min)", session_type.value, duration_minutes)
        return session

    def pause(self) -> FocusSession:
        session = self._require_session()
        if session.status is SessionStatus.ACTIVE and self._running_since is not None:
            self._elapsed_before += self._clock() - self._running_since
            self._running_since = None
            session.status = SessionStatus.PAUSED
            session.paused_at = self._now()
            session.interruptions += 1
            session.elapsed_seconds = self.elapsed_seconds()
            log.info("session %s paused at %ds", session.id, session.elapsed_seconds)
        return session

    def resume(self) -> FocusSession:
        session = self._require_session()
        if session.status is SessionStatus.PAUSED:
            self._running_since = self._clock()
            session.status = SessionStatus.ACTIVE
            session.paused_at = None
            log.info("session %s resumed", session.id)
        return session

    def stop(self) -> FocusSession | None:
        """セッションを終える。時間を使い切っていなければ CANCELLED."""
        if self.session is None:
            return None
        status = (
            SessionStatus.COMPLETED
            if self.remaining_seconds() == 0
            else SessionStatus.CANCELLED
        )
        return self._finish(status)

    def status(self) -> dict[str, Any]:
        session = self.session
        if session is not None:
            session.elapsed_seconds = self.elapsed_seconds()
        return {
            "session": session.to_dict() if session else None,
            "elapsed_seconds": session.elapsed_seconds if session else 0,
            "remaining_seconds": self.remaining_seconds(),
            "current_task": (
                {"task_id": self.bound_task.task_id, "text": self.bound_task.text}
                if self.bound_task
                else None
            ),
        }

    # ------------------------------------------------------------------

    def _require_session(self) -> FocusSession:
        if self.session is None:
            msg = "no timer session"
            raise TimerNotActiveError(msg)
        return self.session

    def _finish(self, status: SessionStatus) -> FocusSession:
        session = self._require_session()
        session.elapsed_seconds = self.elapsed_seconds()
        session.status = status
        session.completed_at = self._now()

        self.session = None
        self._elapsed_before = 0.0
        self._running_since = None
        ticker, self._ticker = self._ticker, None
        if ticker is not None and ticker is not asyncio.current_task():
            ticker.cancel()

        log.info("session %s %s after %ds", session.id, status.value, session.elapsed_seconds)
        self.bus.publish(SessionFinished(session))
        return session

    async def _tick(self, session: FocusSession) -> None:
        while self.session is session:
            await self._sleep(self.tick_seconds)
            if self.session is not session:
                return
            if session.status is not SessionStatus.ACTIVE:
                continue
            remaining = self.remaining_seconds()
            session.elapsed_seconds = self.elapsed_seconds()
            self.bus.publish(
                TimerTick(
                    session_id=session.id,
                    status=session.status,
                    elapsed_seconds=session.elapsed_seconds,
                    remaining_seconds=remaining,
                )
            )
            if remaining == 0:
                self._finish(SessionStatus.COMPLETED)
