"""監視セッションのオーケストレーション.

ConfigGate → CheckCycle → FocusStateMachine → InterventionPolicy →
NotificationDelivery をつなぎ、API 層にはこのクラスだけを見せる。
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from myfocus.api.services.llm import AIService
from myfocus.engine.check_cycle import CheckCycle, Classifier, Sleep
from myfocus.engine.config_gate import ConfigGate, Confirmation, ConnectivityTester
from myfocus.engine.events import (
    CycleCompleted,
    EventBus,
    FocusStateChanged,
    InterventionRaised,
)
from myfocus.engine.focus_state import FocusStateMachine, Transition
from myfocus.engine.focus_timer import FocusTimer
from myfocus.engine.intervention import InterventionPolicy
from myfocus.engine.task_binding import DEFAULT_DEBOUNCE_SECONDS, TaskBinding
from myfocus.errors import MonitoringNotActiveError, MyFocusError, PersistenceError
from myfocus.logger import logger
from myfocus.model.models import (
    DEFAULT_INTERVAL_MINUTES,
    MAX_INTERVAL_MINUTES,
    MIN_INTERVAL_MINUTES,
    AIConfig,
    APITestResult,
    CheckContext,
    ClassificationResult,
    CurrentTask,
    FocusSession,
    InterventionEvent,
    MonitoringConfig,
    SessionType,
    Task,
    UserSettings,
    utcnow,
)
from myfocus.storage.storage import StorageService
from myfocus.ui.notifications import NotificationDelivery
from myfocus.watchers.active_window import ActiveApp, get_active_app

log = logger.getChild("monitor")

DEFAULT_PAUSE_MINUTES = 5

ClassifierFactory = Callable[[AIConfig], Classifier]
TesterFactory = Callable[[AIConfig], ConnectivityTester]
OcrReader = Callable[[], str | None]


def validate_interval(minutes: int) -> int:
    if not MIN_INTERVAL_MINUTES <= minutes <= MAX_INTERVAL_MINUTES:
        msg = (
            f"interval_minutes must be between {MIN_INTERVAL_MINUTES} "
            f"and {MAX_INTERVAL_MINUTES}, got {minutes}"
        )
        raise ValueError(msg)
    return minutes


class MonitorService:
    """One monitoring session at a time, plus the task binding it reads.

    Everything runs on the event loop; storage and AI calls are pushed to
    worker threads. Persistence failures during a session are logged and
    never stop the session.
    """

    def __init__(
        self,
        storage: StorageService,
        *,
        classifier_factory: ClassifierFactory = AIService,
        tester_factory: TesterFactory = AIService,
        delivery: NotificationDelivery | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utcnow,
        active_app: Callable[[], ActiveApp] = get_active_app,
        ocr_reader: OcrReader | None = None,
        task_debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.storage = storage
        self.bus = bus or EventBus()
        self.delivery = delivery or NotificationDelivery()
        self.tasks = TaskBinding(storage, debounce_seconds=task_debounce_seconds)
        self.gate = ConfigGate(storage, tester_factory)
        self.fsm = FocusStateMachine()
        self.timer = FocusTimer(self.bus, self.tasks, now=clock, sleep=sleep)

        self._classifier_factory = classifier_factory
        self._tester_factory = tester_factory
        self._clock = clock
        self._active_app = active_app
        self._ocr_reader = ocr_reader
        self._sleep = sleep

        self.config: MonitoringConfig | None = None
        self.policy = InterventionPolicy()
        self.cooldown = self.policy.new_cooldown()
        self.cycle: CheckCycle | None = None

        self.last_result: ClassificationResult | None = None
        self.last_error: str | None = None
        self.last_intervention: InterventionEvent | None = None
        self.paused_until: datetime | None = None
        self._resume_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # session lifecycle

    @property
    def active(self) -> bool:
        return self.config is not None and self.cycle is not None and self.cycle.running

    async def start(
        self,
        confirm_empty_lists: Confirmation = False,
        interval_minutes: int | None = None,
    ) -> MonitoringConfig:
        """設定チェックを通過したら監視を開始する.

        失敗した場合は既存のセッションも含めて停止した状態で例外を送出する。
        """
        if interval_minutes is None:
            interval_minutes = await self._saved_interval()
        validate_interval(interval_minutes)

        try:
            snapshot = await self.gate.authorize(
                confirm_empty_lists=confirm_empty_lists,
                interval_minutes=interval_minutes,
            )
        except MyFocusError as e:
            log.warning("monitoring not started: %s", e)
            await self.stop()
            raise

        await self.stop(persist=False)

        settings = await self._user_settings()
        self.config = snapshot
        self.policy = InterventionPolicy(settings.distraction_intervention)
        self.cooldown = self.policy.new_cooldown()
        self.delivery.os_notifications = settings.notification_enabled
        self.delivery.sound = settings.sound_enabled
        self.last_error = None

        classifier = self._classifier_factory(snapshot.ai_config)
        if self.cycle is None:
            self.cycle = CheckCycle(
                classifier,
                self._gather_context,
                self._handle_result,
                self._handle_failure,
                sleep=self._sleep,
            )
        else:
            self.cycle.classifier = classifier
        self.cycle.start(snapshot.interval_minutes)
        log.info("monitoring started (every %d min)", snapshot.interval_minutes)
        return snapshot

    async def stop(self, *, persist: bool = True) -> None:
        """監視を止めて IDLE に戻す。何度呼んでもよい."""
        self._cancel_resume()
        self.paused_until = None

        if self.cycle is not None:
            self.cycle.stop()
        self._publish_transition(self.fsm.reset(), None)
        self.cooldown = self.policy.new_cooldown()

        config, self.config = self.config, None
        if config is not None and persist:
            try:
                await asyncio.to_thread(self.storage.set_monitoring_enabled, enabled=False)
            except PersistenceError as e:
                log.warning("monitoring config not persisted on stop: %s", e)
        if config is not None:
            log.info("monitoring stopped")

    async def pause(self, minutes: int = DEFAULT_PAUSE_MINUTES) -> datetime:
        """一時停止し、``minutes`` 分後に同じ設定で再開する."""
        if minutes <= 0:
            msg = "minutes must be positive"
            raise ValueError(msg)
        if self.config is None:
            msg = "monitoring is not active"
            raise MonitoringNotActiveError(msg)

        interval = self.config.interval_minutes
        await self.stop()
        resume_at = self._clock() + timedelta(minutes=minutes)
        self.paused_until = resume_at
        self._resume_task = asyncio.get_running_loop().create_task(
            self._resume_after(minutes * 60, interval),
            name="myfocus-resume",
        )
        log.info("monitoring paused for %d min", minutes)
        return resume_at

    async def _resume_after(self, seconds: float, interval_minutes: int) -> None:
        await self._sleep(seconds)
        self._resume_task = None
        self.paused_until = None
        try:
            # 開始時に確認済みなので、リストが空でもそのまま再開する
            await self.start(confirm_empty_lists=True, interval_minutes=interval_minutes)
        except MyFocusError as e:
            log.warning("could not resume monitoring after pause: %s", e)

    def _cancel_resume(self) -> None:
        task, self._resume_task = self._resume_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def trigger_once(self) -> ClassificationResult | None:
        """手動チェック。監視中でなければ MonitoringNotActiveError."""
        if not self.active or self.cycle is None:
            msg = "monitoring is not active"
            raise MonitoringNotActiveError(msg)
        return await self.cycle.trigger_once()

    async def set_interval(self, minutes: int) -> MonitoringConfig:
        """チェック間隔を保存する。実行中のセッションには次回開始時から反映."""
        validate_interval(minutes)
        saved = await asyncio.to_thread(self.storage.load_monitoring_config)
        updated = saved.model_copy(update={"interval_minutes": minutes})
        await asyncio.to_thread(self.storage.save_monitoring_config, updated)
        log.info("check interval set to %d min", minutes)
        return updated

    async def _saved_interval(self) -> int:
        try:
            saved = await asyncio.to_thread(self.storage.load_monitoring_config)
        except PersistenceError as e:
            log.warning("monitoring config unreadable, using default interval: %s", e)
            return DEFAULT_INTERVAL_MINUTES
        return saved.interval_minutes

    async def _user_settings(self) -> UserSettings:
        try:
            return await asyncio.to_thread(self.storage.load_user_settings)
        except PersistenceError as e:
            log.warning("user settings unreadable, using defaults: %s", e)
            return UserSettings()

    async def test_ai_connection(self, config: AIConfig | None = None) -> APITestResult:
        if config is None:
            config = await asyncio.to_thread(self.storage.load_ai_config)
        return await self._tester_factory(config).test_connection()

    # ------------------------------------------------------------------
    # one check

    async def _gather_context(self) -> CheckContext:
        try:
            tasks = await asyncio.to_thread(self.storage.load_tasks)
        except PersistenceError as e:
            log.warning("tasks unreadable, keeping current binding: %s", e)
        else:
            self.tasks.reconcile_tasks(tasks)

        app = await asyncio.to_thread(self._active_app)

        ocr_text = None
        if self._ocr_reader is not None:
            try:
                ocr_text = await asyncio.to_thread(self._ocr_reader)
            except Exception:
                log.exception("screen text unavailable for this check")

        current = self.tasks.current()
        config = self.config
        return CheckContext(
            application_name=app["application_name"],
            window_title=app["window_title"],
            ocr_text=ocr_text,
            task_text=current.text if current else None,
            whitelist=config.whitelist if config else frozenset(),
            blacklist=config.blacklist if config else frozenset(),
            timestamp=self._clock(),
        )

    async def _handle_result(self, result: ClassificationResult, manual: bool) -> None:
        transition = self.fsm.apply(result)
        self.last_result = result
        self.last_error = None
        self._publish_transition(transition, result)

        current = self.tasks.current()
        event = self.policy.evaluate(
            transition.previous,
            transition.current,
            self.cooldown,
            now=self._clock(),
            task_text=current.text if current else None,
        )
        if event is not None:
            self.last_intervention = event
            self.delivery.deliver(event)
            self.bus.publish(InterventionRaised(event))
            await self._best_effort(
                self.storage.append_intervention_log,
                {
                    **event.to_dict(),
                    "previous_state": transition.previous.value,
                    "state": transition.current.value,
                    "task": current.text if current else None,
                },
            )

        await self._best_effort(self.storage.save_monitoring_result, result)
        self.bus.publish(CycleCompleted(result, manual=manual))
        log.info(
            "check done: %s (%.2f) app=%s%s",
            result.state.value,
            result.confidence,
            result.application_name,
            " [manual]" if manual else "",
        )

    def _handle_failure(self, message: str, manual: bool) -> None:
        self.last_error = message
        self.bus.publish(CycleCompleted(None, error=message, manual=manual))

    def _publish_transition(
        self, transition: Transition, result: ClassificationResult | None
    ) -> None:
        if not transition.changed:
            return
        self.bus.publish(
            FocusStateChanged(
                previous=transition.previous,
                state=transition.current,
                confidence=result.confidence if result else 0.0,
                application_name=result.application_name if result else None,
                window_title=result.window_title if result else None,
                ai_analysis=result.ai_analysis if result else None,
            )
        )

    async def _best_effort(self, func: Callable[..., Any], *args: Any) -> None:
        try:
            await asyncio.to_thread(func, *args)
        except PersistenceError as e:
            log.warning("%s failed: %s", getattr(func, "__name__", func), e)

    # ------------------------------------------------------------------
    # tasks

    async def list_tasks(self) -> list[Task]:
        return await asyncio.to_thread(self.storage.load_tasks)

    async def add_task(self, text: str) -> Task:
        text = text.strip()
        if not text:
            msg = "task text must not be empty"
            raise ValueError(msg)
        return await asyncio.to_thread(self.storage.add_task, text)

    async def set_task_completed(self, task_id: str, *, completed: bool = True) -> Task | None:
        task = await asyncio.to_thread(
            self.storage.update_task_status, task_id, completed=completed
        )
        await self._reconcile()
        return task

    async def delete_task(self, task_id: str) -> bool:
        deleted = await asyncio.to_thread(self.storage.delete_task, task_id)
        await self._reconcile()
        return deleted

    async def _reconcile(self) -> None:
        tasks = await asyncio.to_thread(self.storage.load_tasks)
        self.tasks.reconcile_tasks(tasks)

    async def select_task(self, task_id: str) -> CurrentTask | None:
        """タスクを現在のタスクにする（UI からの連打はデバウンスされる）."""
        tasks = await asyncio.to_thread(self.storage.load_tasks)
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            msg = f"task {task_id} not found"
            raise LookupError(msg)
        if task.completed:
            msg = f"task {task_id} is already completed"
            raise ValueError(msg)
        if await self.tasks.request_select(task.id, task.text):
            # 待っている間に削除/完了されていたら、ここで解除される
            await self._reconcile()
        return self.tasks.current()

    def clear_task(self) -> bool:
        return self.tasks.clear()

    # ------------------------------------------------------------------
    # focus timer

    async def start_timer(
        self,
        session_type: SessionType = SessionType.FOCUS,
        duration_minutes: int | None = None,
    ) -> FocusSession:
        """タイマーを開始する。長さの指定がなければユーザー設定の値を使う."""
        if duration_minutes is None:
            settings = await self._user_settings()
            duration_minutes = settings.duration_for(session_type)
        return self.timer.start(session_type, duration_minutes)

    async def close(self) -> None:
        """アプリ終了時の後始末."""
        await self.stop()
        self.timer.stop()
        await self.tasks.flush()

    # ------------------------------------------------------------------
    # status

    def status(self) -> dict[str, Any]:
        current = self.tasks.current()
        return {
            "monitoring": self.active,
            "state": self.fsm.state.value,
            "interval_minutes": self.config.interval_minutes if self.config else None,
            "paused_until": self.paused_until.isoformat() if self.paused_until else None,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_error": self.last_error,
            "current_task": (
                {"task_id": current.task_id, "text": current.text} if current else None
            ),
            "cooldown": {
                "minutes": self.cooldown.cooldown_minutes,
                "last_fired_at": (
                    self.cooldown.last_fired_at.isoformat()
                    if self.cooldown.last_fired_at
                    else None
                ),
                "active": self.cooldown.active(self._clock()),
            },
            "check_in_flight": self.cycle.in_flight if self.cycle else False,
            "timer": self.timer.status(),
        }

