"""Typed publish/subscribe between the monitoring core and presentation layers."""

from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from myfocus.logger import logger
from myfocus.model.models import (
    ClassificationResult,
    FocusSession,
    FocusState,
    InterventionEvent,
    SessionStatus,
)

log = logger.getChild("events")


@dataclass(frozen=True)
class FocusStateChanged:
    previous: FocusState
    state: FocusState
    confidence: float = 0.0
    application_name: str | None = None
    window_title: str | None = None
    ai_analysis: str | None = None


@dataclass(frozen=True)
class InterventionRaised:
    event: InterventionEvent


@dataclass(frozen=True)
class CycleCompleted:
    """1 回のチェックの結果。失敗時は result が None で error にメッセージ."""

    result: ClassificationResult | None
    error: str | None = None
    manual: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TimerTick:
    """タイマーパネル向けの毎秒の更新."""

    session_id: str
    status: SessionStatus
    elapsed_seconds: int
    remaining_seconds: int


@dataclass(frozen=True)
class SessionFinished:
    session: FocusSession


EventT = TypeVar("EventT")
Handler = Callable[[Any], None]


class EventBus:
    """購読者へイベントを同期的に配信する。購読者の例外は配信を止めない."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(
        self, event_type: type[EventT], handler: Callable[[EventT], None]
    ) -> Callable[[], None]:
        """Register ``handler`` and return a callable that unsubscribes it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def publish(self, event: object) -> int:
        delivered = 0
        for handler in list(self._handlers[type(event)]):
            try:
                handler(event)
            except Exception:
                log.exception("subscriber failed for %s", type(event).__name__)
            else:
                delivered += 1
        return delivered
