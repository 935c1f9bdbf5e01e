import asyncio
import platform
import sys
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any

from myfocus.logger import logger
from myfocus.model.models import (
    DEFAULT_POPUP_SECONDS,
    InterventionEvent,
    InterventionKind,
)

if sys.platform == "win32":
    import winsound

    from win10toast import ToastNotifier  # type: ignore[import-untyped, unused-ignore]

log = logger.getChild("notifications")

URGENT_BEEP_HZ = 800
NORMAL_BEEP_HZ = 600
BEEP_MS = 500
TOAST_SECONDS = 5


class NotificationLevel(Enum):
    """Notification severity levels used by the service."""

    INFO = "info"
    WARNING = "warning"
    URGENT = "urgent"


@dataclass
class NotificationConfig:
    """Configuration for :class:`NotificationService`."""

    sound: bool = False
    flash: bool = False


class NotificationService:
    """OS level notifications with history tracking."""

    def __init__(self, config: NotificationConfig | None = None) -> None:
        self.platform = platform.system()
        self.config = config or NotificationConfig()
        self._history: list[dict[str, Any]] = []

    def notify(
        self,
        title: str,
        message: str,
        level: NotificationLevel = NotificationLevel.INFO,
        *,
        sound: bool | None = None,
        flash: bool | None = None,
    ) -> bool:
        """Display a notification and record it.

        On Windows a toast is shown via ``win10toast``.  On other platforms
        the notification is only recorded and ``False`` is returned.
        """
        sound = self.config.sound if sound is None else sound
        flash = self.config.flash if flash is None else flash

        success = False
        if self.platform == "Windows":
            notifier = ToastNotifier()
            notifier.show_toast(title, message, duration=TOAST_SECONDS, threaded=True)  # pyright: ignore[reportUnknownMemberType]
            success = True
        self._history.append(
            {
                "title": title,
                "message": message,
                "level": level.value,
                "sound": sound,
                "flash": flash,
                "timestamp": time.time(),
                "delivered": success,
            },
        )
        return success

    def get_capabilities(self) -> dict[str, Any]:
        return {
            "platform": self.platform,
            "supports_sound": self.platform == "Windows",
            "supports_flash": self.platform == "Windows",
        }

    def get_notification_history(self) -> list[dict[str, Any]]:
        """Return a copy of the notification history."""
        return list(self._history)


_service: NotificationService | None = None


def get_notification_service() -> NotificationService:
    """プロセス共通の NotificationService を返す."""
    global _service  # noqa: PLW0603
    if _service is None:
        _service = NotificationService()
    return _service


def play_sound(frequency: int, duration_ms: int = BEEP_MS) -> bool:
    """通知音を鳴らす（Windows のみ）。鳴らせたら True."""
    if sys.platform != "win32":
        return False
    winsound.Beep(frequency, duration_ms)
    return True


class NotificationDelivery:
    """介入イベントをユーザーに見せる.

    アプリ内の表示枠は 1 つだけで、新しい介入は表示中のものを置き換える。
    表示は ``duration_seconds`` 後に自動で消える。OS 通知と通知音の失敗は
    ログに残すだけで呼び出し側には伝えない。``os_notifications`` と ``sound``
    はユーザー設定の通知/サウンドのオン・オフで、アプリ内表示には影響しない。
    """

    def __init__(
        self,
        service: NotificationService | None = None,
        history_size: int = 20,
        *,
        os_notifications: bool = True,
        sound: bool = True,
    ) -> None:
        self.service = service or get_notification_service()
        self.os_notifications = os_notifications
        self.sound = sound
        self.current: InterventionEvent | None = None
        self.history: deque[InterventionEvent] = deque(maxlen=history_size)
        self._dismiss_handle: asyncio.TimerHandle | None = None

    def deliver(self, event: InterventionEvent) -> None:
        self._show_in_app(event)

        if self.os_notifications and (
            event.urgent or event.kind is not InterventionKind.ENCOURAGEMENT
        ):
            self._notify_os(event)

        if self.sound and event.sound_enabled:
            self._play_cue(event)

    def dismiss(self) -> None:
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        self.current = None

    def _show_in_app(self, event: InterventionEvent) -> None:
        self.dismiss()
        self.current = event
        self.history.append(event)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("no running loop, %s stays until replaced", event.kind.value)
            return
        delay = event.duration_seconds or DEFAULT_POPUP_SECONDS
        self._dismiss_handle = loop.call_later(delay, self._expire, event)

    def _expire(self, event: InterventionEvent) -> None:
        if self.current is event:
            self.current = None
            self._dismiss_handle = None

    def _notify_os(self, event: InterventionEvent) -> None:
        if event.urgent:
            level = NotificationLevel.URGENT
        elif event.kind is InterventionKind.ENCOURAGEMENT:
            level = NotificationLevel.INFO
        else:
            level = NotificationLevel.WARNING
        try:
            self.service.notify(
                event.title,
                event.message,
                level,
                sound=event.sound_enabled,
                flash=event.urgent,
            )
        except Exception:
            log.exception("OS notification failed")

    def _play_cue(self, event: InterventionEvent) -> None:
        frequency = URGENT_BEEP_HZ if event.urgent else NORMAL_BEEP_HZ
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._beep(frequency)
            return
        # Beep はブロックするのでループの外で鳴らす
        loop.run_in_executor(None, self._beep, frequency)

    @staticmethod
    def _beep(frequency: int) -> None:
        try:
            play_sound(frequency)
        except Exception:
            log.exception("sound cue failed")
