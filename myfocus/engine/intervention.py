from datetime import datetime

from myfocus.logger import logger
from myfocus.model.models import (
    FocusState,
    InterventionCooldown,
    InterventionEvent,
    InterventionKind,
    InterventionSettings,
)

log = logger.getChild("intervention")

SEVERE_MIN_DURATION_SECONDS = 15

# 集中状態に入った何回目ごとに励ますか（初回は常に励ます）
ENCOURAGEMENT_EVERY = {"high": 1, "medium": 2, "low": 4}


class InterventionPolicy:
    """状態遷移ごとに介入（通知/ポップアップ）を出すかどうかを決める.

    ルールは上から順に評価する:

    1. 状態が変わっていなければ何もしない
    2. IDLE への遷移では何もしない
    3. FOCUSED に入ったら励まし（クールダウンの対象外で、クールダウンも消費しない）
    4. DISTRACTED は軽度警告、SEVERELY_DISTRACTED は重度警告
       （どちらも同じクールダウン時計を共有する）

    セッションごとに 1 インスタンス作る。
    """

    def __init__(self, settings: InterventionSettings | None = None) -> None:
        self.settings = settings or InterventionSettings()
        self._focus_entries = 0

    def new_cooldown(self) -> InterventionCooldown:
        return InterventionCooldown(
            cooldown_minutes=self.settings.intervention_cooldown_minutes
        )

    def evaluate(
        self,
        previous: FocusState,
        next_state: FocusState,
        cooldown: InterventionCooldown,
        *,
        now: datetime,
        task_text: str | None = None,
    ) -> InterventionEvent | None:
        if previous is next_state:
            return None
        if next_state is FocusState.IDLE:
            return None
        if not self.settings.enabled:
            log.info("interventions disabled, skipping %s", next_state.value)
            return None

        if next_state is FocusState.FOCUSED:
            return self._encouragement(now, task_text)

        if cooldown.active(now):
            log.info(
                "intervention in cooldown (last=%s, %d min), skipping %s",
                cooldown.last_fired_at,
                cooldown.cooldown_minutes,
                next_state.value,
            )
            return None

        if next_state is FocusState.DISTRACTED:
            if not self.settings.light_distraction_notification:
                return None
            event = self._light_warning(now, task_text)
        else:
            if not self.settings.severe_distraction_popup:
                return None
            event = self._severe_warning(now, task_text)

        cooldown.last_fired_at = now
        return event

    def _encouragement(
        self, now: datetime, task_text: str | None
    ) -> InterventionEvent | None:
        if not self.settings.encouragement_enabled:
            return None
        self._focus_entries += 1
        every = ENCOURAGEMENT_EVERY[self.settings.encouragement_frequency]
        if (self._focus_entries - 1) % every != 0:
            return None

        if task_text:
            message = f"いい集中です！「{task_text}」にこのまま取り組みましょう。"
        else:
            message = "いい集中です！この調子で続けましょう。"
        return InterventionEvent(
            kind=InterventionKind.ENCOURAGEMENT,
            title="MyFocus - ナイス集中",
            message=message,
            urgent=False,
            duration_seconds=self.settings.popup_duration_seconds,
            sound_enabled=False,
            timestamp=now,
        )

    def _light_warning(self, now: datetime, task_text: str | None) -> InterventionEvent:
        if task_text:
            message = f"少し脱線しています。現在のタスク: {task_text}。集中を取り戻しましょう。"
        else:
            message = "少し脱線しています。集中を取り戻しましょう。"
        return InterventionEvent(
            kind=InterventionKind.LIGHT_DISTRACTION,
            title="MyFocus - 集中リマインダー",
            message=message,
            urgent=False,
            duration_seconds=self.settings.popup_duration_seconds,
            sound_enabled=self.settings.notification_sound,
            timestamp=now,
        )

    def _severe_warning(self, now: datetime, task_text: str | None) -> InterventionEvent:
        if task_text:
            message = f"大きく脱線しています！現在のタスク: {task_text}。すぐに作業へ戻りましょう！"
        else:
            message = "大きく脱線しています！すぐに作業へ戻りましょう！"
        return InterventionEvent(
            kind=InterventionKind.SEVERE_DISTRACTION,
            title="MyFocus - 集中しましょう！",
            message=message,
            urgent=True,
            duration_seconds=max(
                self.settings.popup_duration_seconds, SEVERE_MIN_DURATION_SECONDS
            ),
            sound_enabled=self.settings.notification_sound,
            timestamp=now,
        )
