from datetime import datetime, timedelta, timezone

import pytest

from myfocus.engine.focus_state import FocusStateMachine
from myfocus.engine.intervention import InterventionPolicy
from myfocus.model.models import (
    ClassificationResult,
    FocusState,
    InterventionKind,
    InterventionSettings,
)

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def run_sequence(policy, states, *, step=timedelta(minutes=1), task_text=None):
    """分類結果の列を状態マシン経由でポリシーに流し、出た介入を返す."""
    fsm = FocusStateMachine()
    cooldown = policy.new_cooldown()
    events = []
    now = T0
    for state in states:
        transition = fsm.apply(ClassificationResult(state=state))
        event = policy.evaluate(
            transition.previous, transition.current, cooldown, now=now, task_text=task_text
        )
        events.append(event)
        now += step
    return events, cooldown


class TestInterventionPolicy:
    """介入ポリシーのテスト"""

    def test_same_state_emits_nothing(self):
        policy = InterventionPolicy()
        cooldown = policy.new_cooldown()
        for state in FocusState:
            assert policy.evaluate(state, state, cooldown, now=T0) is None
        assert cooldown.last_fired_at is None

    def test_transition_to_idle_emits_nothing(self):
        policy = InterventionPolicy()
        cooldown = policy.new_cooldown()
        assert policy.evaluate(FocusState.DISTRACTED, FocusState.IDLE, cooldown, now=T0) is None

    def test_light_warning_sets_cooldown(self):
        policy = InterventionPolicy()
        cooldown = policy.new_cooldown()

        event = policy.evaluate(FocusState.FOCUSED, FocusState.DISTRACTED, cooldown, now=T0)

        assert event is not None
        assert event.kind is InterventionKind.LIGHT_DISTRACTION
        assert event.urgent is False
        assert cooldown.last_fired_at == T0

    def test_severe_warning_is_urgent_and_long(self):
        policy = InterventionPolicy(InterventionSettings(popup_duration_seconds=5))
        cooldown = policy.new_cooldown()

        event = policy.evaluate(
            FocusState.FOCUSED, FocusState.SEVERELY_DISTRACTED, cooldown, now=T0
        )

        assert event.kind is InterventionKind.SEVERE_DISTRACTION
        assert event.urgent is True
        assert event.duration_seconds == 15

    def test_distracted_distracted_severe_within_cooldown(self):
        """Distracted → Distracted → Severe（5分以内）で軽度警告 1 回だけ"""
        events, _ = run_sequence(
            InterventionPolicy(),
            [FocusState.DISTRACTED, FocusState.DISTRACTED, FocusState.SEVERELY_DISTRACTED],
        )

        emitted = [e for e in events if e is not None]
        assert len(emitted) == 1
        assert events[0].kind is InterventionKind.LIGHT_DISTRACTION

    def test_severe_fires_after_cooldown_elapsed(self):
        events, cooldown = run_sequence(
            InterventionPolicy(),
            [FocusState.DISTRACTED, FocusState.SEVERELY_DISTRACTED],
            step=timedelta(minutes=5),
        )

        assert events[0].kind is InterventionKind.LIGHT_DISTRACTION
        assert events[1].kind is InterventionKind.SEVERE_DISTRACTION
        assert cooldown.last_fired_at == T0 + timedelta(minutes=5)

    def test_warnings_never_closer_than_cooldown(self):
        states = [
            FocusState.DISTRACTED,
            FocusState.SEVERELY_DISTRACTED,
            FocusState.FOCUSED,
            FocusState.DISTRACTED,
            FocusState.SEVERELY_DISTRACTED,
            FocusState.DISTRACTED,
        ] * 4
        step = timedelta(seconds=70)
        events, _ = run_sequence(InterventionPolicy(), states, step=step)

        warning_times = [
            T0 + i * step
            for i, e in enumerate(events)
            if e is not None and e.kind is not InterventionKind.ENCOURAGEMENT
        ]
        assert len(warning_times) >= 2
        for earlier, later in zip(warning_times, warning_times[1:]):
            assert later - earlier >= timedelta(minutes=5)

    def test_idle_focused_distracted_focused(self):
        """Idle → Focused → Distracted → Focused"""
        policy = InterventionPolicy(InterventionSettings(encouragement_frequency="high"))
        events, _ = run_sequence(
            policy, [FocusState.FOCUSED, FocusState.DISTRACTED, FocusState.FOCUSED]
        )

        assert events[0].kind is InterventionKind.ENCOURAGEMENT
        assert events[1].kind is InterventionKind.LIGHT_DISTRACTION
        assert events[2].kind is InterventionKind.ENCOURAGEMENT

    def test_encouragement_ignores_cooldown(self):
        policy = InterventionPolicy(InterventionSettings(encouragement_frequency="high"))
        cooldown = policy.new_cooldown()
        cooldown.last_fired_at = T0

        event = policy.evaluate(FocusState.DISTRACTED, FocusState.FOCUSED, cooldown, now=T0)

        assert event.kind is InterventionKind.ENCOURAGEMENT
        assert event.urgent is False
        assert event.sound_enabled is False
        assert cooldown.last_fired_at == T0

    @pytest.mark.parametrize(
        ("frequency", "expected"),
        [
            ("high", [True, True, True, True, True]),
            ("medium", [True, False, True, False, True]),
            ("low", [True, False, False, False, True]),
        ],
    )
    def test_encouragement_pacing(self, frequency, expected):
        policy = InterventionPolicy(InterventionSettings(encouragement_frequency=frequency))
        cooldown = policy.new_cooldown()

        fired = [
            policy.evaluate(FocusState.DISTRACTED, FocusState.FOCUSED, cooldown, now=T0)
            is not None
            for _ in expected
        ]

        assert fired == expected

    def test_disabled_settings(self):
        settings = InterventionSettings(
            light_distraction_notification=False,
            severe_distraction_popup=False,
            encouragement_enabled=False,
        )
        policy = InterventionPolicy(settings)
        cooldown = policy.new_cooldown()

        assert policy.evaluate(FocusState.FOCUSED, FocusState.DISTRACTED, cooldown, now=T0) is None
        assert (
            policy.evaluate(FocusState.FOCUSED, FocusState.SEVERELY_DISTRACTED, cooldown, now=T0)
            is None
        )
        assert policy.evaluate(FocusState.IDLE, FocusState.FOCUSED, cooldown, now=T0) is None
        assert cooldown.last_fired_at is None

    def test_globally_disabled(self):
        policy = InterventionPolicy(InterventionSettings(enabled=False))
        cooldown = policy.new_cooldown()
        assert policy.evaluate(FocusState.FOCUSED, FocusState.DISTRACTED, cooldown, now=T0) is None

    def test_message_mentions_task(self):
        policy = InterventionPolicy()
        cooldown = policy.new_cooldown()

        event = policy.evaluate(
            FocusState.FOCUSED,
            FocusState.DISTRACTED,
            cooldown,
            now=T0,
            task_text="レポートを書く",
        )

        assert "レポートを書く" in event.message

    def test_cooldown_window_boundary(self):
        policy = InterventionPolicy(InterventionSettings(intervention_cooldown_minutes=5))
        cooldown = policy.new_cooldown()
        cooldown.last_fired_at = T0

        assert cooldown.active(T0 + timedelta(minutes=4, seconds=59)) is True
        assert cooldown.active(T0 + timedelta(minutes=5)) is False
