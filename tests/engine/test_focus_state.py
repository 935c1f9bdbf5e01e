import pytest

from myfocus.engine.focus_state import FocusStateMachine, next_state
from myfocus.model.models import ClassificationResult, FocusState


def result(state, confidence=0.8):
    return ClassificationResult(state=state, confidence=confidence)


class TestFocusStateMachine:
    """集中状態マシンのテスト"""

    def test_initial_state_is_idle(self):
        fsm = FocusStateMachine()
        assert fsm.state is FocusState.IDLE
        assert fsm.last_result is None

    @pytest.mark.parametrize(
        "sequence",
        [
            [FocusState.FOCUSED],
            [FocusState.FOCUSED, FocusState.DISTRACTED, FocusState.FOCUSED],
            [FocusState.SEVERELY_DISTRACTED, FocusState.SEVERELY_DISTRACTED],
            [FocusState.DISTRACTED, FocusState.SEVERELY_DISTRACTED, FocusState.FOCUSED],
        ],
    )
    def test_state_follows_latest_result(self, sequence):
        """状態は常に最新の分類結果と一致する"""
        fsm = FocusStateMachine()
        for state in sequence:
            fsm.apply(result(state))
            assert fsm.state is state

    def test_low_confidence_still_moves_state(self):
        fsm = FocusStateMachine()
        fsm.apply(result(FocusState.DISTRACTED, confidence=0.05))
        assert fsm.state is FocusState.DISTRACTED

    def test_transition_reports_change(self):
        fsm = FocusStateMachine()
        first = fsm.apply(result(FocusState.FOCUSED))
        second = fsm.apply(result(FocusState.FOCUSED))

        assert first.previous is FocusState.IDLE
        assert first.current is FocusState.FOCUSED
        assert first.changed is True
        assert second.changed is False

    def test_reset_returns_to_idle(self):
        fsm = FocusStateMachine()
        fsm.apply(result(FocusState.DISTRACTED))

        transition = fsm.reset()

        assert transition.previous is FocusState.DISTRACTED
        assert fsm.state is FocusState.IDLE
        assert fsm.last_result is None
        assert fsm.reset().changed is False

    def test_next_state_ignores_current(self):
        for current in FocusState:
            assert next_state(current, result(FocusState.FOCUSED)) is FocusState.FOCUSED

    def test_confidence_is_clamped(self):
        assert result(FocusState.FOCUSED, confidence=1.7).confidence == 1.0
        assert result(FocusState.FOCUSED, confidence=-2).confidence == 0.0
