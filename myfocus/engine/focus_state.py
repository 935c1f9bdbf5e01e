from dataclasses import dataclass

from myfocus.model.models import ClassificationResult, FocusState


@dataclass(frozen=True)
class Transition:
    previous: FocusState
    current: FocusState

    @property
    def changed(self) -> bool:
        return self.previous is not self.current


def next_state(current: FocusState, result: ClassificationResult) -> FocusState:  # noqa: ARG001
    """遷移関数。状態の値としては常に最新の分類結果に従う."""
    return result.state


class FocusStateMachine:
    """Current focus state plus change detection for the intervention policy.

    The state value always follows the latest classification; confidence is
    only carried for display. ``reset`` is the only way back to ``IDLE``.
    """

    def __init__(self) -> None:
        self._state = FocusState.IDLE
        self._last_result: ClassificationResult | None = None

    @property
    def state(self) -> FocusState:
        return self._state

    @property
    def last_result(self) -> ClassificationResult | None:
        return self._last_result

    def apply(self, result: ClassificationResult) -> Transition:
        transition = Transition(self._state, next_state(self._state, result))
        self._state = transition.current
        self._last_result = result
        return transition

    def reset(self) -> Transition:
        transition = Transition(self._state, FocusState.IDLE)
        self._state = FocusState.IDLE
        self._last_result = None
        return transition
