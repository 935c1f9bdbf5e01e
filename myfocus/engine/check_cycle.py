"""定期チェック（と手動チェック）の駆動."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Protocol

from myfocus.errors import ClassificationError
from myfocus.logger import logger
from myfocus.model.models import CheckContext, ClassificationResult

log = logger.getChild("check_cycle")

SECONDS_PER_MINUTE = 60


class Classifier(Protocol):
    async def classify(self, context: CheckContext) -> ClassificationResult: ...


ContextProvider = Callable[[], Awaitable[CheckContext]]
ResultHandler = Callable[[ClassificationResult, bool], Awaitable[None]]
FailureHandler = Callable[[str, bool], None]
Sleep = Callable[[float], Awaitable[None]]


class CheckCycle:
    """Runs classification checks on a fixed period, one at a time.

    Every start/stop bumps ``generation``. A check captures the generation
    when it is issued and only hands its result to ``on_result`` if the
    generation is unchanged when the classifier returns, so a check that
    completes after ``stop()`` (or after a restart) never touches session
    state. A check requested while another check of the same generation is in
    flight is dropped; a stale check still finishing does not block the next
    session.
    """

    def __init__(
        self,
        classifier: Classifier,
        gather_context: ContextProvider,
        on_result: ResultHandler,
        on_failure: FailureHandler | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.classifier = classifier
        self._gather_context = gather_context
        self._on_result = on_result
        self._on_failure = on_failure
        self._sleep = sleep

        self.generation = 0
        self.interval_minutes: int | None = None
        self.checks_run = 0
        # 実行中のチェックの世代
        self._in_flight: set[int] = set()
        self._timer: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def in_flight(self) -> bool:
        """現在の世代のチェックが実行中か."""
        return self.generation in self._in_flight

    @property
    def in_flight_generations(self) -> frozenset[int]:
        """結果を捨てられる予定のものも含めた、実行中チェックの世代."""
        return frozenset(self._in_flight)

    def start(self, interval_minutes: int) -> None:
        if interval_minutes <= 0:
            msg = "interval_minutes must be positive"
            raise ValueError(msg)
        self.stop()
        self.generation += 1
        self.interval_minutes = interval_minutes
        self._timer = asyncio.get_running_loop().create_task(
            self._run(self.generation, interval_minutes * SECONDS_PER_MINUTE),
            name=f"myfocus-check-cycle-{self.generation}",
        )
        log.info("check cycle started (every %d min)", interval_minutes)

    def stop(self) -> None:
        """タイマーを止める。実行中のチェックは完了するが結果は捨てられる."""
        if self._timer is None:
            return
        self.generation += 1
        timer, self._timer = self._timer, None
        timer.cancel()
        self.interval_minutes = None
        log.info("check cycle stopped after %d checks", self.checks_run)

    async def _run(self, generation: int, period: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time()
        while generation == self.generation:
            # 停止でタイマーが cancel されても、実行中のチェック自体は最後まで走らせる
            try:
                await asyncio.shield(self._check(generation, manual=False))
            except Exception:
                log.exception("scheduled check crashed, keeping the timer alive")
            deadline += period
            await self._sleep(max(0.0, deadline - loop.time()))

    async def trigger_once(self) -> ClassificationResult | None:
        """手動チェック。定期チェックと同じ副作用を持つ."""
        return await self._check(self.generation, manual=True)

    async def _check(self, generation: int, *, manual: bool) -> ClassificationResult | None:
        if generation in self._in_flight:
            log.info("check already in flight, dropping %s trigger",
                     "manual" if manual else "scheduled")
            return None

        # 結果の反映が終わるまでを 1 回のチェックとみなす
        self._in_flight.add(generation)
        try:
            return await self._run_check(generation, manual=manual)
        finally:
            self._in_flight.discard(generation)

    async def _run_check(self, generation: int, *, manual: bool) -> ClassificationResult | None:
        try:
            context = await self._gather_context()
            result = await self.classifier.classify(context)
        except ClassificationError as e:
            self._report_failure(generation, str(e), manual=manual)
            return None
        except Exception as e:
            log.exception("unexpected classifier failure")
            self._report_failure(generation, f"{type(e).__name__}: {e}", manual=manual)
            return None

        if generation != self.generation:
            log.info("discarding stale result (generation %d != %d)",
                     generation, self.generation)
            return None

        self.checks_run += 1
        try:
            await self._on_result(result, manual)
        except Exception:
            log.exception("result handler failed for %s", result.state.value)
        return result

    def _report_failure(self, generation: int, message: str, *, manual: bool) -> None:
        log.warning("check failed, focus state unchanged: %s", message)
        if generation == self.generation and self._on_failure is not None:
            self._on_failure(message, manual)
