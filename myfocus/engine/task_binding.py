"""現在のタスク（タスクバインディング）の唯一の保持者.

タスク一覧・タスクセレクタ・タイマーパネルの 3 つの表示は、ここに登録された
読み取り専用のミラーに過ぎない。変更は必ずこのクラスを通り、同じ呼び出しの中で
全ミラーへ通知される。
"""

import asyncio
from collections.abc import Callable, Iterable
from typing import Protocol

from myfocus.errors import PersistenceError
from myfocus.logger import logger
from myfocus.model.models import CurrentTask, Task

log = logger.getChild("task_binding")

DEFAULT_DEBOUNCE_SECONDS = 0.3

TaskMirror = Callable[[CurrentTask | None], None]


class TaskBindingStore(Protocol):
    def load_current_task(self) -> CurrentTask | None: ...

    def save_current_task(self, task: CurrentTask) -> None: ...

    def clear_current_task(self) -> None: ...


class TaskBinding:
    def __init__(
        self,
        store: TaskBindingStore | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self._store = store
        self.debounce_seconds = debounce_seconds
        self._current: CurrentTask | None = None
        self._mirrors: list[TaskMirror] = []
        self._ticket = 0
        self._pending: str | None = None
        self._dirty = False
        self._writer: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # mirrors

    def subscribe(self, mirror: TaskMirror) -> None:
        """ミラーを登録し、現在値をすぐに表示させる."""
        self._mirrors.append(mirror)
        mirror(self._current)

    def _notify(self) -> None:
        for mirror in list(self._mirrors):
            try:
                mirror(self._current)
            except Exception:
                log.exception("task mirror failed")

    # ------------------------------------------------------------------
    # persistence (best effort)

    def _persist(self) -> None:
        """現在値の保存を予約する.

        イベントループ上ではワーカースレッドで書き込み、書き込み中に変わった
        値は続けて書く（常に最新の値が最後に残る）。
        """
        if self._store is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write(self._current)
            return
        self._dirty = True
        if self._writer is None or self._writer.done():
            self._writer = loop.create_task(
                self._write_pending(), name="myfocus-task-binding-write"
            )

    async def _write_pending(self) -> None:
        while self._dirty:
            self._dirty = False
            await asyncio.to_thread(self._write, self._current)

    def _write(self, current: CurrentTask | None) -> None:
        if self._store is None:
            return
        try:
            if current is None:
                self._store.clear_current_task()
            else:
                self._store.save_current_task(current)
        except PersistenceError as e:
            log.warning("current task not persisted, keeping it in memory: %s", e)

    async def flush(self) -> None:
        """予約済みの保存が終わるまで待つ."""
        if self._writer is not None:
            await self._writer

    async def restore(self) -> CurrentTask | None:
        """起動時に保存済みのバインディングを読み込む."""
        if self._store is None:
            return self._current
        try:
            self._current = await asyncio.to_thread(self._store.load_current_task)
        except PersistenceError as e:
            log.warning("could not restore current task: %s", e)
        self._notify()
        return self._current

    # ------------------------------------------------------------------
    # operations

    def current(self) -> CurrentTask | None:
        return self._current

    def select(self, task_id: str, text: str) -> bool:
        """タスクを選択する。変更があった場合だけ True（永続化もその時だけ）."""
        if not task_id or not text:
            msg = "task_id and text must not be empty"
            raise ValueError(msg)

        selected = CurrentTask(task_id=task_id, text=text)
        if self._current == selected:
            # 同じタスクの再選択は表示の更新のみ
            self._notify()
            return False

        self._current = selected
        log.info("current task set to %s (%s)", task_id, text)
        self._persist()
        self._notify()
        return True

    async def request_select(self, task_id: str, text: str) -> bool:
        """UI からの選択要求。連打は最後の 1 回だけが反映される.

        待っている間にそのタスクが削除/完了されて :meth:`reconcile` が走った
        場合、要求は取り消される。
        """
        self._ticket += 1
        ticket = self._ticket
        self._pending = task_id
        await asyncio.sleep(self.debounce_seconds)
        if ticket != self._ticket:
            log.debug("selection %s superseded", task_id)
            return False
        self._pending = None
        return self.select(task_id, text)

    def _cancel_pending(self) -> None:
        self._ticket += 1
        self._pending = None

    def clear(self) -> bool:
        # 保留中の選択要求も無効にする
        self._cancel_pending()
        if self._current is None:
            self._notify()
            return False
        log.info("current task cleared (%s)", self._current.task_id)
        self._current = None
        self._persist()
        self._notify()
        return True

    def reconcile(
        self,
        existing_task_ids: Iterable[str],
        completed_task_ids: Iterable[str] = (),
    ) -> bool:
        """バインド中のタスクが消えた/完了した場合に解除する。解除したら True."""
        existing = set(existing_task_ids)
        completed = set(completed_task_ids)

        def gone(task_id: str) -> bool:
            return task_id not in existing or task_id in completed

        if self._pending is not None and gone(self._pending):
            log.info("pending selection %s no longer active, dropping", self._pending)
            self._cancel_pending()

        if self._current is None or not gone(self._current.task_id):
            return False

        log.info("bound task %s no longer active, clearing", self._current.task_id)
        self._current = None
        self._persist()
        self._notify()
        return True

    def reconcile_tasks(self, tasks: Iterable[Task]) -> bool:
        tasks = list(tasks)
        return self.reconcile(
            existing_task_ids={t.id for t in tasks},
            completed_task_ids={t.id for t in tasks if t.completed},
        )
