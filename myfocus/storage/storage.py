"""JSON ファイルによる永続化サービス.

コアからは「失敗しうるキー/値の往復」として扱われる。読み書きの失敗はすべて
:class:`PersistenceError` に包んで送出し、呼び出し側で吸収する。
"""

import json
import os
import tempfile
from dataclasses import asdict
from datetime import timedelta
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, TypeAdapter, ValidationError

from myfocus.errors import PersistenceError
from myfocus.logger import logger
from myfocus.model.models import (
    AIConfig,
    ClassificationResult,
    CurrentTask,
    MonitoringConfig,
    Task,
    UserSettings,
    utcnow,
)

log = logger.getChild("storage")

ModelT = TypeVar("ModelT", bound=BaseModel)

RESULT_RETENTION_DAYS = 30

_tasks_adapter = TypeAdapter(list[Task])


class StorageService:
    """data ディレクトリ配下の JSON ファイルを読み書きする."""

    AI_CONFIG_FILE = "ai_config.json"
    USER_SETTINGS_FILE = "user_settings.json"
    MONITORING_CONFIG_FILE = "monitoring_config.json"
    TASKS_FILE = "tasks.json"
    CURRENT_TASK_FILE = "current_task.json"
    RESULTS_FILE = "monitoring_results.json"

    def __init__(self, data_dir: Path, default_ai_config: AIConfig | None = None) -> None:
        self.data_dir = Path(data_dir)
        self.default_ai_config = default_ai_config or AIConfig()

    # ------------------------------------------------------------------
    # low level helpers

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _read_text(self, name: str) -> str | None:
        path = self._path(name)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            msg = f"failed to read {path}: {e}"
            raise PersistenceError(msg) from e

    def _write_text(self, name: str, content: str) -> None:
        path = self._path(name)
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.data_dir, prefix=f".{name}.")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            Path(tmp).replace(path)
        except OSError as e:
            msg = f"failed to write {path}: {e}"
            raise PersistenceError(msg) from e

    def _load_model(self, name: str, model: type[ModelT], default: ModelT) -> ModelT:
        raw = self._read_text(name)
        if raw is None:
            return default
        try:
            return model.model_validate_json(raw)
        except ValidationError as e:
            msg = f"{name} is malformed: {e}"
            raise PersistenceError(msg) from e

    def _save_model(self, name: str, value: BaseModel) -> None:
        content = value.model_dump_json(indent=2, context={"reveal_secrets": True})
        self._write_text(name, content)

    # ------------------------------------------------------------------
    # settings

    def load_ai_config(self) -> AIConfig:
        return self._load_model(self.AI_CONFIG_FILE, AIConfig, self.default_ai_config)

    def save_ai_config(self, config: AIConfig) -> None:
        self._save_model(self.AI_CONFIG_FILE, config)

    def load_user_settings(self) -> UserSettings:
        return self._load_model(self.USER_SETTINGS_FILE, UserSettings, UserSettings())

    def save_user_settings(self, settings: UserSettings) -> None:
        self._save_model(self.USER_SETTINGS_FILE, settings)

    def load_monitoring_config(self) -> MonitoringConfig:
        return self._load_model(
            self.MONITORING_CONFIG_FILE, MonitoringConfig, MonitoringConfig()
        )

    def save_monitoring_config(self, config: MonitoringConfig) -> None:
        self._save_model(self.MONITORING_CONFIG_FILE, config)

    def set_monitoring_enabled(self, *, enabled: bool) -> MonitoringConfig:
        """保存済みの監視設定の有効フラグだけを書き換える."""
        config = self.load_monitoring_config().model_copy(update={"enabled": enabled})
        self.save_monitoring_config(config)
        return config

    # ------------------------------------------------------------------
    # tasks

    def load_tasks(self) -> list[Task]:
        raw = self._read_text(self.TASKS_FILE)
        if raw is None:
            return []
        try:
            return _tasks_adapter.validate_json(raw)
        except ValidationError as e:
            msg = f"{self.TASKS_FILE} is malformed: {e}"
            raise PersistenceError(msg) from e

    def _save_tasks(self, tasks: list[Task]) -> None:
        self._write_text(
            self.TASKS_FILE, _tasks_adapter.dump_json(tasks, indent=2).decode()
        )

    def add_task(self, text: str) -> Task:
        task = Task(text=text)
        tasks = self.load_tasks()
        tasks.append(task)
        self._save_tasks(tasks)
        return task

    def update_task_status(self, task_id: str, *, completed: bool) -> Task | None:
        tasks = self.load_tasks()
        updated: Task | None = None
        for i, task in enumerate(tasks):
            if task.id == task_id:
                updated = task.model_copy(
                    update={"completed": completed, "updated_at": utcnow()}
                )
                tasks[i] = updated
        self._save_tasks(tasks)
        return updated

    def delete_task(self, task_id: str) -> bool:
        tasks = self.load_tasks()
        remaining = [t for t in tasks if t.id != task_id]
        self._save_tasks(remaining)
        return len(remaining) != len(tasks)

    # ------------------------------------------------------------------
    # current task binding

    def load_current_task(self) -> CurrentTask | None:
        raw = self._read_text(self.CURRENT_TASK_FILE)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            return CurrentTask(task_id=str(data["task_id"]), text=str(data["text"]))
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            msg = f"{self.CURRENT_TASK_FILE} is malformed: {e}"
            raise PersistenceError(msg) from e

    def save_current_task(self, task: CurrentTask) -> None:
        self._write_text(
            self.CURRENT_TASK_FILE, json.dumps(asdict(task), ensure_ascii=False)
        )

    def clear_current_task(self) -> None:
        path = self._path(self.CURRENT_TASK_FILE)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            msg = f"failed to remove {path}: {e}"
            raise PersistenceError(msg) from e

    # ------------------------------------------------------------------
    # monitoring history

    def load_monitoring_results(self) -> list[dict[str, Any]]:
        raw = self._read_text(self.RESULTS_FILE)
        if raw is None:
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            msg = f"{self.RESULTS_FILE} is malformed: {e}"
            raise PersistenceError(msg) from e
        if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
            msg = f"{self.RESULTS_FILE} must contain a list of objects"
            raise PersistenceError(msg)
        return data

    def save_monitoring_result(self, result: ClassificationResult) -> None:
        """監視結果を追記する（直近30日分のみ保持）."""
        results = self.load_monitoring_results()
        results.append(result.to_dict())

        cutoff = (utcnow() - timedelta(days=RESULT_RETENTION_DAYS)).isoformat()
        results = [r for r in results if str(r.get("timestamp", "")) > cutoff]

        self._write_text(
            self.RESULTS_FILE, json.dumps(results, ensure_ascii=False, indent=2)
        )

    def append_intervention_log(self, entry: dict[str, Any]) -> Path:
        """介入ログを日別の JSONL に追記する."""
        path = self._path(f"intervention_logs_{utcnow():%Y%m%d}.jsonl")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            msg = f"failed to append {path}: {e}"
            raise PersistenceError(msg) from e
        log.debug("intervention log appended to %s", path.name)
        return path
