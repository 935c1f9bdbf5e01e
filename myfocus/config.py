"""Runtime settings read from the environment (and ``.env.local``)."""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

REPO_ROOT = Path(__file__).resolve().parent.parent

DEFAULT_PORT = 5577
DEFAULT_TASK_DEBOUNCE_MS = 300


def load_local_env() -> None:
    """リポジトリ直下の .env.local を読み込む（既存の環境変数より優先）."""
    load_dotenv(dotenv_path=REPO_ROOT / ".env.local", override=True)


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise RuntimeError(msg) from None


@dataclass(frozen=True)
class Settings:
    """Process-wide settings for the MyFocus service."""

    data_dir: Path
    log_dir: Path
    host: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    task_debounce_ms: int = DEFAULT_TASK_DEBOUNCE_MS

    # AI defaults used only while nothing has been saved from the settings page
    llm_api_type: str | None = None
    llm_url: str | None = None
    llm_api_key: str | None = None
    llm_model: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から設定を組み立てる.

        - MYFOCUS_DATA_DIR: 永続化ディレクトリ（既定: data）
        - MYFOCUS_LOG_DIR: ログディレクトリ（既定: log）
        - MYFOCUS_HOST / MYFOCUS_PORT: API の待ち受け先
        - MYFOCUS_TASK_DEBOUNCE_MS: タスク選択のデバウンス時間
        - LLM_API_TYPE / LLM_URL / LLM_API_KEY / LLM_MODEL: AI 設定の初期値
        """
        return cls(
            data_dir=Path(os.getenv("MYFOCUS_DATA_DIR") or REPO_ROOT / "data"),
            log_dir=Path(os.getenv("MYFOCUS_LOG_DIR") or REPO_ROOT / "log"),
            host=os.getenv("MYFOCUS_HOST") or "127.0.0.1",
            port=_int_env("MYFOCUS_PORT", DEFAULT_PORT),
            task_debounce_ms=_int_env(
                "MYFOCUS_TASK_DEBOUNCE_MS", DEFAULT_TASK_DEBOUNCE_MS
            ),
            llm_api_type=os.getenv("LLM_API_TYPE"),
            llm_url=os.getenv("LLM_URL"),
            llm_api_key=os.getenv("LLM_API_KEY"),
            llm_model=os.getenv("LLM_MODEL"),
        )


def get_settings() -> Settings:
    load_local_env()
    return Settings.from_env()
