"""Entities shared by the monitoring core, the API and the storage layer."""

__all__ = [
    "AIConfig",
    "APITestResult",
    "ApiType",
    "CheckContext",
    "ClassificationResult",
    "CurrentTask",
    "FocusSession",
    "FocusState",
    "InterventionCooldown",
    "InterventionEvent",
    "InterventionKind",
    "InterventionSettings",
    "MonitoringConfig",
    "SessionStatus",
    "SessionType",
    "Task",
    "UserSettings",
]

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    FieldSerializationInfo,
    SecretStr,
    field_serializer,
)

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 10
DEFAULT_INTERVAL_MINUTES = 3
DEFAULT_COOLDOWN_MINUTES = 5
DEFAULT_POPUP_SECONDS = 10
MASKED_SECRET = "**********"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- 列挙型 ---


class FocusState(str, Enum):
    """集中状態。IDLE は初期状態かつ停止/エラー時の状態."""

    IDLE = "idle"
    FOCUSED = "focused"
    DISTRACTED = "distracted"
    SEVERELY_DISTRACTED = "severely_distracted"


class ApiType(str, Enum):
    """AI API の種類（設定ファイル上はラベル文字列で保存される）."""

    OPENAI_COMPATIBLE = "OpenAI Compatible"
    OLLAMA = "Ollama"
    CLAUDE = "Claude"

    @classmethod
    def _missing_(cls, value: object) -> "ApiType | None":
        # 旧設定ファイルのラベル（"Ollama (本地)", "Claude API" など）も受け付ける
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered.startswith("ollama"):
                return cls.OLLAMA
            if lowered.startswith("claude"):
                return cls.CLAUDE
            if lowered.startswith("openai"):
                return cls.OPENAI_COMPATIBLE
        return None


class InterventionKind(str, Enum):
    LIGHT_DISTRACTION = "light_distraction"
    SEVERE_DISTRACTION = "severe_distraction"
    ENCOURAGEMENT = "encouragement"


class SessionType(str, Enum):
    """タイマーのセッション種別（ポモドーロ）."""

    FOCUS = "focus"
    SHORT_BREAK = "short_break"
    LONG_BREAK = "long_break"


class SessionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# --- 永続化される設定 ---


class AIConfig(BaseModel):
    """AI 接続設定."""

    model_config = ConfigDict(frozen=True)

    api_type: ApiType = ApiType.OPENAI_COMPATIBLE
    api_url: str = "https://api.openai.com/v1"
    api_key: SecretStr = SecretStr("")
    detection_model: str = "gpt-3.5-turbo"
    report_model: str = "gpt-4-turbo-preview"

    @field_serializer("api_key", when_used="json")
    def _dump_api_key(self, value: SecretStr, info: FieldSerializationInfo) -> str:
        # 保存時だけ平文で書き出す（API レスポンスではマスクされる）
        if info.context and info.context.get("reveal_secrets"):
            return value.get_secret_value()
        return MASKED_SECRET if value.get_secret_value() else ""

    def keep_secret_from(self, saved: "AIConfig") -> "AIConfig":
        """マスク表示のまま送り返されたキーは保存済みのキーに戻す."""
        if self.api_key.get_secret_value() != MASKED_SECRET:
            return self
        return self.model_copy(update={"api_key": saved.api_key})

    def key_preview(self) -> str:
        """ログ表示用の API キー（先頭8文字のみ）."""
        key = self.api_key.get_secret_value()
        if len(key) > 8:  # noqa: PLR2004
            return f"{key[:8]}***"
        return "short-key***" if key else "(empty)"


class MonitoringConfig(BaseModel):
    """監視セッションの設定。有効化後はセッション中ずっと読み取り専用."""

    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    interval_minutes: int = Field(
        default=DEFAULT_INTERVAL_MINUTES,
        ge=MIN_INTERVAL_MINUTES,
        le=MAX_INTERVAL_MINUTES,
    )
    whitelist: frozenset[str] = frozenset()
    blacklist: frozenset[str] = frozenset()
    ai_config: AIConfig = Field(default_factory=AIConfig)

    @field_serializer("whitelist", "blacklist")
    def _dump_list(self, value: frozenset[str]) -> list[str]:
        return sorted(value)


class InterventionSettings(BaseModel):
    """分心介入の設定."""

    enabled: bool = True
    light_distraction_notification: bool = True
    severe_distraction_popup: bool = True
    encouragement_enabled: bool = True
    intervention_cooldown_minutes: int = Field(default=DEFAULT_COOLDOWN_MINUTES, ge=0)
    notification_sound: bool = True
    popup_duration_seconds: int = Field(default=DEFAULT_POPUP_SECONDS, ge=0)
    encouragement_frequency: Literal["low", "medium", "high"] = "medium"


class UserSettings(BaseModel):
    """ユーザー設定（ホワイトリスト/ブラックリストと介入設定を含む）."""

    default_focus_duration: int = 25
    short_break_duration: int = 5
    long_break_duration: int = 15
    notification_enabled: bool = True
    sound_enabled: bool = True
    whitelist: list[str] = Field(default_factory=list)
    blacklist: list[str] = Field(default_factory=list)
    distraction_intervention: InterventionSettings = Field(
        default_factory=InterventionSettings
    )

    def duration_for(self, session_type: SessionType) -> int:
        """セッション種別ごとの既定の長さ（分）."""
        if session_type is SessionType.SHORT_BREAK:
            return self.short_break_duration
        if session_type is SessionType.LONG_BREAK:
            return self.long_break_duration
        return self.default_focus_duration


class Task(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    text: str
    completed: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


# --- セッション中だけ存在する値 ---


@dataclass(frozen=True)
class CurrentTask:
    """現在バインドされているタスク."""

    task_id: str
    text: str


@dataclass
class CheckContext:
    """1 回のチェックで分類器に渡すコンテキスト."""

    application_name: str | None = None
    window_title: str | None = None
    ocr_text: str | None = None
    task_text: str | None = None
    whitelist: frozenset[str] = frozenset()
    blacklist: frozenset[str] = frozenset()
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class ClassificationResult:
    """Classifier output for one check cycle."""

    state: FocusState
    confidence: float = 0.5
    application_name: str | None = None
    window_title: str | None = None
    ai_analysis: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.confidence = min(1.0, max(0.0, float(self.confidence)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "confidence": self.confidence,
            "application_name": self.application_name,
            "window_title": self.window_title,
            "ai_analysis": self.ai_analysis,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class InterventionEvent:
    """A single intervention, consumed once by the notification delivery."""

    kind: InterventionKind
    message: str
    urgent: bool = False
    duration_seconds: int = DEFAULT_POPUP_SECONDS
    sound_enabled: bool = True
    title: str = "MyFocus"
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "title": self.title,
            "message": self.message,
            "urgent": self.urgent,
            "duration_seconds": self.duration_seconds,
            "sound_enabled": self.sound_enabled,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class InterventionCooldown:
    """警告介入のクールダウン（セッションごとに1つ、軽度/重度で共有）."""

    last_fired_at: datetime | None = None
    cooldown_minutes: int = DEFAULT_COOLDOWN_MINUTES

    def active(self, now: datetime) -> bool:
        if self.last_fired_at is None:
            return False
        return now - self.last_fired_at < timedelta(minutes=self.cooldown_minutes)


@dataclass
class APITestResult:
    success: bool
    message: str
    response_time_ms: int = 0
    model_used: str | None = None


@dataclass
class FocusSession:
    """タイマーの 1 セッション。経過時間は一時停止中を含まない."""

    session_type: SessionType
    duration_minutes: int
    task_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.ACTIVE
    elapsed_seconds: int = 0
    interruptions: int = 0
    started_at: datetime = field(default_factory=utcnow)
    paused_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> int:
        return self.duration_minutes * 60

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_type": self.session_type.value,
            "status": self.status.value,
            "duration_minutes": self.duration_minutes,
            "elapsed_seconds": self.elapsed_seconds,
            "task_id": self.task_id,
            "interruptions": self.interruptions,
            "started_at": self.started_at.isoformat(),
            "paused_at": self.paused_at.isoformat() if self.paused_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
