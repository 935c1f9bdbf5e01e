"""MyFocus の例外階層."""

__all__ = [
    "ApiUnreachableError",
    "ClassificationError",
    "ConfigurationError",
    "ConnectivityError",
    "ListsNotConfiguredError",
    "MissingApiKeyError",
    "MissingDetectionModelError",
    "MonitoringNotActiveError",
    "MyFocusError",
    "PersistenceError",
    "TimerNotActiveError",
]


class MyFocusError(Exception):
    """Base class for every error raised by the monitoring core."""


class ConfigurationError(MyFocusError):
    """監視開始前の設定不備（ユーザーが設定画面で直せるもの）."""

    code = "configuration_error"
    remediation = "設定ページで AI 設定を確認してください"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.remediation)


class MissingApiKeyError(ConfigurationError):
    code = "missing_api_key"
    remediation = "AI API キーが未設定です。設定ページで API キーを入力してください"


class MissingDetectionModelError(ConfigurationError):
    code = "missing_detection_model"
    remediation = "検出モデルが未選択です。設定ページで AI モデルを選択してください"


class ListsNotConfiguredError(ConfigurationError):
    """ホワイトリスト/ブラックリストが空で、ユーザーが続行を選ばなかった."""

    code = "lists_not_configured"
    remediation = (
        "ホワイトリストもブラックリストも未設定です。"
        "設定ページでリストを登録するか、このまま開始することを確認してください"
    )


class ConnectivityError(MyFocusError):
    """AI エンドポイントに到達できない（ユーザーが再試行できる）."""

    code = "connectivity_error"
    remediation = "API キーとネットワーク接続を確認してください"


class ApiUnreachableError(ConnectivityError):
    code = "api_unreachable"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"API 接続に失敗しました: {message}")


class ClassificationError(MyFocusError):
    """1 回のチェックでの分類失敗（ネットワーク/タイムアウト/応答形式）."""


class PersistenceError(MyFocusError):
    """設定・タスクの読み書き失敗."""


class MonitoringNotActiveError(MyFocusError):
    """監視セッションが動いていないのにチェックを要求された."""


class TimerNotActiveError(MyFocusError):
    """タイマーのセッションがないのに一時停止/再開を要求された."""
