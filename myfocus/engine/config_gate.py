"""監視開始前のチェック（AI 認証情報 → リスト設定 → API 疎通）."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Protocol

from myfocus.errors import (
    ApiUnreachableError,
    ListsNotConfiguredError,
    MissingApiKeyError,
    MissingDetectionModelError,
    PersistenceError,
)
from myfocus.logger import logger
from myfocus.model.models import (
    DEFAULT_INTERVAL_MINUTES,
    AIConfig,
    APITestResult,
    MonitoringConfig,
    UserSettings,
)

log = logger.getChild("config_gate")

Confirmation = bool | Callable[[], bool] | Callable[[], Awaitable[bool]]


class SettingsStore(Protocol):
    def load_ai_config(self) -> AIConfig: ...

    def load_user_settings(self) -> UserSettings: ...

    def save_monitoring_config(self, config: MonitoringConfig) -> None: ...


class ConnectivityTester(Protocol):
    async def test_connection(self) -> APITestResult: ...


async def _ask(confirm: Confirmation) -> bool:
    if callable(confirm):
        answer = confirm()
        if inspect.isawaitable(answer):
            answer = await answer
        return bool(answer)
    return bool(confirm)


class ConfigGate:
    """Decides whether a monitoring session may start.

    ``authorize`` runs the checks in a fixed order and raises on the first
    failure, so every failure maps to exactly one remediation message.
    """

    def __init__(
        self,
        store: SettingsStore,
        tester_factory: Callable[[AIConfig], ConnectivityTester],
    ) -> None:
        self._store = store
        self._tester_factory = tester_factory

    async def _load(self) -> tuple[AIConfig, UserSettings]:
        ai_config = await asyncio.to_thread(self._store.load_ai_config)
        try:
            user_settings = await asyncio.to_thread(self._store.load_user_settings)
        except PersistenceError as e:
            log.warning("user settings unavailable, using defaults: %s", e)
            user_settings = UserSettings()
        return ai_config, user_settings

    @staticmethod
    def check_credentials(ai_config: AIConfig) -> None:
        if not ai_config.api_key.get_secret_value().strip():
            raise MissingApiKeyError
        if not ai_config.detection_model.strip():
            raise MissingDetectionModelError

    async def check_connectivity(self, ai_config: AIConfig) -> APITestResult:
        tester = self._tester_factory(ai_config)
        try:
            result = await tester.test_connection()
        except Exception as e:
            log.exception("connectivity test raised")
            raise ApiUnreachableError(str(e)) from e
        if not result.success:
            raise ApiUnreachableError(result.message)
        log.info(
            "API connectivity ok (%s, %d ms)", result.message, result.response_time_ms
        )
        return result

    async def authorize(
        self,
        confirm_empty_lists: Confirmation = False,
        interval_minutes: int = DEFAULT_INTERVAL_MINUTES,
    ) -> MonitoringConfig:
        """全チェックを通過したらセッション用の設定スナップショットを返す.

        Raises:
            MissingApiKeyError / MissingDetectionModelError: 認証情報の不足
            ListsNotConfiguredError: リストが空でユーザーが続行を選ばなかった
            ApiUnreachableError: API に到達できない
            PersistenceError: AI 設定そのものが読めない

        """
        ai_config, user_settings = await self._load()

        # 1. AI 認証情報
        self.check_credentials(ai_config)

        # 2. ホワイトリスト/ブラックリスト（ソフトな失敗）
        whitelist = frozenset(s.strip() for s in user_settings.whitelist if s.strip())
        blacklist = frozenset(s.strip() for s in user_settings.blacklist if s.strip())
        if not whitelist and not blacklist and not await _ask(confirm_empty_lists):
            raise ListsNotConfiguredError

        # 3. API 疎通
        await self.check_connectivity(ai_config)

        snapshot = MonitoringConfig(
            enabled=True,
            interval_minutes=interval_minutes,
            whitelist=whitelist,
            blacklist=blacklist,
            ai_config=ai_config,
        )

        # 有効化の書き込み。失敗しても監視は止めない
        try:
            await asyncio.to_thread(self._store.save_monitoring_config, snapshot)
        except PersistenceError as e:
            log.warning("monitoring config not persisted on activation: %s", e)

        log.info(
            "monitoring authorized: interval=%d min, whitelist=%d, blacklist=%d, "
            "api=%s %s, key=%s",
            snapshot.interval_minutes,
            len(whitelist),
            len(blacklist),
            ai_config.api_type.value,
            ai_config.api_url,
            ai_config.key_preview(),
        )
        return snapshot
