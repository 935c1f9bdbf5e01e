import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from myfocus.model.models import (
    AIConfig,
    APITestResult,
    ClassificationResult,
    FocusState,
    UserSettings,
)
from myfocus.storage.storage import StorageService


class FakeClassifier:
    """結果を順番に返す分類器。gate を設定すると解放されるまで待つ."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = 0
        self.contexts = []
        self.gate: asyncio.Event | None = None

    async def classify(self, context):
        self.calls += 1
        self.contexts.append(context)
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else FocusState.FOCUSED
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FocusState):
            return ClassificationResult(
                state=outcome,
                confidence=0.9,
                application_name=context.application_name,
                window_title=context.window_title,
                ai_analysis=f"fake: {outcome.value}",
            )
        return outcome


class FakeTester:
    def __init__(self, result=None, error=None):
        self.result = result or APITestResult(success=True, message="ok", response_time_ms=3)
        self.error = error
        self.calls = 0

    async def test_connection(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.result


class RecordingDelivery:
    """NotificationDelivery の代わりに届いたイベントを記録する."""

    def __init__(self):
        self.delivered = []
        self.current = None
        self.history = []
        self.os_notifications = True
        self.sound = True

    def deliver(self, event):
        self.delivered.append(event)
        self.current = event
        self.history.append(event)


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


async def block_forever(_seconds):
    """タイマーの 2 回目以降のチェックを起こさない sleep."""
    await asyncio.Event().wait()


async def settle(rounds=20):
    """イベントループを数回まわして保留中のタスクを進める."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate, timeout=2.0):
    """スレッドに逃がした処理も含めて条件が満たされるまで待つ."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = "condition not met in time"
            raise AssertionError(msg)
        await asyncio.sleep(0.01)


@pytest.fixture
def fake_classifier_cls():
    return FakeClassifier


@pytest.fixture
def fake_tester_cls():
    return FakeTester


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settle_loop():
    return settle


@pytest.fixture
def blocking_sleep():
    return block_forever


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def ai_config():
    """テスト用の AI 設定（API キーとモデルあり）"""
    return AIConfig(
        api_url="http://localhost:1234/v1",
        api_key="sk-test-key-123456",
        detection_model="gpt-test",
    )


@pytest.fixture
def storage(tmp_path):
    return StorageService(tmp_path / "data")


@pytest.fixture
def configured_storage(tmp_path, ai_config):
    """AI 設定とホワイトリスト/ブラックリストが保存済みのストレージ"""
    storage = StorageService(tmp_path / "configured")
    storage.save_ai_config(ai_config)
    storage.save_user_settings(
        UserSettings(whitelist=["Code.exe"], blacklist=["YouTube"])
    )
    return storage


@pytest.fixture
def active_app():
    return lambda: {"application_name": "Code.exe", "window_title": "main.py - VSCode"}
