from unittest.mock import Mock, patch

import pytest
import requests

from myfocus.api.services.llm import (
    CLAUDE_PING_MODEL,
    AIService,
    build_analysis_prompt,
    parse_ai_response,
)
from myfocus.errors import ClassificationError
from myfocus.model.models import AIConfig, ApiType, CheckContext, FocusState


def make_response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    response.text = text
    response.json.return_value = payload if payload is not None else {}
    return response


@pytest.fixture
def context():
    """テスト用のチェックコンテキスト"""
    return CheckContext(
        application_name="chrome.exe",
        window_title="YouTube - Google Chrome",
        ocr_text="おすすめ動画 登録者数",
        task_text="レポートを書く",
        whitelist=frozenset({"Code.exe"}),
        blacklist=frozenset({"YouTube"}),
    )


@pytest.fixture
def openai_service():
    return AIService(
        AIConfig(api_url="http://localhost:1234/v1/", api_key="sk-abc", detection_model="gpt-test")
    )


class TestParseResponse:
    """AI 応答の解析テスト"""

    def test_json_response(self):
        text = '{"state": "distracted", "confidence": 0.72, "analysis": "video site"}'
        assert parse_ai_response(text) == (FocusState.DISTRACTED, 0.72, "video site")

    def test_json_wrapped_in_prose(self):
        text = 'Sure!\n```json\n{"state": "severely_distracted", "confidence": 0.9}\n```'
        state, confidence, _ = parse_ai_response(text)
        assert state is FocusState.SEVERELY_DISTRACTED
        assert confidence == 0.9

    def test_invalid_confidence_defaults(self):
        state, confidence, _ = parse_ai_response('{"state": "focused", "confidence": "high"}')
        assert state is FocusState.FOCUSED
        assert confidence == 0.8

    @pytest.mark.parametrize(
        ("text", "state", "confidence"),
        [
            ("The user is severely_distracted by games", FocusState.SEVERELY_DISTRACTED, 0.85),
            ("User looks distracted", FocusState.DISTRACTED, 0.75),
            ("User is FOCUSED on code", FocusState.FOCUSED, 0.70),
        ],
    )
    def test_keyword_fallback(self, text, state, confidence):
        assert parse_ai_response(text)[:2] == (state, confidence)

    @pytest.mark.parametrize(
        ("text", "state"),
        [
            ("focused, not distracted", FocusState.FOCUSED),
            ("The user is no longer distracted and seems focused", FocusState.FOCUSED),
            ("not focused at all, clearly distracted", FocusState.DISTRACTED),
            ("User is not severely distracted, just distracted", FocusState.DISTRACTED),
        ],
    )
    def test_keyword_fallback_ignores_negations(self, text, state):
        assert parse_ai_response(text)[0] is state

    def test_keyword_must_be_a_whole_word(self):
        with pytest.raises(ClassificationError):
            parse_ai_response("The user seems unfocused")

    def test_unknown_state_in_json_falls_back_to_keywords(self):
        state, _, _ = parse_ai_response('{"state": "sleepy"} but mostly focused')
        assert state is FocusState.FOCUSED

    def test_unrecognized_response(self):
        with pytest.raises(ClassificationError, match="unrecognized"):
            parse_ai_response("I cannot tell.")


class TestPrompt:
    def test_prompt_contains_context(self, context):
        prompt = build_analysis_prompt(context)

        assert "Current task: レポートを書く" in prompt
        assert "Whitelist (usually helps focus): Code.exe" in prompt
        assert "Blacklist (usually distracting): YouTube" in prompt
        assert "chrome.exe" in prompt
        assert "YouTube - Google Chrome" in prompt

    def test_prompt_without_task_or_lists(self):
        prompt = build_analysis_prompt(CheckContext(ocr_text="x" * 1500))

        assert "no explicit task" in prompt
        assert "Application rules" not in prompt
        assert "x" * 1000 + "..." in prompt
        assert "x" * 1001 not in prompt


class TestConnection:
    """接続テスト"""

    def test_openai_models_endpoint(self, openai_service):
        with patch("requests.get") as mock_get:
            mock_get.return_value = make_response(payload={"data": [{}, {}, {}]})

            result = openai_service.check_connection()

        assert result.success is True
        assert "3 models" in result.message
        args, kwargs = mock_get.call_args
        assert args[0] == "http://localhost:1234/v1/models"
        assert kwargs["headers"]["Authorization"] == "Bearer sk-abc"

    def test_ollama_tags_endpoint(self):
        service = AIService(
            AIConfig(api_type=ApiType.OLLAMA, api_url="http://localhost:11434/v1", api_key="x")
        )
        with patch("requests.get") as mock_get:
            mock_get.return_value = make_response(payload={"models": [{}]})

            result = service.check_connection()

        assert result.success is True
        assert mock_get.call_args[0][0] == "http://localhost:11434/api/tags"

    def test_claude_ping_message(self):
        service = AIService(
            AIConfig(api_type=ApiType.CLAUDE, api_url="https://api.anthropic.com/v1", api_key="k")
        )
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(payload={"content": [{"text": "Hi"}]})

            result = service.check_connection()

        assert result.success is True
        assert result.model_used == CLAUDE_PING_MODEL
        kwargs = mock_post.call_args[1]
        assert kwargs["headers"]["anthropic-version"] == "2023-06-01"
        assert kwargs["json"]["max_tokens"] == 10

    def test_claude_unauthorized(self):
        service = AIService(AIConfig(api_type=ApiType.CLAUDE, api_key="bad"))
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(status_code=401)

            result = service.check_connection()

        assert result.success is False
        assert "authentication" in result.message

    def test_empty_key_fails_without_request(self):
        service = AIService(AIConfig(api_key=""))
        with patch("requests.get") as mock_get:
            result = service.check_connection()

        assert result.success is False
        mock_get.assert_not_called()

    def test_connection_error(self, openai_service):
        with patch("requests.get", side_effect=requests.ConnectionError("refused")):
            result = openai_service.check_connection()

        assert result.success is False
        assert "refused" in result.message

    @pytest.mark.asyncio
    async def test_async_wrapper(self, openai_service):
        with patch("requests.get") as mock_get:
            mock_get.return_value = make_response(payload={"data": []})

            result = await openai_service.test_connection()

        assert result.success is True


class TestClassify:
    """分類のテスト"""

    def test_openai_classification(self, openai_service, context):
        content = '{"state": "distracted", "confidence": 0.8, "analysis": "watching videos"}'
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(
                payload={"choices": [{"message": {"content": content}}]}
            )

            result = openai_service.classify_sync(context)

        assert result.state is FocusState.DISTRACTED
        assert result.confidence == 0.8
        assert result.ai_analysis == "watching videos"
        assert result.application_name == "chrome.exe"
        body = mock_post.call_args[1]["json"]
        assert body["model"] == "gpt-test"
        assert body["max_tokens"] == 500
        assert body["temperature"] == 0.3
        assert mock_post.call_args[0][0] == "http://localhost:1234/v1/chat/completions"

    def test_ollama_classification(self, context):
        service = AIService(
            AIConfig(api_type=ApiType.OLLAMA, api_url="http://localhost:11434/v1", api_key="x")
        )
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(payload={"response": "focused"})

            result = service.classify_sync(context)

        assert result.state is FocusState.FOCUSED
        assert mock_post.call_args[1]["json"]["stream"] is False

    def test_claude_classification(self, context):
        service = AIService(AIConfig(api_type=ApiType.CLAUDE, api_key="k"))
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(
                payload={"content": [{"text": '{"state": "focused", "confidence": 0.6}'}]}
            )

            result = service.classify_sync(context)

        assert result.state is FocusState.FOCUSED
        assert result.confidence == 0.6

    def test_timeout(self, openai_service, context):
        with patch("requests.post", side_effect=requests.Timeout()):
            with pytest.raises(ClassificationError, match="timed out"):
                openai_service.classify_sync(context)

    def test_http_error(self, openai_service, context):
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(status_code=500, text="boom")
            with pytest.raises(ClassificationError, match="500"):
                openai_service.classify_sync(context)

    def test_malformed_payload(self, openai_service, context):
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(payload={"unexpected": True})
            with pytest.raises(ClassificationError, match="malformed"):
                openai_service.classify_sync(context)

    @pytest.mark.asyncio
    async def test_async_classify(self, openai_service, context):
        with patch("requests.post") as mock_post:
            mock_post.return_value = make_response(
                payload={"choices": [{"message": {"content": "severely distracted"}}]}
            )

            result = await openai_service.classify(context)

        assert result.state is FocusState.SEVERELY_DISTRACTED
