import asyncio
import json
import re
import time
from typing import Any

import requests

from myfocus.errors import ClassificationError
from myfocus.logger import logger
from myfocus.model.models import (
    AIConfig,
    APITestResult,
    ApiType,
    CheckContext,
    ClassificationResult,
    FocusState,
)

log = logger.getChild("llm")

HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
OCR_PROMPT_LIMIT = 1000

CLAUDE_VERSION = "2023-06-01"
CLAUDE_PING_MODEL = "claude-3-haiku-20240307"

# キーワード照合のフォールバック（重い順に調べる）
KEYWORD_CONFIDENCE: list[tuple[str, FocusState, float]] = [
    ("severely_distracted", FocusState.SEVERELY_DISTRACTED, 0.85),
    ("severely distracted", FocusState.SEVERELY_DISTRACTED, 0.85),
    ("distracted", FocusState.DISTRACTED, 0.75),
    ("focused", FocusState.FOCUSED, 0.70),
]

NEGATION_BEFORE = re.compile(r"\b(?:not|never|no longer|isn't|aren't|wasn't)\s+$")

STATE_ALIASES = {
    "focused": FocusState.FOCUSED,
    "distracted": FocusState.DISTRACTED,
    "severely_distracted": FocusState.SEVERELY_DISTRACTED,
    "severely distracted": FocusState.SEVERELY_DISTRACTED,
}

SYSTEM_PROMPT = """
You are a focus monitoring assistant.
Decide whether the user is currently focused on their task.

Return ONLY a JSON object with these exact keys:
- state: one of "focused", "distracted", "severely_distracted"
- confidence: number between 0.0 and 1.0
- analysis: brief explanation (max 100 chars)
""".strip()


def build_analysis_prompt(context: CheckContext) -> str:
    """チェック用のプロンプトを組み立てる."""
    lines = ["Analyze the user's current focus state and task progress.", ""]

    if context.task_text:
        lines.append(f"Current task: {context.task_text}")
    else:
        lines.append("Current task: no explicit task")
    lines.append("")

    if context.whitelist or context.blacklist:
        lines.append("Application rules:")
        if context.whitelist:
            lines.append(
                "Whitelist (usually helps focus): " + ", ".join(sorted(context.whitelist))
            )
        if context.blacklist:
            lines.append(
                "Blacklist (usually distracting): " + ", ".join(sorted(context.blacklist))
            )
        lines.append("")

    screen = context.ocr_text or "no text content"
    if len(screen) > OCR_PROMPT_LIMIT:
        screen = screen[:OCR_PROMPT_LIMIT] + "..."

    lines += [
        "Current activity:",
        f"- Application: {context.application_name or 'unknown'}",
        f"- Window: {context.window_title or 'untitled'}",
        f"- Screen text: {screen}",
        f"- Time: {context.timestamp:%Y-%m-%d %H:%M:%S}",
        "",
        "Criteria:",
    ]
    if context.task_text:
        lines += [
            "- focused: activity is related to the task or uses tools that help finish it",
            "- distracted: activity is unrelated to the task",
            "- severely_distracted: prolonged activity completely unrelated to the task",
        ]
    else:
        lines += [
            "- focused: whitelisted apps or self-improvement activities",
            "- distracted: blacklisted apps or entertainment",
            "- severely_distracted: prolonged entertainment binge",
        ]
    return "\n".join(lines)


def parse_ai_response(text: str) -> tuple[FocusState, float, str]:
    """AI の応答から (状態, 確信度, 分析) を取り出す.

    JSON を優先し、失敗したらキーワード照合にフォールバックする。
    どちらでも判定できない場合は :class:`ClassificationError`。
    """
    match = re.search(r"\{.*\}", text, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict):
            state = STATE_ALIASES.get(str(data.get("state", "")).strip().lower())
            if state is not None:
                try:
                    confidence = float(data.get("confidence", 0.8))
                except (TypeError, ValueError):
                    confidence = 0.8
                analysis = str(data.get("analysis") or data.get("reason") or "")
                return state, confidence, analysis

    lowered = text.lower()
    for keyword, state, confidence in KEYWORD_CONFIDENCE:
        for match in re.finditer(rf"\b{re.escape(keyword)}\b", lowered):
            # "not distracted" のような否定は数えない
            if NEGATION_BEFORE.search(lowered[: match.start()]):
                continue
            return state, confidence, text.strip()

    msg = f"unrecognized AI response: {text[:80]!r}"
    raise ClassificationError(msg)


class AIService:
    """検出モデルを呼び出すクライアント（OpenAI 互換 / Ollama / Claude）."""

    def __init__(self, config: AIConfig, timeout: float = 30.0) -> None:
        self.config = config
        self.timeout = timeout
        self.base_url = config.api_url.rstrip("/")

    # ------------------------------------------------------------------
    # HTTP helpers

    @property
    def _api_key(self) -> str:
        return self.config.api_key.get_secret_value()

    def _ollama_root(self) -> str:
        return self.base_url.replace("/v1", "")

    def _openai_headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    def _claude_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self._api_key,
            "Content-Type": "application/json",
            "anthropic-version": CLAUDE_VERSION,
        }

    # ------------------------------------------------------------------
    # connectivity

    def check_connection(self) -> APITestResult:
        """API への疎通を同期的に確認する."""
        start = time.monotonic()

        def elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        if not self._api_key:
            return APITestResult(success=False, message="API key must not be empty")

        api_type = self.config.api_type
        try:
            if api_type is ApiType.OLLAMA:
                response = requests.get(
                    f"{self._ollama_root()}/api/tags",
                    headers={"Content-Type": "application/json"},
                    timeout=self.timeout,
                )
            elif api_type is ApiType.CLAUDE:
                response = requests.post(
                    f"{self.base_url}/messages",
                    headers=self._claude_headers(),
                    json={
                        "model": CLAUDE_PING_MODEL,
                        "max_tokens": 10,
                        "messages": [{"role": "user", "content": "Hi"}],
                    },
                    timeout=self.timeout,
                )
            else:
                response = requests.get(
                    f"{self.base_url}/models",
                    headers=self._openai_headers(),
                    timeout=self.timeout,
                )
        except requests.RequestException as e:
            return APITestResult(
                success=False,
                message=f"{api_type.value} connection failed: {e}",
                response_time_ms=elapsed(),
            )

        if not response.ok:
            status: int = response.status_code
            if api_type is ApiType.CLAUDE and status == HTTP_UNAUTHORIZED:
                message = "Claude API authentication failed - check the API key"
            elif api_type is ApiType.CLAUDE and status == HTTP_FORBIDDEN:
                message = "Claude API access denied - check the API key permissions"
            elif api_type is ApiType.OLLAMA:
                message = f"Ollama API error: {status} - make sure Ollama is running"
            else:
                message = f"API returned an error: {status} - {response.text[:200]}"
            return APITestResult(
                success=False, message=message, response_time_ms=elapsed()
            )

        if api_type is ApiType.CLAUDE:
            return APITestResult(
                success=True,
                message="Claude API connected",
                response_time_ms=elapsed(),
                model_used=CLAUDE_PING_MODEL,
            )

        key = "models" if api_type is ApiType.OLLAMA else "data"
        try:
            count = len(response.json().get(key) or [])
        except (ValueError, AttributeError):
            return APITestResult(
                success=True,
                message="Connected, but the model list could not be parsed",
                response_time_ms=elapsed(),
            )
        return APITestResult(
            success=True,
            message=f"Connected. {count} models available",
            response_time_ms=elapsed(),
        )

    async def test_connection(self) -> APITestResult:
        return await asyncio.to_thread(self.check_connection)

    # ------------------------------------------------------------------
    # classification

    def _complete(self, prompt: str, model: str) -> str:
        """検出モデルにプロンプトを送り、応答テキストを返す."""
        api_type = self.config.api_type
        try:
            if api_type is ApiType.OLLAMA:
                response = requests.post(
                    f"{self._ollama_root()}/api/generate",
                    json={
                        "model": model,
                        "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}",
                        "stream": False,
                    },
                    timeout=self.timeout,
                )
            elif api_type is ApiType.CLAUDE:
                response = requests.post(
                    f"{self.base_url}/messages",
                    headers=self._claude_headers(),
                    json={
                        "model": model,
                        "max_tokens": 500,
                        "system": SYSTEM_PROMPT,
                        "messages": [{"role": "user", "content": prompt}],
                    },
                    timeout=self.timeout,
                )
            else:
                response = requests.post(
                    f"{self.base_url}/chat/completions",
                    headers=self._openai_headers(),
                    json={
                        "model": model,
                        "messages": [
                            {"role": "system", "content": SYSTEM_PROMPT},
                            {"role": "user", "content": prompt},
                        ],
                        "max_tokens": 500,
                        "temperature": 0.3,
                    },
                    timeout=self.timeout,
                )
        except requests.exceptions.Timeout as e:
            msg = f"{api_type.value} request timed out"
            raise ClassificationError(msg) from e
        except requests.RequestException as e:
            msg = f"{api_type.value} request failed: {e}"
            raise ClassificationError(msg) from e

        if not response.ok:
            msg = f"{api_type.value} returned {response.status_code}: {response.text[:200]}"
            raise ClassificationError(msg)

        try:
            data: dict[str, Any] = response.json()
            if api_type is ApiType.OLLAMA:
                content = data["response"]
            elif api_type is ApiType.CLAUDE:
                content = data["content"][0]["text"]
            else:
                content = data["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            msg = f"malformed {api_type.value} response: {e}"
            raise ClassificationError(msg) from e

        if not isinstance(content, str):
            msg = f"malformed {api_type.value} response content"
            raise ClassificationError(msg)
        return content.strip()

    def classify_sync(self, context: CheckContext) -> ClassificationResult:
        prompt = build_analysis_prompt(context)
        log.debug("prompt built (%d chars)", len(prompt))

        content = self._complete(prompt, self.config.detection_model)
        state, confidence, analysis = parse_ai_response(content)
        return ClassificationResult(
            state=state,
            confidence=confidence,
            application_name=context.application_name,
            window_title=context.window_title,
            ai_analysis=analysis or content,
        )

    async def classify(self, context: CheckContext) -> ClassificationResult:
        """分類を別スレッドで実行する（イベントループをブロックしない）."""
        return await asyncio.to_thread(self.classify_sync, context)
