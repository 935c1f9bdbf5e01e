"""FastAPI app exposing the MyFocus monitoring, settings and task endpoints."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from myfocus.config import Settings, get_settings
from myfocus.engine.monitor import DEFAULT_PAUSE_MINUTES, MonitorService
from myfocus.errors import (
    ConfigurationError,
    ConnectivityError,
    ListsNotConfiguredError,
    MonitoringNotActiveError,
    PersistenceError,
    TimerNotActiveError,
)
from myfocus.logger import configure_logging, get_log_tail, logger
from myfocus.model.models import (
    MAX_INTERVAL_MINUTES,
    MIN_INTERVAL_MINUTES,
    AIConfig,
    ApiType,
    SessionType,
    UserSettings,
)
from myfocus.storage.storage import StorageService

log = logger.getChild("api")

HTTP_BAD_REQUEST = 400
HTTP_NOT_FOUND = 404
HTTP_CONFLICT = 409
HTTP_INTERNAL_ERROR = 500
HTTP_BAD_GATEWAY = 502


# --- Pydanticモデル定義 ---


class StartRequest(BaseModel):
    """監視開始リクエスト."""

    interval_minutes: int | None = Field(
        default=None, ge=MIN_INTERVAL_MINUTES, le=MAX_INTERVAL_MINUTES
    )
    confirm_empty_lists: bool = False


class PauseRequest(BaseModel):
    minutes: int = Field(default=DEFAULT_PAUSE_MINUTES, gt=0)


class IntervalUpdate(BaseModel):
    interval_minutes: int = Field(ge=MIN_INTERVAL_MINUTES, le=MAX_INTERVAL_MINUTES)


class TaskCreate(BaseModel):
    text: str

    @field_validator("text")
    @classmethod
    def text_must_not_be_empty(cls, v: str) -> str:
        """タスク名が空でないこと."""
        if not v or not v.strip():
            msg = "text must not be empty"
            raise ValueError(msg)
        return v.strip()


class TaskUpdate(BaseModel):
    completed: bool


class CurrentTaskUpdate(BaseModel):
    task_id: str


class TimerStart(BaseModel):
    """タイマー開始リクエスト。長さを省略するとユーザー設定の値."""

    session_type: SessionType = SessionType.FOCUS
    duration_minutes: int | None = Field(default=None, gt=0)


def default_ai_config(settings: Settings) -> AIConfig:
    """環境変数の LLM_* から AI 設定の初期値を作る."""
    values: dict[str, Any] = {}
    if settings.llm_api_type:
        values["api_type"] = ApiType(settings.llm_api_type)
    if settings.llm_url:
        values["api_url"] = settings.llm_url
    if settings.llm_api_key:
        values["api_key"] = settings.llm_api_key
    if settings.llm_model:
        values["detection_model"] = settings.llm_model
    return AIConfig(**values)


def create_service(settings: Settings) -> MonitorService:
    storage = StorageService(
        settings.data_dir, default_ai_config=default_ai_config(settings)
    )
    return MonitorService(
        storage, task_debounce_seconds=settings.task_debounce_ms / 1000
    )


def _service(request: Request) -> MonitorService:
    return request.app.state.service


def create_app(service: MonitorService | None = None) -> FastAPI:
    """アプリを組み立てる。テストでは差し替えた MonitorService を渡す."""

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if service is None:
            settings = get_settings()
            path = configure_logging(settings.log_dir)
            log.info("logging to %s", path)
            app.state.service = create_service(settings)
        else:
            app.state.service = service
        await app.state.service.tasks.restore()
        yield
        await app.state.service.close()

    app = FastAPI(
        title="MyFocus",
        description="AI-assisted focus monitoring API",
        lifespan=lifespan,
    )
    _register_error_handlers(app)
    _register_routes(app)
    return app


def _error_body(exc: Exception, code: str) -> dict[str, Any]:
    return {"ok": False, "error": code, "detail": str(exc)}


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ListsNotConfiguredError)
    async def lists_not_configured(_: Request, exc: ListsNotConfiguredError) -> JSONResponse:
        # ユーザーが確認すれば開始できるので 409
        return JSONResponse(
            status_code=HTTP_CONFLICT,
            content={**_error_body(exc, exc.code), "confirm_required": True},
        )

    @app.exception_handler(ConfigurationError)
    async def configuration_error(_: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(
            status_code=HTTP_BAD_REQUEST, content=_error_body(exc, exc.code)
        )

    @app.exception_handler(ConnectivityError)
    async def connectivity_error(_: Request, exc: ConnectivityError) -> JSONResponse:
        body = _error_body(exc, exc.code)
        body["remediation"] = exc.remediation
        return JSONResponse(status_code=HTTP_BAD_GATEWAY, content=body)

    @app.exception_handler(MonitoringNotActiveError)
    async def not_active(_: Request, exc: MonitoringNotActiveError) -> JSONResponse:
        return JSONResponse(
            status_code=HTTP_CONFLICT, content=_error_body(exc, "monitoring_not_active")
        )

    @app.exception_handler(TimerNotActiveError)
    async def timer_not_active(_: Request, exc: TimerNotActiveError) -> JSONResponse:
        return JSONResponse(
            status_code=HTTP_CONFLICT, content=_error_body(exc, "timer_not_active")
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error(_: Request, exc: PersistenceError) -> JSONResponse:
        log.error("persistence failure: %s", exc)
        return JSONResponse(
            status_code=HTTP_INTERNAL_ERROR, content=_error_body(exc, "persistence_error")
        )


def _register_routes(app: FastAPI) -> None:  # noqa: C901
    # --- 監視 ---

    @app.post("/monitoring/start")
    async def start_monitoring(req: StartRequest, request: Request) -> dict[str, Any]:
        """設定チェックを通して監視を開始する."""
        service = _service(request)
        snapshot = await service.start(
            confirm_empty_lists=req.confirm_empty_lists,
            interval_minutes=req.interval_minutes,
        )
        return {"ok": True, "config": snapshot.model_dump(mode="json")}

    @app.post("/monitoring/stop")
    async def stop_monitoring(request: Request) -> dict[str, Any]:
        await _service(request).stop()
        return {"ok": True}

    @app.post("/monitoring/pause")
    async def pause_monitoring(request: Request, req: PauseRequest | None = None) -> dict[str, Any]:
        resume_at = await _service(request).pause((req or PauseRequest()).minutes)
        return {"ok": True, "resume_at": resume_at.isoformat()}

    @app.post("/monitoring/check")
    async def check_now(request: Request) -> dict[str, Any]:
        """手動チェック。実行中のチェックがあれば何もしない."""
        result = await _service(request).trigger_once()
        return {
            "ok": result is not None,
            "result": result.to_dict() if result else None,
        }

    @app.put("/monitoring/interval")
    async def update_interval(req: IntervalUpdate, request: Request) -> dict[str, Any]:
        config = await _service(request).set_interval(req.interval_minutes)
        return {"ok": True, "interval_minutes": config.interval_minutes}

    @app.get("/status")
    async def get_current_status(request: Request) -> dict[str, Any]:
        """現在のシステム状態を取得する."""
        return _service(request).status()

    @app.get("/api/monitoring_data")
    async def get_monitoring_data(request: Request) -> dict[str, Any]:
        """モニタリング画面に最新データを提供する."""
        service = _service(request)
        delivery = service.delivery
        return {
            "status": service.status(),
            "last_intervention": (
                service.last_intervention.to_dict() if service.last_intervention else None
            ),
            "displayed_intervention": (
                delivery.current.to_dict() if delivery.current else None
            ),
            "intervention_history": [e.to_dict() for e in delivery.history],
            "logs": get_log_tail(),
        }

    # --- 設定 ---

    @app.get("/settings/ai")
    async def get_ai_settings(request: Request) -> dict[str, Any]:
        config = await asyncio.to_thread(_service(request).storage.load_ai_config)
        return config.model_dump(mode="json")

    @app.put("/settings/ai")
    async def update_ai_settings(config: AIConfig, request: Request) -> dict[str, Any]:
        storage = _service(request).storage
        # GET で受け取ったマスク済みのキーがそのまま返ってきたら保存済みのキーを使う
        saved = await asyncio.to_thread(storage.load_ai_config)
        config = config.keep_secret_from(saved)
        await asyncio.to_thread(storage.save_ai_config, config)
        log.info("AI settings saved (%s, key=%s)", config.api_type.value, config.key_preview())
        return {"ok": True, "config": config.model_dump(mode="json")}

    @app.post("/settings/ai/test")
    async def test_ai_settings(
        request: Request, config: AIConfig | None = None
    ) -> dict[str, Any]:
        service = _service(request)
        if config is not None:
            saved = await asyncio.to_thread(service.storage.load_ai_config)
            config = config.keep_secret_from(saved)
        result = await service.test_ai_connection(config)
        return {
            "success": result.success,
            "message": result.message,
            "response_time_ms": result.response_time_ms,
            "model_used": result.model_used,
        }

    @app.get("/settings/user")
    async def get_user_settings(request: Request) -> dict[str, Any]:
        settings = await asyncio.to_thread(_service(request).storage.load_user_settings)
        return settings.model_dump(mode="json")

    @app.put("/settings/user")
    async def update_user_settings(settings: UserSettings, request: Request) -> dict[str, Any]:
        await asyncio.to_thread(_service(request).storage.save_user_settings, settings)
        return {"ok": True, "settings": settings.model_dump(mode="json")}

    # --- タイマー ---

    @app.get("/timer")
    async def get_timer(request: Request) -> dict[str, Any]:
        return _service(request).timer.status()

    @app.post("/timer/start")
    async def start_timer(request: Request, req: TimerStart | None = None) -> dict[str, Any]:
        req = req or TimerStart()
        session = await _service(request).start_timer(req.session_type, req.duration_minutes)
        return {"ok": True, "session": session.to_dict()}

    @app.post("/timer/pause")
    async def pause_timer(request: Request) -> dict[str, Any]:
        session = _service(request).timer.pause()
        return {"ok": True, "session": session.to_dict()}

    @app.post("/timer/resume")
    async def resume_timer(request: Request) -> dict[str, Any]:
        session = _service(request).timer.resume()
        return {"ok": True, "session": session.to_dict()}

    @app.post("/timer/stop")
    async def stop_timer(request: Request) -> dict[str, Any]:
        session = _service(request).timer.stop()
        return {"ok": True, "session": session.to_dict() if session else None}

    # --- タスク ---

    @app.get("/tasks")
    async def list_tasks(request: Request) -> list[dict[str, Any]]:
        tasks = await _service(request).list_tasks()
        return [t.model_dump(mode="json") for t in tasks]

    @app.post("/tasks")
    async def create_task(req: TaskCreate, request: Request) -> dict[str, Any]:
        task = await _service(request).add_task(req.text)
        return task.model_dump(mode="json")

    # /tasks/current は /tasks/{task_id} より先に登録する
    @app.put("/tasks/current")
    async def select_current_task(req: CurrentTaskUpdate, request: Request) -> dict[str, Any]:
        try:
            current = await _service(request).select_task(req.task_id)
        except LookupError as e:
            raise HTTPException(status_code=HTTP_NOT_FOUND, detail=str(e)) from e
        except ValueError as e:
            raise HTTPException(status_code=HTTP_BAD_REQUEST, detail=str(e)) from e
        return {
            "ok": True,
            "current_task": (
                {"task_id": current.task_id, "text": current.text} if current else None
            ),
        }

    @app.delete("/tasks/current")
    async def clear_current_task(request: Request) -> dict[str, Any]:
        cleared = _service(request).clear_task()
        return {"ok": True, "cleared": cleared}

    @app.patch("/tasks/{task_id}")
    async def update_task(task_id: str, req: TaskUpdate, request: Request) -> dict[str, Any]:
        task = await _service(request).set_task_completed(task_id, completed=req.completed)
        if task is None:
            raise HTTPException(status_code=HTTP_NOT_FOUND, detail=f"task {task_id} not found")
        return task.model_dump(mode="json")

    @app.delete("/tasks/{task_id}")
    async def delete_task(task_id: str, request: Request) -> dict[str, Any]:
        if not await _service(request).delete_task(task_id):
            raise HTTPException(status_code=HTTP_NOT_FOUND, detail=f"task {task_id} not found")
        return {"ok": True}


app = create_app()
