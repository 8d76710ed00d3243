"""
live_relay.main
~~~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from live_relay.api import endpoints, live_ws
from live_relay.core.logging import get_logger, setup_logging
from live_relay.core.rate_limit import limiter
from live_relay.core.settings import settings
from live_relay.schemas.api_response import ApiResponse
from live_relay.services.client_hub import ClientHub
from live_relay.services.recording import RecordingPipeline
from live_relay.services.session_manager import SessionManager
from live_relay.sources.tiktok import create_tiktok_source

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    hub = ClientHub(queue_size=settings.CLIENT_QUEUE_SIZE)
    app.state.client_hub = hub
    app.state.session_manager = SessionManager(create_tiktok_source, hub)
    app.state.recording_pipeline = RecordingPipeline(hub)

    recovery: asyncio.Task | None = None
    if settings.RECOVER_ORPHANS_ON_STARTUP:
        # 后台修复，不阻塞启动
        recovery = asyncio.create_task(app.state.recording_pipeline.recover_orphans())

    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s | recordings=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
        settings.recordings_path,
    )
    yield
    # ── 关闭 ──
    await app.state.session_manager.close_all()
    await app.state.recording_pipeline.close()
    if recovery is not None and not recovery.done():
        await recovery
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="直播事件中继与录制服务",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(endpoints.router, prefix="/api", tags=["Sessions & Recordings"])
app.include_router(live_ws.router, tags=["WebSocket Live"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。"""
    hub: ClientHub = request.app.state.client_hub
    pipeline: RecordingPipeline = request.app.state.recording_pipeline
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "clients": hub.online_count,
            "sessions": len(request.app.state.session_manager.list_sessions()),
            "recordings_dir": str(pipeline.recordings_dir),
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "live_relay.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
