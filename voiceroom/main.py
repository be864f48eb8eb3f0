"""
voiceroom.main
~~~~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from voiceroom.api import rooms, ws
from voiceroom.core.config import settings
from voiceroom.core.errors import RoomError
from voiceroom.core.logging import get_logger, setup_logging
from voiceroom.core.rate_limit import limiter
from voiceroom.db import close_mongo, connect_mongo, get_database
from voiceroom.db.event_repository import RoomEventRepository
from voiceroom.schemas.api_response import ApiResponse
from voiceroom.services.room_system import RoomSystem

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    repo: RoomEventRepository | None = None
    if settings.PERSISTENCE_ENABLED:
        await connect_mongo()
        repo = RoomEventRepository(get_database())

    system = RoomSystem(settings, repo=repo)
    app.state.room_system = system
    system.start()
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s | seats=%d | persistence=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
        settings.ROOM_SEAT_COUNT,
        settings.PERSISTENCE_ENABLED,
    )
    yield
    # ── 关闭 ──
    await system.stop()
    if settings.PERSISTENCE_ENABLED:
        await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="语音房实时在线状态与麦位服务",
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
app.include_router(rooms.router, prefix="/api", tags=["Rooms & Presence"])
app.include_router(ws.router, tags=["WebSocket Room"])


# ── 异常处理器 ────────────────────────────────────────────────────────

@app.exception_handler(RoomError)
async def room_error_handler(request: Request, exc: RoomError) -> JSONResponse:
    """业务异常映射为对应 HTTP 状态码，``data.error`` 携带业务错误码。"""
    logger.info("请求被拒绝: %s %s -> %s", request.method, request.url.path, exc.code)
    response = ApiResponse.fail(msg=exc.message, code=exc.status_code, data={"error": exc.code})
    return JSONResponse(status_code=exc.status_code, content=response.model_dump())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。

    Returns:
        包含服务状态与在线连接数的 JSON 响应。
    """
    system: RoomSystem | None = getattr(request.app.state, "room_system", None)
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "online": system.registry.online_count if system else 0,
            "rooms": len(system.store) if system else 0,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voiceroom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
