"""
voiceroom.api.ws
~~~~~~~~~~~~~~~~

WebSocket 实时交互接口 —— 语音房事件协议。

客户端连接 ``/ws``，身份由上游网关认证后通过 ``X-User-Id`` 头（或
``user_id`` 查询参数）传入，本服务信任该身份，不再校验 token。

每个连接运行三个协程:
  - ``receive_loop``：接收原始消息，按到达时间限流后放入有界队列
  - ``process_loop``：按接收顺序逐条交给事件路由处理
  - ``send_loop``：从待发送队列取出事件写回客户端

消息格式见 ``voiceroom.schemas.events``。
"""
from __future__ import annotations

import asyncio
import contextlib
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from voiceroom.core.config import settings
from voiceroom.core.errors import DuplicateConnection
from voiceroom.core.logging import get_logger, request_id_ctx_var
from voiceroom.core.rate_limit import WebSocketRateLimiter
from voiceroom.schemas.events import OutboundEvent
from voiceroom.services.room_system import RoomSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()

# 自定义关闭码
WS_CLOSE_UNAUTHORIZED = 4401
WS_CLOSE_DUPLICATE = 4409


@router.websocket("/ws")
async def websocket_room_endpoint(websocket: WebSocket, user_id: str | None = None) -> None:
    """语音房 WebSocket 端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        user_id: 已认证用户 ID（查询参数，优先使用 ``X-User-Id`` 头）。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    try:
        identity = websocket.headers.get("x-user-id") or user_id
        if not identity:
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED)
            logger.warning("拒绝未认证连接")
            return

        system: RoomSystem = websocket.app.state.room_system
        await websocket.accept()
        try:
            connection_id, outbox = system.connect(websocket, identity)
        except DuplicateConnection as e:
            error = OutboundEvent.error(e.code, e.message)
            await websocket.send_text(error.model_dump_json())
            await websocket.close(code=WS_CLOSE_DUPLICATE)
            return
        logger.info("连接建立 | user=%s | conn=%s | 在线: %d", identity, connection_id, system.registry.online_count)

        ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)
        # 隔离接收与处理，保证接收端按到达时间判断限流
        queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=settings.WS_QUEUE_SIZE)
        stopping = False

        async def receive_loop() -> None:
            try:
                while True:
                    raw: str = await websocket.receive_text()
                    if not ws_limiter.is_allowed(connection_id):
                        system.broadcaster.deliver(
                            connection_id,
                            OutboundEvent.error("RATE_LIMITED", "发送过快，请稍后再试"),
                        )
                        continue
                    try:
                        queue.put_nowait(raw)
                    except asyncio.QueueFull:
                        system.broadcaster.deliver(
                            connection_id,
                            OutboundEvent.error("BUSY", "消息处理不过来，请稍后重试"),
                        )
                        logger.warning("WS 入站队列已满，丢弃消息 | conn=%s", connection_id)
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error("WebSocket 接收异常: %s | conn=%s", e, connection_id, exc_info=True)
            finally:
                await queue.put(None)  # 通知处理协程结束

        async def process_loop() -> None:
            while True:
                raw = await queue.get()
                if raw is None:
                    break
                await system.handle(connection_id, raw)

        async def send_loop() -> None:
            while True:
                event = await outbox.get()
                if event is None:
                    break
                await websocket.send_text(event.model_dump_json())
            if not stopping:
                # 被服务端清理（慢消费者等），主动关闭连接
                with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                    await websocket.close(code=1008)

        sender = asyncio.create_task(send_loop())
        try:
            await asyncio.gather(receive_loop(), process_loop())
        finally:
            stopping = True
            await system.disconnect(connection_id)
            ws_limiter.remove_client(connection_id)
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, RuntimeError, WebSocketDisconnect):
                await sender
            logger.info("连接断开 | user=%s | conn=%s | 在线: %d", identity, connection_id, system.registry.online_count)

    finally:
        request_id_ctx_var.reset(token)
