"""
voiceroom.core.rate_limit
~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口与 WebSocket 入站事件的限流配置。
"""
from __future__ import annotations

import time

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address


def _client_key(request: Request) -> str:
    """优先按已认证用户限流，匿名请求按客户端 IP。"""
    user_id = request.headers.get("X-User-Id")
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


# --------- HTTP 接口限流器 ---------
limiter = Limiter(key_func=_client_key, storage_uri="memory://")


# --------- WebSocket 限流器 ---------
class WebSocketRateLimiter:
    """基于内存的 WebSocket 入站事件限流器。

    记录每个连接上一次被放行的时间，两条事件间隔小于 ``interval_seconds``
    时拒绝。
    """

    def __init__(self, interval_seconds: float = 0.1) -> None:
        self.interval_seconds = interval_seconds
        self._last_message_time: dict[str, float] = {}

    def is_allowed(self, client_id: str) -> bool:
        """检查客户端是否允许发送消息。

        Args:
            client_id: 客户端唯一标识（连接 ID）。

        Returns:
            是否允许发送。如果允许，则同时更新上次发送时间。
        """
        now = time.monotonic()
        last_time = self._last_message_time.get(client_id)

        if last_time is None or now - last_time >= self.interval_seconds:
            self._last_message_time[client_id] = now
            return True
        return False

    def remove_client(self, client_id: str) -> None:
        """清理断开连接的客户端记录。"""
        self._last_message_time.pop(client_id, None)
