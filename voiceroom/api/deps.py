from fastapi import Header, Request

from voiceroom.core.errors import AuthorizationError
from voiceroom.services.room_system import RoomSystem


def get_room_system(request: Request) -> RoomSystem:
    return request.app.state.room_system


def get_actor_id(x_user_id: str | None = Header(default=None)) -> str:
    # 身份由上游网关认证后写入 X-User-Id，这里不再校验 token
    if not x_user_id:
        raise AuthorizationError("缺少 X-User-Id")
    return x_user_id
