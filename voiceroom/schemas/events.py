"""
voiceroom.schemas.events
~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 事件协议。

入站（客户端 → 服务端）与出站（服务端 → 客户端）各自是一个封闭的事件集合。
入站事件以 ``event`` 字段作为判别字段解析为强类型请求体，解析失败时
抛出 ``ValidationError``，不会触碰任何房间状态。

入站示例::

    {"event": "seat:request", "ref": "c-17", "preferred_index": 0}

出站示例::

    {"event": "seat:updated", "room_id": "r1", "seq": 12, "data": {...}, "ts": 1718000000.0}
"""
from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from voiceroom.core.errors import ValidationError
from voiceroom.schemas.rooms import Role

RoomId = Annotated[str, Field(min_length=1, max_length=64, pattern=r"^[A-Za-z0-9_\-]+$")]
UserId = Annotated[str, Field(min_length=1, max_length=64)]


class InboundEventType(str, Enum):
    """客户端可发送的事件。"""

    ROOM_JOIN = "room:join"
    ROOM_LEAVE = "room:leave"
    SEAT_REQUEST = "seat:request"
    SEAT_ASSIGN = "seat:assign"
    SEAT_RELEASE = "seat:release"
    SEAT_LOCK = "seat:lock"
    SEAT_UNLOCK = "seat:unlock"
    MUTE_TOGGLE = "voice:mute_toggle"
    SPEAKING_START = "voice:speaking_start"
    SPEAKING_STOP = "voice:speaking_stop"
    VIDEO_TOGGLE = "video:toggle"
    HAND_RAISE = "hand:raise"
    HAND_LOWER = "hand:lower"
    MESSAGE_SEND = "message:send"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    GIFT_SEND = "gift:send"
    ADMIN_MUTE = "admin:mute"
    ADMIN_KICK = "admin:kick"
    ROLE_SET = "admin:role_set"
    ROOM_CLOSE = "admin:room_close"
    HEARTBEAT = "heartbeat"


class OutboundEventType(str, Enum):
    """服务端推送的事件。"""

    AUTHENTICATED = "authenticated"
    HEARTBEAT_ACK = "heartbeat:ack"
    ERROR = "error"
    ROOM_JOINED = "room:joined"
    ROOM_LEFT = "room:left"
    ROOM_USER_JOINED = "room:user_joined"
    ROOM_USER_LEFT = "room:user_left"
    SEAT_UPDATED = "seat:updated"
    PRESENCE_UPDATE = "presence:update"
    MESSAGE_RECEIVED = "message:received"
    TYPING_START = "typing:start"
    TYPING_STOP = "typing:stop"
    GIFT_RECEIVED = "gift:received"
    USER_MUTED = "admin:user_muted"
    USER_KICKED = "admin:user_kicked"
    ROLE_UPDATED = "admin:role_updated"
    ROOM_CLOSED = "admin:room_closed"


# ── 入站事件 ──────────────────────────────────────────────────────────

class _Inbound(BaseModel):
    """入站事件公共字段。``ref`` 由客户端生成，会原样回填到错误事件中。"""

    model_config = ConfigDict(extra="forbid", frozen=True)

    ref: str | None = Field(default=None, max_length=64, description="客户端请求关联 ID")


class JoinRoom(_Inbound):
    event: Literal["room:join"]
    room_id: RoomId


class LeaveRoom(_Inbound):
    event: Literal["room:leave"]


class SeatRequest(_Inbound):
    event: Literal["seat:request"]
    preferred_index: int | None = Field(default=None, ge=0)


class SeatAssign(_Inbound):
    event: Literal["seat:assign"]
    target_user_id: UserId | None = Field(default=None, description="为空表示给自己分配")
    index: int | None = Field(default=None, ge=0)


class SeatRelease(_Inbound):
    event: Literal["seat:release"]


class SeatLock(_Inbound):
    event: Literal["seat:lock"]
    index: int = Field(..., ge=0)


class SeatUnlock(_Inbound):
    event: Literal["seat:unlock"]
    index: int = Field(..., ge=0)


class MuteToggle(_Inbound):
    event: Literal["voice:mute_toggle"]
    muted: bool | None = Field(default=None, description="为空时翻转当前状态")


class SpeakingStart(_Inbound):
    event: Literal["voice:speaking_start"]


class SpeakingStop(_Inbound):
    event: Literal["voice:speaking_stop"]


class VideoToggle(_Inbound):
    event: Literal["video:toggle"]
    video_on: bool | None = Field(default=None, description="为空时翻转当前状态")


class HandRaise(_Inbound):
    event: Literal["hand:raise"]


class HandLower(_Inbound):
    event: Literal["hand:lower"]


class MessageSend(_Inbound):
    event: Literal["message:send"]
    content: str = Field(..., min_length=1, max_length=500)
    type: Literal["text", "emoji", "image"] = "text"


class TypingStart(_Inbound):
    event: Literal["typing:start"]


class TypingStop(_Inbound):
    event: Literal["typing:stop"]


class GiftSend(_Inbound):
    event: Literal["gift:send"]
    gift_id: str = Field(..., min_length=1, max_length=64)
    receiver_id: UserId
    quantity: int = Field(default=1, ge=1, le=999)


class AdminMute(_Inbound):
    event: Literal["admin:mute"]
    target_user_id: UserId
    muted: bool = True


class AdminKick(_Inbound):
    event: Literal["admin:kick"]
    target_user_id: UserId
    reason: str | None = Field(default=None, max_length=200)


class RoleSet(_Inbound):
    event: Literal["admin:role_set"]
    target_user_id: UserId
    role: Role


class RoomClose(_Inbound):
    event: Literal["admin:room_close"]


class Heartbeat(_Inbound):
    event: Literal["heartbeat"]


InboundEvent = Annotated[
    Union[
        JoinRoom, LeaveRoom,
        SeatRequest, SeatAssign, SeatRelease, SeatLock, SeatUnlock,
        MuteToggle, SpeakingStart, SpeakingStop, VideoToggle,
        HandRaise, HandLower,
        MessageSend, TypingStart, TypingStop,
        GiftSend,
        AdminMute, AdminKick, RoleSet, RoomClose,
        Heartbeat,
    ],
    Field(discriminator="event"),
]

_inbound_adapter: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


def _describe(exc: PydanticValidationError) -> str:
    """把 pydantic 的错误列表压缩成一行。"""
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "payload"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_inbound(raw: str | bytes | dict[str, Any]) -> InboundEvent:
    """解析并校验一条入站事件。

    Args:
        raw: WebSocket 收到的原始文本，或已解码的字典。

    Returns:
        对应的强类型事件对象。

    Raises:
        ValidationError: JSON 非法、事件名未知或字段不合法。
    """
    try:
        if isinstance(raw, (str, bytes)):
            return _inbound_adapter.validate_json(raw)
        return _inbound_adapter.validate_python(raw)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e)) from e


# ── 出站事件 ──────────────────────────────────────────────────────────

class OutboundEvent(BaseModel):
    """服务端推送事件。

    Attributes:
        event: 事件类型。
        room_id: 所属房间，连接级事件为空。
        seq: 房间内全序序号，由 ``RoomSessionStore`` 在持锁时分配。
        data: 事件数据。
        ts: 服务端生成时间（Unix 秒）。
    """

    event: OutboundEventType
    room_id: str | None = None
    seq: int | None = None
    data: dict[str, Any] = Field(default_factory=dict)
    ts: float = Field(default_factory=time.time)

    @classmethod
    def error(cls, code: str, message: str, ref: str | None = None) -> OutboundEvent:
        """构造只发给发起方的错误事件。"""
        return cls(
            event=OutboundEventType.ERROR,
            data={"code": code, "message": message, "ref": ref},
        )
