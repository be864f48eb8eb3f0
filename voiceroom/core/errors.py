"""
voiceroom.core.errors
~~~~~~~~~~~~~~~~~~~~~

房间业务异常体系。

所有可预期的业务失败都继承自 ``RoomError``，携带稳定的 ``code``，
WebSocket 侧转换为只发给发起方的 ``error`` 事件，REST 侧转换为
``ApiResponse.fail()``。

    RoomError
    ├── ValidationError        载荷格式错误，不触碰房间状态
    ├── AuthorizationError     前置条件 / 权限不满足
    │   └── NotAMember
    ├── ConflictError          可恢复的冲突
    │   ├── AlreadySeated / NoSeatsAvailable / SeatOccupied
    │   ├── RoomFull / DuplicateConnection / InsufficientBalance
    ├── NotFoundError
    │   ├── RoomNotFound / RoomClosed / ConnectionNotFound / GiftNotFound
    └── DependencyError        外部依赖（钱包等）调用失败
"""
from __future__ import annotations


class RoomError(Exception):
    """房间业务异常基类。

    Attributes:
        code: 稳定的机器可读错误码。
        status_code: 对应的 HTTP 状态码（REST 接口使用）。
        message: 人类可读的错误描述。
    """

    code: str = "ROOM_ERROR"
    status_code: int = 400

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationError(RoomError):
    """事件载荷不合法。"""

    code = "VALIDATION_ERROR"
    status_code = 400


class AuthorizationError(RoomError):
    """无权执行该操作。"""

    code = "FORBIDDEN"
    status_code = 403


class NotAMember(AuthorizationError):
    """用户不是该房间成员。"""

    code = "NOT_A_MEMBER"


class ConflictError(RoomError):
    """操作与当前房间状态冲突。"""

    code = "CONFLICT"
    status_code = 409


class AlreadySeated(ConflictError):
    """用户已在麦上，需先下麦。"""

    code = "ALREADY_SEATED"


class NoSeatsAvailable(ConflictError):
    """没有空闲麦位。"""

    code = "NO_SEATS_AVAILABLE"


class SeatOccupied(ConflictError):
    """目标麦位已被占用。"""

    code = "SEAT_OCCUPIED"


class RoomFull(ConflictError):
    """房间成员已满。"""

    code = "ROOM_FULL"


class DuplicateConnection(ConflictError):
    """该用户已有活跃连接。"""

    code = "DUPLICATE_CONNECTION"


class InsufficientBalance(ConflictError):
    """余额不足。"""

    code = "INSUFFICIENT_BALANCE"


class NotFoundError(RoomError):
    """资源不存在。"""

    code = "NOT_FOUND"
    status_code = 404


class RoomNotFound(NotFoundError):
    """房间不存在。"""

    code = "ROOM_NOT_FOUND"


class RoomClosed(NotFoundError):
    """房间已关闭。"""

    code = "ROOM_CLOSED"


class ConnectionNotFound(NotFoundError):
    """连接不存在或已断开。"""

    code = "CONNECTION_NOT_FOUND"


class GiftNotFound(NotFoundError):
    """礼物不存在。"""

    code = "GIFT_NOT_FOUND"


class DependencyError(RoomError):
    """外部依赖调用失败。"""

    code = "DEPENDENCY_ERROR"
    status_code = 502
