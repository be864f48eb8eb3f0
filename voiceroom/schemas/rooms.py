"""
voiceroom.schemas.rooms
~~~~~~~~~~~~~~~~~~~~~~~

房间状态相关的 Pydantic 响应模型（快照 / 摘要 / 贡献榜）。
"""
from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    """房间内角色，权限从高到低：owner > admin > moderator > member。"""

    OWNER = "owner"
    ADMIN = "admin"
    MODERATOR = "moderator"
    MEMBER = "member"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]


_ROLE_RANK: dict[Role, int] = {
    Role.OWNER: 3,
    Role.ADMIN: 2,
    Role.MODERATOR: 1,
    Role.MEMBER: 0,
}


class SeatData(BaseModel):
    """单个麦位的对外视图。"""

    index: int = Field(..., description="麦位序号，从 0 开始")
    occupant_id: str | None = Field(default=None, description="在麦用户 ID")
    muted: bool = Field(default=False, description="是否静音")
    speaking: bool = Field(default=False, description="是否正在说话")
    video_on: bool = Field(default=False, description="是否开启视频")
    hand_raised: bool = Field(default=False, description="在麦用户是否举手")
    locked: bool = Field(default=False, description="麦位是否被锁定")


class MemberData(BaseModel):
    """房间成员视图。"""

    user_id: str = Field(..., description="用户 ID")
    role: Role = Field(..., description="房间内角色")
    seat_index: int | None = Field(default=None, description="所在麦位，未上麦为空")
    hand_raised: bool = Field(default=False, description="是否举手")


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    owner_id: str | None = Field(default=None, description="房主用户 ID")
    member_count: int = Field(..., description="当前成员数")
    seated_count: int = Field(..., description="当前在麦人数")
    seat_count: int = Field(..., description="麦位总数")
    closed: bool = Field(default=False, description="房间是否已关闭")


class RoomSnapshotData(RoomInfoData):
    """房间完整快照（加入房间时下发给新成员）。"""

    seq: int = Field(..., description="快照对应的房间事件序号")
    seats: list[SeatData] = Field(..., description="麦位列表")
    members: list[MemberData] = Field(..., description="成员列表")


class ContributionData(BaseModel):
    """房间内单个用户的礼物贡献。"""

    user_id: str = Field(..., description="送礼用户 ID")
    coins_spent: int = Field(..., description="本场累计消耗金币")


class PresenceData(BaseModel):
    """用户在线状态。"""

    user_id: str = Field(..., description="用户 ID")
    online: bool = Field(..., description="是否在线")
    room_id: str | None = Field(default=None, description="所在房间")
    connections: int = Field(default=0, description="活跃连接数")
