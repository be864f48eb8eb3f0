"""
voiceroom.api.rooms
~~~~~~~~~~~~~~~~~~~

语音房 REST 接口 —— 房间查询、贡献榜、关闭房间、在线状态、聊天回看。

端点:
  - ``GET  /rooms``                        → 获取房间列表
  - ``GET  /rooms/{room_id}``              → 获取房间完整快照
  - ``GET  /rooms/{room_id}/contributions`` → 本场礼物贡献榜
  - ``GET  /rooms/{room_id}/messages``     → 聊天记录（需开启持久化）
  - ``POST /rooms/{room_id}/close``        → 关闭房间（房主 / 管理员）
  - ``GET  /users/{user_id}/presence``     → 用户在线状态
"""
from fastapi import APIRouter, Depends, Query, Request

from voiceroom.api.deps import get_actor_id, get_room_system
from voiceroom.core.errors import NotFoundError
from voiceroom.core.rate_limit import limiter
from voiceroom.schemas.api_response import ApiResponse
from voiceroom.schemas.rooms import (
    ContributionData,
    PresenceData,
    RoomInfoData,
    RoomSnapshotData,
)
from voiceroom.services.room_system import RoomSystem

router: APIRouter = APIRouter()


# ── 房间查询 ──────────────────────────────────────────────────────────

@router.get("/rooms", summary="获取房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, system: RoomSystem = Depends(get_room_system)):
    """返回当前内存中的所有房间摘要。"""
    return ApiResponse.ok(data=system.list_rooms())


@router.get("/rooms/{room_id}", summary="获取房间快照", response_model=ApiResponse[RoomSnapshotData])
@limiter.limit("10/second")
async def room_snapshot(request: Request, room_id: str, system: RoomSystem = Depends(get_room_system)):
    """返回房间的麦位与成员快照。房间不存在时返回 404。"""
    return ApiResponse.ok(data=system.room_snapshot(room_id))


@router.get(
    "/rooms/{room_id}/contributions",
    summary="获取礼物贡献榜",
    response_model=ApiResponse[list[ContributionData]],
)
@limiter.limit("5/second")
async def room_contributions(request: Request, room_id: str, system: RoomSystem = Depends(get_room_system)):
    """按本场累计消耗金币降序返回送礼用户。"""
    return ApiResponse.ok(data=system.contributions(room_id))


@router.get("/rooms/{room_id}/messages", summary="获取聊天记录")
@limiter.limit("5/second")
async def room_messages(
    request: Request,
    room_id: str,
    skip: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(100, ge=1, le=500, description="每页最大条数"),
    system: RoomSystem = Depends(get_room_system),
):
    """获取已持久化的房间聊天记录（分页，按时间正序）。

    Args:
        request: FastAPI Request 对象（用于限流判断）。
        room_id: 房间唯一标识。
        skip: 跳过条数（分页偏移）。
        limit: 每页最大条数（1-500）。
    """
    if system.sink is None:
        raise NotFoundError("未开启聊天记录持久化")
    repo = system.sink.repo
    messages = await repo.get_messages(room_id, skip=skip, limit=limit)
    total = await repo.count_messages(room_id)

    # 将 datetime 转为 ISO 字符串
    items = [
        {**msg, "created_at": msg["created_at"].isoformat()}
        for msg in messages
    ]
    return ApiResponse.ok(data={"room_id": room_id, "messages": items, "total": total})


# ── 房间管理 ──────────────────────────────────────────────────────────

@router.post("/rooms/{room_id}/close", summary="关闭房间", response_model=ApiResponse[None])
@limiter.limit("1/second")
async def close_room(
    request: Request,
    room_id: str,
    actor_id: str = Depends(get_actor_id),
    system: RoomSystem = Depends(get_room_system),
):
    """关闭房间并清退全部成员。调用方（``X-User-Id``）须为房主或管理员。"""
    await system.close_room(room_id, actor_id=actor_id)
    return ApiResponse.ok(data=None, msg="房间已关闭")


# ── 在线状态 ──────────────────────────────────────────────────────────

@router.get("/users/{user_id}/presence", summary="获取用户在线状态", response_model=ApiResponse[PresenceData])
@limiter.limit("10/second")
async def user_presence(request: Request, user_id: str, system: RoomSystem = Depends(get_room_system)):
    return ApiResponse.ok(data=system.presence(user_id))
