"""
voiceroom.schemas
~~~~~~~~~~~~~~~~~
Pydantic schemas：REST 应答体、房间快照、WebSocket 事件协议。
"""
from voiceroom.schemas.api_response import ApiResponse
from voiceroom.schemas.events import (
    InboundEventType,
    OutboundEvent,
    OutboundEventType,
    parse_inbound,
)
from voiceroom.schemas.rooms import (
    ContributionData,
    MemberData,
    PresenceData,
    Role,
    RoomInfoData,
    RoomSnapshotData,
    SeatData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
