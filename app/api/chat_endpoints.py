"""
app.api.chat_endpoints
~~~~~~~~~~~~~~~~~~~~~~

聊天室 REST 接口 —— 房间管理 + 历史消息 + 消息保存/删除。

路由前缀 ``/api/chat``，所有端点都需要 Bearer 令牌。

端点:
  - ``GET    /rooms``                         → 房间列表（含消息数、在线人数）
  - ``POST   /rooms``                         → 创建房间
  - ``GET    /rooms/{room_id}``               → 房间详情
  - ``GET    /rooms/{room_id}/messages``      → 历史消息（分页）
  - ``POST   /rooms/{room_id}/messages``      → 保存一条消息
  - ``DELETE /messages/{message_id}``         → 删除自己的消息
"""

import math
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.api.deps import (
    get_chat_system,
    get_current_user,
    get_message_repository,
    get_room_repository,
    get_user_repository,
)
from app.core.rate_limit import limiter
from app.core.security import UserIdentity
from app.core.settings import settings
from app.db.message_repository import MessageRepository
from app.db.room_repository import ChatRoom, RoomRepository
from app.db.user_repository import UserRepository
from app.schemas.api_response import ApiResponse
from app.schemas.chat_rooms import (
    MessageCreateRequest,
    MessagePageData,
    PaginationData,
    RoomCreateRequest,
    RoomInfoData,
    StoredMessageData,
)
from app.services.chat_system import ChatSystem

router: APIRouter = APIRouter()

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _room_info(room: ChatRoom, system: ChatSystem, **stats) -> RoomInfoData:
    return RoomInfoData(
        id=room["id"],
        name=room["name"],
        created_by=room.get("created_by"),
        created_at=room["created_at"],
        online_count=system.membership.online_count(str(room["id"])),
        **stats,
    )


async def _require_room(rooms: RoomRepository, room_id: int) -> ChatRoom:
    room = await rooms.get_room(room_id)
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Chat room not found")
    return room


def _sort_key(info: RoomInfoData) -> datetime:
    last = info.last_message_time or _EPOCH
    # MongoDB 读出的 datetime 默认不带时区
    return last if last.tzinfo else last.replace(tzinfo=timezone.utc)


# ── 房间管理端点 ──────────────────────────────────────────────────────

@router.get("/rooms", summary="获取聊天室列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("30/second")
async def list_rooms(
    request: Request,
    user: UserIdentity = Depends(get_current_user),
    rooms: RoomRepository = Depends(get_room_repository),
    messages: MessageRepository = Depends(get_message_repository),
    users: UserRepository = Depends(get_user_repository),
    system: ChatSystem = Depends(get_chat_system),
):
    """返回所有聊天室，最近有消息的排在前面，没有消息的排在最后。"""
    all_rooms = await rooms.list_rooms()
    stats = await messages.room_stats([str(room["id"]) for room in all_rooms])
    names = await users.get_usernames(
        [room["created_by"] for room in all_rooms if room.get("created_by") is not None],
    )
    infos = [
        _room_info(
            room, system,
            created_by_name=names.get(room.get("created_by")),
            **stats.get(str(room["id"]), {}),
        )
        for room in all_rooms
    ]
    infos.sort(key=_sort_key, reverse=True)
    return ApiResponse.ok(data=infos)


@router.post(
    "/rooms",
    summary="创建聊天室",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[RoomInfoData],
)
@limiter.limit("5/second")
async def create_room(
    request: Request,
    room_request: RoomCreateRequest,
    user: UserIdentity = Depends(get_current_user),
    rooms: RoomRepository = Depends(get_room_repository),
    system: ChatSystem = Depends(get_chat_system),
):
    room = await rooms.create_room(room_request.name, created_by=user.user_id)
    return ApiResponse.created(
        data=_room_info(room, system, created_by_name=user.username), msg="room created",
    )


@router.get("/rooms/{room_id}", summary="获取聊天室详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("10/second")
async def room_detail(
    request: Request,
    room_id: int,
    user: UserIdentity = Depends(get_current_user),
    rooms: RoomRepository = Depends(get_room_repository),
    messages: MessageRepository = Depends(get_message_repository),
    users: UserRepository = Depends(get_user_repository),
    system: ChatSystem = Depends(get_chat_system),
):
    """返回房间详情、创建者用户名与当前在线连接数。

    Args:
        room_id: 房间 ID。
    """
    room = await _require_room(rooms, room_id)
    stats = await messages.room_stats([str(room_id)])
    creator = room.get("created_by")
    created_by_name = await users.get_username(creator) if creator is not None else None
    return ApiResponse.ok(data=_room_info(
        room, system, created_by_name=created_by_name, **stats.get(str(room_id), {}),
    ))


# ── 消息端点 ──────────────────────────────────────────────────────────

@router.get(
    "/rooms/{room_id}/messages",
    summary="获取历史消息",
    response_model=ApiResponse[MessagePageData],
)
@limiter.limit("10/second")
async def list_messages(
    request: Request,
    room_id: int,
    page: int = Query(1, ge=1, description="页码，第 1 页为最新消息"),
    limit: int = Query(settings.CHAT_PAGE_SIZE, ge=1, le=200, description="每页最大条数"),
    user: UserIdentity = Depends(get_current_user),
    rooms: RoomRepository = Depends(get_room_repository),
    messages: MessageRepository = Depends(get_message_repository),
):
    """分页获取历史消息，页内按时间正序。

    Args:
        room_id: 房间 ID。
        page: 页码（从 1 开始）。
        limit: 每页最大条数（1-200）。
    """
    await _require_room(rooms, room_id)
    key = str(room_id)
    items = await messages.get_page(key, page=page, limit=limit)
    total = await messages.count_messages(key)

    return ApiResponse.ok(
        data=MessagePageData(
            messages=[StoredMessageData(**item) for item in items],
            pagination=PaginationData(
                current_page=page,
                total_pages=math.ceil(total / limit),
                total_messages=total,
                has_next=page * limit < total,
                has_prev=page > 1,
            ),
        ),
    )


@router.post(
    "/rooms/{room_id}/messages",
    summary="保存消息",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[StoredMessageData],
)
@limiter.limit("5/second")
async def create_message(
    request: Request,
    room_id: int,
    message_request: MessageCreateRequest,
    user: UserIdentity = Depends(get_current_user),
    rooms: RoomRepository = Depends(get_room_repository),
    messages: MessageRepository = Depends(get_message_repository),
):
    """只保存不广播；实时消息请走 WebSocket ``send-message``。"""
    await _require_room(rooms, room_id)
    stored = await messages.store(str(room_id), user.user_id, user.username, message_request.content)
    return ApiResponse.created(data=StoredMessageData(**stored), msg="message saved")


@router.delete("/messages/{message_id}", summary="删除消息", response_model=ApiResponse[None])
@limiter.limit("5/second")
async def delete_message(
    request: Request,
    message_id: int,
    user: UserIdentity = Depends(get_current_user),
    messages: MessageRepository = Depends(get_message_repository),
):
    """只能删除自己发送的消息。"""
    message = await messages.get_message(message_id)
    if message is None or message["user_id"] != user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You are not allowed to delete this message",
        )
    await messages.delete_message(message_id)
    return ApiResponse.ok(data=None, msg="message deleted")
