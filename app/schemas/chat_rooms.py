"""
app.schemas.chat_rooms
~~~~~~~~~~~~~~~~~~~~~~

聊天室 REST 接口的 Pydantic 请求/响应模型。
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class RoomCreateRequest(BaseModel):
    """创建聊天室请求体。"""

    name: str = Field(
        ..., min_length=1, max_length=100, description="房间名称，1-100 个字符",
    )


class RoomInfoData(BaseModel):
    """聊天室摘要信息。"""

    id: int = Field(..., description="房间 ID")
    name: str = Field(..., description="房间名称")
    created_by: int | None = Field(default=None, description="创建者用户 ID")
    created_by_name: str | None = Field(default=None, description="创建者用户名，用户不存在时为 null")
    created_at: datetime = Field(..., description="创建时间")
    message_count: int = Field(default=0, description="消息总数")
    last_message_time: datetime | None = Field(default=None, description="最近一条消息时间")
    online_count: int = Field(default=0, description="当前在线连接数")


class MessageCreateRequest(BaseModel):
    """通过 REST 保存消息的请求体。"""

    content: str = Field(..., min_length=1, max_length=5000, description="消息内容")


class StoredMessageData(BaseModel):
    """已持久化的单条消息。"""

    id: int = Field(..., description="消息 ID")
    room_id: str = Field(..., description="所属房间 ID")
    user_id: int = Field(..., description="发送者用户 ID")
    username: str = Field(..., description="发送者用户名")
    content: str = Field(..., description="消息内容")
    created_at: datetime = Field(..., description="创建时间")


class PaginationData(BaseModel):
    """分页信息。"""

    current_page: int
    total_pages: int
    total_messages: int
    has_next: bool
    has_prev: bool


class MessagePageData(BaseModel):
    """分页的历史消息。"""

    messages: list[StoredMessageData] = Field(..., description="消息列表（按时间正序）")
    pagination: PaginationData
