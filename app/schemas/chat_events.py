"""
app.schemas.chat_events
~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 聊天协议的 Pydantic 模型。

每一帧都是 JSON 文本，统一信封为 ``{"event": <名称>, "data": {...}}``。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# ── 客户端 → 服务端 ───────────────────────────────────────────────────

ClientEventName = Literal[
    "join-room",
    "leave-room",
    "send-message",
    "typing",
    "stop-typing",
]


def _coerce_room_id(value: Any) -> Any:
    """房间 ID 在 REST 侧是整数，WebSocket 侧统一当作字符串。"""
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


class ClientEvent(BaseModel):
    """客户端发来的一帧。"""

    event: ClientEventName
    data: dict[str, Any] = Field(default_factory=dict)


class JoinRoomPayload(BaseModel):
    room_id: str = Field(..., min_length=1, max_length=100)

    normalize_room_id = field_validator("room_id", mode="before")(_coerce_room_id)


class SendMessagePayload(BaseModel):
    """发送消息请求。``room_id`` 省略时使用连接当前所在房间。"""

    message: str = Field(..., min_length=1, max_length=5000)
    room_id: str | None = None
    client_ref: str | None = Field(
        default=None, max_length=64, description="客户端本地消息标识，原样回传",
    )

    normalize_room_id = field_validator("room_id", mode="before")(_coerce_room_id)


class TypingPayload(BaseModel):
    room_id: str | None = None

    normalize_room_id = field_validator("room_id", mode="before")(_coerce_room_id)


# ── 服务端 → 客户端 ───────────────────────────────────────────────────

ServerEventName = Literal[
    "connected",
    "joined",
    "user-joined",
    "receive-message",
    "message-sent",
    "message-failed",
    "typing-changed",
    "error",
]


class ChatMessageData(BaseModel):
    """广播用的消息体，``id`` 与 ``timestamp`` 由持久化层分配。"""

    id: int
    room_id: str
    user_id: int
    username: str
    message: str
    timestamp: datetime


class TypingChangedData(BaseModel):
    room_id: str
    user_id: int
    username: str
    is_typing: bool


class MemberJoinedData(BaseModel):
    connection_id: str
    user_id: int | None
    username: str | None
    room_id: str
    timestamp: datetime


class ServerEvent(BaseModel):
    """服务端推送的一帧。"""

    event: ServerEventName
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def of(cls, event: ServerEventName, data: BaseModel | dict[str, Any]) -> ServerEvent:
        """用 Pydantic 模型或字典构造事件，时间字段序列化为 ISO 字符串。"""
        if isinstance(data, BaseModel):
            data = data.model_dump(mode="json")
        return cls(event=event, data=data)

    def encode(self) -> str:
        return self.model_dump_json()
