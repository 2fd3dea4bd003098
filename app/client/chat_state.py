"""
app.client.chat_state
~~~~~~~~~~~~~~~~~~~~~

客户端聊天状态 —— 镜像当前房间的消息与正在输入的用户，供界面渲染。

纯内存、无 I/O：``ChatClient`` 收到服务端事件后交给 ``apply()``，
界面只读 ``messages`` / ``active_typing_users()``。

输入提示在本地同样有过期时间，即使丢失了停止输入事件，
提示也不会显示超过 ``typing_timeout`` 秒。
"""
from __future__ import annotations

import time
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel

from app.core.logging import get_logger
from app.schemas.chat_events import ChatMessageData, ServerEvent

logger = get_logger(__name__)

MessageStatus = Literal["pending", "sent", "failed", "received"]


class ClientMessage(BaseModel):
    """界面上显示的一条消息。本地乐观插入时 ``id`` 为空。"""

    id: int | None = None
    client_ref: str | None = None
    room_id: str
    user_id: int | None
    username: str | None
    message: str
    timestamp: datetime
    status: MessageStatus = "received"


class TypingUser(BaseModel):
    user_id: int
    username: str
    expires_at: float


class ChatState:
    """当前连接的聊天视图状态。

    Attributes:
        user_id: 当前用户 ID（用于本地回显）。
        username: 当前用户名。
        messages: 当前房间的消息列表。
        typing_users: 正在输入的其他用户，按用户 ID 索引。
        current_room: 当前房间，未加入时为 ``None``。
        is_connected: 与服务端的连接是否可用。
    """

    def __init__(
        self,
        user_id: int | None = None,
        username: str | None = None,
        typing_timeout: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.user_id = user_id
        self.username = username
        self.typing_timeout = typing_timeout
        self._clock = clock
        self.messages: list[ClientMessage] = []
        self.typing_users: dict[int, TypingUser] = {}
        self.current_room: str | None = None
        self.is_connected = False

    # ── 本地操作 ──────────────────────────────────────────────────────

    def set_connected(self, connected: bool) -> None:
        self.is_connected = connected
        if not connected:
            # 断线期间收不到停止输入事件，直接清空
            self.typing_users.clear()

    def join_room(self, room_id: str) -> None:
        """切换房间：清空消息与输入提示。"""
        self.current_room = room_id
        self.messages = []
        self.typing_users.clear()

    def leave_room(self) -> None:
        self.current_room = None
        self.messages = []
        self.typing_users.clear()

    def add_pending(self, body: str) -> ClientMessage:
        """乐观地插入自己发送的消息，等待服务端确认。"""
        if self.current_room is None:
            raise RuntimeError("not in a room")
        pending = ClientMessage(
            client_ref=uuid.uuid4().hex,
            room_id=self.current_room,
            user_id=self.user_id,
            username=self.username,
            message=body,
            timestamp=datetime.now(timezone.utc),
            status="pending",
        )
        self.messages.append(pending)
        return pending

    def active_typing_users(self) -> list[TypingUser]:
        """未过期的输入用户列表。"""
        self.purge_expired_typing()
        return list(self.typing_users.values())

    def purge_expired_typing(self) -> None:
        now = self._clock()
        expired = [uid for uid, user in self.typing_users.items() if user.expires_at <= now]
        for uid in expired:
            del self.typing_users[uid]

    # ── 服务端事件 ────────────────────────────────────────────────────

    def apply(self, event: ServerEvent) -> None:
        """把一条服务端事件合并进本地状态。"""
        handler = self._handlers.get(event.event)
        if handler is None:
            logger.debug("忽略事件 %s", event.event)
            return
        handler(self, event.data)

    def _on_connected(self, data: dict[str, Any]) -> None:
        if data.get("user_id") is not None:
            self.user_id = data["user_id"]
            self.username = data.get("username")

    def _on_joined(self, data: dict[str, Any]) -> None:
        if data.get("room_id") != self.current_room:
            self.join_room(data["room_id"])

    def _on_receive_message(self, data: dict[str, Any]) -> None:
        message = ChatMessageData.model_validate(data)
        if message.room_id != self.current_room:
            return
        self.messages.append(ClientMessage(**message.model_dump(), status="received"))
        # 对方发出消息后不再显示其输入提示
        self.typing_users.pop(message.user_id, None)

    def _on_message_sent(self, data: dict[str, Any]) -> None:
        stored = ChatMessageData.model_validate(data["message"])
        local = self._find_pending(data.get("client_ref"))
        if local is None:
            if stored.room_id == self.current_room:
                self.messages.append(ClientMessage(**stored.model_dump(), status="sent"))
            return
        local.id = stored.id
        local.timestamp = stored.timestamp
        local.status = "sent"

    def _on_message_failed(self, data: dict[str, Any]) -> None:
        local = self._find_pending(data.get("client_ref"))
        if local is not None:
            local.status = "failed"
        logger.warning("消息发送失败 | code=%s: %s", data.get("code"), data.get("reason"))

    def _on_typing_changed(self, data: dict[str, Any]) -> None:
        if data.get("room_id") != self.current_room:
            return
        user_id = data["user_id"]
        if data.get("is_typing"):
            self.typing_users[user_id] = TypingUser(
                user_id=user_id,
                username=data["username"],
                expires_at=self._clock() + self.typing_timeout,
            )
        else:
            self.typing_users.pop(user_id, None)

    def _on_error(self, data: dict[str, Any]) -> None:
        logger.warning("服务端错误 | code=%s | %s", data.get("code"), data.get("detail"))

    def _find_pending(self, client_ref: str | None) -> ClientMessage | None:
        if client_ref is None:
            return None
        for message in reversed(self.messages):
            if message.client_ref == client_ref:
                return message
        return None

    _handlers: dict[str, Callable[[ChatState, dict[str, Any]], None]] = {
        "connected": _on_connected,
        "joined": _on_joined,
        "receive-message": _on_receive_message,
        "message-sent": _on_message_sent,
        "message-failed": _on_message_failed,
        "typing-changed": _on_typing_changed,
        "error": _on_error,
    }
