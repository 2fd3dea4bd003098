"""
app.services.broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~

房间事件广播器 —— 把消息、输入状态、入房通知分发给房间成员。

投递语义为尽力而为：每个接收者每次调用至多投递一次，不重试、不排队等待。
单个接收者投递失败只会被记录并跳过，不影响其他成员。
"""
from __future__ import annotations

from datetime import datetime, timezone

from app.core.exceptions import AuthenticationError, DeliveryFailure
from app.core.logging import get_logger
from app.db.message_repository import MessageStore
from app.schemas.chat_events import (
    ChatMessageData,
    MemberJoinedData,
    ServerEvent,
    TypingChangedData,
)
from app.services.connection_registry import Connection
from app.services.room_membership import RoomMembershipManager

logger = get_logger(__name__)


class EventBroadcaster:
    """房间事件广播器。

    Attributes:
        membership: 房间成员表，广播时读取成员快照。
        store: 消息持久化桥接，消息广播前必须先写入成功。
    """

    def __init__(self, membership: RoomMembershipManager, store: MessageStore) -> None:
        self.membership = membership
        self.store = store

    async def broadcast_message(
        self, room_id: str, sender: Connection, body: str,
    ) -> ChatMessageData:
        """持久化消息后广播给房间内除发送者外的所有成员。

        持久化期间不持有任何共享结构，慢写入不会阻塞其他房间。

        Returns:
            已持久化并广播的消息。

        Raises:
            PersistenceError: 写入失败，此时不会广播。
            AuthenticationError: 发送者尚未绑定身份。
        """
        if sender.user_id is None or sender.username is None:
            raise AuthenticationError(f"connection {sender.connection_id} has no identity")

        stored = await self.store.store(room_id, sender.user_id, sender.username, body)
        message = ChatMessageData(
            id=stored["id"],
            room_id=room_id,
            user_id=sender.user_id,
            username=sender.username,
            message=stored["content"],
            timestamp=stored["created_at"],
        )
        delivered = self._fan_out(
            room_id, ServerEvent.of("receive-message", message), exclude=sender,
        )
        logger.info(
            "消息已广播 | room=%s | id=%d | 长度=%d | 送达=%d",
            room_id, message.id, len(body), delivered,
        )
        return message

    def broadcast_typing(self, room_id: str, sender: Connection, is_typing: bool) -> int:
        """广播输入 / 停止输入事件，不持久化。"""
        if sender.user_id is None or sender.username is None:
            return 0
        data = TypingChangedData(
            room_id=room_id,
            user_id=sender.user_id,
            username=sender.username,
            is_typing=is_typing,
        )
        return self._fan_out(room_id, ServerEvent.of("typing-changed", data), exclude=sender)

    def broadcast_member_joined(self, room_id: str, member: Connection) -> int:
        """通知房间内已有成员：有新连接加入。"""
        data = MemberJoinedData(
            connection_id=member.connection_id,
            user_id=member.user_id,
            username=member.username,
            room_id=room_id,
            timestamp=datetime.now(timezone.utc),
        )
        return self._fan_out(room_id, ServerEvent.of("user-joined", data), exclude=member)

    def _fan_out(
        self, room_id: str, event: ServerEvent, exclude: Connection | None = None,
    ) -> int:
        """向成员快照逐个投递，返回成功入队的接收者数量。"""
        delivered = 0
        for member in self.membership.members_of(room_id):
            if member is exclude:
                continue
            try:
                member.send(event)
            except DeliveryFailure as e:
                logger.warning("投递失败，跳过 | room=%s | event=%s | %s", room_id, event.event, e)
                continue
            delivered += 1
        return delivered
