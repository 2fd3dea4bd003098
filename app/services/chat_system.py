"""
app.services.chat_system
~~~~~~~~~~~~~~~~~~~~~~~~

实时聊天服务 —— 组装连接注册表、房间成员表、广播器与输入状态跟踪器，
并把客户端发来的每一帧分发到对应操作。

在 FastAPI lifespan 中创建一个实例挂载到 ``app.state.chat_system``，
不使用模块级全局状态。
"""
from __future__ import annotations

from pydantic import BaseModel, ValidationError

from app.core.exceptions import AuthenticationError, DeliveryFailure, NotInRoom, PersistenceError
from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.security import UserIdentity
from app.core.settings import settings
from app.db.message_repository import MessageStore
from app.schemas.chat_events import (
    ClientEvent,
    JoinRoomPayload,
    SendMessagePayload,
    ServerEvent,
    TypingPayload,
)
from app.services.broadcaster import EventBroadcaster
from app.services.connection_registry import Connection, ConnectionRegistry, TextSocket
from app.services.room_membership import RoomMembershipManager
from app.services.typing_tracker import TypingStateTracker

logger = get_logger(__name__)


class ChatSystem:
    """实时聊天服务。

    - ``connect()`` / ``disconnect()``  → 连接生命周期
    - ``handle_frame()``                → 解析并处理一帧客户端消息
    - ``join_room()`` / ``leave_room()`` / ``send_message()`` /
      ``start_typing()`` / ``stop_typing()`` → 具体操作

    Attributes:
        membership: 房间成员表。
        registry: 在线连接注册表。
        broadcaster: 房间事件广播器。
        typing: 输入状态跟踪器。
        rate_limiter: 发送消息的频率限制。
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        typing_timeout: float | None = None,
        typing_expiry_broadcast: bool | None = None,
        send_queue_size: int | None = None,
        rate_limit_interval: float | None = None,
    ) -> None:
        self.membership = RoomMembershipManager()
        self.registry = ConnectionRegistry(
            self.membership,
            queue_size=send_queue_size or settings.WS_SEND_QUEUE_SIZE,
        )
        self.broadcaster = EventBroadcaster(self.membership, store)
        self.typing = TypingStateTracker(
            self.broadcaster,
            timeout=typing_timeout if typing_timeout is not None else settings.TYPING_TIMEOUT_SECONDS,
            broadcast_on_expiry=(
                typing_expiry_broadcast
                if typing_expiry_broadcast is not None
                else settings.TYPING_EXPIRY_BROADCAST
            ),
        )
        self.rate_limiter = WebSocketRateLimiter(
            interval_seconds=(
                rate_limit_interval
                if rate_limit_interval is not None
                else settings.WS_RATE_LIMIT_INTERVAL
            ),
        )
        # 切换房间 / 断线时清理旧房间的输入状态
        self.membership.add_leave_hook(self.typing.clear)

    # ── 连接生命周期 ──────────────────────────────────────────────────

    def connect(self, websocket: TextSocket, identity: UserIdentity | None = None) -> Connection:
        """登记新连接；有身份时绑定身份并回发 ``connected``。"""
        connection = self.registry.register(websocket)
        if identity is not None:
            self.registry.attach_identity(connection, identity.user_id, identity.username)
        self._reply(connection, "connected", {
            "connection_id": connection.connection_id,
            "user_id": connection.user_id,
            "username": connection.username,
        })
        logger.info(
            "用户已连接 | conn=%s | user=%s | 在线: %d",
            connection.connection_id, connection.username, len(self.registry),
        )
        return connection

    def disconnect(self, connection: Connection) -> None:
        self.registry.unregister(connection)
        self.rate_limiter.remove_client(connection.connection_id)
        logger.info(
            "用户已断开 | conn=%s | user=%s | 在线: %d",
            connection.connection_id, connection.username, len(self.registry),
        )

    def shutdown(self) -> None:
        """关闭所有连接并取消输入定时器。"""
        for connection in self.registry.connections():
            self.registry.unregister(connection)
        self.typing.close()

    # ── 帧分发 ────────────────────────────────────────────────────────

    async def handle_frame(self, connection: Connection, raw: str) -> None:
        """解析一帧 JSON 文本并执行对应操作。

        格式错误、不在房间都只回复 ``error`` 事件（消息发送失败见 ``send_message``），
        不会中断连接。
        """
        try:
            event = ClientEvent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("无效的消息帧 | conn=%s: %s", connection.connection_id, _first_error(e))
            self._reply(connection, "error", {"code": "invalid_frame", "detail": _first_error(e)})
            return

        try:
            if event.event == "join-room":
                self.join_room(connection, _parse(JoinRoomPayload, event).room_id)
            elif event.event == "leave-room":
                self.leave_room(connection)
            elif event.event == "send-message":
                await self.send_message(connection, _parse(SendMessagePayload, event))
            elif event.event == "typing":
                self.start_typing(connection, _parse(TypingPayload, event).room_id)
            elif event.event == "stop-typing":
                self.stop_typing(connection, _parse(TypingPayload, event).room_id)
        except ValidationError as e:
            logger.warning(
                "无效的事件数据 | conn=%s | event=%s: %s",
                connection.connection_id, event.event, _first_error(e),
            )
            self._reply(connection, "error", {"code": "invalid_payload", "detail": _first_error(e)})
        except NotInRoom as e:
            logger.warning("忽略事件 | event=%s | %s", event.event, e)
            self._reply(connection, "error", {"code": "not_in_room", "detail": str(e)})
        except AuthenticationError as e:
            logger.warning("未认证连接的事件 | event=%s | %s", event.event, e)
            self._reply(connection, "error", {"code": "unauthenticated", "detail": str(e)})

    # ── 操作 ──────────────────────────────────────────────────────────

    def join_room(self, connection: Connection, room_id: str) -> None:
        """加入房间（隐式离开旧房间），回发 ``joined`` 并通知房间内其他成员。"""
        joined = self.membership.join(connection, room_id)
        self._reply(connection, "joined", {
            "room_id": room_id,
            "online_count": self.membership.online_count(room_id),
        })
        if joined:
            self.broadcaster.broadcast_member_joined(room_id, connection)

    def leave_room(self, connection: Connection) -> None:
        self.membership.leave(connection)

    async def send_message(self, connection: Connection, payload: SendMessagePayload) -> None:
        """持久化并广播消息；结果以 ``message-sent`` / ``message-failed`` 回复发送者。

        被拒绝的消息（不在房间、发送过快、持久化失败）都回复 ``message-failed``
        并带回 ``client_ref``，客户端据此把本地消息标记为失败。
        """
        try:
            room_id = self._current_room(connection, payload.room_id)
        except NotInRoom as e:
            logger.warning("忽略消息 | %s", e)
            self._send_failed(
                connection, payload, payload.room_id or connection.room_id,
                "not_in_room", str(e),
            )
            return
        if not self.rate_limiter.is_allowed(connection.connection_id):
            self._send_failed(
                connection, payload, room_id, "rate_limited", "sending too fast, slow down",
            )
            return
        try:
            message = await self.broadcaster.broadcast_message(room_id, connection, payload.message)
        except PersistenceError as e:
            logger.warning(
                "消息未广播（持久化失败）| room=%s | conn=%s: %s",
                room_id, connection.connection_id, e,
            )
            self._send_failed(
                connection, payload, room_id,
                "storage_unavailable", "message could not be saved, please retry",
            )
            return
        self._reply(connection, "message-sent", {
            "client_ref": payload.client_ref,
            "message": message.model_dump(mode="json"),
        })

    def start_typing(self, connection: Connection, room_id: str | None = None) -> None:
        self.typing.start(self._current_room(connection, room_id), connection)

    def stop_typing(self, connection: Connection, room_id: str | None = None) -> None:
        self.typing.stop(self._current_room(connection, room_id), connection)

    # ── 内部工具 ──────────────────────────────────────────────────────

    @staticmethod
    def _current_room(connection: Connection, claimed: str | None) -> str:
        """返回连接当前所在房间；事件声明的房间与之不符时视为不在房间。"""
        if connection.room_id is None:
            raise NotInRoom(connection.connection_id, claimed)
        if claimed is not None and claimed != connection.room_id:
            raise NotInRoom(connection.connection_id, claimed)
        return connection.room_id

    def _send_failed(
        self,
        connection: Connection,
        payload: SendMessagePayload,
        room_id: str | None,
        code: str,
        reason: str,
    ) -> None:
        self._reply(connection, "message-failed", {
            "client_ref": payload.client_ref,
            "room_id": room_id,
            "code": code,
            "reason": reason,
        })

    @staticmethod
    def _reply(connection: Connection, event: str, data: dict) -> None:
        try:
            connection.send(ServerEvent.of(event, data))
        except DeliveryFailure as e:
            logger.warning("回复失败 | event=%s | %s", event, e)


def _parse(model: type[BaseModel], event: ClientEvent):
    return model.model_validate(event.data)


def _first_error(e: ValidationError) -> str:
    errors = e.errors()
    if not errors:
        return str(e)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
