"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护所有在线 WebSocket 连接。

每个 ``Connection`` 拥有一个有界出站队列：广播方只做 ``put_nowait``，
从不等待对端；队列满或连接已关闭时抛出 ``DeliveryFailure``，
由广播方跳过该接收者。真正写 socket 的是 ``run_sender()`` 协程，
由传输层与接收循环并发运行。
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Protocol

from app.core.exceptions import DeliveryFailure
from app.core.logging import get_logger
from app.schemas.chat_events import ServerEvent

if TYPE_CHECKING:
    from app.services.room_membership import RoomMembershipManager

logger = get_logger(__name__)


class TextSocket(Protocol):
    async def send_text(self, data: str) -> None: ...


class Connection:
    """一条在线的双工连接（连接句柄）。

    Attributes:
        connection_id: 连接唯一标识，与用户身份无关。
        websocket: 底层传输对象，只要求实现 ``send_text``。
        user_id: 认证后的用户 ID，未认证时为 ``None``。
        username: 认证后的用户名。
        room_id: 当前所在房间，同一时刻最多一个。
            只由 ``RoomMembershipManager`` 修改。
    """

    def __init__(
        self, connection_id: str, websocket: TextSocket, queue_size: int = 64,
    ) -> None:
        self.connection_id = connection_id
        self.websocket = websocket
        self.user_id: int | None = None
        self.username: str | None = None
        self.room_id: str | None = None
        self.connected_at = datetime.now(timezone.utc)
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def typing_key(self) -> str:
        """输入状态按用户记录；未认证连接退化为按连接记录。"""
        if self.user_id is not None:
            return f"user:{self.user_id}"
        return f"conn:{self.connection_id}"

    def send(self, event: ServerEvent) -> None:
        """非阻塞地把事件放入出站队列。

        Raises:
            DeliveryFailure: 连接已关闭或出站队列已满。
        """
        if self._closed:
            raise DeliveryFailure(self.connection_id, "connection closed")
        try:
            self._outbox.put_nowait(event.encode())
        except asyncio.QueueFull:
            raise DeliveryFailure(self.connection_id, "outbound queue full") from None

    async def run_sender(self) -> None:
        """把出站队列中的帧依次写入 socket，直到连接关闭。"""
        while True:
            frame = await self._outbox.get()
            if frame is None:
                break
            try:
                await self.websocket.send_text(frame)
            except Exception as e:
                # 对端已断开，断线由接收循环负责善后
                logger.warning("发送失败，停止写出 | conn=%s: %s", self.connection_id, e)
                self._closed = True
                break

    def close(self) -> None:
        """关闭连接：丢弃尚未发送的帧并唤醒发送协程退出。"""
        if self._closed and self._outbox.empty():
            return
        self._closed = True
        while not self._outbox.empty():
            self._outbox.get_nowait()
        self._outbox.put_nowait(None)

    def pending_frames(self) -> int:
        return self._outbox.qsize()

    def info(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "user_id": self.user_id,
            "username": self.username,
            "room_id": self.room_id,
        }

    def __repr__(self) -> str:
        return f"<Connection {self.connection_id} user={self.user_id} room={self.room_id}>"


class ConnectionRegistry:
    """在线连接注册表。

    注销连接时会先让它离开所在房间（不发送离开通知），
    保证房间成员集合里不会残留已注销的连接。
    """

    def __init__(self, membership: RoomMembershipManager, queue_size: int = 64) -> None:
        self.membership = membership
        self.queue_size = queue_size
        self._connections: dict[str, Connection] = {}

    def register(self, websocket: TextSocket) -> Connection:
        """为新连接分配唯一 ID 并登记。"""
        connection = Connection(uuid.uuid4().hex[:12], websocket, self.queue_size)
        self._connections[connection.connection_id] = connection
        logger.debug("连接已登记 | conn=%s | 在线: %d", connection.connection_id, len(self))
        return connection

    def attach_identity(self, connection: Connection, user_id: int, username: str) -> None:
        """绑定认证后的身份。重复调用时以最后一次为准。"""
        if connection.user_id is not None and connection.user_id != user_id:
            logger.debug(
                "连接身份被覆盖 | conn=%s | %s -> %s",
                connection.connection_id, connection.user_id, user_id,
            )
        connection.user_id = user_id
        connection.username = username

    def unregister(self, connection: Connection) -> None:
        """注销连接：离开房间、关闭出站队列、丢弃全部状态。"""
        self.membership.leave(connection)
        connection.close()
        self._connections.pop(connection.connection_id, None)
        logger.debug("连接已注销 | conn=%s | 在线: %d", connection.connection_id, len(self))

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    def __contains__(self, connection: object) -> bool:
        return (
            isinstance(connection, Connection)
            and self._connections.get(connection.connection_id) is connection
        )

    def __len__(self) -> int:
        return len(self._connections)
