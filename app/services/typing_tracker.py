"""
app.services.typing_tracker
~~~~~~~~~~~~~~~~~~~~~~~~~~~

“正在输入”状态跟踪。

每个 (房间, 用户) 至多一个条目，对应一个可取消的 ``call_later`` 定时器。
收到新的输入信号时取消旧定时器并重新计时；定时器到期后条目被移除，
保证过期窗口内一定回到空闲状态。

状态转换:
  - 空闲/输入中 → 输入中：收到 ``typing``，广播 ``is_typing=True``
  - 空闲/输入中 → 空闲：收到 ``stop-typing``，总是广播 ``is_typing=False``
  - 输入中 → 空闲：定时器到期，``broadcast_on_expiry`` 开启时同样广播
  - 输入中 → 空闲：离开房间或断线，只清理不广播
"""
from __future__ import annotations

import asyncio

from app.core.logging import get_logger
from app.services.broadcaster import EventBroadcaster
from app.services.connection_registry import Connection

logger = get_logger(__name__)

TypingKey = tuple[str, str]


class _TypingEntry:
    __slots__ = ("connection", "handle")

    def __init__(self, connection: Connection, handle: asyncio.TimerHandle) -> None:
        self.connection = connection
        self.handle = handle


class TypingStateTracker:
    """输入状态跟踪器。

    Attributes:
        broadcaster: 用于通知房间成员的广播器。
        timeout: 无新信号时自动过期的秒数。
        broadcast_on_expiry: 过期时是否广播停止输入。
    """

    def __init__(
        self,
        broadcaster: EventBroadcaster,
        timeout: float = 3.0,
        broadcast_on_expiry: bool = True,
    ) -> None:
        self.broadcaster = broadcaster
        self.timeout = timeout
        self.broadcast_on_expiry = broadcast_on_expiry
        self._entries: dict[TypingKey, _TypingEntry] = {}

    def start(self, room_id: str, connection: Connection) -> None:
        """记录一次输入信号并（重新）开始过期计时。"""
        key = (room_id, connection.typing_key)
        previous = self._entries.get(key)
        if previous is not None:
            previous.handle.cancel()
        handle = asyncio.get_running_loop().call_later(self.timeout, self._expire, key)
        self._entries[key] = _TypingEntry(connection, handle)
        # 每次信号都广播，接收端据此刷新各自的显示计时
        self.broadcaster.broadcast_typing(room_id, connection, True)

    def stop(self, room_id: str, connection: Connection) -> bool:
        """显式停止输入，总是向房间广播 ``is_typing=False``。

        同一用户的其他连接可能已经清掉了条目，此时仍然要通知房间。

        Returns:
            之前是否处于输入中。
        """
        entry = self._entries.pop((room_id, connection.typing_key), None)
        if entry is not None:
            entry.handle.cancel()
        self.broadcaster.broadcast_typing(room_id, connection, False)
        return entry is not None

    def clear(self, room_id: str, connection: Connection) -> None:
        """静默清除输入状态（离开房间 / 断线时调用）。

        条目由同一用户的另一条连接持有时保持不动。
        """
        key = (room_id, connection.typing_key)
        entry = self._entries.get(key)
        if entry is None or entry.connection is not connection:
            return
        del self._entries[key]
        entry.handle.cancel()
        logger.debug("输入状态已清理 | room=%s | conn=%s", room_id, connection.connection_id)

    def is_typing(self, room_id: str, connection: Connection) -> bool:
        return (room_id, connection.typing_key) in self._entries

    def typing_usernames(self, room_id: str) -> list[str]:
        return [
            entry.connection.username or entry.connection.connection_id
            for (entry_room, _), entry in self._entries.items()
            if entry_room == room_id
        ]

    def close(self) -> None:
        """取消所有定时器（应用关闭时调用）。"""
        for entry in self._entries.values():
            entry.handle.cancel()
        self._entries.clear()

    def _expire(self, key: TypingKey) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        room_id = key[0]
        logger.debug("输入状态过期 | room=%s | conn=%s", room_id, entry.connection.connection_id)
        if self.broadcast_on_expiry:
            self.broadcaster.broadcast_typing(room_id, entry.connection, False)
