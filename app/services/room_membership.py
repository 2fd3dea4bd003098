"""
app.services.room_membership
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间成员管理 —— 房间 ID 到成员连接集合的映射。

不变量：一个连接同一时刻最多属于一个房间。加入新房间会先离开旧房间，
离开时依次调用已注册的离开钩子（例如清理旧房间的输入状态）。

所有方法都是同步的，在事件循环里执行时不会被其他协程打断，
因此成员变更与 ``members_of()`` 快照天然互斥；快照是不可变副本，
广播期间的加入/离开不会影响正在进行的遍历。
"""
from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

from app.core.logging import get_logger

if TYPE_CHECKING:
    from app.services.connection_registry import Connection

logger = get_logger(__name__)

LeaveHook = Callable[[str, "Connection"], None]


class RoomMembershipManager:
    """房间成员表。

    房间在第一次有人加入时隐式创建，最后一个成员离开时回收。
    """

    def __init__(self) -> None:
        self._rooms: dict[str, dict[str, Connection]] = {}
        self._leave_hooks: list[LeaveHook] = []

    def add_leave_hook(self, hook: LeaveHook) -> None:
        """注册离开钩子，调用参数为 ``(room_id, connection)``。"""
        self._leave_hooks.append(hook)

    def join(self, connection: Connection, room_id: str) -> bool:
        """把连接加入房间。

        已在其他房间时先离开旧房间；已在目标房间时什么也不做。

        Returns:
            是否发生了实际加入。
        """
        if connection.room_id == room_id:
            return False
        if connection.room_id is not None:
            self.leave(connection)
        self._rooms.setdefault(room_id, {})[connection.connection_id] = connection
        connection.room_id = room_id
        logger.info(
            "用户进入房间 | room=%s | conn=%s | user=%s | 在线: %d",
            room_id, connection.connection_id, connection.username,
            self.online_count(room_id),
        )
        return True

    def leave(self, connection: Connection) -> str | None:
        """让连接离开当前房间，不在任何房间时为空操作。

        Returns:
            离开的房间 ID；原本不在房间时返回 ``None``。
        """
        room_id = connection.room_id
        if room_id is None:
            return None
        members = self._rooms.get(room_id)
        if members is not None:
            members.pop(connection.connection_id, None)
            if not members:
                del self._rooms[room_id]
        connection.room_id = None
        for hook in self._leave_hooks:
            hook(room_id, connection)
        logger.info(
            "用户离开房间 | room=%s | conn=%s | 在线: %d",
            room_id, connection.connection_id, self.online_count(room_id),
        )
        return room_id

    def members_of(self, room_id: str) -> frozenset[Connection]:
        """房间成员的只读快照。"""
        return frozenset(self._rooms.get(room_id, {}).values())

    def online_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, ()))

    def rooms(self) -> dict[str, int]:
        """所有非空房间及其在线人数。"""
        return {room_id: len(members) for room_id, members in self._rooms.items()}
