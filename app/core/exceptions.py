"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

聊天核心的异常类型。

这里的异常都不会导致进程退出：
  - ``PersistenceError`` 只反馈给发送者，消息不会被广播；
  - ``NotInRoom`` 记录日志后忽略；
  - ``DeliveryFailure`` 只跳过对应的接收者，广播继续。
"""
from __future__ import annotations


class ChatError(Exception):
    """聊天模块异常基类。"""


class PersistenceError(ChatError):
    """消息持久化失败。"""


class NotInRoom(ChatError):
    """连接当前没有加入任何房间（或不在事件声明的房间里）。"""

    def __init__(self, connection_id: str, room_id: str | None = None) -> None:
        self.connection_id = connection_id
        self.room_id = room_id
        detail = f"connection {connection_id} is not in room"
        if room_id is not None:
            detail += f" {room_id}"
        super().__init__(detail)


class DeliveryFailure(ChatError):
    """向单个接收者投递事件失败（连接已关闭或出站队列已满）。"""

    def __init__(self, connection_id: str, reason: str) -> None:
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"delivery to {connection_id} failed: {reason}")


class AuthenticationError(ChatError):
    """访问令牌无效或已过期。"""
