"""
app.client.chat_client
~~~~~~~~~~~~~~~~~~~~~~

Python 聊天客户端 —— 基于 ``websockets`` 连接 ``/ws/chat``。

断线后按指数退避自动重连，重连成功后重新加入断线前所在的房间。
收到的事件全部交给 ``ChatState`` 合并。

示例::

    state = ChatState()
    client = ChatClient("ws://localhost:5000/ws/chat", token, state)
    runner = asyncio.create_task(client.run())
    await client.join_room("1")
    await client.send_message("hello")
    ...
    await client.close()
    await runner
"""
from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import WebSocketException

from app.client.chat_state import ChatState, ClientMessage
from app.core.logging import get_logger
from app.schemas.chat_events import ServerEvent

logger = get_logger(__name__)


class ChatClient:
    """带自动重连的聊天客户端。

    Attributes:
        url: WebSocket 地址，不含查询参数。
        state: 本地聊天状态。
        initial_backoff: 首次重连等待秒数。
        max_backoff: 重连等待上限。
    """

    def __init__(
        self,
        url: str,
        token: str,
        state: ChatState | None = None,
        *,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
        on_event: Callable[[ServerEvent], None] | None = None,
    ) -> None:
        self.url = url
        self._token = token
        self.state = state or ChatState()
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.on_event = on_event
        self._ws: ClientConnection | None = None
        self._stopping = False

    @property
    def endpoint(self) -> str:
        return f"{self.url}?{urlencode({'token': self._token})}"

    async def run(self) -> None:
        """保持连接直到 ``close()``；连接断开后自动重连。"""
        backoff = self.initial_backoff
        while not self._stopping:
            try:
                async with connect(self.endpoint) as ws:
                    self._ws = ws
                    self.state.set_connected(True)
                    backoff = self.initial_backoff
                    logger.info("已连接聊天服务 | url=%s", self.url)
                    if self.state.current_room is not None:
                        await self._emit("join-room", {"room_id": self.state.current_room})
                    async for raw in ws:
                        self._dispatch(raw)
            except (OSError, WebSocketException) as e:
                logger.warning("聊天连接中断: %s", e)
            finally:
                self._ws = None
                self.state.set_connected(False)

            if self._stopping:
                break
            logger.info("%.1f 秒后重连...", backoff)
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    async def close(self) -> None:
        """停止重连并关闭当前连接。"""
        self._stopping = True
        if self._ws is not None:
            await self._ws.close()

    # ── 聊天操作 ──────────────────────────────────────────────────────

    async def join_room(self, room_id: str) -> bool:
        """切换到指定房间；未连接时记下房间，重连后自动加入。"""
        self.state.join_room(room_id)
        return await self._emit("join-room", {"room_id": room_id})

    async def leave_room(self) -> bool:
        if self.state.current_room is None:
            return False
        self.state.leave_room()
        return await self._emit("leave-room", {})

    async def send_message(self, body: str) -> ClientMessage | None:
        """本地先显示为 pending，收到 ``message-sent`` 后更新为已发送。"""
        if not self.state.is_connected or self.state.current_room is None:
            logger.warning("未连接或未加入房间，无法发送消息")
            return None
        pending = self.state.add_pending(body)
        sent = await self._emit("send-message", {
            "room_id": self.state.current_room,
            "message": body,
            "client_ref": pending.client_ref,
        })
        if not sent:
            pending.status = "failed"
        return pending

    async def start_typing(self) -> bool:
        if self.state.current_room is None:
            return False
        return await self._emit("typing", {"room_id": self.state.current_room})

    async def stop_typing(self) -> bool:
        if self.state.current_room is None:
            return False
        return await self._emit("stop-typing", {"room_id": self.state.current_room})

    # ── 内部工具 ──────────────────────────────────────────────────────

    async def _emit(self, event: str, data: dict[str, Any]) -> bool:
        if self._ws is None:
            logger.debug("未连接，丢弃事件 %s", event)
            return False
        try:
            await self._ws.send(json.dumps({"event": event, "data": data}))
        except WebSocketException as e:
            logger.warning("发送事件失败 | event=%s: %s", event, e)
            return False
        return True

    def _dispatch(self, raw: str | bytes) -> None:
        try:
            event = ServerEvent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("无法解析服务端事件: %s", e)
            return
        try:
            self.state.apply(event)
        except (KeyError, TypeError, ValueError) as e:
            # 单个事件数据不完整时跳过，不中断接收循环
            logger.warning("无法处理服务端事件 %s: %r", event.event, e)
            return
        if self.on_event is not None:
            self.on_event(event)
