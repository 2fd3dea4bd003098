"""
app.api.chat_ws
~~~~~~~~~~~~~~~

WebSocket 实时聊天接口。

提供 ``/ws/chat`` 端点，客户端通过 ``?token=<JWT>`` 认证。连接建立后
通过 ``join-room`` 加入房间，同一时刻只在一个房间内。

消息协议（JSON 文本帧 ``{"event": ..., "data": {...}}``）:
  - 客户端 → 服务端：``join-room`` / ``leave-room`` / ``send-message`` /
    ``typing`` / ``stop-typing``
  - 服务端 → 客户端：``connected`` / ``joined`` / ``user-joined`` /
    ``receive-message`` / ``message-sent`` / ``message-failed`` /
    ``typing-changed`` / ``error``
"""
from __future__ import annotations

import asyncio
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from app.core.exceptions import AuthenticationError
from app.core.logging import get_logger, request_id_ctx_var
from app.core.security import Authenticator
from app.services.chat_system import ChatSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()


def _extract_token(websocket: WebSocket, token: str | None) -> str | None:
    """优先使用查询参数，其次是 ``Authorization: Bearer`` 头。"""
    if token:
        return token
    header = websocket.headers.get("authorization", "")
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials
    return None


@router.websocket("/ws/chat")
async def websocket_chat_endpoint(websocket: WebSocket, token: str | None = None) -> None:
    """WebSocket 聊天端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        token: 访问令牌（查询参数）。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    ctx_token = request_id_ctx_var.set(ws_req_id)

    try:
        authenticator: Authenticator = websocket.app.state.authenticator
        try:
            identity = await authenticator.authenticate(_extract_token(websocket, token))
        except AuthenticationError as e:
            logger.warning("WebSocket 认证失败: %s", e)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        system: ChatSystem = websocket.app.state.chat_system
        connection = system.connect(websocket, identity)

        async def receive_loop() -> None:
            try:
                while True:
                    raw: str = await websocket.receive_text()
                    await system.handle_frame(connection, raw)
            except WebSocketDisconnect:
                pass  # 正常断开
            except Exception as e:
                logger.error(
                    "WebSocket 接收异常: %s | conn=%s", e, connection.connection_id, exc_info=True,
                )
            finally:
                # 唤醒发送协程退出，未发送的帧直接丢弃
                connection.close()

        try:
            # 接收与发送并发运行，慢速对端只会阻塞自己的发送协程
            await asyncio.gather(receive_loop(), connection.run_sender())
        finally:
            system.disconnect(connection)

    finally:
        request_id_ctx_var.reset(ctx_token)
