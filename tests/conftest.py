"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用 mock 替代 MongoDB 与真实 WebSocket，
使单元测试可在无外部依赖的环境下快速运行。
"""
from __future__ import annotations

import itertools
import json
import os
from datetime import datetime, timezone
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from app.core.security import UserIdentity  # noqa: E402
from app.services.chat_system import ChatSystem  # noqa: E402
from app.services.connection_registry import Connection  # noqa: E402


def drain(connection: Connection) -> list[dict[str, Any]]:
    """取出连接出站队列中尚未发送的全部事件（解析为字典）。"""
    events: list[dict[str, Any]] = []
    while not connection._outbox.empty():
        frame = connection._outbox.get_nowait()
        if frame is not None:
            events.append(json.loads(frame))
    return events


def event_names(connection: Connection) -> list[str]:
    return [event["event"] for event in drain(connection)]


def make_store() -> MagicMock:
    """返回一个按顺序分配 ID 的假消息仓库。"""
    counter = itertools.count(1)

    async def _store(room_id: str, user_id: int, username: str, body: str) -> dict:
        return {
            "id": next(counter),
            "room_id": room_id,
            "user_id": user_id,
            "username": username,
            "content": body,
            "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
        }

    store = MagicMock()
    store.store = AsyncMock(side_effect=_store)
    return store


@pytest.fixture()
def fake_store() -> MagicMock:
    return make_store()


@pytest.fixture()
def chat_system(fake_store: MagicMock) -> ChatSystem:
    """不限流、输入超时很短的聊天服务。"""
    return ChatSystem(
        store=fake_store,
        typing_timeout=0.05,
        typing_expiry_broadcast=True,
        send_queue_size=16,
        rate_limit_interval=0.0,
    )


@pytest.fixture()
def connect_user(chat_system: ChatSystem):
    """工厂：以指定身份接入一个假连接，并清空 ``connected`` 事件。"""

    def _connect(user_id: int, username: str) -> Connection:
        websocket = MagicMock()
        websocket.send_text = AsyncMock()
        connection = chat_system.connect(websocket, UserIdentity(user_id=user_id, username=username))
        drain(connection)
        return connection

    return _connect
