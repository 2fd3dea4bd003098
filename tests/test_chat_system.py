"""
tests.test_chat_system
~~~~~~~~~~~~~~~~~~~~~~

ChatSystem 集成测试 —— 端到端场景与帧分发。
"""
from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.exceptions import PersistenceError
from app.services.chat_system import ChatSystem
from tests.conftest import drain, event_names


def frame(event: str, **data) -> str:
    return json.dumps({"event": event, "data": data})


# ── 场景 ──────────────────────────────────────────────────────────────

class TestScenarios:

    @pytest.mark.asyncio
    async def test_message_reaches_other_member_only(self, chat_system, connect_user) -> None:
        """A、B 在 general，A 发 hello → B 收到 id=1，A 只收到确认。"""
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        await chat_system.handle_frame(a, frame("join-room", room_id="general"))
        await chat_system.handle_frame(b, frame("join-room", room_id="general"))
        drain(a)
        drain(b)

        await chat_system.handle_frame(a, frame("send-message", message="hello", client_ref="r1"))

        b_events = drain(b)
        assert [e["event"] for e in b_events] == ["receive-message"]
        assert b_events[0]["data"]["id"] == 1
        assert b_events[0]["data"]["message"] == "hello"
        assert b_events[0]["data"]["user_id"] == 1

        a_events = drain(a)
        assert [e["event"] for e in a_events] == ["message-sent"]
        assert a_events[0]["data"]["client_ref"] == "r1"
        assert a_events[0]["data"]["message"]["id"] == 1

    @pytest.mark.asyncio
    async def test_switching_rooms_clears_typing_silently(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        chat_system.join_room(b, "general")
        chat_system.start_typing(a)
        drain(b)

        chat_system.join_room(a, "random")

        assert a not in chat_system.membership.members_of("general")
        assert a in chat_system.membership.members_of("random")
        assert not chat_system.typing.is_typing("general", a)
        # 清理不广播
        await asyncio.sleep(chat_system.typing.timeout * 2)
        assert drain(b) == []

    @pytest.mark.asyncio
    async def test_typing_indicator_cleared_before_timeout_passes(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        chat_system.join_room(b, "general")
        drain(b)

        chat_system.start_typing(a)
        await asyncio.sleep(chat_system.typing.timeout * 3)

        events = drain(b)
        assert [e["data"]["is_typing"] for e in events] == [True, False]

    @pytest.mark.asyncio
    async def test_persistence_failure_only_notifies_sender(self, fake_store, chat_system, connect_user) -> None:
        fake_store.store = AsyncMock(side_effect=PersistenceError("db down"))
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        chat_system.join_room(b, "general")
        drain(a)
        drain(b)

        await chat_system.handle_frame(a, frame("send-message", message="hello", client_ref="r1"))

        assert drain(b) == []
        a_events = drain(a)
        assert a_events[0]["event"] == "message-failed"
        assert a_events[0]["data"]["client_ref"] == "r1"

    @pytest.mark.asyncio
    async def test_disconnect_removes_member_and_typing(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        chat_system.join_room(a, "general")
        chat_system.start_typing(a)

        chat_system.disconnect(a)

        assert chat_system.membership.members_of("general") == frozenset()
        assert not chat_system.typing.is_typing("general", a)
        assert a not in chat_system.registry

    @pytest.mark.asyncio
    async def test_second_tab_disconnect_keeps_stop_typing(self, chat_system, connect_user) -> None:
        """同一用户开两个连接，关掉其中一个后另一个的停止输入仍会通知房间。"""
        first = connect_user(1, "alice")
        second = connect_user(1, "alice")
        b = connect_user(2, "bob")
        for conn in (first, second, b):
            chat_system.join_room(conn, "general")
        chat_system.start_typing(first)
        chat_system.disconnect(second)
        drain(b)

        await chat_system.handle_frame(first, frame("stop-typing"))

        events = drain(b)
        assert [e["event"] for e in events] == ["typing-changed"]
        assert events[0]["data"]["is_typing"] is False

    @pytest.mark.asyncio
    async def test_rejected_send_marks_local_message_failed(self, fake_store) -> None:
        from app.client.chat_state import ChatState
        from app.core.security import UserIdentity
        from app.schemas.chat_events import ServerEvent

        system = ChatSystem(store=fake_store, rate_limit_interval=60.0)
        a = system.connect(MagicMock(), UserIdentity(user_id=1, username="alice"))
        system.join_room(a, "general")
        state = ChatState(user_id=1, username="alice")
        for event in drain(a):
            state.apply(ServerEvent.model_validate(event))

        first = state.add_pending("one")
        second = state.add_pending("two")
        for pending in (first, second):
            await system.handle_frame(a, frame(
                "send-message", message=pending.message, client_ref=pending.client_ref,
            ))
        for event in drain(a):
            state.apply(ServerEvent.model_validate(event))

        assert [first.status, second.status] == ["sent", "failed"]


# ── 帧分发 ────────────────────────────────────────────────────────────

class TestHandleFrame:

    @pytest.mark.asyncio
    async def test_connect_sends_connected_event(self, chat_system) -> None:
        from app.core.security import UserIdentity

        websocket = MagicMock()
        conn = chat_system.connect(websocket, UserIdentity(user_id=7, username="eve"))

        events = drain(conn)
        assert events[0]["event"] == "connected"
        assert events[0]["data"]["user_id"] == 7

    @pytest.mark.asyncio
    async def test_join_acks_and_notifies_members(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        drain(a)

        await chat_system.handle_frame(b, frame("join-room", room_id="general"))

        assert event_names(a) == ["user-joined"]
        b_events = drain(b)
        assert b_events[0]["event"] == "joined"
        assert b_events[0]["data"] == {"room_id": "general", "online_count": 2}

    @pytest.mark.asyncio
    async def test_rejoining_same_room_does_not_renotify(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        chat_system.join_room(b, "general")
        drain(a)

        chat_system.join_room(b, "general")

        assert drain(a) == []

    @pytest.mark.asyncio
    async def test_numeric_room_id_is_normalized(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")

        await chat_system.handle_frame(a, frame("join-room", room_id=5))

        assert a.room_id == "5"

    @pytest.mark.asyncio
    async def test_message_outside_room_fails_with_client_ref(self, fake_store, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")

        await chat_system.handle_frame(a, frame("send-message", message="hello", client_ref="r1"))

        fake_store.store.assert_not_awaited()
        events = drain(a)
        assert events[0]["event"] == "message-failed"
        assert events[0]["data"]["client_ref"] == "r1"
        assert events[0]["data"]["code"] == "not_in_room"

    @pytest.mark.asyncio
    async def test_event_for_other_room_is_not_in_room(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        chat_system.join_room(a, "general")
        drain(a)

        await chat_system.handle_frame(a, frame("typing", room_id="random"))

        assert not chat_system.typing.is_typing("random", a)
        assert drain(a)[0]["data"]["code"] == "not_in_room"

    @pytest.mark.asyncio
    async def test_invalid_json_returns_error(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")

        await chat_system.handle_frame(a, "not json")

        events = drain(a)
        assert events[0]["data"]["code"] == "invalid_frame"

    @pytest.mark.asyncio
    async def test_unknown_event_returns_error(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")

        await chat_system.handle_frame(a, frame("dance"))

        assert drain(a)[0]["data"]["code"] == "invalid_frame"

    @pytest.mark.asyncio
    async def test_empty_message_returns_error(self, fake_store, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        chat_system.join_room(a, "general")
        drain(a)

        await chat_system.handle_frame(a, frame("send-message", message=""))

        fake_store.store.assert_not_awaited()
        assert drain(a)[0]["data"]["code"] == "invalid_payload"

    @pytest.mark.asyncio
    async def test_leave_room_frame(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        chat_system.join_room(a, "general")

        await chat_system.handle_frame(a, frame("leave-room"))

        assert a.room_id is None

    @pytest.mark.asyncio
    async def test_stop_typing_frame(self, chat_system, connect_user) -> None:
        a = connect_user(1, "alice")
        b = connect_user(2, "bob")
        chat_system.join_room(a, "general")
        chat_system.join_room(b, "general")
        await chat_system.handle_frame(a, frame("typing"))
        drain(b)

        await chat_system.handle_frame(a, frame("stop-typing", room_id="general"))

        events = drain(b)
        assert events[0]["event"] == "typing-changed"
        assert events[0]["data"]["is_typing"] is False

    @pytest.mark.asyncio
    async def test_rate_limited_message(self, fake_store) -> None:
        system = ChatSystem(store=fake_store, rate_limit_interval=60.0)
        from app.core.security import UserIdentity

        a = system.connect(MagicMock(), UserIdentity(user_id=1, username="alice"))
        system.join_room(a, "general")
        drain(a)

        await system.handle_frame(a, frame("send-message", message="one", client_ref="r1"))
        await system.handle_frame(a, frame("send-message", message="two", client_ref="r2"))

        assert fake_store.store.await_count == 1
        events = drain(a)
        assert [e["event"] for e in events] == ["message-sent", "message-failed"]
        assert events[1]["data"]["client_ref"] == "r2"
        assert events[1]["data"]["code"] == "rate_limited"
