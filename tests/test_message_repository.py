"""
tests.test_message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

MessageRepository / RoomRepository 单元测试 —— 用 mock 集合代替 MongoDB。
"""
from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from pymongo.errors import PyMongoError

from app.core.exceptions import PersistenceError
from app.db.message_repository import MessageRepository
from app.db.room_repository import RoomRepository
from app.db.user_repository import UserRepository


def make_db(next_id: int = 1) -> tuple[MagicMock, MagicMock]:
    """所有集合共用同一个 mock，计数器固定返回 ``next_id``。"""
    collection = MagicMock()
    collection.create_index = AsyncMock()
    collection.insert_one = AsyncMock()
    collection.find_one = AsyncMock(return_value=None)
    collection.find_one_and_update = AsyncMock(return_value={"_id": "seq", "value": next_id})
    db = MagicMock()
    db.__getitem__.return_value = collection
    return db, collection


class TestMessageRepository:

    @pytest.mark.asyncio
    async def test_store_assigns_id_and_timestamp(self) -> None:
        db, collection = make_db(next_id=5)
        repo = MessageRepository(db)

        message = await repo.store("general", 1, "alice", "hello")

        assert message["id"] == 5
        assert message["content"] == "hello"
        assert message["created_at"].tzinfo is not None
        inserted = collection.insert_one.call_args[0][0]
        assert inserted["room_id"] == "general"
        assert "_id" not in message

    @pytest.mark.asyncio
    async def test_store_failure_raises_persistence_error(self) -> None:
        db, collection = make_db()
        collection.insert_one = AsyncMock(side_effect=PyMongoError("write failed"))
        repo = MessageRepository(db)

        with pytest.raises(PersistenceError):
            await repo.store("general", 1, "alice", "hello")

    @pytest.mark.asyncio
    async def test_indexes_created_once(self) -> None:
        db, collection = make_db()
        repo = MessageRepository(db)

        await repo.store("general", 1, "alice", "a")
        await repo.store("general", 1, "alice", "b")

        assert collection.create_index.await_count == 2

    @pytest.mark.asyncio
    async def test_get_page_returns_oldest_first(self) -> None:
        db, collection = make_db()
        t1 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        t2 = datetime(2024, 1, 2, tzinfo=timezone.utc)
        cursor = MagicMock()
        cursor.sort.return_value = cursor
        cursor.skip.return_value = cursor
        cursor.limit.return_value = cursor
        cursor.to_list = AsyncMock(return_value=[
            {"id": 2, "created_at": t2},
            {"id": 1, "created_at": t1},
        ])
        collection.find.return_value = cursor
        repo = MessageRepository(db)

        messages = await repo.get_page("general", page=2, limit=10)

        assert [m["id"] for m in messages] == [1, 2]
        cursor.sort.assert_called_once_with("created_at", -1)
        cursor.skip.assert_called_once_with(10)
        cursor.limit.assert_called_once_with(10)

    @pytest.mark.asyncio
    async def test_delete_message(self) -> None:
        db, collection = make_db()
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
        repo = MessageRepository(db)

        assert await repo.delete_message(3) is True
        collection.delete_one.assert_awaited_once_with({"id": 3})


class TestRoomRepository:

    @pytest.mark.asyncio
    async def test_create_room(self) -> None:
        db, collection = make_db(next_id=9)
        repo = RoomRepository(db)

        room = await repo.create_room("general", created_by=1)

        assert room["id"] == 9
        assert room["name"] == "general"
        collection.insert_one.assert_awaited_once()


class TestUserRepository:

    @pytest.mark.asyncio
    async def test_get_username(self) -> None:
        db, collection = make_db()
        collection.find_one = AsyncMock(return_value={"username": "alice"})

        assert await UserRepository(db).get_username(1) == "alice"

    @pytest.mark.asyncio
    async def test_missing_user(self) -> None:
        db, _ = make_db()

        assert await UserRepository(db).get_username(1) is None

    @pytest.mark.asyncio
    async def test_get_usernames_batches_lookup(self) -> None:
        db, collection = make_db()
        cursor = MagicMock()
        cursor.to_list = AsyncMock(return_value=[
            {"id": 1, "username": "alice"},
            {"id": 2, "username": "bob"},
        ])
        collection.find.return_value = cursor

        names = await UserRepository(db).get_usernames([2, 1, 2, 3])

        assert names == {1: "alice", 2: "bob"}
        query = collection.find.call_args[0][0]
        assert query == {"id": {"$in": [1, 2, 3]}}

    @pytest.mark.asyncio
    async def test_get_usernames_empty(self) -> None:
        db, collection = make_db()

        assert await UserRepository(db).get_usernames([]) == {}
        collection.find.assert_not_called()
