"""
app.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~

聊天室元数据仓库 —— 封装 MongoDB ``chat_rooms`` 集合。

WebSocket 层的房间是隐式创建的，这里只保存通过 REST 创建的房间
（名称、创建者），供房间列表与详情页使用。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.logging import get_logger
from app.db import next_sequence

logger = get_logger(__name__)

_COLLECTION_NAME = "chat_rooms"
_SEQUENCE_NAME = "chat_room_id"


class ChatRoom(TypedDict):
    """代表 MongoDB 中 chat_rooms 集合的单条记录"""
    id: int
    name: str
    created_by: int | None
    created_at: datetime


class RoomRepository:
    """聊天室仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def create_room(self, name: str, created_by: int | None) -> ChatRoom:
        doc: ChatRoom = {
            "id": await next_sequence(self.db, _SEQUENCE_NAME),
            "name": name,
            "created_by": created_by,
            "created_at": datetime.now(timezone.utc),
        }
        await self._collection.insert_one(dict(doc))
        logger.info("聊天室已创建 | id=%d | name=%s | by=%s", doc["id"], name, created_by)
        return doc

    async def get_room(self, room_id: int) -> ChatRoom | None:
        return await self._collection.find_one({"id": room_id}, {"_id": 0})

    async def list_rooms(self) -> list[ChatRoom]:
        cursor = self._collection.find({}, {"_id": 0}).sort("id", 1)
        return await cursor.to_list(length=None)
