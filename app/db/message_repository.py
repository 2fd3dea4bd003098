"""
app.db.message_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

聊天消息持久化仓库 —— 封装 MongoDB ``messages`` 集合的增删查操作。

``MessageStore`` 是广播层依赖的最小接口：广播前先 ``store()``，
拿到分配的 ``id`` 和 ``created_at`` 后才会组装广播消息。
写入失败统一抛出 ``PersistenceError``，未持久化的消息绝不广播。
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from app.core.exceptions import PersistenceError
from app.core.logging import get_logger
from app.db import next_sequence

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "messages"
_SEQUENCE_NAME = "message_id"

_PROJECTION = {
    "_id": 0,
    "id": 1,
    "room_id": 1,
    "user_id": 1,
    "username": 1,
    "content": 1,
    "created_at": 1,
}


class StoredMessage(TypedDict):
    """代表 MongoDB 中 messages 集合的单条记录"""
    id: int
    room_id: str
    user_id: int
    username: str
    content: str
    created_at: datetime


class RoomMessageStats(TypedDict):
    message_count: int
    last_message_time: datetime | None


class MessageStore(Protocol):
    """消息持久化桥接接口。"""

    async def store(
        self, room_id: str, user_id: int, username: str, body: str,
    ) -> StoredMessage: ...


class MessageRepository:
    """消息持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index(
            [("room_id", 1), ("created_at", 1)],
            name="idx_room_time",
        )
        await self._collection.create_index("id", name="idx_id", unique=True)
        self._indexes_created = True
        logger.debug("messages 索引已就绪")

    async def store(
        self, room_id: str, user_id: int, username: str, body: str,
    ) -> StoredMessage:
        """保存一条消息并返回带有 ``id`` / ``created_at`` 的记录。

        Raises:
            PersistenceError: MongoDB 写入失败。
        """
        try:
            await self._ensure_indexes()
            doc: StoredMessage = {
                "id": await next_sequence(self.db, _SEQUENCE_NAME),
                "room_id": room_id,
                "user_id": user_id,
                "username": username,
                "content": body,
                "created_at": datetime.now(timezone.utc),
            }
            # insert_one 会往字典里写 _id，传副本保持返回值干净
            await self._collection.insert_one(dict(doc))
        except PyMongoError as e:
            logger.error("消息持久化失败 | room=%s | user=%s: %s", room_id, user_id, e)
            raise PersistenceError(str(e)) from e
        return doc

    async def get_page(
        self, room_id: str, page: int = 1, limit: int = 50,
    ) -> list[StoredMessage]:
        """获取指定房间的一页消息。

        第 1 页是最新的 ``limit`` 条，页内按时间正序返回。

        Args:
            room_id: 房间唯一标识。
            page: 页码，从 1 开始。
            limit: 每页最大条数。
        """
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"room_id": room_id}, _PROJECTION)
            .sort("created_at", -1)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        messages = await cursor.to_list(length=limit)
        messages.reverse()
        return messages

    async def count_messages(self, room_id: str) -> int:
        """获取指定房间的消息总数。"""
        await self._ensure_indexes()
        return await self._collection.count_documents({"room_id": room_id})

    async def get_message(self, message_id: int) -> StoredMessage | None:
        return await self._collection.find_one({"id": message_id}, _PROJECTION)

    async def delete_message(self, message_id: int) -> bool:
        """删除一条消息，返回是否确实删除了记录。"""
        result = await self._collection.delete_one({"id": message_id})
        return result.deleted_count > 0

    async def room_stats(self, room_ids: list[str]) -> dict[str, RoomMessageStats]:
        """批量统计各房间的消息数与最近消息时间。"""
        pipeline = [
            {"$match": {"room_id": {"$in": room_ids}}},
            {
                "$group": {
                    "_id": "$room_id",
                    "message_count": {"$sum": 1},
                    "last_message_time": {"$max": "$created_at"},
                },
            },
        ]
        stats: dict[str, RoomMessageStats] = {}
        async for row in self._collection.aggregate(pipeline):
            stats[row["_id"]] = {
                "message_count": row["message_count"],
                "last_message_time": row["last_message_time"],
            }
        return stats
