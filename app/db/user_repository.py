"""
app.db.user_repository
~~~~~~~~~~~~~~~~~~~~~~

只读的用户查询，供认证时补全用户名、房间接口显示创建者。用户注册与登录不在本服务内。
"""
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorDatabase

_COLLECTION_NAME = "users"


class UserRepository:
    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db[_COLLECTION_NAME]

    async def get_username(self, user_id: int) -> str | None:
        doc = await self._collection.find_one({"id": user_id}, {"_id": 0, "username": 1})
        if doc is None:
            return None
        return doc.get("username")

    async def get_usernames(self, user_ids: list[int]) -> dict[int, str]:
        """批量查询用户名，不存在的用户不出现在结果中。"""
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        cursor = self._collection.find({"id": {"$in": ids}}, {"_id": 0, "id": 1, "username": 1})
        docs = await cursor.to_list(length=None)
        return {doc["id"]: doc["username"] for doc in docs if doc.get("username")}
