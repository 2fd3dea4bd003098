"""
app.api.deps
~~~~~~~~~~~~

FastAPI 依赖项 —— 从 ``app.state`` 取出在 lifespan 中创建的服务实例，
以及 REST 接口的 Bearer 令牌认证。
"""
from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import AuthenticationError
from app.core.security import Authenticator, UserIdentity
from app.db.message_repository import MessageRepository
from app.db.room_repository import RoomRepository
from app.db.user_repository import UserRepository
from app.services.chat_system import ChatSystem

_bearer = HTTPBearer(auto_error=False)


def get_chat_system(request: Request) -> ChatSystem:
    return request.app.state.chat_system


def get_message_repository(request: Request) -> MessageRepository:
    return request.app.state.message_repository


def get_room_repository(request: Request) -> RoomRepository:
    return request.app.state.room_repository


def get_user_repository(request: Request) -> UserRepository:
    return request.app.state.user_repository


def get_authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    authenticator: Authenticator = Depends(get_authenticator),
) -> UserIdentity:
    """校验 ``Authorization: Bearer <token>``，失败时返回 401。"""
    token = credentials.credentials if credentials is not None else None
    try:
        return await authenticator.authenticate(token)
    except AuthenticationError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing token",
            headers={"WWW-Authenticate": "Bearer"},
        ) from e
