"""
app.core.security
~~~~~~~~~~~~~~~~~

访问令牌校验 —— 只负责解析，不负责签发。

令牌为 HS256 JWT，载荷中必须包含 ``userId``，可选 ``username``。
缺少 ``username`` 时由 ``Authenticator`` 到 ``users`` 集合中补全。
"""
from __future__ import annotations

from typing import Protocol

from jose import JWTError, jwt
from pydantic import BaseModel

from app.core.exceptions import AuthenticationError
from app.core.logging import get_logger
from app.core.settings import settings

logger = get_logger(__name__)


class UserIdentity(BaseModel):
    """认证通过后的用户身份，在连接生命周期内保持不变。"""

    user_id: int
    username: str


class TokenClaims(BaseModel):
    """JWT 中与身份相关的声明。"""

    user_id: int
    username: str | None = None


class UsernameLookup(Protocol):
    async def get_username(self, user_id: int) -> str | None: ...


def decode_access_token(token: str) -> TokenClaims:
    """解析并校验访问令牌。

    Args:
        token: 原始 JWT 字符串（不带 ``Bearer`` 前缀）。

    Returns:
        令牌中的身份声明。

    Raises:
        AuthenticationError: 签名无效、已过期或缺少 ``userId``。
    """
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError as e:
        raise AuthenticationError(f"invalid token: {e}") from e

    user_id = payload.get("userId")
    if user_id is None:
        raise AuthenticationError("token has no userId claim")
    try:
        return TokenClaims(user_id=int(user_id), username=payload.get("username"))
    except (TypeError, ValueError) as e:
        raise AuthenticationError(f"invalid userId claim: {user_id!r}") from e


class Authenticator:
    """把访问令牌解析为 ``UserIdentity``。

    Attributes:
        users: 可选的用户名查询接口，令牌中没有 ``username`` 时使用。
    """

    def __init__(self, users: UsernameLookup | None = None) -> None:
        self.users = users

    async def authenticate(self, token: str | None) -> UserIdentity:
        if not token:
            raise AuthenticationError("missing token")
        claims = decode_access_token(token)
        username = claims.username
        if username is None and self.users is not None:
            username = await self.users.get_username(claims.user_id)
            if username is None:
                # 令牌合法但用户已被删除
                raise AuthenticationError(f"unknown user {claims.user_id}")
        return UserIdentity(
            user_id=claims.user_id,
            username=username or f"user-{claims.user_id}",
        )
