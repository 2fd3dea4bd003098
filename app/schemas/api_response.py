"""
app.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的统一应答信封。

WebSocket 侧用 ``{"event", "data"}`` 信封，REST 侧统一用本模型，
异常处理器也用它包装错误，前端只需要一套解析逻辑。
``code`` 始终与 HTTP 状态码一致。
"""
from __future__ import annotations

from http import HTTPStatus
from typing import Any, Generic, TypeVar

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体::

        {"code": 200, "data": {...}, "msg": "success"}

    Attributes:
        code: 与 HTTP 状态码相同。
        data: 业务数据，失败时通常为 ``null``。
        msg: 可读的状态说明。
    """

    code: int = Field(default=200, description="HTTP 状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态说明")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def created(cls, data: T, msg: str = "created") -> ApiResponse[T]:
        """新建资源（房间、消息）的应答，配合 ``status_code=201`` 的路由使用。"""
        return cls(code=201, data=data, msg=msg)

    @classmethod
    def fail(cls, code: int = 500, msg: str | None = None, data: Any = None) -> ApiResponse[Any]:
        """失败应答；未给出 ``msg`` 时使用状态码的标准短语。"""
        if msg is None:
            try:
                msg = HTTPStatus(code).phrase
            except ValueError:
                msg = "error"
        return cls(code=code, data=data, msg=msg)

    def to_response(self, headers: dict[str, str] | None = None) -> JSONResponse:
        """包装为 ``JSONResponse``，HTTP 状态码取自 ``code``（异常处理器使用）。"""
        return JSONResponse(
            status_code=self.code,
            content=self.model_dump(mode="json"),
            headers=headers,
        )
