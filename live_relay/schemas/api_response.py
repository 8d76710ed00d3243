"""
live_relay.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

对外通信的统一外壳。

- ``ApiResponse``：REST 接口的统一 JSON 应答体；
- ``WsFrame``：WebSocket 上下行消息帧，``{"event": ..., "data": ...}``。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """统一 JSON 应答体。

    .. code-block:: json

        {"code": 200, "data": {...}, "msg": "success"}

    Attributes:
        code: 业务状态码，200 表示成功。
        data: 实际业务数据。
        msg: 人类可读的状态消息。
    """

    code: int = Field(default=200, description="业务状态码")
    data: T = Field(..., description="业务数据")
    msg: str = Field(default="success", description="状态消息")

    @classmethod
    def ok(cls, data: T, msg: str = "success") -> ApiResponse[T]:
        """快捷构造成功响应。"""
        return cls(code=200, data=data, msg=msg)

    @classmethod
    def fail(cls, msg: str = "error", code: int = 500, data: Any = None) -> ApiResponse[Any]:
        """快捷构造失败响应。"""
        return cls(code=code, data=data, msg=msg)


class WsFrame(BaseModel):
    """WebSocket 消息帧。

    下行（服务端 → 浏览器）: ``status`` / ``roomInfo`` / ``chat`` / ``gift`` /
    ``roomUser`` / ``recordingStatus`` / ``conversionProgress``。

    上行（浏览器 → 服务端）: ``join`` / ``leave`` / ``startRecording`` /
    ``stopRecording``。
    """

    event: str = Field(..., min_length=1, description="事件名")
    data: Any = Field(default=None, description="事件负载")
