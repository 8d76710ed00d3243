"""
live_relay.sources.base
~~~~~~~~~~~~~~~~~~~~~~~

上游事件源（EventSource）的窄接口定义。

事件源本身是外部协作者：本项目只依赖 ``connect()`` / ``disconnect()``
两个方法，以及它向事件通道推送的 ``LiveEvent``。事件通道由会话创建并持有，
事件源只负责按到达顺序调用 ``sink``。
"""
from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from live_relay.schemas.live_events import LiveEvent

EventSink = Callable[[LiveEvent], None]


@dataclass
class ConnectResult:
    """``connect()`` 成功后返回的房间元数据。"""

    room_id: str | None
    room_info: dict[str, Any] = field(default_factory=dict)
    # 礼物目录，按 giftId 索引，用于补全礼物名称 / 图片
    gift_map: dict[str, dict[str, Any]] = field(default_factory=dict)


class EventSource(Protocol):
    """一个上游直播间连接。"""

    async def connect(self) -> ConnectResult:
        """连接上游直播间。

        Raises:
            ConnectFailure: 主播未开播、用户不存在或网络异常。
        """
        ...

    async def disconnect(self) -> None:
        """断开连接并释放资源。可重复调用。"""
        ...


EventSourceFactory = Callable[[str, EventSink], EventSource]
"""``(target, sink) -> EventSource``：为指定直播间创建一个新的事件源。"""
