"""
live_relay.services.client_hub
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

客户端消息中枢 —— 维护在线浏览器连接，负责把核心层事件下发给指定客户端或全体客户端。

核心层（会话管理、录制流水线）只依赖 ``Publisher`` 协议：``publish`` /
``broadcast`` 都是同步、非阻塞的，事件先进入每个客户端独立的下行队列，
再由该连接的写协程按顺序发送。
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Protocol

from fastapi import WebSocket

from live_relay.core.logging import get_logger
from live_relay.schemas.api_response import WsFrame

logger = get_logger(__name__)


class Publisher(Protocol):
    """核心层向上游（传输层）发布事件的接口。"""

    def publish(self, client_id: str, event: str, data: Any) -> None:
        """向单个客户端发布事件。"""
        ...

    def broadcast(self, event: str, data: Any) -> None:
        """向所有在线客户端发布事件。"""
        ...


class ClientHub:
    """WebSocket 客户端中枢（``Publisher`` 的实现）。

    Attributes:
        queue_size: 每个客户端下行队列的容量上限。
    """

    def __init__(self, queue_size: int = 1000) -> None:
        self.queue_size = queue_size
        self._sockets: dict[str, WebSocket] = {}
        self._queues: dict[str, asyncio.Queue[WsFrame | None]] = {}

    async def connect(self, client_id: str, websocket: WebSocket) -> None:
        """接受新连接并注册下行队列。"""
        await websocket.accept()
        self._sockets[client_id] = websocket
        self._queues[client_id] = asyncio.Queue(maxsize=self.queue_size)

    def disconnect(self, client_id: str) -> None:
        """注销连接，并通知写协程退出。"""
        self._sockets.pop(client_id, None)
        queue = self._queues.pop(client_id, None)
        if queue is not None:
            if queue.full():
                # 连接已断开，积压的事件没有必要再发送
                while not queue.empty():
                    queue.get_nowait()
            queue.put_nowait(None)

    def publish(self, client_id: str, event: str, data: Any) -> None:
        queue = self._queues.get(client_id)
        if queue is None:
            logger.debug("客户端已离线，丢弃事件 | client=%s | event=%s", client_id, event)
            return
        try:
            queue.put_nowait(WsFrame(event=event, data=data))
        except asyncio.QueueFull:
            logger.warning("下行队列已满，丢弃事件 | client=%s | event=%s", client_id, event)

    def broadcast(self, event: str, data: Any) -> None:
        for client_id in list(self._queues):
            self.publish(client_id, event, data)

    async def pump(self, client_id: str) -> None:
        """写协程：按入队顺序把事件发送到该客户端，直到连接注销。"""
        queue = self._queues.get(client_id)
        websocket = self._sockets.get(client_id)
        if queue is None or websocket is None:
            return
        while True:
            frame = await queue.get()
            if frame is None:
                break
            try:
                await websocket.send_text(json.dumps(frame.model_dump(), default=str))
            except Exception as e:
                logger.warning("下行发送失败，停止推送 | client=%s | %s", client_id, e)
                break

    @property
    def online_count(self) -> int:
        """当前在线客户端数。"""
        return len(self._sockets)
