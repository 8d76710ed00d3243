"""
live_relay.api.live_ws
~~~~~~~~~~~~~~~~~~~~~~

WebSocket 实时通道 —— 每个浏览器连接对应一个客户端标识和一个会话。

消息协议（JSON 帧 ``{"event": ..., "data": ...}``）:

上行:
  - ``join``            → ``{"target": "主播名", "options": {"enableAutoReconnect": true, "retryIntervalMs": 10000}}``
    （``data`` 也可以直接是主播名字符串）
  - ``leave``           → 关闭当前会话
  - ``startRecording``  → ``{"quality": "480p"}``（可选）
  - ``stopRecording``   → 停止录制，随后自动转封装

下行: ``status`` / ``roomInfo`` / ``chat`` / ``gift`` / ``roomUser`` /
``recordingStatus`` / ``conversionProgress``
"""
from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from live_relay.core.errors import RecordingError
from live_relay.core.logging import client_id_ctx_var, get_logger
from live_relay.schemas.api_response import WsFrame
from live_relay.schemas.live_events import JoinOptions
from live_relay.services.client_hub import ClientHub
from live_relay.services.recording import RecordingPipeline
from live_relay.services.session_manager import SessionManager

logger = get_logger(__name__)

router: APIRouter = APIRouter()


class LiveChannel:
    """单个 WebSocket 连接上的命令处理器。"""

    def __init__(
        self,
        client_id: str,
        hub: ClientHub,
        manager: SessionManager,
        pipeline: RecordingPipeline,
    ) -> None:
        self.client_id = client_id
        self.hub = hub
        self.manager = manager
        self.pipeline = pipeline

    async def handle(self, raw: str) -> None:
        """解析并执行一条上行消息。格式错误的消息只记录日志。"""
        try:
            frame = WsFrame.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            logger.warning("无法解析的消息，已忽略 | %s", e)
            return

        handler = getattr(self, f"on_{frame.event}", None)
        if handler is None:
            logger.warning("未知命令，已忽略 | event=%s", frame.event)
            return
        await handler(frame.data)

    async def on_join(self, data: Any) -> None:
        if isinstance(data, str):
            target, options = data, JoinOptions()
        elif isinstance(data, dict):
            target = data.get("target") or data.get("username") or ""
            try:
                options = JoinOptions.model_validate(data.get("options") or {})
            except ValidationError as e:
                logger.warning("join 参数无效，使用默认值 | %s", e)
                options = JoinOptions()
        else:
            target, options = "", JoinOptions()

        try:
            await self.manager.join(self.client_id, target, options)
        except ValueError as e:
            logger.warning("join 请求无效 | %s", e)
            self.hub.publish(
                self.client_id, "status", {"state": "error", "message": str(e)},
            )

    async def on_leave(self, data: Any) -> None:
        await self.manager.leave(self.client_id)

    async def on_startRecording(self, data: Any) -> None:
        quality = data.get("quality") if isinstance(data, dict) else None
        session = self.manager.get(self.client_id)
        url = self.manager.stream_url(self.client_id, quality)
        label = session.target if session is not None else None
        try:
            await self.pipeline.start(self.client_id, url, label=label)
        except RecordingError as e:
            logger.warning("无法开始录制 | %s", e)
            self.hub.publish(
                self.client_id,
                "recordingStatus",
                {"isRecording": self.pipeline.is_recording(self.client_id), "error": str(e)},
            )

    async def on_stopRecording(self, data: Any) -> None:
        await self.pipeline.stop(self.client_id)

    async def close(self) -> None:
        """连接断开：关闭会话，停止录制（转封装在后台继续完成）。"""
        await self.manager.leave(self.client_id)
        if self.pipeline.is_recording(self.client_id):
            await self.pipeline.stop(self.client_id)


@router.websocket("/ws/live")
async def live_endpoint(websocket: WebSocket) -> None:
    """WebSocket 直播中继端点。

    接收协程处理上行命令，写协程（``ClientHub.pump``）按顺序下发事件，两者并发运行。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    client_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = client_id_ctx_var.set(client_id)
    state = websocket.app.state
    hub: ClientHub = state.client_hub
    channel = LiveChannel(client_id, hub, state.session_manager, state.recording_pipeline)

    try:
        await hub.connect(client_id, websocket)
        logger.info("客户端已连接 | 在线: %d", hub.online_count)
        writer = asyncio.create_task(hub.pump(client_id))
        try:
            while True:
                raw: str = await websocket.receive_text()
                await channel.handle(raw)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 异常: %s", e, exc_info=True)
        finally:
            await channel.close()
            hub.disconnect(client_id)
            await writer
            logger.info("客户端已断开 | 在线: %d", hub.online_count)
    finally:
        client_id_ctx_var.reset(token)
