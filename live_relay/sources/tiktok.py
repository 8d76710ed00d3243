"""
live_relay.sources.tiktok
~~~~~~~~~~~~~~~~~~~~~~~~~

基于 ``TikTokLive`` 的事件源实现。

SDK 的回调被转换为 ``LiveEvent`` 推入会话的事件通道；连接异常被归类为
``StreamEnded``（主播未开播 / 直播已结束）或 ``ConnectFailure``。
"""
from __future__ import annotations

import asyncio
from typing import Any

from TikTokLive import TikTokLiveClient
from TikTokLive.client.errors import UserNotFoundError, UserOfflineError
from TikTokLive.events import (
    CommentEvent,
    GiftEvent,
    JoinEvent,
    LikeEvent,
    LiveEndEvent,
    RoomUserSeqEvent,
    ShareEvent,
)

from live_relay.core.errors import ConnectFailure, StreamEnded
from live_relay.core.logging import get_logger
from live_relay.core.settings import settings
from live_relay.schemas.live_events import EventType, LiveEvent
from live_relay.sources import normalize
from live_relay.sources.base import ConnectResult, EventSink

logger = get_logger(__name__)


class TikTokEventSource:
    """一个 TikTok 直播间连接。

    Attributes:
        target: 主播用户名（不含 ``@``）。
        client: 底层 ``TikTokLiveClient``。
    """

    def __init__(
        self,
        target: str,
        sink: EventSink,
        session_id: str | None = None,
        fetch_gift_info: bool = True,
    ) -> None:
        self.target = target
        self._sink = sink
        self._fetch_gift_info = fetch_gift_info
        self._task: asyncio.Task | None = None

        self.client = TikTokLiveClient(unique_id=f"@{target}")
        if session_id:
            self.client.web.set_session(session_id)
            logger.info("使用 Session ID 连接 | target=%s", target)

        self._register(CommentEvent, EventType.CHAT, normalize.chat_payload)
        self._register(GiftEvent, EventType.GIFT, normalize.gift_payload)
        self._register(LikeEvent, EventType.LIKE, normalize.like_payload)
        self._register(ShareEvent, EventType.SOCIAL, normalize.social_payload)
        self._register(JoinEvent, EventType.MEMBER, normalize.member_payload)
        self._register(RoomUserSeqEvent, EventType.ROOM_USER, normalize.room_user_payload)
        self._register(LiveEndEvent, EventType.STREAM_END, lambda _: {})

    def _register(self, sdk_event: type, event_type: EventType, convert: Any) -> None:
        async def handler(event: Any) -> None:
            try:
                payload = convert(event)
            except Exception as e:
                logger.warning("上游事件解析失败 | type=%s | %s", event_type.value, e, exc_info=True)
                return
            self._sink(LiveEvent(type=event_type, data=payload))

        self.client.add_listener(sdk_event, handler)

    async def connect(self) -> ConnectResult:
        """连接直播间并返回房间元数据。"""
        try:
            self._task = await self.client.start(
                fetch_room_info=True,
                fetch_gift_info=self._fetch_gift_info,
            )
        except UserOfflineError as e:
            raise StreamEnded(f"{self.target} is offline: {e}") from e
        except UserNotFoundError as e:
            raise ConnectFailure(f"{self.target} not found: {e}") from e
        except Exception as e:
            raise ConnectFailure(str(e) or type(e).__name__) from e

        self._task.add_done_callback(self._on_task_done)
        gift_map = (
            normalize.gift_catalog(self.client.gift_info) if self._fetch_gift_info else {}
        )
        return ConnectResult(
            room_id=str(self.client.room_id) if self.client.room_id else None,
            room_info=dict(self.client.room_info or {}),
            gift_map=gift_map,
        )

    async def disconnect(self) -> None:
        """断开连接。未连接时直接返回。"""
        if self.client.connected:
            await self.client.disconnect()
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    def _on_task_done(self, task: asyncio.Task) -> None:
        # 连接中途的传输层错误只作为 error 事件上报，不改变会话状态
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._sink(LiveEvent(type=EventType.ERROR, data={"message": str(exc)}))


def create_tiktok_source(target: str, sink: EventSink) -> TikTokEventSource:
    """默认的事件源工厂，连接参数取自全局配置。"""
    return TikTokEventSource(
        target,
        sink,
        session_id=settings.TIKTOK_SESSION_ID,
        fetch_gift_info=settings.ENABLE_EXTENDED_GIFT_INFO,
    )
