"""
live_relay.services.session_manager
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

会话生命周期管理器 —— 每个客户端标识对应一个 ``LiveSession``，
每个会话在任意时刻只持有一个上游事件源。

状态机::

    idle → connecting → {connected, offline, error}
    connected → offline           （直播结束）
    offline / error → connecting  （重连定时器触发，或再次 join）
    任意状态 → idle               （leave / 客户端断开）

上游事件通过会话私有的 ``asyncio.Queue`` 事件通道送达，
由每个连接唯一的分发协程按到达顺序处理。
"""
from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from live_relay.core.errors import ConnectFailure, StreamEnded
from live_relay.core.logging import get_logger
from live_relay.schemas.live_events import (
    EventType,
    JoinOptions,
    LiveEvent,
    SessionInfoData,
    SessionState,
    StatusPayload,
)
from live_relay.services.client_hub import Publisher
from live_relay.services.gift_reconciler import GiftReconciler
from live_relay.services.stream_url import resolve_stream_url
from live_relay.sources.base import EventSource, EventSourceFactory

logger = get_logger(__name__)

# 上游聊天类事件 → 下发给浏览器的 ``chat`` 子类型
_CHAT_TYPES: dict[EventType, str] = {
    EventType.CHAT: "chat",
    EventType.LIKE: "like",
    EventType.SOCIAL: "share",
    EventType.MEMBER: "join",
}

# 连接失败信息中表示“直播已结束 / 未开播”的模式
_STREAM_ENDED_PATTERN = re.compile(
    r"stream\s+(has\s+)?ended|live\s+(has\s+)?ended|LIVE_HAS_ENDED|is\s+offline",
    re.IGNORECASE,
)

_GIFT_DISPLAY_FIELDS: tuple[str, ...] = ("giftName", "giftPictureUrl", "diamondCount")


def _now_ms() -> float:
    return time.time() * 1000


def normalize_target(target: str) -> str:
    """规范化目标直播间标识（去空白、去前导 ``@``）。

    Raises:
        ValueError: 目标为空。
    """
    value = (target or "").strip().lstrip("@").strip()
    if not value:
        raise ValueError("target must be a non-empty string")
    return value


def classify_failure(exc: BaseException) -> ConnectFailure:
    """把 ``connect()`` 抛出的任意异常归类为 ``StreamEnded`` 或 ``ConnectFailure``。"""
    if isinstance(exc, ConnectFailure):
        if not isinstance(exc, StreamEnded) and _STREAM_ENDED_PATTERN.search(str(exc)):
            return StreamEnded(str(exc))
        return exc
    message = str(exc) or type(exc).__name__
    if _STREAM_ENDED_PATTERN.search(message):
        return StreamEnded(message)
    return ConnectFailure(message)


@dataclass
class RetryPolicy:
    """自动重连策略。"""

    enabled: bool
    interval_ms: int
    next_retry_at: int | None = None


class LiveSession:
    """单个客户端对单个直播间的订阅。

    Attributes:
        client_id: 客户端标识。
        target: 目标直播间。
        options: ``join`` 时传入的参数。
        state: 当前状态。
        retry: 自动重连策略。
        room_id: 上游房间 ID（最近一次连接成功时的值）。
        room_info: 房间元数据（最近一次连接成功时的值）。
        gift_map: 礼物目录缓存，用于补全礼物事件的展示字段。
        reconciler: 本会话的礼物对账引擎。
        source: 当前持有的事件源。
    """

    def __init__(
        self,
        client_id: str,
        target: str,
        options: JoinOptions,
        reconciler: GiftReconciler,
    ) -> None:
        self.client_id = client_id
        self.target = target
        self.options = options
        self.state: SessionState = SessionState.IDLE
        self.retry = RetryPolicy(
            enabled=options.enable_auto_reconnect,
            interval_ms=options.retry_interval_ms,
        )
        self.room_id: str | None = None
        self.room_info: dict[str, Any] = {}
        self.gift_map: dict[str, dict[str, Any]] = {}
        self.reconciler = reconciler
        self.source: EventSource | None = None
        self.closed: bool = False

        self._connect_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._retry_task: asyncio.Task | None = None

    @property
    def connect_task(self) -> asyncio.Task | None:
        """当前连接尝试的任务（测试与关闭流程使用）。"""
        return self._connect_task

    def info(self) -> SessionInfoData:
        """返回会话摘要信息。"""
        return SessionInfoData(
            client_id=self.client_id,
            target=self.target,
            state=self.state,
            auto_reconnect=self.retry.enabled,
            next_retry_at=self.retry.next_retry_at,
            room_id=self.room_id,
            total_coins=self.reconciler.total_coins,
        )


class SessionManager:
    """会话生命周期管理器。

    - ``join(client_id, target, options)`` → 打开（或替换）客户端的会话
    - ``leave(client_id)``                 → 关闭会话（幂等）
    - ``stream_url(client_id, quality)``   → 解析当前会话的直播流地址

    Attributes:
        publisher: 事件下发通道。
    """

    def __init__(
        self,
        source_factory: EventSourceFactory,
        publisher: Publisher,
        reconciler_factory: Callable[[], GiftReconciler] = GiftReconciler,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.publisher = publisher
        self._source_factory = source_factory
        self._reconciler_factory = reconciler_factory
        self._clock = clock
        self._sessions: dict[str, LiveSession] = {}

    # ── 公共接口 ──────────────────────────────────────────────────────

    async def join(
        self,
        client_id: str,
        target: str,
        options: JoinOptions | None = None,
    ) -> LiveSession:
        """让客户端订阅指定直播间。

        同一目标正在连接中时重复调用为空操作；否则先拆除旧会话再建立新会话，
        并重置礼物对账状态。

        Args:
            client_id: 客户端标识。
            target: 目标直播间（主播用户名）。
            options: 自动重连等参数。

        Returns:
            当前生效的 ``LiveSession``。

        Raises:
            ValueError: ``target`` 为空。
        """
        target = normalize_target(target)
        current = self._sessions.get(client_id)
        if (
            current is not None
            and current.state is SessionState.CONNECTING
            and current.target == target
        ):
            logger.debug("重复的 join 请求，忽略 | target=%s", target)
            return current

        session = LiveSession(
            client_id=client_id,
            target=target,
            options=options or JoinOptions(),
            reconciler=self._reconciler_factory(),
        )
        # 先同步登记新会话，保证后续并发 join 能看到 connecting 状态
        self._sessions[client_id] = session
        logger.info("请求订阅直播间 | target=%s", target)
        self._set_state(session, SessionState.CONNECTING, f"Connecting to {target}...")

        if current is not None:
            await self._teardown(current)
        if self._is_live(session):
            self._open_connection(session)
        return session

    async def leave(self, client_id: str) -> None:
        """关闭客户端的会话：断开事件源、取消重连定时器。可重复调用。"""
        session = self._sessions.pop(client_id, None)
        if session is None:
            return
        logger.info("关闭会话 | target=%s", session.target)
        await self._teardown(session)

    async def close_all(self) -> None:
        """关闭所有会话（应用退出时调用）。"""
        for client_id in list(self._sessions):
            await self.leave(client_id)

    def get(self, client_id: str) -> LiveSession | None:
        """获取客户端当前的会话。"""
        return self._sessions.get(client_id)

    def list_sessions(self) -> list[SessionInfoData]:
        """列出所有会话的摘要信息。"""
        return [session.info() for session in self._sessions.values()]

    def stream_url(self, client_id: str, quality: str | None = None) -> str | None:
        """解析客户端当前会话的直播流地址（基于最近一次成功连接的房间信息）。"""
        session = self._sessions.get(client_id)
        if session is None:
            return None
        return resolve_stream_url(session.room_info, quality)

    # ── 连接 / 重连 ───────────────────────────────────────────────────

    def _open_connection(self, session: LiveSession) -> None:
        """为会话创建新的事件通道、事件源、分发协程和连接任务。"""
        channel: asyncio.Queue[LiveEvent] = asyncio.Queue()
        source = self._source_factory(session.target, channel.put_nowait)
        session.source = source
        session._dispatch_task = asyncio.create_task(self._dispatch(session, channel))
        session._connect_task = asyncio.create_task(self._connect(session, source))

    async def _connect(self, session: LiveSession, source: EventSource) -> None:
        try:
            result = await source.connect()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._is_current(session, source):
                self._on_connect_failure(session, classify_failure(e))
            return

        if not self._is_current(session, source):
            return
        session.room_id = result.room_id
        session.room_info = result.room_info
        if result.gift_map:
            session.gift_map = result.gift_map
        session.retry.next_retry_at = None
        logger.info("已连接直播间 | target=%s | room_id=%s", session.target, result.room_id)
        self._set_state(session, SessionState.CONNECTED, "Connected to live stream!")
        if result.room_info:
            self.publisher.publish(session.client_id, "roomInfo", result.room_info)

    def _on_connect_failure(self, session: LiveSession, failure: ConnectFailure) -> None:
        logger.warning(
            "连接直播间失败 | target=%s | %s: %s",
            session.target, type(failure).__name__, failure,
        )
        if not session.retry.enabled:
            self._set_state(session, SessionState.ERROR, f"Failed to connect: {failure}")
            return
        if isinstance(failure, StreamEnded):
            message = "Stream ended. Waiting for next stream..."
        else:
            seconds = session.retry.interval_ms // 1000
            message = f"User offline or not found. Retrying in {seconds}s..."
        self._go_offline(session, message)

    def _go_offline(self, session: LiveSession, message: str) -> None:
        """进入 offline 状态；开启自动重连时同时布置重连定时器。"""
        session.state = SessionState.OFFLINE
        if session.retry.enabled:
            self._arm_retry(session)
        else:
            session.retry.next_retry_at = None
        self._publish_status(session, message)

    def _arm_retry(self, session: LiveSession) -> None:
        self._cancel(session._retry_task)
        delay_ms = session.retry.interval_ms
        session.retry.next_retry_at = int(self._clock() + delay_ms)
        session._retry_task = asyncio.create_task(self._retry_after(session, delay_ms / 1000))

    async def _retry_after(self, session: LiveSession, delay: float) -> None:
        await asyncio.sleep(delay)
        session._retry_task = None
        # 定时器触发前会话可能已被拆除或替换
        if not self._is_live(session):
            return
        logger.info("重试连接直播间 | target=%s", session.target)
        await self._reconnect(session)

    async def _reconnect(self, session: LiveSession) -> None:
        """自动重连：沿用同一会话对象，礼物对账状态保持连续。"""
        session.retry.next_retry_at = None
        self._set_state(session, SessionState.CONNECTING, f"Connecting to {session.target}...")
        await self._close_connection(session)
        if self._is_live(session):
            self._open_connection(session)

    # ── 事件分发 ──────────────────────────────────────────────────────

    async def _dispatch(self, session: LiveSession, channel: asyncio.Queue[LiveEvent]) -> None:
        """分发协程：按到达顺序逐条处理事件通道中的事件。"""
        while True:
            event = await channel.get()
            try:
                self._handle_event(session, event)
            except Exception as e:
                logger.error(
                    "事件处理异常 | type=%s | %s", event.type.value, e, exc_info=True,
                )

    def _handle_event(self, session: LiveSession, event: LiveEvent) -> None:
        client_id = session.client_id
        if event.type is EventType.GIFT:
            self._handle_gift(session, event.data)
        elif event.type in _CHAT_TYPES:
            self.publisher.publish(client_id, "chat", {**event.data, "type": _CHAT_TYPES[event.type]})
        elif event.type is EventType.ROOM_USER:
            self.publisher.publish(client_id, "roomUser", event.data)
        elif event.type is EventType.STREAM_END:
            logger.info("直播已结束 | target=%s", session.target)
            self._go_offline(session, "Stream ended. Waiting for next stream...")
        elif event.type is EventType.ERROR:
            # 已连接事件源上的传输层错误只记录，不改变会话状态
            logger.error("上游连接错误 | target=%s | %s", session.target, event.data)

    def _handle_gift(self, session: LiveSession, data: dict[str, Any]) -> None:
        gift = dict(data)
        catalog = session.gift_map.get(str(gift.get("giftId")))
        if catalog:
            for key in _GIFT_DISPLAY_FIELDS:
                if gift.get(key) is None and catalog.get(key) is not None:
                    gift[key] = catalog[key]
        try:
            outcome = session.reconciler.process(gift)
        except ValidationError as e:
            logger.warning("礼物事件字段不完整，已忽略 | %s", e)
            return
        if outcome is not None:
            self.publisher.publish(session.client_id, "gift", outcome.to_wire())

    # ── 拆除 ──────────────────────────────────────────────────────────

    async def _teardown(self, session: LiveSession) -> None:
        session.closed = True
        session.state = SessionState.IDLE
        session.retry.next_retry_at = None
        self._cancel(session._retry_task)
        session._retry_task = None
        await self._close_connection(session)

    async def _close_connection(self, session: LiveSession) -> None:
        """取消连接与分发任务，并断开当前事件源。"""
        self._cancel(session._connect_task)
        self._cancel(session._dispatch_task)
        session._connect_task = None
        session._dispatch_task = None
        source, session.source = session.source, None
        if source is None:
            return
        try:
            await source.disconnect()
        except Exception as e:
            logger.warning("断开事件源失败 | target=%s | %s", session.target, e, exc_info=True)

    # ── 工具方法 ──────────────────────────────────────────────────────

    def _is_live(self, session: LiveSession) -> bool:
        return not session.closed and self._sessions.get(session.client_id) is session

    def _is_current(self, session: LiveSession, source: EventSource) -> bool:
        return self._is_live(session) and session.source is source

    def _set_state(self, session: LiveSession, state: SessionState, message: str) -> None:
        session.state = state
        self._publish_status(session, message)

    def _publish_status(self, session: LiveSession, message: str) -> None:
        payload = StatusPayload(
            state=session.state,
            message=message,
            target=session.target,
            next_retry_at=session.retry.next_retry_at,
        )
        self.publisher.publish(session.client_id, "status", payload.to_wire())

    @staticmethod
    def _cancel(task: asyncio.Task | None) -> None:
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
