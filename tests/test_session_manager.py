"""
tests.test_session_manager
~~~~~~~~~~~~~~~~~~~~~~~~~~

SessionManager 会话生命周期单元测试（假事件源 + 记录型 Publisher）。
"""
from __future__ import annotations

import asyncio

import pytest

from live_relay.core.errors import ConnectFailure, StreamEnded
from live_relay.schemas.live_events import EventType, JoinOptions, SessionState
from live_relay.services.session_manager import (
    SessionManager,
    classify_failure,
    normalize_target,
)
from tests.conftest import ROOM_INFO, FakeSourceFactory, RecordingPublisher, drain

NOW_MS = 1_700_000_000_000


def fast_retry(interval_ms: int = 20) -> JoinOptions:
    """跳过最小间隔钳制，让重连在测试中快速触发。"""
    return JoinOptions.model_construct(enable_auto_reconnect=True, retry_interval_ms=interval_ms)


@pytest.fixture()
def manager(source_factory: FakeSourceFactory, publisher: RecordingPublisher) -> SessionManager:
    return SessionManager(source_factory, publisher, clock=lambda: NOW_MS)


# ── 工具函数 ──────────────────────────────────────────────────────────

class TestHelpers:

    def test_normalize_target(self) -> None:
        assert normalize_target("  @alice ") == "alice"
        with pytest.raises(ValueError):
            normalize_target(" @ ")

    def test_classify_failure(self) -> None:
        assert isinstance(classify_failure(RuntimeError("LIVE_HAS_ENDED")), StreamEnded)
        assert isinstance(classify_failure(ConnectFailure("The stream has ended")), StreamEnded)
        plain = classify_failure(RuntimeError("user not found"))
        assert type(plain) is ConnectFailure
        assert str(classify_failure(TimeoutError())) == "TimeoutError"

    def test_join_options_clamp_interval(self) -> None:
        options = JoinOptions.model_validate({"enableAutoReconnect": True, "retryIntervalMs": 500})
        assert options.enable_auto_reconnect is True
        assert options.retry_interval_ms == 2000
        assert JoinOptions().retry_interval_ms == 10_000


# ── join / leave ──────────────────────────────────────────────────────

class TestJoin:
    """测试 join 的状态流转。"""

    @pytest.mark.asyncio
    async def test_join_connects(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        session = await manager.join("u1", "@alice")
        # connecting 在任何 await 之前同步发出
        assert publisher.states() == ["connecting"]
        assert publisher.of("status")[0]["message"] == "Connecting to alice..."

        await session.connect_task
        assert session.state is SessionState.CONNECTED
        assert publisher.states() == ["connecting", "connected"]
        assert publisher.of("status")[1]["message"] == "Connected to live stream!"
        assert publisher.of("roomInfo") == [ROOM_INFO]
        assert session.room_id == ROOM_INFO["id"]
        assert source_factory.last.target == "alice"

    @pytest.mark.asyncio
    async def test_two_rapid_joins_are_idempotent(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        """连接中重复 join 同一目标：只有一次 connecting，只创建一个事件源。"""
        source_factory.gate = asyncio.Event()
        first = await manager.join("u1", "alice")
        await drain()
        second = await manager.join("u1", "alice")

        assert second is first
        assert publisher.states() == ["connecting"]
        assert len(source_factory.sources) == 1

        source_factory.gate.set()
        await first.connect_task
        assert publisher.states() == ["connecting", "connected"]

    @pytest.mark.asyncio
    async def test_reject_without_auto_reconnect(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        """未开启自动重连时连接失败：恰好一个 error 状态，不布置重连定时器。"""
        source_factory.outcomes.append(ConnectFailure("user not found"))
        session = await manager.join("u1", "alice", JoinOptions(enable_auto_reconnect=False))
        await session.connect_task

        errors = [s for s in publisher.of("status") if s["state"] == "error"]
        assert len(errors) == 1
        assert "nextRetryAt" not in errors[0]
        assert session.state is SessionState.ERROR
        assert session.retry.next_retry_at is None
        assert session._retry_task is None

    @pytest.mark.asyncio
    async def test_stream_ended_failure_without_auto_reconnect_is_error(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        source_factory.outcomes.append(StreamEnded("LIVE_HAS_ENDED"))
        session = await manager.join("u1", "alice")
        await session.connect_task
        assert publisher.states() == ["connecting", "error"]

    @pytest.mark.asyncio
    async def test_switch_target_tears_down_previous(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        old = await manager.join("u1", "alice")
        await old.connect_task
        old_source = source_factory.last

        new = await manager.join("u1", "bob")
        await new.connect_task

        assert old_source.disconnected is True
        assert old.closed is True
        assert new.target == "bob"
        assert manager.get("u1") is new
        assert publisher.of("status")[-2]["target"] == "bob"
        assert publisher.of("status")[-1]["state"] == "connected"

    @pytest.mark.asyncio
    async def test_rejoin_same_target_resets_gift_state(
        self, manager: SessionManager, source_factory: FakeSourceFactory,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task
        source_factory.last.emit(EventType.GIFT, {"senderId": "A", "giftId": "1", "repeatCount": 3, "diamondCount": 1})
        await drain()
        assert session.reconciler.total_coins == 3

        again = await manager.join("u1", "alice")
        await again.connect_task
        assert again is not session
        assert again.reconciler.total_coins == 0

    @pytest.mark.asyncio
    async def test_empty_target_is_rejected(self, manager: SessionManager, publisher: RecordingPublisher) -> None:
        with pytest.raises(ValueError):
            await manager.join("u1", "  ")
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_leave_is_idempotent(
        self, manager: SessionManager, source_factory: FakeSourceFactory,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task

        await manager.leave("u1")
        await manager.leave("u1")

        assert manager.get("u1") is None
        assert source_factory.last.disconnected is True
        assert session.state is SessionState.IDLE
        assert manager.list_sessions() == []


# ── 自动重连 ──────────────────────────────────────────────────────────

class TestAutoReconnect:
    """测试 offline 状态与重连定时器。"""

    @pytest.mark.asyncio
    async def test_failure_goes_offline_with_next_retry(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        source_factory.outcomes.append(ConnectFailure("user not found"))
        options = JoinOptions(enable_auto_reconnect=True, retry_interval_ms=10_000)
        session = await manager.join("u1", "alice", options)
        await session.connect_task

        offline = publisher.of("status")[-1]
        assert offline["state"] == "offline"
        assert offline["nextRetryAt"] == NOW_MS + 10_000
        assert offline["message"] == "User offline or not found. Retrying in 10s..."
        assert session._retry_task is not None
        await manager.leave("u1")

    @pytest.mark.asyncio
    async def test_stream_ended_failure_message(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        source_factory.outcomes.append(RuntimeError("LIVE_HAS_ENDED"))
        session = await manager.join("u1", "alice", fast_retry(10_000))
        await session.connect_task
        assert publisher.of("status")[-1]["message"] == "Stream ended. Waiting for next stream..."
        await manager.leave("u1")

    @pytest.mark.asyncio
    async def test_retry_reconnects(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        source_factory.outcomes.append(ConnectFailure("user not found"))
        session = await manager.join("u1", "alice", fast_retry())
        await session.connect_task

        await asyncio.sleep(0.05)
        await drain()

        assert len(source_factory.sources) == 2
        assert source_factory.sources[0].disconnected is True
        assert session.state is SessionState.CONNECTED
        assert publisher.states() == ["connecting", "offline", "connecting", "connected"]
        assert session.retry.next_retry_at is None
        await manager.leave("u1")

    @pytest.mark.asyncio
    async def test_retry_after_leave_does_nothing(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        source_factory.outcomes.append(ConnectFailure("user not found"))
        session = await manager.join("u1", "alice", fast_retry())
        await session.connect_task
        await manager.leave("u1")
        count = len(publisher.events)

        await asyncio.sleep(0.05)
        await drain()

        assert len(source_factory.sources) == 1
        assert len(publisher.events) == count

    @pytest.mark.asyncio
    async def test_stream_end_event_arms_retry_and_keeps_gift_state(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        """下播后自动重连沿用同一会话，礼物榜保持连续。"""
        session = await manager.join("u1", "alice", fast_retry())
        await session.connect_task
        reconciler = session.reconciler
        source_factory.last.emit(EventType.GIFT, {"senderId": "A", "giftId": "1", "repeatCount": 5, "diamondCount": 1})
        source_factory.last.emit(EventType.STREAM_END)
        await drain()

        offline = publisher.of("status")[-1]
        assert offline["state"] == "offline"
        assert offline["nextRetryAt"] == NOW_MS + 20

        await asyncio.sleep(0.05)
        await drain()
        assert session.state is SessionState.CONNECTED
        assert session.reconciler is reconciler
        assert session.reconciler.total_coins == 5
        await manager.leave("u1")

    @pytest.mark.asyncio
    async def test_stream_end_without_auto_reconnect(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task
        source_factory.last.emit(EventType.STREAM_END)
        await drain()

        offline = publisher.of("status")[-1]
        assert offline == {
            "state": "offline",
            "message": "Stream ended. Waiting for next stream...",
            "target": "alice",
        }
        assert session._retry_task is None


# ── 事件分发 ──────────────────────────────────────────────────────────

class TestDispatch:
    """测试上游事件到下发事件的映射。"""

    @pytest.mark.asyncio
    async def test_pass_through_mapping(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task
        source = source_factory.last
        source.emit(EventType.CHAT, {"comment": "hi"})
        source.emit(EventType.LIKE, {"likeCount": 3})
        source.emit(EventType.SOCIAL, {"label": "share"})
        source.emit(EventType.MEMBER, {"nickname": "bob"})
        source.emit(EventType.ROOM_USER, {"viewerCount": 42})
        source.emit(EventType.ERROR, {"error": "socket closed"})
        await drain()

        assert [c["type"] for c in publisher.of("chat")] == ["chat", "like", "share", "join"]
        assert publisher.of("chat")[0]["comment"] == "hi"
        assert publisher.of("roomUser") == [{"viewerCount": 42}]
        # 传输层错误只记录日志
        assert session.state is SessionState.CONNECTED
        assert "error" not in publisher.states()

    @pytest.mark.asyncio
    async def test_gift_is_reconciled_and_enriched(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task
        source = source_factory.last
        source.emit(EventType.GIFT, {"msgId": "m1", "senderId": "A", "giftId": "5655", "groupId": "G1", "repeatCount": 1})
        source.emit(EventType.GIFT, {"msgId": "m1", "senderId": "A", "giftId": "5655", "groupId": "G1", "repeatCount": 1})
        source.emit(EventType.GIFT, {"msgId": "m2", "senderId": "A", "giftId": "5655", "groupId": "G1", "repeatCount": 5})
        source.emit(EventType.GIFT, {"giftId": "5655"})  # 字段不完整，忽略
        await drain()

        gifts = publisher.of("gift")
        assert [g["coinDelta"] for g in gifts] == [1, 4]
        assert gifts[0]["gift"]["giftName"] == "Rose"
        assert gifts[-1]["leaderboard"] == [{"senderId": "A", "totalCoins": 5}]
        assert manager.list_sessions()[0].total_coins == 5

    @pytest.mark.asyncio
    async def test_missing_price_falls_back_to_catalog(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        session = await manager.join("u1", "alice")
        await session.connect_task
        source_factory.last.emit(
            EventType.GIFT,
            {"msgId": "m1", "senderId": "A", "giftId": "5655", "repeatCount": 3, "diamondCount": None},
        )
        await drain()

        gift = publisher.of("gift")[0]
        assert gift["gift"]["diamondCount"] == 1
        assert gift["coinDelta"] == 3

    @pytest.mark.asyncio
    async def test_events_from_replaced_source_are_dropped(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        old = await manager.join("u1", "alice")
        await old.connect_task
        old_source = source_factory.last
        new = await manager.join("u1", "bob")
        await new.connect_task

        old_source.emit(EventType.CHAT, {"comment": "late"})
        await drain()
        assert publisher.of("chat") == []

    @pytest.mark.asyncio
    async def test_sessions_are_independent(
        self, manager: SessionManager, source_factory: FakeSourceFactory, publisher: RecordingPublisher,
    ) -> None:
        a = await manager.join("u1", "alice")
        b = await manager.join("u2", "alice")
        await asyncio.gather(a.connect_task, b.connect_task)
        source_factory.sources[0].emit(EventType.CHAT, {"comment": "only u1"})
        await drain()

        chats = [(cid, data) for cid, name, data in publisher.events if name == "chat"]
        assert [cid for cid, _ in chats] == ["u1"]
        assert a.reconciler is not b.reconciler


# ── 直播流地址 ────────────────────────────────────────────────────────

class TestStreamUrl:

    @pytest.mark.asyncio
    async def test_stream_url_from_room_info(self, manager: SessionManager) -> None:
        session = await manager.join("u1", "alice")
        assert manager.stream_url("u1") is None  # 尚未连接
        await session.connect_task
        assert manager.stream_url("u1") == ROOM_INFO["stream_url"]["flv_pull_url"]["FULL_HD1"]
        assert manager.stream_url("u1", "480p") == ROOM_INFO["stream_url"]["flv_pull_url"]["SD2"]
        assert manager.stream_url("nobody") is None

    @pytest.mark.asyncio
    async def test_close_all(self, manager: SessionManager, source_factory: FakeSourceFactory) -> None:
        await manager.join("u1", "alice")
        await manager.join("u2", "bob")
        await manager.close_all()
        assert manager.list_sessions() == []
        assert all(s.disconnected for s in source_factory.sources)
