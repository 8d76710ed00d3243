"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用假事件源、假编码器替换上游直播 SDK 和 ffmpeg，
使单元测试可在无网络、无 ffmpeg 的环境下快速运行。
"""
from __future__ import annotations

import asyncio
import os
from collections import deque
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("RECOVER_ORPHANS_ON_STARTUP", "false")

from live_relay.core.errors import EncoderFailure  # noqa: E402
from live_relay.media.ffmpeg import Progress  # noqa: E402
from live_relay.schemas.live_events import EventType, LiveEvent  # noqa: E402
from live_relay.sources.base import ConnectResult, EventSink  # noqa: E402

ROOM_INFO: dict[str, Any] = {
    "id": "7300000000000000001",
    "title": "test room",
    "stream_url": {
        "flv_pull_url": {
            "FULL_HD1": "https://pull.example.com/stream-or4.flv",
            "HD1": "https://pull.example.com/stream-hd.flv",
            "SD1": "https://pull.example.com/stream-ld.flv",
            "SD2": "https://pull.example.com/stream-sd.flv",
        },
        "rtmp_pull_url": "rtmp://pull.example.com/stream",
    },
}


async def drain(rounds: int = 10) -> None:
    """让出事件循环若干轮，使已调度的任务跑完。"""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ── 事件下发 ──────────────────────────────────────────────────────────

class RecordingPublisher:
    """记录所有下发事件的 ``Publisher``。广播事件的 client_id 记为 ``None``。"""

    def __init__(self) -> None:
        self.events: list[tuple[str | None, str, Any]] = []

    def publish(self, client_id: str, event: str, data: Any) -> None:
        self.events.append((client_id, event, data))

    def broadcast(self, event: str, data: Any) -> None:
        self.events.append((None, event, data))

    def of(self, event: str) -> list[Any]:
        """按顺序返回指定事件的全部负载。"""
        return [data for _, name, data in self.events if name == event]

    def states(self) -> list[str]:
        return [data["state"] for data in self.of("status")]


# ── 事件源 ────────────────────────────────────────────────────────────

class FakeEventSource:
    """假事件源：``connect()`` 的结果由工厂的 ``outcomes`` 队列决定。"""

    def __init__(self, factory: FakeSourceFactory, target: str, sink: EventSink) -> None:
        self.factory = factory
        self.target = target
        self.sink = sink
        self.connect_calls = 0
        self.disconnected = False

    async def connect(self) -> ConnectResult:
        self.connect_calls += 1
        if self.factory.gate is not None:
            await self.factory.gate.wait()
        outcome = self.factory.outcomes.popleft() if self.factory.outcomes else self.factory.default
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def disconnect(self) -> None:
        self.disconnected = True

    def emit(self, event_type: EventType, data: dict[str, Any] | None = None) -> None:
        self.sink(LiveEvent(type=event_type, data=data or {}))


class FakeSourceFactory:
    """``EventSourceFactory`` 的假实现，记录创建过的所有事件源。

    Attributes:
        outcomes: 依次作为 ``connect()`` 的结果（``ConnectResult`` 或异常）。
        gate: 设置后 ``connect()`` 会一直挂起直到该事件被 set。
    """

    def __init__(self) -> None:
        self.sources: list[FakeEventSource] = []
        self.outcomes: deque[ConnectResult | BaseException] = deque()
        self.default = ConnectResult(
            room_id=ROOM_INFO["id"],
            room_info=ROOM_INFO,
            gift_map={"5655": {"giftName": "Rose", "giftPictureUrl": "https://img/rose.png", "diamondCount": 1}},
        )
        self.gate: asyncio.Event | None = None

    def __call__(self, target: str, sink: EventSink) -> FakeEventSource:
        source = FakeEventSource(self, target, sink)
        self.sources.append(source)
        return source

    @property
    def last(self) -> FakeEventSource:
        return self.sources[-1]


# ── 编码器 ────────────────────────────────────────────────────────────

RECORDED_BYTES: bytes = b"\x1a\x45\xdf\xa3" + b"\x00" * 65536


class FakeEncoder:
    """假 ffmpeg 进程。

    录制模式（输出选项含 ``matroska``）：启动时写入中间文件，``wait()`` 挂起到
    ``quit()`` / ``kill()``。转封装模式：启动时把输入复制到输出并回报一次进度。
    """

    def __init__(
        self,
        factory: FakeEncoderFactory,
        input_url: str,
        output_path: str | Path,
        *,
        copy_codecs: bool = True,
        input_options: Sequence[str] = (),
        output_options: Sequence[str] = (),
        on_progress: Any = None,
        ffmpeg_path: str | None = None,
    ) -> None:
        self.factory = factory
        self.input_url = input_url
        self.output_path = Path(output_path)
        self.copy_codecs = copy_codecs
        self.output_options = list(output_options)
        self.on_progress = on_progress
        self.recording = "matroska" in self.output_options
        self.quit_called = False
        self._done = asyncio.Event()
        self._failure: EncoderFailure | None = None

    async def start(self) -> None:
        if self.factory.fail_start:
            raise EncoderFailure("Failed to start ffmpeg: [Errno 2] No such file or directory")
        if self.recording:
            self.output_path.write_bytes(RECORDED_BYTES)
            return

        data = Path(self.input_url).read_bytes()
        if self.factory.fail_remux:
            self.output_path.write_bytes(data[:16])
            self._failure = EncoderFailure("Invalid data found when processing input", 1)
        else:
            if self.on_progress is not None:
                self.on_progress(Progress(timemark="00:00:01.00", target_size_kb=len(data) // 2 // 1024))
            self.output_path.write_bytes(data)
        self._done.set()

    async def wait(self) -> int:
        await self._done.wait()
        if not self.recording and self.factory.remux_delay:
            await asyncio.sleep(self.factory.remux_delay)
        if self._failure is not None:
            raise self._failure
        return 0

    async def quit(self, timeout: float) -> None:
        self.quit_called = True
        self._done.set()

    def kill(self) -> None:
        self._failure = EncoderFailure("ffmpeg exited with code -9: killed", -9)
        self._done.set()


class FakeEncoderFactory:
    """``EncoderFactory`` 的假实现。"""

    def __init__(self) -> None:
        self.encoders: list[FakeEncoder] = []
        self.fail_start = False
        self.fail_remux = False
        self.remux_delay = 0.0  # 转封装耗时（秒），用于制造并发重叠

    def __call__(self, input_url: str, output_path: str | Path, **kwargs: Any) -> FakeEncoder:
        encoder = FakeEncoder(self, input_url, output_path, **kwargs)
        self.encoders.append(encoder)
        return encoder

    @property
    def recorders(self) -> list[FakeEncoder]:
        return [e for e in self.encoders if e.recording]

    @property
    def remuxers(self) -> list[FakeEncoder]:
        return [e for e in self.encoders if not e.recording]


# ── fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture()
def source_factory() -> FakeSourceFactory:
    return FakeSourceFactory()


@pytest.fixture()
def encoder_factory() -> FakeEncoderFactory:
    return FakeEncoderFactory()
