"""
live_relay.core.errors
~~~~~~~~~~~~~~~~~~~~~~

业务异常体系。

所有异常都只影响单个会话或单个录制任务，不会导致进程退出：
会话层把失败转换为 ``status`` 事件，录制层把失败转换为 ``recordingStatus`` 事件。
"""
from __future__ import annotations


class LiveRelayError(Exception):
    """本项目所有业务异常的基类。"""


# ── 会话 / 上游连接 ───────────────────────────────────────────────────

class ConnectFailure(LiveRelayError):
    """上游直播间连接失败（主播未开播、用户不存在、网络异常等）。"""


class StreamEnded(ConnectFailure):
    """上游直播已结束。属于正常生命周期，可触发自动重连，不视为错误。"""


# ── 礼物对账 ──────────────────────────────────────────────────────────

class DuplicateOrOutOfOrderGift(LiveRelayError):
    """重复投递或乱序到达的礼物包。仅在对账引擎内部使用，从不向上抛出。"""


# ── 录制 ──────────────────────────────────────────────────────────────

class RecordingError(LiveRelayError):
    """录制流水线异常基类。"""


class AlreadyRecording(RecordingError):
    """该会话已有正在进行的录制任务。"""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Recording already in progress for {job_id}")
        self.job_id = job_id


class NoStreamUrl(RecordingError):
    """没有可用的直播流地址。"""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"No stream URL available for {job_id}")
        self.job_id = job_id


class EncoderFailure(RecordingError):
    """编码器进程启动失败或异常退出。"""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class RemuxFailure(RecordingError):
    """中间容器转封装失败。中间文件会被保留用于后续恢复。"""
