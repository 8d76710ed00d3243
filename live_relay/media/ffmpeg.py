"""
live_relay.media.ffmpeg
~~~~~~~~~~~~~~~~~~~~~~~

ffmpeg 子进程封装 —— 录制与转封装共用的编码协作者。

- ``start()``         → 启动子进程
- ``on_progress``     → 解析 ``-progress pipe:1`` 输出，回调 ``Progress``
- ``wait()``          → 等待进程结束（异常退出时抛出 ``EncoderFailure``）
- ``quit(timeout)``   → 优雅退出：向 stdin 写入 ``q`` 让 ffmpeg 刷新缓冲并写尾，
  超时后依次 SIGTERM / SIGKILL

stdout 与 stderr 合并读取，避免管道写满导致死锁。
"""
from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from live_relay.core.errors import EncoderFailure
from live_relay.core.logging import get_logger
from live_relay.core.settings import settings

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_TERMINATE_GRACE_SECONDS: float = 5.0


@dataclass
class Progress:
    """一次进度回报。"""

    timemark: str = "00:00:00"
    percent: float | None = None  # 仅当输入时长已知时可用
    target_size_kb: int | None = None  # 已写出的输出大小


ProgressCallback = Callable[[Progress], None]


def parse_duration(line: str) -> float | None:
    """从 ffmpeg 输入信息行中解析总时长（秒）。"""
    match = _DURATION_RE.search(line)
    if not match:
        return None
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def estimate_percent(progress: Progress, input_size_bytes: int) -> int:
    """计算对外展示的进度百分比。

    优先使用 ffmpeg 原生进度；不可用时（流复制时很常见）按
    ``输出大小 / 输入大小`` 估算。结束事件之前始终钳制在 99 以内。
    """
    percent = 0
    if progress.percent:
        percent = round(progress.percent)
    elif input_size_bytes > 0 and progress.target_size_kb:
        percent = round(progress.target_size_kb * 1024 / input_size_bytes * 100)
    return max(0, min(99, percent))


class FFmpegProcess:
    """单个 ffmpeg 子进程。

    Attributes:
        input_url: 输入地址（直播流 URL 或本地文件）。
        output_path: 输出文件路径。
    """

    def __init__(
        self,
        input_url: str,
        output_path: str | Path,
        *,
        copy_codecs: bool = True,
        input_options: Sequence[str] = (),
        output_options: Sequence[str] = (),
        on_progress: ProgressCallback | None = None,
        ffmpeg_path: str | None = None,
    ) -> None:
        self.input_url = input_url
        self.output_path = Path(output_path)
        self.copy_codecs = copy_codecs
        self.input_options = list(input_options)
        self.output_options = list(output_options)
        self.on_progress = on_progress
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH

        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task | None = None
        self._quit_requested = False
        self._duration: float | None = None
        self._tail: deque[str] = deque(maxlen=20)

    @property
    def quit_requested(self) -> bool:
        return self._quit_requested

    def build_command(self) -> list[str]:
        """组装 ffmpeg 命令行。"""
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-y",
            "-nostats", "-progress", "pipe:1",
            *self.input_options,
            "-i", self.input_url,
        ]
        if self.copy_codecs:
            cmd += ["-c", "copy"]  # 不重新编码，只换封装
        cmd += [*self.output_options, str(self.output_path)]
        return cmd

    async def start(self) -> None:
        """启动子进程。

        Raises:
            EncoderFailure: 可执行文件不存在或无法启动。
        """
        cmd = self.build_command()
        logger.debug("Running: %s", " ".join(cmd))
        try:
            self._process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise EncoderFailure(f"Failed to start ffmpeg: {e}") from e
        self._reader = asyncio.create_task(self._read_output())

    async def wait(self) -> int:
        """等待进程结束并返回退出码。

        通过 ``quit()`` 请求退出的进程不论退出码如何都视为正常结束。

        Raises:
            EncoderFailure: 进程未启动，或非预期的非零退出。
        """
        if self._process is None:
            raise EncoderFailure("ffmpeg process not started")
        if self._reader is not None:
            await self._reader
        returncode = await self._process.wait()
        if returncode != 0 and not self._quit_requested:
            detail = "\n".join(self._tail) or "no output"
            raise EncoderFailure(
                f"ffmpeg exited with code {returncode}: {detail[-500:]}", returncode,
            )
        return returncode

    async def quit(self, timeout: float) -> None:
        """优雅退出；超时后强制结束。"""
        process = self._process
        if process is None or process.returncode is not None:
            return
        self._quit_requested = True
        try:
            if process.stdin is not None:
                process.stdin.write(b"q")
                await process.stdin.drain()
                process.stdin.close()
        except (BrokenPipeError, ConnectionResetError):
            pass  # 进程已经在退出

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
            return
        except asyncio.TimeoutError:
            logger.warning("ffmpeg 未在 %.0fs 内退出，发送 SIGTERM...", timeout)

        try:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=_TERMINATE_GRACE_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("强制结束 ffmpeg 进程...")
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass

    async def _read_output(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        fields: dict[str, str] = {}
        while True:
            raw = await self._process.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="ignore").strip()
            if not line:
                continue
            key, sep, value = line.partition("=")
            if sep and " " not in key:
                fields[key] = value
                if key == "progress":
                    self._emit_progress(fields)
                    fields = {}
                continue
            self._tail.append(line)
            if self._duration is None:
                self._duration = parse_duration(line)

    def _emit_progress(self, fields: dict[str, str]) -> None:
        if self.on_progress is None:
            return
        progress = Progress(timemark=fields.get("out_time", "00:00:00")[:11])
        size = fields.get("total_size", "")
        if size.isdigit():
            progress.target_size_kb = int(size) // 1024
        out_us = fields.get("out_time_us", "")
        if self._duration and out_us.lstrip("-").isdigit():
            progress.percent = max(0, int(out_us)) / 1_000_000 / self._duration * 100
        try:
            self.on_progress(progress)
        except Exception as e:
            logger.warning("进度回调异常: %s", e, exc_info=True)


EncoderFactory = Callable[..., FFmpegProcess]
"""``(input_url, output_path, *, copy_codecs, output_options, on_progress) -> FFmpegProcess``"""
