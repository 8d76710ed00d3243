"""
live_relay.services.recording
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

崩溃安全的录制流水线。

两阶段录制:
  1. 录制阶段：ffmpeg 以流复制方式把直播流写入 Matroska 中间容器。
     Matroska 在进程被异常终止时仍然可播放，不依赖尾部索引。
  2. 转封装阶段：录制结束后再用流复制把中间容器转换为 MP4 交付容器
     （MP4 需要正常写入 moov 尾部才可用）。成功后删除中间文件，失败则保留。

进程启动时调用 ``recover_orphans()``，把上次崩溃遗留的、没有对应 MP4 的
中间文件补做转封装。

任务状态::

    idle → recording → remuxing → {completed, failed}
    recording → failed            （编码器异常且没有录到任何数据）
"""
from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from live_relay.core.errors import (
    AlreadyRecording,
    EncoderFailure,
    NoStreamUrl,
    RemuxFailure,
)
from live_relay.core.logging import get_logger
from live_relay.core.settings import settings
from live_relay.media.ffmpeg import EncoderFactory, FFmpegProcess, Progress, estimate_percent
from live_relay.schemas.live_events import RecordingInfoData
from live_relay.services.client_hub import Publisher

logger = get_logger(__name__)

# 录制阶段：强制输出 Matroska，容忍异常中断
RECORD_OUTPUT_OPTIONS: tuple[str, ...] = ("-f", "matroska")
# 转封装阶段：ADTS AAC → MP4 需要比特流过滤器；moov 前置便于边下边播
REMUX_OUTPUT_OPTIONS: tuple[str, ...] = ("-bsf:a", "aac_adtstoasc", "-movflags", "+faststart")

_PROGRESS_LOG_INTERVAL: float = 2.0
_UNSAFE_CHARS = re.compile(r"[^\w.-]+")

ProgressListener = Callable[[int, str], None]


class JobState(str, Enum):
    """录制任务状态。"""

    IDLE = "idle"
    RECORDING = "recording"
    REMUXING = "remuxing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RecordingJob:
    """一次录制任务。"""

    job_id: str
    source_url: str
    temp_path: Path
    final_path: Path
    state: JobState = JobState.IDLE
    error: str | None = None
    encoder: FFmpegProcess | None = None
    task: asyncio.Task | None = None


def build_basename(label: str, now: datetime) -> str:
    """由 ``(目标, 时间戳)`` 生成录制文件名（不含扩展名）。同一秒内的重名由调用方追加序号。"""
    safe = _UNSAFE_CHARS.sub("_", label).strip("_") or "recording"
    # 时间部分用 '-' 代替 ':'，保证文件名在各平台都合法
    return f"{safe}-{now.strftime('%Y-%m-%dT%H-%M-%S')}"


class RecordingPipeline:
    """录制流水线（每个进程一个实例，所有会话共享录制目录）。

    - ``start(job_id, stream_url)`` → 开始录制
    - ``stop(job_id)``              → 优雅停止编码器，随后自动转封装
    - ``recover_orphans()``         → 修复上次崩溃遗留的中间文件
    - ``list_recordings()``         → 列出录制目录

    Attributes:
        publisher: 事件下发通道。
        recordings_dir: 录制目录。
    """

    def __init__(
        self,
        publisher: Publisher,
        recordings_dir: Path | None = None,
        encoder_factory: EncoderFactory = FFmpegProcess,
        stop_timeout: float | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.publisher = publisher
        self.recordings_dir = Path(recordings_dir or settings.recordings_path)
        self.temp_ext = settings.TEMP_CONTAINER_EXT
        self.final_ext = settings.FINAL_CONTAINER_EXT
        self.stop_timeout = stop_timeout if stop_timeout is not None else settings.ENCODER_STOP_TIMEOUT
        self._encoder_factory = encoder_factory
        self._clock = clock
        self._jobs: dict[str, RecordingJob] = {}
        # 正在录制或转封装的中间文件，孤儿扫描必须跳过
        self._busy: set[Path] = set()
        self._finishing: set[asyncio.Task] = set()

    # ── 录制 ──────────────────────────────────────────────────────────

    def is_recording(self, job_id: str) -> bool:
        return job_id in self._jobs

    async def start(self, job_id: str, stream_url: str | None, label: str | None = None) -> RecordingJob:
        """开始录制。

        Args:
            job_id: 任务标识（每个会话最多一个进行中的录制）。
            stream_url: 直播流地址。
            label: 文件名前缀，默认使用 ``job_id``（通常传直播间名）。

        Returns:
            新建的 ``RecordingJob``。编码器启动失败时任务处于 ``failed`` 状态。

        Raises:
            AlreadyRecording: 该会话已有进行中的录制。
            NoStreamUrl: 没有可用的直播流地址。
        """
        if job_id in self._jobs:
            raise AlreadyRecording(job_id)
        if not stream_url:
            raise NoStreamUrl(job_id)

        self.recordings_dir.mkdir(parents=True, exist_ok=True)
        temp_path, final_path = self._claim_paths(build_basename(label or job_id, self._clock()))
        job = RecordingJob(
            job_id=job_id,
            source_url=stream_url,
            temp_path=temp_path,
            final_path=final_path,
        )
        # 先同步占位，防止并发 start
        self._jobs[job_id] = job
        self._busy.add(job.temp_path)

        encoder = self._encoder_factory(
            stream_url,
            job.temp_path,
            copy_codecs=True,
            output_options=RECORD_OUTPUT_OPTIONS,
        )
        try:
            await encoder.start()
        except EncoderFailure as e:
            self._jobs.pop(job_id, None)
            self._busy.discard(job.temp_path)
            job.state = JobState.FAILED
            job.error = str(e)
            logger.error("录制启动失败 | job=%s | %s", job_id, e)
            self._publish_status(job_id, is_recording=False, error=job.error)
            return job

        job.encoder = encoder
        job.state = JobState.RECORDING
        logger.info("开始录制 | job=%s | file=%s", job_id, job.temp_path.name)
        self._publish_status(job_id, is_recording=True, message="recording", path=job.temp_path.name)
        job.task = asyncio.create_task(self._run(job))
        self._finishing.add(job.task)
        job.task.add_done_callback(self._finishing.discard)
        return job

    def _claim_paths(self, basename: str) -> tuple[Path, Path]:
        """返回未被占用的 ``(中间文件, 交付文件)`` 路径，同名时追加序号。"""
        candidate, n = basename, 1
        while True:
            temp_path = self.recordings_dir / f"{candidate}.{self.temp_ext}"
            final_path = self.recordings_dir / f"{candidate}.{self.final_ext}"
            if temp_path not in self._busy and not temp_path.exists() and not final_path.exists():
                return temp_path, final_path
            n += 1
            candidate = f"{basename}-{n}"

    async def stop(self, job_id: str) -> RecordingJob | None:
        """请求优雅停止录制；编码器退出后自动进入转封装。

        Returns:
            被停止的任务；没有进行中的录制时返回 ``None``。
        """
        job = self._jobs.get(job_id)
        if job is None or job.encoder is None:
            return None
        logger.info("停止录制 | job=%s", job_id)
        await job.encoder.quit(self.stop_timeout)
        return job

    async def close(self) -> None:
        """停止所有录制并等待转封装完成（应用退出时调用）。"""
        for job_id in list(self._jobs):
            await self.stop(job_id)
        if self._finishing:
            await asyncio.gather(*self._finishing, return_exceptions=True)

    async def _run(self, job: RecordingJob) -> None:
        """监视编码器直至退出，然后尽力转封装已录到的数据。"""
        assert job.encoder is not None
        failure: EncoderFailure | None = None
        try:
            await job.encoder.wait()
        except EncoderFailure as e:
            failure = e
            logger.warning("编码器异常退出 | job=%s | %s", job.job_id, e)
        finally:
            if self._jobs.get(job.job_id) is job:
                del self._jobs[job.job_id]

        try:
            if not _has_data(job.temp_path):
                job.state = JobState.FAILED
                job.error = str(failure) if failure else "No data recorded"
                job.temp_path.unlink(missing_ok=True)
                self._publish_status(job.job_id, is_recording=False, error=job.error)
                return
            if failure is not None:
                logger.info("尝试挽救部分录制数据 | job=%s", job.job_id)
            await self._finish(job)
        finally:
            self._busy.discard(job.temp_path)

    async def _finish(self, job: RecordingJob) -> None:
        job.state = JobState.REMUXING

        def on_progress(percent: int, timemark: str) -> None:
            self.publisher.publish(
                job.job_id,
                "conversionProgress",
                {"filename": job.temp_path.name, "percent": percent, "timemark": timemark},
            )

        try:
            await self.remux(job.temp_path, job.final_path, on_progress)
        except RemuxFailure as e:
            job.state = JobState.FAILED
            job.error = str(e)
            logger.error("转封装失败，保留中间文件 | file=%s | %s", job.temp_path.name, e)
            self._publish_status(job.job_id, is_recording=False, error=job.error)
            return

        job.temp_path.unlink(missing_ok=True)
        job.state = JobState.COMPLETED
        logger.info("录制已保存 | file=%s", job.final_path.name)
        self._publish_status(job.job_id, is_recording=False, message="saved", path=str(job.final_path))

    # ── 转封装 ────────────────────────────────────────────────────────

    async def remux(
        self,
        temp_path: Path,
        final_path: Path,
        on_progress: ProgressListener | None = None,
    ) -> None:
        """把中间容器流复制为交付容器。

        失败时删除不完整的输出文件，中间文件保持不动。

        Raises:
            RemuxFailure: ffmpeg 启动失败或异常退出。
        """
        try:
            input_size = temp_path.stat().st_size
        except OSError:
            input_size = 0
        logger.info("开始转封装 | file=%s | size=%.2f MB", temp_path.name, input_size / 1024 / 1024)

        last_log = 0.0

        def handle(progress: Progress) -> None:
            nonlocal last_log
            percent = estimate_percent(progress, input_size)
            now = time.monotonic()
            if now - last_log > _PROGRESS_LOG_INTERVAL:
                logger.info("转封装中 | file=%s | %d%% (%s)", temp_path.name, percent, progress.timemark)
                last_log = now
            if on_progress is not None:
                on_progress(percent, progress.timemark)

        encoder = self._encoder_factory(
            str(temp_path),
            final_path,
            copy_codecs=True,
            output_options=REMUX_OUTPUT_OPTIONS,
            on_progress=handle,
        )
        try:
            await encoder.start()
            await encoder.wait()
        except EncoderFailure as e:
            final_path.unlink(missing_ok=True)
            raise RemuxFailure(str(e)) from e
        if not final_path.exists():
            raise RemuxFailure(f"{final_path.name} was not produced")

    # ── 孤儿恢复 ──────────────────────────────────────────────────────

    def find_orphans(self) -> list[Path]:
        """列出没有对应交付文件、且不属于进行中任务的中间文件。"""
        if not self.recordings_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.recordings_dir.glob(f"*.{self.temp_ext}")
            if path not in self._busy
            and not path.with_suffix(f".{self.final_ext}").exists()
        )

    async def recover_orphans(self) -> list[Path]:
        """修复上次崩溃遗留的录制文件。

        已有同名交付文件的中间文件保持不动（不校验完整性）。

        Returns:
            本次成功生成的交付文件路径列表。
        """
        logger.info("检查遗留录制文件... | dir=%s", self.recordings_dir)
        orphans = self.find_orphans()
        if not orphans:
            logger.info("没有需要修复的录制文件")
            return []

        recovered: list[Path] = []
        for temp_path in orphans:
            final_path = temp_path.with_suffix(f".{self.final_ext}")
            filename = temp_path.name
            # 扫描期间可能已被并发的扫描认领或修复
            if temp_path in self._busy or not temp_path.exists() or final_path.exists():
                continue
            self._busy.add(temp_path)
            logger.info("发现遗留文件，开始转封装 | file=%s", filename)

            def on_progress(percent: int, timemark: str, filename: str = filename) -> None:
                self.publisher.broadcast(
                    "conversionProgress",
                    {"filename": filename, "percent": percent, "timemark": timemark},
                )

            try:
                await self.remux(temp_path, final_path, on_progress)
            except RemuxFailure as e:
                logger.error("遗留文件转封装失败 | file=%s | %s", filename, e)
                self.publisher.broadcast(
                    "conversionProgress",
                    {"filename": filename, "error": str(e), "nav": "error"},
                )
                continue
            finally:
                self._busy.discard(temp_path)

            temp_path.unlink(missing_ok=True)
            recovered.append(final_path)
            logger.info("遗留文件已修复并删除中间文件 | file=%s", filename)
            self.publisher.broadcast(
                "conversionProgress",
                {"filename": filename, "percent": 100, "timemark": "Done", "nav": "finished"},
            )

        logger.info("修复完成 | 共转换 %d 个文件", len(recovered))
        return recovered

    # ── 查询 ──────────────────────────────────────────────────────────

    def list_recordings(self) -> list[RecordingInfoData]:
        """列出录制目录中的所有录制文件（最新的在前）。"""
        if not self.recordings_dir.is_dir():
            return []
        items: list[RecordingInfoData] = []
        for path in self.recordings_dir.iterdir():
            suffix = path.suffix.lstrip(".")
            if not path.is_file() or suffix not in (self.temp_ext, self.final_ext):
                continue
            stat = path.stat()
            items.append(
                RecordingInfoData(
                    filename=path.name,
                    size_bytes=stat.st_size,
                    complete=suffix == self.final_ext,
                    modified_at=datetime.fromtimestamp(stat.st_mtime).isoformat(),
                ),
            )
        return sorted(items, key=lambda item: item.modified_at, reverse=True)

    def _publish_status(
        self,
        job_id: str,
        *,
        is_recording: bool,
        message: str | None = None,
        error: str | None = None,
        path: str | None = None,
    ) -> None:
        payload: dict[str, object] = {"isRecording": is_recording}
        if message is not None:
            payload["message"] = message
        if error is not None:
            payload["error"] = error
        if path is not None:
            payload["path"] = path
        self.publisher.publish(job_id, "recordingStatus", payload)


def _has_data(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False
