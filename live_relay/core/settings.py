"""
live_relay.core.settings
~~~~~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（live_relay 包的上一级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="Live Relay Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 上游直播源 ────────────────────────────────────────────────────
    TIKTOK_SESSION_ID: str | None = Field(
        default=None,
        description="上游登录 Session ID（云端部署时用于绕过风控，可选）",
    )
    ENABLE_EXTENDED_GIFT_INFO: bool = Field(
        default=True,
        description="连接时是否拉取礼物目录（用于补全礼物名称/图片）",
    )

    # ── 会话 / 重连 ───────────────────────────────────────────────────
    DEFAULT_RETRY_INTERVAL_MS: int = Field(
        default=10_000, description="自动重连默认间隔（毫秒）",
    )
    MIN_RETRY_INTERVAL_MS: int = Field(
        default=2_000, description="自动重连最小间隔（毫秒），更小的值会被钳制",
    )

    # ── 礼物对账 ──────────────────────────────────────────────────────
    GIFT_DEDUP_CAPACITY: int = Field(
        default=500, description="已处理消息 ID 去重集合容量（FIFO 淘汰）",
    )
    LEADERBOARD_SIZE: int = Field(default=50, description="送礼榜返回条数")

    # ── 录制 ──────────────────────────────────────────────────────────
    RECORDINGS_DIR: str = Field(
        default="recordings",
        description="录制文件目录（相对项目根目录或绝对路径）",
    )
    FFMPEG_PATH: str = Field(default="ffmpeg", description="ffmpeg 可执行文件路径")
    TEMP_CONTAINER_EXT: str = Field(
        default="mkv", description="录制中间容器扩展名（可容忍异常中断）",
    )
    FINAL_CONTAINER_EXT: str = Field(
        default="mp4", description="最终交付容器扩展名",
    )
    ENCODER_STOP_TIMEOUT: float = Field(
        default=10.0, description="停止录制时等待编码器优雅退出的秒数",
    )
    RECOVER_ORPHANS_ON_STARTUP: bool = Field(
        default=True, description="启动时是否自动修复上次崩溃遗留的录制文件",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=3001, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")
    CLIENT_QUEUE_SIZE: int = Field(
        default=1000, description="每个客户端的下行消息队列上限",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod

    @property
    def recordings_path(self) -> Path:
        """录制目录的绝对路径。"""
        path = Path(self.RECORDINGS_DIR)
        if not path.is_absolute():
            path = PROJECT_ROOT / path
        return path


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
