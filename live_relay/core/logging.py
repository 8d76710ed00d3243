"""
live_relay.core.logging
~~~~~~~~~~~~~~~~~~~~~~~

统一日志配置，根据环境自动设置日志级别和格式。

所有模块应通过 ``get_logger(__name__)`` 获取 logger 实例，
不要直接使用 ``print()`` 输出调试信息。

每条日志会附带当前客户端标识（``client_id_ctx_var``），
WebSocket 端点在连接期间设置该上下文变量，便于按客户端排查问题。
"""
from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

from live_relay.core.settings import settings

# 当前处理中的客户端标识，未设置时显示为 "-"
client_id_ctx_var: ContextVar[str] = ContextVar("client_id", default="-")

# 日志格式：时间 | 级别 | 模块名 | [客户端] 消息
_LOG_FORMAT: str = "%(asctime)s | %(levelname)-7s | %(name)s | [%(client_id)s] %(message)s"
_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"


class ClientIdFilter(logging.Filter):
    """把 ``client_id_ctx_var`` 注入到每条日志记录中。"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.client_id = client_id_ctx_var.get()
        return True


def setup_logging() -> None:
    """根据当前环境配置全局日志。应在应用启动时调用一次。"""
    level = getattr(logging, settings.effective_log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT))
    handler.addFilter(ClientIdFilter())

    logging.basicConfig(
        level=level,
        handlers=[handler],
        force=True,  # 覆盖可能已有的 basicConfig
    )

    # 降低第三方库的日志噪音
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("TikTokLive").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """获取指定模块的 logger 实例。

    Args:
        name: 模块名，通常传 ``__name__``。

    Returns:
        配置好的 ``logging.Logger`` 实例。
    """
    return logging.getLogger(name)
