"""
live_relay.services.stream_url
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

从上游房间元数据中解析可录制的直播流地址。
"""
from __future__ import annotations

from typing import Any

# FLV 拉流清晰度默认优先级：FULL_HD1 > HD1 > SD1 > SD2
QUALITY_PRIORITY: tuple[str, ...] = ("FULL_HD1", "HD1", "SD1", "SD2")

QUALITY_ALIASES: dict[str, str] = {
    "origin": "FULL_HD1",
    "1080p": "FULL_HD1",
    "720p": "HD1",
    "480p": "SD2",
    "360p": "SD1",
}


def resolve_stream_url(room_info: dict[str, Any] | None, quality: str | None = None) -> str | None:
    """解析直播流地址。

    Args:
        room_info: ``connect()`` 返回的房间元数据。
        quality: 期望清晰度，可为 ``FULL_HD1`` 等原始键名或 ``480p`` 等别名；
            不可用时按默认优先级回退。

    Returns:
        可供 ffmpeg 拉流的地址；没有可用地址时返回 ``None``。
    """
    stream_data = (room_info or {}).get("stream_url") or {}
    if not isinstance(stream_data, dict):
        return None

    flv = stream_data.get("flv_pull_url")
    if isinstance(flv, str) and flv:
        return flv

    if isinstance(flv, dict):
        order = list(QUALITY_PRIORITY)
        if quality:
            preferred = QUALITY_ALIASES.get(quality.lower(), quality.upper())
            order.insert(0, preferred)
        for key in order:
            url = flv.get(key)
            if url:
                return url

    rtmp = stream_data.get("rtmp_pull_url")
    return rtmp or None
