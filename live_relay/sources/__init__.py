"""
live_relay.sources
~~~~~~~~~~~~~~~~~~

上游事件源。``base`` 定义接口，``tiktok`` 提供基于 TikTokLive 的实现。
"""
from live_relay.sources.base import ConnectResult, EventSink, EventSource, EventSourceFactory
