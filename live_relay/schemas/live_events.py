"""
live_relay.schemas.live_events
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

直播事件相关的 Pydantic 模型。

对外（浏览器）统一使用 camelCase 字段名，内部使用 snake_case，
通过 ``CamelModel`` 的 alias 生成器自动转换。
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from live_relay.core.settings import settings


class CamelModel(BaseModel):
    """对外序列化为 camelCase 的模型基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        """序列化为下发给浏览器的字典（camelCase，去掉 None）。"""
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ── 上游事件通道 ──────────────────────────────────────────────────────

class EventType(str, Enum):
    """上游事件源推送的事件种类。"""

    CHAT = "chat"
    GIFT = "gift"
    LIKE = "like"
    SOCIAL = "social"
    MEMBER = "member"
    ROOM_USER = "roomUser"
    STREAM_END = "streamEnd"
    ERROR = "error"


class LiveEvent(BaseModel):
    """事件通道中的单条事件（带标签的联合体）。

    ``type`` 决定 ``data`` 的含义；``data`` 中未声明的字段原样透传给展示层。
    """

    type: EventType = Field(..., description="事件种类")
    data: dict[str, Any] = Field(default_factory=dict, description="事件负载")


# ── 会话状态 ──────────────────────────────────────────────────────────

class SessionState(str, Enum):
    """会话状态机的状态。"""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    OFFLINE = "offline"
    ERROR = "error"


class StatusPayload(CamelModel):
    """``status`` 事件负载。"""

    state: SessionState = Field(..., description="会话状态")
    message: str = Field(default="", description="人类可读的状态说明")
    target: str | None = Field(default=None, description="目标直播间")
    next_retry_at: int | None = Field(
        default=None, description="下一次自动重连的时间戳（毫秒）",
    )


class JoinOptions(CamelModel):
    """``join`` 命令的可选参数。"""

    enable_auto_reconnect: bool = Field(default=False, description="失败 / 下播后是否自动重连")
    retry_interval_ms: int = Field(
        default_factory=lambda: settings.DEFAULT_RETRY_INTERVAL_MS,
        description="自动重连间隔（毫秒），小于下限时被钳制",
    )

    @field_validator("retry_interval_ms", mode="after")
    @classmethod
    def _clamp_interval(cls, value: int) -> int:
        return max(value, settings.MIN_RETRY_INTERVAL_MS)


class SessionInfoData(CamelModel):
    """会话摘要信息。"""

    client_id: str = Field(..., description="客户端标识")
    target: str = Field(..., description="目标直播间")
    state: SessionState = Field(..., description="会话状态")
    auto_reconnect: bool = Field(..., description="是否开启自动重连")
    next_retry_at: int | None = Field(default=None, description="下一次重连时间戳（毫秒）")
    room_id: str | None = Field(default=None, description="上游房间 ID")
    total_coins: int = Field(default=0, description="本会话累计礼物金币")


# ── 礼物 ──────────────────────────────────────────────────────────────

_EMPTY_IDS = ("", "0")


class GiftEvent(CamelModel):
    """一条原始礼物事件。

    只声明对账需要的字段，其余字段（礼物名、图片等）通过 ``extra="allow"`` 透传。
    """

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="allow",
    )

    msg_id: str | None = Field(default=None, description="上游消息 ID（用于去重）")
    sender_id: str = Field(..., description="送礼用户标识")
    gift_id: str = Field(..., description="礼物 ID")
    group_id: str | None = Field(default=None, description="连击分组 ID")
    repeat_count: int = Field(default=1, description="当前连击计数")
    diamond_count: int = Field(default=0, ge=0, description="礼物单价（钻石）")
    nickname: str | None = Field(default=None, description="送礼用户昵称")
    profile_picture_url: str | None = Field(default=None, description="送礼用户头像")

    @field_validator("msg_id", "group_id", mode="before")
    @classmethod
    def _optional_id(cls, value: Any) -> str | None:
        # 上游用 0 / 空串表示“无”
        if value is None:
            return None
        text = str(value)
        return None if text in _EMPTY_IDS else text

    @field_validator("sender_id", "gift_id", mode="before")
    @classmethod
    def _required_id(cls, value: Any) -> str:
        return str(value) if value is not None else value

    @field_validator("repeat_count", mode="before")
    @classmethod
    def _at_least_one(cls, value: Any) -> int:
        if value is None:
            return 1
        return max(1, int(value))

    @field_validator("diamond_count", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        if value is None:
            return 0
        return max(0, int(value))


class RankingEntry(CamelModel):
    """送礼榜条目。``total_coins`` 在会话内单调不减。"""

    sender_id: str = Field(..., description="送礼用户标识")
    display_name: str | None = Field(default=None, description="展示昵称")
    avatar_url: str | None = Field(default=None, description="头像地址")
    total_coins: int = Field(default=0, description="累计金币")


class GiftOutcome(CamelModel):
    """一条礼物事件的对账结果。

    ``coin_delta`` 用于计费；``streak_delta`` / ``repeat_count_after``
    供展示层做连击分组。
    """

    sender_id: str
    gift_id: str
    coin_delta: int
    streak_delta: int
    is_new_streak: bool
    repeat_count_after: int
    total_coins: int = Field(..., description="本会话累计金币")
    leaderboard: list[RankingEntry] = Field(default_factory=list)
    gift: dict[str, Any] = Field(default_factory=dict, description="原始礼物数据（透传）")

    def to_wire(self) -> dict[str, Any]:
        # 原始礼物字段已是 camelCase，需要保留其中的 None 值
        payload = super().to_wire()
        payload["gift"] = self.gift
        return payload


# ── 录制 ──────────────────────────────────────────────────────────────

class RecordingInfoData(CamelModel):
    """录制目录中的一条录制文件。"""

    filename: str = Field(..., description="文件名")
    size_bytes: int = Field(..., description="文件大小（字节）")
    complete: bool = Field(..., description="是否为最终交付容器")
    modified_at: str = Field(..., description="最后修改时间（ISO 格式）")
