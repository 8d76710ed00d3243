"""
live_relay.services.gift_reconciler
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

礼物流对账引擎 —— 把上游重复投递、可能乱序的礼物事件转换为金币增量和实时送礼榜。

上游对“连击”礼物的表示方式是：同一用户连续赠送同一礼物时，后续事件的
``repeatCount`` 逐步递增，而不是发送多条独立事件。因此计费时只能计算
相对于上一次观测的增量部分。

每个会话持有一个独立的 ``GiftReconciler``，所有状态都在事件到达顺序上串行修改，
引擎自身不做任何重排序。
"""
from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from live_relay.core.errors import DuplicateOrOutOfOrderGift
from live_relay.core.logging import get_logger
from live_relay.core.settings import settings
from live_relay.schemas.live_events import GiftEvent, GiftOutcome, RankingEntry

logger = get_logger(__name__)

# ── 无 groupId 时的启发式阈值（毫秒 / 次数）───────────────────────────
PHANTOM_RESTART_WINDOW_MS: int = 3_000
PHANTOM_RESTART_MIN_PREV_COUNT: int = 10
CONTINUATION_WINDOW_MS: int = 5_000

StreakKey = tuple[str, str]


def _now_ms() -> float:
    return time.time() * 1000


@dataclass
class StreakState:
    """某个 ``(sender_id, gift_id)`` 最近一次被接受的礼物观测。"""

    group_id: str | None
    repeat_count: int
    diamond_count: int
    timestamp_ms: float


class ProcessedMessageIds:
    """有界的已处理消息 ID 集合，超出容量时按 FIFO 淘汰最旧的条目。"""

    def __init__(self, capacity: int = 500) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._ids: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, msg_id: object) -> bool:
        return msg_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, msg_id: str) -> None:
        """加入一个 ID，必要时淘汰最旧的 ID。"""
        self._ids[msg_id] = None
        while len(self._ids) > self.capacity:
            self._ids.popitem(last=False)

    def clear(self) -> None:
        self._ids.clear()


class GiftReconciler:
    """单会话的礼物对账引擎。

    - ``process(raw)`` → 对一条礼物事件去重、归并连击、计算金币增量；
      被判定为重复 / 乱序的事件返回 ``None`` 且不修改任何状态。
    - ``leaderboard()`` → 当前送礼榜快照（按累计金币降序，同分先到者在前）。
    - ``reset()`` → 原子地清空全部会话状态。

    Attributes:
        processed_ids: 已处理消息 ID 集合。
        streaks: 每个 ``(sender_id, gift_id)`` 的连击状态。
        ranking: 每个送礼用户的榜单条目（按首次出现顺序）。
        total_coins: 本会话累计金币。
    """

    def __init__(
        self,
        dedup_capacity: int | None = None,
        leaderboard_size: int | None = None,
        clock: Callable[[], float] = _now_ms,
    ) -> None:
        self.leaderboard_size = leaderboard_size or settings.LEADERBOARD_SIZE
        self.processed_ids = ProcessedMessageIds(
            dedup_capacity or settings.GIFT_DEDUP_CAPACITY,
        )
        self.streaks: dict[StreakKey, StreakState] = {}
        self.ranking: dict[str, RankingEntry] = {}
        self.total_coins: int = 0
        self._clock = clock

    def reset(self) -> None:
        """清空去重集合、连击状态和送礼榜。"""
        self.processed_ids.clear()
        self.streaks.clear()
        self.ranking.clear()
        self.total_coins = 0

    def process(self, raw: GiftEvent | Mapping[str, Any]) -> GiftOutcome | None:
        """对账一条原始礼物事件。

        Args:
            raw: ``GiftEvent`` 或其 camelCase 字典形式。

        Returns:
            对账结果；事件被丢弃时返回 ``None``。
        """
        gift = raw if isinstance(raw, GiftEvent) else GiftEvent.model_validate(raw)

        if gift.msg_id is not None:
            if gift.msg_id in self.processed_ids:
                logger.debug("丢弃重复礼物消息 | msg_id=%s", gift.msg_id)
                return None
            self.processed_ids.add(gift.msg_id)

        now = self._clock()
        key: StreakKey = (gift.sender_id, gift.gift_id)
        try:
            streak_delta, is_new = self._streak_delta(gift, self.streaks.get(key), now)
        except DuplicateOrOutOfOrderGift as e:
            logger.debug("丢弃礼物包 | sender=%s | gift=%s | %s", gift.sender_id, gift.gift_id, e)
            return None

        coin_delta = streak_delta * gift.diamond_count
        self.streaks[key] = StreakState(
            group_id=gift.group_id,
            repeat_count=gift.repeat_count,
            diamond_count=gift.diamond_count,
            timestamp_ms=now,
        )
        self._credit(gift, coin_delta)

        return GiftOutcome(
            sender_id=gift.sender_id,
            gift_id=gift.gift_id,
            coin_delta=coin_delta,
            streak_delta=streak_delta,
            is_new_streak=is_new,
            repeat_count_after=gift.repeat_count,
            total_coins=self.total_coins,
            leaderboard=self.leaderboard(),
            gift=gift.model_dump(by_alias=True),
        )

    def leaderboard(self) -> list[RankingEntry]:
        """返回送礼榜前 N 名的快照副本。"""
        # sorted 是稳定排序，dict 保持插入顺序，因此同分时先出现者在前
        ordered = sorted(self.ranking.values(), key=lambda e: e.total_coins, reverse=True)
        return [entry.model_copy() for entry in ordered[: self.leaderboard_size]]

    # ── 内部方法 ──────────────────────────────────────────────────────

    @staticmethod
    def _streak_delta(
        gift: GiftEvent, prev: StreakState | None, now: float,
    ) -> tuple[int, bool]:
        """计算本次应计费的连击增量，返回 ``(streak_delta, is_new_streak)``。

        Raises:
            DuplicateOrOutOfOrderGift: 事件应被丢弃。
        """
        count = gift.repeat_count
        if prev is None:
            return count, True

        if gift.group_id is not None and gift.group_id == prev.group_id:
            if count > prev.repeat_count:
                return count - prev.repeat_count, False
            raise DuplicateOrOutOfOrderGift(
                f"same group, repeat_count {count} <= {prev.repeat_count}",
            )

        elapsed = now - prev.timestamp_ms
        if (
            elapsed < PHANTOM_RESTART_WINDOW_MS
            and count == 1
            and prev.repeat_count >= PHANTOM_RESTART_MIN_PREV_COUNT
        ):
            raise DuplicateOrOutOfOrderGift("phantom restart packet")
        if elapsed < CONTINUATION_WINDOW_MS:
            if count == prev.repeat_count:
                raise DuplicateOrOutOfOrderGift("retransmit")
            if count > prev.repeat_count:
                return count - prev.repeat_count, False
        return count, True

    def _credit(self, gift: GiftEvent, coin_delta: int) -> None:
        entry = self.ranking.get(gift.sender_id)
        if entry is None:
            entry = RankingEntry(sender_id=gift.sender_id)
            self.ranking[gift.sender_id] = entry
        entry.total_coins += coin_delta
        entry.display_name = gift.nickname or entry.display_name
        entry.avatar_url = gift.profile_picture_url or entry.avatar_url
        self.total_coins += coin_delta
