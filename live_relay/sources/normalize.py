"""
live_relay.sources.normalize
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

把上游协议客户端的事件对象转换为对外统一的 camelCase 字典。

上游 SDK 的字段命名在各版本之间有差异，这里按属性名逐个尝试，
取第一个存在且非空的值。
"""
from __future__ import annotations

from typing import Any


def pick(obj: Any, *names: str, default: Any = None) -> Any:
    """依次尝试读取 ``obj`` 的属性（或字典键），返回第一个非空值。"""
    if obj is None:
        return default
    for name in names:
        value = obj.get(name) if isinstance(obj, dict) else getattr(obj, name, None)
        if value not in (None, ""):
            return value
    return default


def first_url(image: Any) -> str | None:
    """从图片对象中取出第一个可用地址。"""
    urls = pick(image, "m_urls", "url_list", "urls")
    if urls:
        return str(list(urls)[0])
    url = pick(image, "url")
    return str(url) if url else None


def user_fields(user: Any) -> dict[str, Any]:
    """提取用户的展示字段。"""
    return {
        "uniqueId": pick(user, "unique_id", "uniqueId", "username"),
        "userId": _str_or_none(pick(user, "id", "user_id", "userId")),
        "nickname": pick(user, "nickname", "nick_name"),
        "profilePictureUrl": first_url(pick(user, "avatar_thumb", "avatar", "profile_picture")),
    }


def message_id(event: Any) -> str | None:
    """取出事件的上游消息 ID（用于礼物去重）。"""
    base = pick(event, "base_message", "common")
    return _str_or_none(pick(base, "message_id", "msg_id") or pick(event, "msg_id", "message_id"))


def chat_payload(event: Any) -> dict[str, Any]:
    return {
        **user_fields(pick(event, "user")),
        "msgId": message_id(event),
        "comment": pick(event, "comment", "content", default=""),
    }


def like_payload(event: Any) -> dict[str, Any]:
    return {
        **user_fields(pick(event, "user")),
        "likeCount": int(pick(event, "count", "like_count", default=0)),
        "totalLikeCount": int(pick(event, "total", "total_like_count", default=0)),
    }


def social_payload(event: Any) -> dict[str, Any]:
    return {
        **user_fields(pick(event, "user")),
        "label": pick(event, "label", "action", default="share"),
    }


def member_payload(event: Any) -> dict[str, Any]:
    return {
        **user_fields(pick(event, "user")),
        "actionId": pick(event, "action", "action_id"),
    }


def room_user_payload(event: Any) -> dict[str, Any]:
    return {
        "viewerCount": int(pick(event, "m_total", "total", "viewer_count", default=0)),
    }


def gift_payload(event: Any) -> dict[str, Any]:
    """礼物事件 → ``GiftEvent`` 可解析的 camelCase 字典。"""
    gift = pick(event, "gift")
    user = user_fields(pick(event, "user"))
    return {
        **user,
        "msgId": message_id(event),
        "senderId": user["uniqueId"] or user["userId"],
        "giftId": _str_or_none(pick(gift, "id", "gift_id") or pick(event, "gift_id")),
        "groupId": _str_or_none(pick(event, "group_id", "groupId")),
        "repeatCount": int(pick(event, "repeat_count", "combo_count", default=1)),
        "diamondCount": _int_or_none(pick(gift, "diamond_count")),
        "giftName": pick(gift, "name"),
        "giftPictureUrl": first_url(pick(gift, "image", "icon")),
        "repeatEnd": bool(pick(event, "repeat_end", default=False)),
    }


def gift_catalog(gift_info: Any) -> dict[str, dict[str, Any]]:
    """把上游礼物目录转换为 ``giftId -> 展示字段`` 的映射。"""
    gifts = pick(gift_info, "gifts", default=[]) or []
    catalog: dict[str, dict[str, Any]] = {}
    for item in gifts:
        gift_id = _str_or_none(pick(item, "id"))
        if gift_id is None:
            continue
        catalog[gift_id] = {
            "giftName": pick(item, "name"),
            "giftPictureUrl": first_url(pick(item, "image", "icon")),
            "diamondCount": pick(item, "diamond_count"),
        }
    return catalog


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def _int_or_none(value: Any) -> int | None:
    # 缺失的单价交给礼物目录补全
    return None if value is None else int(value)
