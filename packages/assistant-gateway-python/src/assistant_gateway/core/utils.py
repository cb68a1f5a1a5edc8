"""共享工具函数（时间戳、id 生成等）。"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """返回带时区的当前 UTC 时间（各 store 的默认 clock）。"""
    return datetime.now(timezone.utc)


def format_rfc3339(dt: datetime) -> str:
    """把 datetime 格式化为 RFC3339 字符串（UTC，以 Z 结尾）。"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def now_rfc3339() -> str:
    """返回当前 UTC 时间的 RFC3339 字符串（以 Z 结尾）。"""
    return format_rfc3339(utc_now())


def parse_rfc3339(value: str) -> Optional[datetime]:
    """解析 `format_rfc3339()` 产出的时间戳；无法解析时返回 None。"""
    raw = str(value or "").strip()
    if not raw:
        return None
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id() -> str:
    """生成 run/job 使用的随机 id（uuid4 字符串）。"""
    return str(uuid.uuid4())


def short_token() -> str:
    """生成 8 位审批 token（人类可在聊天中输入）。"""
    return uuid.uuid4().hex[:8]


def clamp(value: int, low: int, high: int) -> int:
    """把分页 limit 之类的整数限制在 [low, high]。"""
    return max(low, min(high, int(value)))
