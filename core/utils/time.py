"""Time utilities."""
from datetime import datetime, timedelta, timezone
from typing import Optional


def now() -> datetime:
    """获取当前时间（UTC，带时区）。"""
    return datetime.now(timezone.utc)


def format_timestamp(dt: Optional[datetime] = None) -> str:
    """格式化时间戳为 ISO 8601 字符串。"""
    if dt is None:
        dt = now()
    return dt.isoformat()


def parse_timestamp(value: Optional[str]) -> datetime:
    """解析存储层中的时间戳。

    兼容 SQLite CURRENT_TIMESTAMP 的 "YYYY-MM-DD HH:MM:SS" 格式，
    缺少时区信息时按 UTC 处理。
    """
    if not value:
        return now()
    if "T" not in value:
        value = value.replace(" ", "T", 1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def later_than(previous: datetime) -> datetime:
    """返回严格晚于 previous 的当前时间，保证 updated_at 单调前进。"""
    current = now()
    if current <= previous:
        current = previous + timedelta(microseconds=1)
    return current
