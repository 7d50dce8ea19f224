"""
时间工具
"""
from datetime import datetime, timezone
from typing import Callable


Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """带时区的当前 UTC 时间"""
    return datetime.now(timezone.utc)
