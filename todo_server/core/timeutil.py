"""
时间戳解析与格式化

写入统一使用本地时间 "YYYY-MM-DD HH:MM:SS"；
读取兼容 RFC3339（Z 或时区偏移）、无时区的 ISO 格式以及纯日期。
"""

from datetime import date, datetime
from typing import Optional, Union

STORAGE_FORMAT = "%Y-%m-%d %H:%M:%S"

_PARSE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d",
)


def now() -> datetime:
    """当前本地时间（秒精度，naive）"""
    return datetime.now().replace(microsecond=0)


def to_local_naive(value: datetime) -> datetime:
    """带时区的时间转换为本地 naive 时间，便于统一比较"""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


def parse_timestamp(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """
    解析时间戳。

    Args:
        value: 字符串 / date / datetime / None

    Returns:
        本地 naive datetime；空值返回 None

    Raises:
        ValueError: 无法识别的格式
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_local_naive(value)
    if isinstance(value, date):
        # PyYAML 会把未加引号的 YYYY-MM-DD 解析为 date
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if not text:
        return None

    for fmt in _PARSE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue

    # RFC3339：Python 3.11 之前 fromisoformat 不认 "Z"
    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return to_local_naive(datetime.fromisoformat(iso))
    except ValueError:
        raise ValueError(f"unrecognized timestamp: {text}") from None


def format_timestamp(value: Optional[datetime]) -> str:
    """格式化为存储格式；None 返回空字符串"""
    if value is None:
        return ""
    return to_local_naive(value).strftime(STORAGE_FORMAT)


def format_rfc3339(value: Optional[datetime]) -> str:
    """格式化为 RFC3339（本地时区偏移）"""
    if value is None:
        return ""
    return to_local_naive(value).astimezone().isoformat(timespec="seconds")


def daily_path(value: datetime) -> str:
    """归档日期目录 YYYY/MM/DD"""
    return value.strftime("%Y/%m/%d")


def format_duration(seconds: float) -> str:
    """把秒数格式化为 1h2m3s 形式"""
    total = int(round(seconds))
    if total <= 0:
        return "0s"
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return "".join(parts)
