"""
时间工具模块
Time Utility Module

提供毫秒时间戳与服务时区内日历日之间的转换。
Converts between millisecond timestamps and calendar days in the service's
configured timezone.
"""

import time
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

DATE_FORMAT = '%Y-%m-%d'


def now_ms() -> int:
    """当前 Unix 毫秒时间戳 / Current Unix time in milliseconds"""
    return int(time.time() * 1000)


def parse_date(value: str | date) -> date:
    """
    解析 YYYY-MM-DD 日期
    Parse a YYYY-MM-DD date

    Raises:
        ValueError: 格式无效
                    Invalid format

    Examples:
        >>> parse_date('2024-03-01')
        datetime.date(2024, 3, 1)
    """
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise ValueError(f"Invalid date: {value!r}")
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError as e:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD") from e


def format_date(value: date) -> str:
    return value.strftime(DATE_FORMAT)


def day_bounds(day: str | date, tz: ZoneInfo) -> tuple[int, int]:
    """
    计算某日在指定时区的起止时间（毫秒，左闭右开）
    Compute [start, end) of a calendar day in the given timezone, in ms

    夏令时切换日的长度为 23 或 25 小时。
    DST transition days are 23 or 25 hours long.

    Examples:
        >>> start, end = day_bounds('2024-01-01', ZoneInfo('UTC'))
        >>> end - start
        86400000
    """
    d = parse_date(day)
    start = datetime(d.year, d.month, d.day, tzinfo=tz)
    nxt = d + timedelta(days=1)
    end = datetime(nxt.year, nxt.month, nxt.day, tzinfo=tz)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def local_date(timestamp_ms: int, tz: ZoneInfo) -> str:
    """毫秒时间戳所在的本地日期 / Local calendar date of a timestamp"""
    return format_date(datetime.fromtimestamp(timestamp_ms / 1000, tz=tz).date())


def previous_date(timestamp_ms: int, tz: ZoneInfo) -> str:
    """前一个日历日 / The calendar day before the timestamp's local day"""
    today = parse_date(local_date(timestamp_ms, tz))
    return format_date(today - timedelta(days=1))


def date_range(start: str | date, end: str | date) -> list[str]:
    """
    闭区间内的所有日期
    All dates in the inclusive range

    Examples:
        >>> date_range('2024-02-28', '2024-03-01')
        ['2024-02-28', '2024-02-29', '2024-03-01']
    """
    current = parse_date(start)
    last = parse_date(end)
    result = []
    while current <= last:
        result.append(format_date(current))
        current += timedelta(days=1)
    return result
