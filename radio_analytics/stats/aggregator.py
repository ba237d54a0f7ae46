"""
每日统计聚合器
Daily Statistics Aggregator

把一个已结束日历日的原始会话与浏览记录折叠为一行 daily_stats。
Folds one completed calendar day's raw sessions and views into a single
daily_stats row.

会话归属于其开始日期；电台和质量按会话的最终值计数。
Sessions are attributed to their start date; station and quality are
counted by each session's final value.
"""

import logging
from collections import Counter
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from radio_analytics.stats.errors import AggregationError
from radio_analytics.stats.models import DailyStats, ListenerSession, Quality, Station
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.utils.timeutil import (
    date_range,
    day_bounds,
    format_date,
    now_ms,
    parse_date,
    previous_date,
)

logger = logging.getLogger(__name__)


def session_intervals(
    sessions: Iterable[ListenerSession],
    window_start: int,
    window_end: int,
    now: int | None = None,
    stale_after_ms: int | None = None
) -> list[tuple[int, int]]:
    """
    把会话裁剪到窗口内的 [start, end) 区间
    Clip sessions to [start, end) intervals inside the window

    未结束的会话视为持续到窗口末尾；若其心跳已过期（按 stale_after_ms），
    则视为在最后心跳时结束，与回收器的判断一致。空区间被丢弃。
    Open sessions run to the window end, unless their heartbeat is already
    stale (per stale_after_ms), in which case they end at the last heartbeat
    exactly as the reaper would close them. Empty intervals are dropped.
    """
    intervals = []
    for session in sessions:
        if session.ended_at is not None:
            end = session.ended_at
        elif (
            now is not None and stale_after_ms is not None
            and now - session.last_heartbeat > stale_after_ms
        ):
            end = session.last_heartbeat
        else:
            end = window_end

        start = max(session.started_at, window_start)
        end = min(end, window_end)
        if end > start:
            intervals.append((start, end))
    return intervals


def concurrency_profile(
    intervals: Iterable[tuple[int, int]],
    window_start: int,
    window_end: int
) -> tuple[int, float]:
    """
    扫描线计算最大并发数和时间加权平均并发数
    Sweep line: maximum concurrency and time-weighted average concurrency

    每个区间产生 (start, +1) 和 (end, -1) 两个事件；同一时刻先处理 -1，
    因此首尾相接的会话不算重叠。
    Each interval yields (start, +1) and (end, -1); at equal timestamps -1 is
    processed first, so back-to-back sessions do not overlap.

    Returns:
        (peak, average)

    Examples:
        >>> concurrency_profile([(0, 10), (5, 15)], 0, 20)
        (2, 1.0)
    """
    events = []
    for start, end in intervals:
        events.append((start, 1))
        events.append((end, -1))
    events.sort()

    running = 0
    peak = 0
    area = 0
    previous = window_start
    for timestamp, delta in events:
        area += running * (timestamp - previous)
        previous = timestamp
        running += delta
        peak = max(peak, running)

    length = window_end - window_start
    average = area / length if length > 0 else 0.0
    return peak, average


def compute_daily_stats(
    date: str,
    sessions: list[ListenerSession],
    article_views: int,
    window_start: int,
    window_end: int,
    now: int | None = None,
    stale_after_ms: int | None = None
) -> DailyStats:
    """
    纯函数：由一天的会话计算每日统计
    Pure function computing one day's statistics from its sessions

    Args:
        date: 日期（YYYY-MM-DD）
              Date (YYYY-MM-DD)
        sessions: 开始时间位于窗口内的会话
                  Sessions that started inside the window
        article_views: 当日文章浏览数
                       Article views that day
        window_start: 窗口开始（毫秒）
                      Window start (ms)
        window_end: 窗口结束（毫秒，不含）
                    Window end (ms, exclusive)
        now: 当前时间，用于判断未结束会话是否过期
             Current time, used to judge whether open sessions are stale
        stale_after_ms: 过期阈值（毫秒）
                        Staleness threshold (ms)

    Returns:
        每日统计
        Daily statistics
    """
    stations = Counter(s.station for s in sessions)
    qualities = Counter(s.quality for s in sessions)

    intervals = session_intervals(sessions, window_start, window_end, now, stale_after_ms)
    peak, average = concurrency_profile(intervals, window_start, window_end)

    total = len(sessions)
    return DailyStats(
        date=date,
        total_listeners=total,
        peak_listeners=peak,
        avg_listeners=round(average, 3),
        fm_listeners=stations[Station.FM.value],
        folclor_listeners=stations[Station.FOLCLOR.value],
        mp3_128_count=qualities[Quality.MP3_128.value],
        mp3_256_count=qualities[Quality.MP3_256.value],
        flac_count=qualities[Quality.FLAC.value],
        article_views=article_views,
        total_sessions=total,
    )


class DailyAggregator:
    """
    每日统计聚合器
    Daily Statistics Aggregator

    读取和写入在同一个事务中完成：读取看到一致的快照，失败时回滚，
    已有的行保持不变。重复运行同一日期得到完全相同的结果。
    Reads and the upsert share one transaction: the reads see a consistent
    snapshot and a failure rolls back leaving any existing row untouched.
    Re-running a date produces an identical row.

    Attributes:
        store: 统计数据存储
               Analytics data store
        timezone: 服务时区
                  Service timezone
        stale_after_seconds: 未结束会话的过期阈值（秒）
                             Staleness threshold for open sessions (seconds)
        clock: 返回当前毫秒时间戳的函数
               Callable returning the current time in ms

    Examples:
        >>> aggregator = DailyAggregator(store, timezone='Europe/Bucharest')
        >>> stats = aggregator.aggregate_day('2024-03-01')
        >>> stats.peak_listeners
        3
    """

    def __init__(
        self,
        store: AnalyticsStore,
        timezone: str = 'Europe/Bucharest',
        stale_after_seconds: int = 150,
        clock: Callable[[], int] = now_ms
    ):
        self.store = store
        self.timezone = ZoneInfo(timezone)
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    def aggregate_day(self, date: str) -> DailyStats:
        """
        聚合一个已结束的日历日并写入 daily_stats
        Aggregate one completed calendar day into daily_stats

        Args:
            date: 日期（YYYY-MM-DD）
                  Date (YYYY-MM-DD)

        Returns:
            写入的每日统计
            The row that was written

        Raises:
            ValueError: 日期无效，或该日结束后尚未超过过期阈值
                        Invalid date, or the day ended less than the
                        staleness threshold ago
            AggregationError: 计算或写入失败（已回滚）
                              Computation or write failed (rolled back)
        """
        date = format_date(parse_date(date))
        window_start, window_end = day_bounds(date, self.timezone)
        now = self.clock()
        stale_after_ms = self.stale_after_seconds * 1000
        # 零点附近的未结束会话要等过期阈值过后才能确定其结束时间
        if now < window_end + stale_after_ms:
            raise ValueError(
                f"Cannot aggregate {date} yet: it must have ended at least "
                f"{self.stale_after_seconds}s ago"
            )

        try:
            with self.store.transaction('aggregate_daily_stats') as conn:
                sessions = self.store.get_sessions_started_between(conn, window_start, window_end)
                views = self.store.count_article_views(conn, date)
                stats = compute_daily_stats(
                    date,
                    sessions,
                    views,
                    window_start,
                    window_end,
                    now=now,
                    stale_after_ms=stale_after_ms,
                )
                self.store.upsert_daily_stats(conn, stats)
        except Exception as e:
            logger.error(f"Aggregation failed for {date}: {e}")
            raise AggregationError(str(e), date) from e

        logger.info(
            f"Aggregated stats for {date}: sessions={stats.total_sessions}, "
            f"peak={stats.peak_listeners}, avg={stats.avg_listeners}, "
            f"article_views={stats.article_views}"
        )
        return stats

    def aggregate_previous_day(self, now: int | None = None) -> DailyStats:
        """聚合前一个日历日（定时任务） / Aggregate yesterday (scheduled job)"""
        return self.aggregate_day(previous_date(self.clock() if now is None else now, self.timezone))

    def backfill(self, start_date: str, end_date: str) -> list[DailyStats]:
        """
        重新聚合闭区间内的每一天（手动修复）
        Re-aggregate every day in the inclusive range (manual repair)

        Raises:
            ValueError: start_date 晚于 end_date
                        start_date is after end_date
        """
        if parse_date(start_date) > parse_date(end_date):
            raise ValueError(f"start_date {start_date} is after end_date {end_date}")

        results = [self.aggregate_day(d) for d in date_range(start_date, end_date)]
        logger.info(f"Backfilled {len(results)} day(s) from {start_date} to {end_date}")
        return results
