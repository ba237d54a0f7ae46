"""
统计 API
Statistics API

面向管理后台的只读查询：实时在线、今日统计、每日历史、热门文章、CSV 导出。
Read-only queries for the admin dashboard: live listeners, today's running
figures, daily history, most viewed articles and CSV export.

所有查询直接读取存储，不做缓存。
Every query reads the store directly; nothing is cached.
"""

import csv
import io
import logging
from datetime import timedelta
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from radio_analytics.stats.aggregator import compute_daily_stats
from radio_analytics.stats.models import (
    QUALITIES,
    STATIONS,
    CurrentStats,
    DailyStats,
    QualityEstimate,
    TopArticle,
)
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.utils.timeutil import (
    date_range,
    day_bounds,
    format_date,
    local_date,
    now_ms,
    parse_date,
)

logger = logging.getLogger(__name__)

CSV_HEADER = [
    'Date',
    'Total Listeners',
    'Peak Listeners',
    'Avg Listeners',
    'FM Listeners',
    'Folclor Listeners',
    'MP3 128kbps',
    'MP3 256kbps',
    'FLAC',
    'Article Views',
    'Total Sessions',
]

MAX_ARTICLE_LIMIT = 100
MAX_ARTICLE_DAYS = 366


def export_filename(start_date: str, end_date: str) -> str:
    """
    导出文件名
    Export file name

    Examples:
        >>> export_filename('2024-03-01', '2024-03-07')
        'radio-stats-2024-03-01-to-2024-03-07.csv'
    """
    start, end = _validate_range(start_date, end_date)
    return f"radio-stats-{start}-to-{end}.csv"


def fill_missing_days(
    rows: Iterable[DailyStats],
    start_date: str,
    end_date: str
) -> list[DailyStats]:
    """
    为缺失的日期补零行（供图表使用）
    Insert zero rows for missing dates (for chart callers)

    存储层不会补齐缺口，这一步由调用方按需执行。
    The store never synthesizes gaps; callers opt in here.
    """
    by_date = {row.date: row for row in rows}
    return [by_date.get(d) or DailyStats(date=d) for d in date_range(start_date, end_date)]


def _validate_range(start_date: str, end_date: str) -> tuple[str, str]:
    start = parse_date(start_date)
    end = parse_date(end_date)
    if start > end:
        raise ValueError(f"start date {format_date(start)} is after end date {format_date(end)}")
    return format_date(start), format_date(end)


class StatsAPI:
    """
    统计 API
    Statistics API

    Attributes:
        store: 统计数据存储
               Analytics data store
        timezone: 服务时区
                  Service timezone
        stale_after_seconds: 实时统计中心跳过期阈值（秒）
                             Heartbeat staleness threshold for live counts
        clock: 返回当前毫秒时间戳的函数
               Callable returning the current time in ms

    Examples:
        >>> api = StatsAPI(store)
        >>> api.get_current_stats()
        {'total': 2, 'uniqueUsers': 1, 'byStation': {...}, 'byQuality': {...}}
        >>> csv_text = api.export_csv('2024-03-01', '2024-03-07')
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

    # =========================================================================
    # Live
    # =========================================================================

    def get_current_stats(self) -> dict:
        """
        获取实时在线统计
        Get live listener counts

        只统计未结束且心跳未过期的会话，回收器尚未运行时结果同样正确。
        Counts sessions that are active and whose heartbeat is within the
        staleness threshold, so the result is right even before the reaper
        has run.
        """
        now = self.clock()
        with self.store.transaction('get_current_stats', immediate=False) as conn:
            return self._current_stats(conn, now).to_dict()

    def _current_stats(self, conn, now: int) -> CurrentStats:
        cutoff = now - self.stale_after_seconds * 1000
        stats = CurrentStats()
        for row in self.store.get_live_counts(conn, cutoff):
            count = row['count']
            stats.total += count
            if row['station'] in stats.by_station:
                stats.by_station[row['station']] += count
            if row['quality'] in stats.by_quality:
                stats.by_quality[row['quality']] += count
        stats.unique_users = self.store.count_live_users(conn, cutoff)
        return stats

    def get_today_stats(self) -> dict:
        """
        获取今日（截至当前）统计
        Get today's statistics so far

        与每日聚合使用相同的计算，窗口为 [今日零点, 当前时间)。
        Uses the same arithmetic as the daily aggregation over the window
        [start of today, now).
        """
        now = self.clock()
        today = local_date(now, self.timezone)
        day_start, _ = day_bounds(today, self.timezone)

        with self.store.transaction('get_today_stats', immediate=False) as conn:
            sessions = self.store.get_sessions_started_between(conn, day_start, now)
            views = self.store.count_article_views(conn, today)
            unique_users = self.store.count_users_started_between(conn, day_start, now)
            current = self._current_stats(conn, now)

        stats = compute_daily_stats(
            today,
            sessions,
            views,
            day_start,
            now,
            now=now,
            stale_after_ms=self.stale_after_seconds * 1000,
        )
        result = stats.to_dict()
        result['uniqueUsers'] = unique_users
        result['current'] = current.to_dict()
        return result

    # =========================================================================
    # History
    # =========================================================================

    def get_daily_stats(self, start_date: str, end_date: str) -> list[dict]:
        """
        获取日期闭区间内已存在的每日统计行
        Get existing daily rows in the inclusive date range

        Raises:
            ValueError: 日期无效或起始晚于结束
                        Invalid dates or start after end
        """
        start, end = _validate_range(start_date, end_date)
        return [row.to_dict() for row in self.store.get_daily_stats(start, end)]

    def get_most_viewed_articles(self, limit: int = 10, days: int = 30) -> list[dict]:
        """
        获取最近 days 天内浏览最多的文章
        Get the most viewed articles over the trailing days

        Args:
            limit: 返回数量（1-100）
                   Number of articles (1-100)
            days: 统计天数，包含今天
                  Window length in days, today included

        Raises:
            ValueError: limit 或 days 超出范围
                        limit or days out of range
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_ARTICLE_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_ARTICLE_LIMIT}, got {limit!r}")
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= MAX_ARTICLE_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_ARTICLE_DAYS}, got {days!r}")

        today = parse_date(local_date(self.clock(), self.timezone))
        since = format_date(today - timedelta(days=days - 1))

        articles = [
            TopArticle(
                article_id=row['article_id'],
                article_title=row['article_title'] or 'Unknown',
                view_count=row['view_count'],
                last_viewed=row['last_viewed'],
            )
            for row in self.store.get_top_articles(since, limit)
        ]
        return [a.to_dict() for a in articles]

    # =========================================================================
    # CSV Export
    # =========================================================================

    def export_csv(self, start_date: str, end_date: str) -> str:
        """
        导出每日统计 CSV
        Export daily statistics as CSV

        表头固定；只导出已存在的行。
        The header is fixed; only existing rows are exported.
        """
        start, end = _validate_range(start_date, end_date)
        rows = self.store.get_daily_stats(start, end)

        output = io.StringIO()
        writer = csv.writer(output, lineterminator='\n')
        writer.writerow(CSV_HEADER)
        for row in rows:
            writer.writerow([
                row.date,
                row.total_listeners,
                row.peak_listeners,
                row.avg_listeners,
                row.fm_listeners,
                row.folclor_listeners,
                row.mp3_128_count,
                row.mp3_256_count,
                row.flac_count,
                row.article_views,
                row.total_sessions,
            ])

        logger.info(f"Exported {len(rows)} daily row(s) for {start} to {end}")
        return output.getvalue()

    # =========================================================================
    # Estimates
    # =========================================================================

    def estimate_quality_by_station(self, start_date: str, end_date: str) -> dict:
        """
        估算各电台的质量分布（近似值）
        Estimate the quality split per station (approximate)

        每日统计只保存电台和质量的边际计数。对每一天，按该日各电台会话占比把
        每种质量的计数分配到各电台，再按天求和。结果标记为 approximate。
        Daily rows only keep marginal station and quality counts. For each
        day, every quality count is split across stations by that day's
        station share, then summed over days. The result is marked
        approximate.
        """
        start, end = _validate_range(start_date, end_date)
        rows = self.store.get_daily_stats(start, end)

        estimate = QualityEstimate(start_date=start, end_date=end, days=len(rows))
        for row in rows:
            if row.total_listeners <= 0:
                continue
            shares = {
                'fm': row.fm_listeners / row.total_listeners,
                'folclor': row.folclor_listeners / row.total_listeners,
            }
            counts = {
                'mp3_128': row.mp3_128_count,
                'mp3_256': row.mp3_256_count,
                'flac': row.flac_count,
            }
            for station in STATIONS:
                for quality in QUALITIES:
                    estimate.by_station[station][quality] += counts[quality] * shares[station]

        return estimate.to_dict()
