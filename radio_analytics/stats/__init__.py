"""
收听统计引擎
Listener Analytics Engine

记录收听会话和文章浏览，回收失联会话，按日聚合并提供查询与导出。
Records listener sessions and article views, reaps silent sessions,
aggregates per day and serves queries and exports.
"""

from radio_analytics.stats.models import (
    Station,
    Quality,
    EventType,
    ListenerSession,
    StreamEvent,
    ArticleView,
    DailyStats,
    TopArticle,
    CurrentStats,
    QualityEstimate,
)
from radio_analytics.stats.errors import (
    AnalyticsError,
    StorageError,
    AggregationError,
    ConfigurationError,
)
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.stats.tracker import SessionTracker
from radio_analytics.stats.reaper import StaleSessionReaper
from radio_analytics.stats.aggregator import DailyAggregator, compute_daily_stats
from radio_analytics.stats.api import StatsAPI, export_filename, fill_missing_days

__all__ = [
    # Models
    'Station',
    'Quality',
    'EventType',
    'ListenerSession',
    'StreamEvent',
    'ArticleView',
    'DailyStats',
    'TopArticle',
    'CurrentStats',
    'QualityEstimate',
    # Errors
    'AnalyticsError',
    'StorageError',
    'AggregationError',
    'ConfigurationError',
    # Store
    'AnalyticsStore',
    # Tracker
    'SessionTracker',
    # Reaper
    'StaleSessionReaper',
    # Aggregator
    'DailyAggregator',
    'compute_daily_stats',
    # API
    'StatsAPI',
    'export_filename',
    'fill_missing_days',
]
