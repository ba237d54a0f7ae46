"""
统计数据模型
Statistics Data Models

定义收听会话、播放事件、文章浏览和每日汇总所使用的数据类。
Defines data classes for listener sessions, stream events, article views
and daily summaries.

时间戳统一使用 Unix 毫秒整数。
All timestamps are integer Unix milliseconds.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any


class Station(str, Enum):
    """电台频道 / Radio station"""
    FM = 'fm'
    FOLCLOR = 'folclor'


class Quality(str, Enum):
    """音频质量 / Stream quality"""
    MP3_128 = 'mp3_128'
    MP3_256 = 'mp3_256'
    FLAC = 'flac'


class EventType(str, Enum):
    """播放事件类型 / Stream event type"""
    START = 'start'
    STOP = 'stop'
    SWITCH_STATION = 'switch_station'
    CHANGE_QUALITY = 'change_quality'


STATIONS: tuple[str, ...] = tuple(s.value for s in Station)
QUALITIES: tuple[str, ...] = tuple(q.value for q in Quality)


@dataclass
class ListenerSession:
    """
    收听会话
    Listener Session

    一个客户端的一次收听尝试。station/quality 反映当前（或最终）播放配置。
    One streaming attempt by one client. station/quality reflect the current
    (or, once ended, the final) playback configuration.

    Attributes:
        session_id: 客户端生成的会话 ID
                    Client generated session ID
        station: 电台
                 Station
        quality: 音频质量
                 Quality
        started_at: 开始时间（毫秒）
                    Start time (ms)
        last_heartbeat: 最后心跳时间（毫秒）
                        Last heartbeat time (ms)
        ended_at: 结束时间（毫秒），None 表示仍活跃
                  End time (ms), None while active
        user_id: 可选的关联 ID（非个人信息）
                 Optional correlation ID (not PII)
    """
    session_id: str
    station: str
    quality: str
    started_at: int
    last_heartbeat: int
    ended_at: int | None = None
    user_id: str | None = None

    @property
    def is_active(self) -> bool:
        return self.ended_at is None


@dataclass
class StreamEvent:
    """播放事件（只追加） / Append-only stream event"""
    session_id: str
    event_type: str
    station: str | None
    quality: str | None
    timestamp: int


@dataclass
class ArticleView:
    """文章浏览（只追加） / Append-only article view"""
    article_id: str
    article_title: str
    view_date: str
    timestamp: int


@dataclass
class DailyStats:
    """
    每日统计
    Daily Statistics

    每个日历日一行，只由每日聚合器写入。
    One row per calendar day, written only by the daily aggregator.

    Attributes:
        date: 日期（YYYY-MM-DD）
              Date (YYYY-MM-DD)
        total_listeners: 当日不同会话数
                         Distinct sessions that day
        peak_listeners: 当日开始的会话的最大同时在线数；前一日开始、跨过午夜仍在收听的会话不计入
                        Maximum concurrent sessions among sessions started that
                        day; sessions started the previous day and still playing
                        after midnight are not counted
        avg_listeners: 当日开始的会话的时间加权平均在线数（同样不含跨午夜的前一日会话）
                       Time-weighted average concurrency of sessions started
                       that day (carried-over sessions excluded as above)
        fm_listeners: 最终电台为 fm 的会话数
                      Sessions whose final station is fm
        folclor_listeners: 最终电台为 folclor 的会话数
                           Sessions whose final station is folclor
        mp3_128_count: 最终质量为 mp3_128 的会话数
        mp3_256_count: 最终质量为 mp3_256 的会话数
        flac_count: 最终质量为 flac 的会话数
        article_views: 当日文章浏览数
                       Article views that day
        total_sessions: 当日开始的会话数
                        Sessions started that day
    """
    date: str
    total_listeners: int = 0
    peak_listeners: int = 0
    avg_listeners: float = 0.0
    fm_listeners: int = 0
    folclor_listeners: int = 0
    mp3_128_count: int = 0
    mp3_256_count: int = 0
    flac_count: int = 0
    article_views: int = 0
    total_sessions: int = 0

    @classmethod
    def column_names(cls) -> list[str]:
        """按固定顺序返回列名 / Column names in their fixed order"""
        return [f.name for f in fields(cls)]

    def to_dict(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in self.column_names()}

    @classmethod
    def from_row(cls, row: Any) -> 'DailyStats':
        return cls(**{name: row[name] for name in cls.column_names()})


@dataclass
class TopArticle:
    """热门文章 / Top article"""
    article_id: str
    article_title: str
    view_count: int
    last_viewed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            'articleId': self.article_id,
            'articleTitle': self.article_title,
            'viewCount': self.view_count,
        }


@dataclass
class CurrentStats:
    """
    实时在线统计
    Live listener counts
    """
    total: int = 0
    unique_users: int = 0
    by_station: dict[str, int] = field(
        default_factory=lambda: {s: 0 for s in STATIONS}
    )
    by_quality: dict[str, int] = field(
        default_factory=lambda: {q: 0 for q in QUALITIES}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            'total': self.total,
            'uniqueUsers': self.unique_users,
            'byStation': dict(self.by_station),
            'byQuality': dict(self.by_quality),
        }


@dataclass
class QualityEstimate:
    """
    电台×质量估算（近似值）
    Station x quality estimate (approximate)

    由每日边际总数按比例推算，不是精确的联合计数。
    Derived from daily marginal totals by proportional distribution; this is
    not an exact joint count and must not be used for audit-grade reporting.
    """
    start_date: str
    end_date: str
    days: int = 0
    by_station: dict[str, dict[str, float]] = field(
        default_factory=lambda: {s: {q: 0.0 for q in QUALITIES} for s in STATIONS}
    )
    approximate: bool = True
    method: str = 'proportional-by-daily-station-share'

    def to_dict(self) -> dict[str, Any]:
        return {
            'startDate': self.start_date,
            'endDate': self.end_date,
            'days': self.days,
            'byStation': {
                station: {q: round(v, 3) for q, v in qualities.items()}
                for station, qualities in self.by_station.items()
            },
            'approximate': self.approximate,
            'method': self.method,
        }
