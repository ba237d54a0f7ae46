"""
统计数据存储
Analytics Data Store

使用 SQLite（WAL 模式）作为后端存储会话、播放事件、文章浏览和每日统计。
Uses SQLite (WAL mode) as the backend for sessions, stream events, article
views and daily statistics.

写操作通过 transaction() 组合在单个事务中；读操作各自打开连接。
Write operations are composed inside a single transaction() block; read
operations open their own connection.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Generator

from radio_analytics.stats.errors import StorageError
from radio_analytics.stats.models import (
    ArticleView,
    DailyStats,
    ListenerSession,
    StreamEvent,
)

logger = logging.getLogger(__name__)


# 数据库 Schema
SCHEMA = """
-- 收听会话表（每个 session_id 一行）
CREATE TABLE IF NOT EXISTS listener_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT UNIQUE NOT NULL,
    user_id TEXT,
    station TEXT NOT NULL,
    quality TEXT NOT NULL,
    started_at INTEGER NOT NULL,
    last_heartbeat INTEGER NOT NULL,
    ended_at INTEGER
);

CREATE INDEX IF NOT EXISTS idx_active_sessions ON listener_sessions(ended_at) WHERE ended_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_started_at ON listener_sessions(started_at);

-- 播放事件表（只追加）
CREATE TABLE IF NOT EXISTS stream_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    station TEXT,
    quality TEXT,
    timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_event_session ON stream_events(session_id);
CREATE INDEX IF NOT EXISTS idx_event_timestamp ON stream_events(timestamp);

-- 文章浏览表（只追加）
CREATE TABLE IF NOT EXISTS article_views (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    article_id TEXT NOT NULL,
    article_title TEXT,
    view_date TEXT NOT NULL,
    timestamp INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_article_id ON article_views(article_id);
CREATE INDEX IF NOT EXISTS idx_view_date ON article_views(view_date);

-- 每日统计表
CREATE TABLE IF NOT EXISTS daily_stats (
    date TEXT PRIMARY KEY,
    total_listeners INTEGER DEFAULT 0,
    peak_listeners INTEGER DEFAULT 0,
    avg_listeners REAL DEFAULT 0,
    fm_listeners INTEGER DEFAULT 0,
    folclor_listeners INTEGER DEFAULT 0,
    mp3_128_count INTEGER DEFAULT 0,
    mp3_256_count INTEGER DEFAULT 0,
    flac_count INTEGER DEFAULT 0,
    article_views INTEGER DEFAULT 0,
    total_sessions INTEGER DEFAULT 0
);
"""

SESSION_COLUMNS = (
    'session_id, user_id, station, quality, started_at, last_heartbeat, ended_at'
)


def _row_to_session(row: sqlite3.Row) -> ListenerSession:
    return ListenerSession(
        session_id=row['session_id'],
        user_id=row['user_id'],
        station=row['station'],
        quality=row['quality'],
        started_at=row['started_at'],
        last_heartbeat=row['last_heartbeat'],
        ended_at=row['ended_at'],
    )


class AnalyticsStore:
    """
    统计数据存储
    Analytics Data Store

    Attributes:
        db_path: 数据库文件路径
                 Database file path
        busy_timeout_ms: 等待写锁的最长时间（毫秒）
                         Maximum wait for the write lock (ms)

    Examples:
        >>> store = AnalyticsStore('data/analytics.db')
        >>> with store.transaction('heartbeat') as conn:
        ...     store.touch_session(conn, 'session_1', now)
    """

    def __init__(self, db_path: str = 'data/analytics.db', busy_timeout_ms: int = 5000):
        """
        初始化统计存储
        Initialize Analytics Store

        Args:
            db_path: 数据库文件路径（不支持 ':memory:'，每个操作使用独立连接）
                     Database file path (':memory:' is not supported since
                     every operation uses its own connection)
            busy_timeout_ms: 写锁等待时间（毫秒）
                             Write lock wait time (ms)
        """
        if db_path == ':memory:':
            raise ValueError("AnalyticsStore requires a database file path")
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._ensure_directory()
        self._init_database()

    def _ensure_directory(self) -> None:
        """确保数据库目录存在"""
        dir_path = os.path.dirname(self.db_path)
        if dir_path and not os.path.exists(dir_path):
            os.makedirs(dir_path, exist_ok=True)

    def _init_database(self) -> None:
        """初始化数据库 schema 并启用 WAL"""
        try:
            with self._get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
                self._migrate(conn)
        except sqlite3.Error as e:
            raise StorageError(str(e), 'init') from e
        logger.info(f"Analytics database initialized: {self.db_path}")

    def _migrate(self, conn: sqlite3.Connection) -> None:
        """旧版数据库缺少 user_id 列时补齐"""
        columns = [row['name'] for row in conn.execute("PRAGMA table_info(listener_sessions)")]
        if 'user_id' not in columns:
            logger.info("Migrating: adding user_id column to listener_sessions")
            conn.execute("ALTER TABLE listener_sessions ADD COLUMN user_id TEXT")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_user_id ON listener_sessions(user_id)")

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        获取数据库连接（自动提交模式，事务显式开启）
        Get a database connection (autocommit mode, explicit transactions)
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=self.busy_timeout_ms / 1000,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        operation: str = 'transaction',
        immediate: bool = True
    ) -> Generator[sqlite3.Connection, None, None]:
        """
        在单个事务中执行一组操作
        Run a group of statements inside one transaction

        immediate=True 时立即获取写锁（BEGIN IMMEDIATE），同一时刻只有一个写者；
        immediate=False 时开启只读快照（WAL 下读取一致）。
        With immediate=True the write lock is taken up front (BEGIN
        IMMEDIATE); with immediate=False a read snapshot is opened.

        Args:
            operation: 操作名称，用于日志和错误信息
                       Operation name used in logs and errors
            immediate: 是否立即获取写锁
                       Whether to take the write lock immediately

        Raises:
            StorageError: 数据库错误；事务已回滚
                          Database error; the transaction was rolled back
        """
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
                try:
                    yield conn
                except BaseException:
                    if conn.in_transaction:
                        conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            logger.error(f"Storage failure during {operation}: {e}")
            raise StorageError(str(e), operation) from e

    # =========================================================================
    # Session Operations (within a transaction)
    # =========================================================================

    def fetch_session(self, conn: sqlite3.Connection, session_id: str) -> ListenerSession | None:
        row = conn.execute(
            f"SELECT {SESSION_COLUMNS} FROM listener_sessions WHERE session_id = ?",
            (session_id,)
        ).fetchone()
        return _row_to_session(row) if row else None

    def upsert_session(self, conn: sqlite3.Connection, session: ListenerSession) -> None:
        """
        创建或替换会话行
        Create or replace the session row

        session_id 唯一，重复开始会覆盖原行而不是追加。
        session_id is unique; a repeated start overwrites the row.
        """
        conn.execute(
            """
            INSERT INTO listener_sessions
                (session_id, user_id, station, quality, started_at, last_heartbeat, ended_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(session_id) DO UPDATE SET
                user_id = excluded.user_id,
                station = excluded.station,
                quality = excluded.quality,
                started_at = excluded.started_at,
                last_heartbeat = excluded.last_heartbeat,
                ended_at = excluded.ended_at
            """,
            (
                session.session_id,
                session.user_id,
                session.station,
                session.quality,
                session.started_at,
                session.last_heartbeat,
                session.ended_at,
            )
        )

    def touch_session(self, conn: sqlite3.Connection, session_id: str, now: int) -> bool:
        """更新活跃会话的心跳，心跳时间不回退"""
        cursor = conn.execute(
            """
            UPDATE listener_sessions
            SET last_heartbeat = MAX(last_heartbeat, ?)
            WHERE session_id = ? AND ended_at IS NULL
            """,
            (now, session_id)
        )
        return cursor.rowcount > 0

    def update_playback(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        station: str,
        quality: str
    ) -> bool:
        """修改活跃会话的电台与质量"""
        cursor = conn.execute(
            """
            UPDATE listener_sessions
            SET station = ?, quality = ?
            WHERE session_id = ? AND ended_at IS NULL
            """,
            (station, quality, session_id)
        )
        return cursor.rowcount > 0

    def close_session(self, conn: sqlite3.Connection, session_id: str, ended_at: int) -> bool:
        """
        结束活跃会话，ended_at 不早于最后心跳
        Close an active session; ended_at never precedes the last heartbeat
        """
        cursor = conn.execute(
            """
            UPDATE listener_sessions
            SET ended_at = MAX(?, last_heartbeat)
            WHERE session_id = ? AND ended_at IS NULL
            """,
            (ended_at, session_id)
        )
        return cursor.rowcount > 0

    def find_stale_sessions(self, conn: sqlite3.Connection, cutoff: int) -> list[ListenerSession]:
        """查找最后心跳早于 cutoff 的活跃会话"""
        rows = conn.execute(
            f"""
            SELECT {SESSION_COLUMNS} FROM listener_sessions
            WHERE ended_at IS NULL AND last_heartbeat < ?
            ORDER BY last_heartbeat ASC
            """,
            (cutoff,)
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    def close_if_still_stale(
        self,
        conn: sqlite3.Connection,
        session_id: str,
        expected_heartbeat: int
    ) -> bool:
        """
        比较并设置：仅当心跳仍为 expected_heartbeat 时关闭会话
        Compare-and-set: close only if the heartbeat is still the one observed

        并发到达的心跳会使条件不成立，会话保持活跃。
        A heartbeat that lands concurrently makes the condition fail and the
        session stays active.
        """
        cursor = conn.execute(
            """
            UPDATE listener_sessions
            SET ended_at = last_heartbeat
            WHERE session_id = ? AND ended_at IS NULL AND last_heartbeat = ?
            """,
            (session_id, expected_heartbeat)
        )
        return cursor.rowcount > 0

    def get_sessions_started_between(
        self,
        conn: sqlite3.Connection,
        start: int,
        end: int
    ) -> list[ListenerSession]:
        """开始时间位于 [start, end) 的会话"""
        rows = conn.execute(
            f"""
            SELECT {SESSION_COLUMNS} FROM listener_sessions
            WHERE started_at >= ? AND started_at < ?
            ORDER BY started_at ASC, session_id ASC
            """,
            (start, end)
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    # =========================================================================
    # Append-only Logs
    # =========================================================================

    def insert_stream_event(self, conn: sqlite3.Connection, event: StreamEvent) -> int:
        cursor = conn.execute(
            """
            INSERT INTO stream_events (session_id, event_type, station, quality, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (event.session_id, event.event_type, event.station, event.quality, event.timestamp)
        )
        return cursor.lastrowid or 0

    def insert_article_view(self, conn: sqlite3.Connection, view: ArticleView) -> int:
        cursor = conn.execute(
            """
            INSERT INTO article_views (article_id, article_title, view_date, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (view.article_id, view.article_title, view.view_date, view.timestamp)
        )
        return cursor.lastrowid or 0

    def count_article_views(self, conn: sqlite3.Connection, view_date: str) -> int:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM article_views WHERE view_date = ?",
            (view_date,)
        ).fetchone()
        return row['count'] if row else 0

    def get_stream_events(
        self,
        session_id: str | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 1000
    ) -> list[StreamEvent]:
        """
        查询播放事件（审计/调试用）
        Query stream events (audit / debugging)
        """
        query = "SELECT * FROM stream_events WHERE 1=1"
        params: list = []

        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)

        if start_time is not None:
            query += " AND timestamp >= ?"
            params.append(start_time)

        if end_time is not None:
            query += " AND timestamp < ?"
            params.append(end_time)

        query += " ORDER BY id ASC LIMIT ?"
        params.append(limit)

        with self.transaction('get_stream_events', immediate=False) as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            StreamEvent(
                session_id=row['session_id'],
                event_type=row['event_type'],
                station=row['station'],
                quality=row['quality'],
                timestamp=row['timestamp']
            )
            for row in rows
        ]

    # =========================================================================
    # Daily Stats
    # =========================================================================

    def upsert_daily_stats(self, conn: sqlite3.Connection, stats: DailyStats) -> None:
        """按日期替换每日统计行 / Replace the daily row keyed by date"""
        columns = DailyStats.column_names()
        placeholders = ', '.join('?' for _ in columns)
        updates = ', '.join(f"{c} = excluded.{c}" for c in columns if c != 'date')
        conn.execute(
            f"""
            INSERT INTO daily_stats ({', '.join(columns)})
            VALUES ({placeholders})
            ON CONFLICT(date) DO UPDATE SET {updates}
            """,
            [getattr(stats, c) for c in columns]
        )

    def get_daily_stats(self, start_date: str, end_date: str) -> list[DailyStats]:
        """闭区间内已存在的每日统计行，按日期升序"""
        with self.transaction('get_daily_stats', immediate=False) as conn:
            rows = conn.execute(
                f"""
                SELECT {', '.join(DailyStats.column_names())}
                FROM daily_stats
                WHERE date >= ? AND date <= ?
                ORDER BY date ASC
                """,
                (start_date, end_date)
            ).fetchall()
        return [DailyStats.from_row(row) for row in rows]

    # =========================================================================
    # Live Queries
    # =========================================================================

    def get_live_counts(self, conn: sqlite3.Connection, heartbeat_cutoff: int) -> list[dict]:
        """
        按电台与质量统计活跃且未过期的会话
        Count active, non-stale sessions grouped by station and quality
        """
        rows = conn.execute(
            """
            SELECT station, quality, COUNT(*) AS count
            FROM listener_sessions
            WHERE ended_at IS NULL AND last_heartbeat >= ?
            GROUP BY station, quality
            """,
            (heartbeat_cutoff,)
        ).fetchall()
        return [dict(row) for row in rows]

    def count_live_users(self, conn: sqlite3.Connection, heartbeat_cutoff: int) -> int:
        row = conn.execute(
            """
            SELECT COUNT(DISTINCT user_id) AS count
            FROM listener_sessions
            WHERE ended_at IS NULL AND last_heartbeat >= ? AND user_id IS NOT NULL
            """,
            (heartbeat_cutoff,)
        ).fetchone()
        return row['count'] if row else 0

    def count_users_started_between(self, conn: sqlite3.Connection, start: int, end: int) -> int:
        row = conn.execute(
            """
            SELECT COUNT(DISTINCT user_id) AS count
            FROM listener_sessions
            WHERE started_at >= ? AND started_at < ? AND user_id IS NOT NULL
            """,
            (start, end)
        ).fetchone()
        return row['count'] if row else 0

    def get_top_articles(self, since_date: str, limit: int) -> list[dict]:
        """
        按浏览量排序的文章，浏览量相同时最近浏览的在前
        Articles by view count; ties go to the most recently viewed
        """
        with self.transaction('get_top_articles', immediate=False) as conn:
            rows = conn.execute(
                """
                SELECT
                    v.article_id,
                    COUNT(*) AS view_count,
                    MAX(v.timestamp) AS last_viewed,
                    (
                        SELECT t.article_title FROM article_views t
                        WHERE t.article_id = v.article_id
                        ORDER BY t.timestamp DESC, t.id DESC
                        LIMIT 1
                    ) AS article_title
                FROM article_views v
                WHERE v.view_date >= ?
                GROUP BY v.article_id
                ORDER BY view_count DESC, last_viewed DESC, v.article_id ASC
                LIMIT ?
                """,
                (since_date, limit)
            ).fetchall()
        return [dict(row) for row in rows]

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def get_stats_summary(self) -> dict:
        """
        获取统计摘要
        Get statistics summary
        """
        with self.transaction('get_stats_summary', immediate=False) as conn:
            counts = {
                table: conn.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']
                for table in ('listener_sessions', 'stream_events', 'article_views', 'daily_stats')
            }
            active = conn.execute(
                "SELECT COUNT(*) AS count FROM listener_sessions WHERE ended_at IS NULL"
            ).fetchone()['count']

        return {
            'sessions': counts['listener_sessions'],
            'active_sessions': active,
            'stream_events': counts['stream_events'],
            'article_views': counts['article_views'],
            'daily_rows': counts['daily_stats'],
            'db_path': self.db_path
        }
