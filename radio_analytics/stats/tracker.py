"""
会话追踪器
Session Tracker

记录收听会话的生命周期（开始、心跳、切换电台、切换质量、停止）以及文章浏览。
Records the listener session lifecycle (start, heartbeat, station switch,
quality change, stop) and article views.

未知或已结束的会话属于"软失败"：记录日志并返回 False，从不抛出异常。
Unknown or already-ended sessions are soft misses: logged and returned as
False, never raised.
"""

import logging
from typing import Callable
from zoneinfo import ZoneInfo

from radio_analytics.stats.models import (
    QUALITIES,
    STATIONS,
    ArticleView,
    EventType,
    ListenerSession,
    StreamEvent,
)
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.utils.timeutil import local_date, now_ms

logger = logging.getLogger(__name__)

MAX_ID_LENGTH = 128
UNKNOWN_TITLE = 'Unknown'


def _valid_id(value: str | None) -> bool:
    return isinstance(value, str) and 0 < len(value.strip()) <= MAX_ID_LENGTH


class SessionTracker:
    """
    会话追踪器
    Session Tracker

    每个操作在一个写事务中完成，写入失败不重试。
    Each operation runs in one write transaction; failed writes are not retried.

    Attributes:
        store: 统计数据存储
               Analytics data store
        timezone: 文章浏览日期所用的时区
                  Timezone used for article view dates
        clock: 返回当前毫秒时间戳的函数
               Callable returning the current time in ms

    Examples:
        >>> tracker = SessionTracker(store)
        >>> tracker.start_session('session_1', 'fm', 'mp3_128')
        True
        >>> tracker.update_heartbeat('session_1')
        True
        >>> tracker.end_session('session_1')
        True
    """

    def __init__(
        self,
        store: AnalyticsStore,
        timezone: str = 'Europe/Bucharest',
        clock: Callable[[], int] = now_ms
    ):
        self.store = store
        self.timezone = ZoneInfo(timezone)
        self.clock = clock

    def start_session(
        self,
        session_id: str,
        station: str,
        quality: str,
        user_id: str | None = None
    ) -> bool:
        """
        开始会话
        Start a session

        若同一 session_id 仍有活跃会话（例如应用重启复用了旧 ID），先隐式停止旧会话
        并追加 stop 事件，再以新会话替换该行。
        If an active session already uses this id (e.g. an app restart reusing
        a stale id), it is implicitly stopped with a stop event before the
        row is replaced by the new session.

        Args:
            session_id: 会话 ID
                        Session ID
            station: 电台（fm / folclor）
                     Station
            quality: 音频质量（mp3_128 / mp3_256 / flac）
                     Quality
            user_id: 可选关联 ID
                     Optional correlation ID

        Returns:
            True 如果会话已开始，False 如果输入无效
            True if the session started, False on invalid input
        """
        if not self._validate(session_id, station=station, quality=quality,
                              require_station=True, require_quality=True):
            return False
        if user_id is not None and not _valid_id(user_id):
            logger.warning(f"Ignoring malformed user_id for session {session_id}")
            user_id = None

        now = self.clock()
        with self.store.transaction('start_session') as conn:
            existing = self.store.fetch_session(conn, session_id)
            if existing and existing.is_active:
                self.store.close_session(conn, session_id, now)
                self.store.insert_stream_event(conn, StreamEvent(
                    session_id=session_id,
                    event_type=EventType.STOP.value,
                    station=existing.station,
                    quality=existing.quality,
                    timestamp=max(now, existing.last_heartbeat)
                ))
                logger.info(f"Session {session_id} restarted, previous session closed")

            self.store.upsert_session(conn, ListenerSession(
                session_id=session_id,
                user_id=user_id,
                station=station,
                quality=quality,
                started_at=now,
                last_heartbeat=now,
                ended_at=None
            ))
            self.store.insert_stream_event(conn, StreamEvent(
                session_id=session_id,
                event_type=EventType.START.value,
                station=station,
                quality=quality,
                timestamp=now
            ))

        logger.debug(f"Session started: {session_id} station={station} quality={quality}")
        return True

    def update_heartbeat(self, session_id: str) -> bool:
        """
        更新心跳
        Update heartbeat

        Returns:
            True 如果活跃会话已更新；False 表示会话未知或已结束（软成功，调用方仍应答复成功）
            True if an active session was updated; False when the session is
            unknown or ended (soft success, the caller still acks)
        """
        if not self._validate(session_id):
            return False

        with self.store.transaction('update_heartbeat') as conn:
            updated = self.store.touch_session(conn, session_id, self.clock())

        if not updated:
            logger.debug(f"Heartbeat for unknown or ended session ignored: {session_id}")
        return updated

    def switch_station(
        self,
        session_id: str,
        new_station: str,
        quality: str | None = None
    ) -> bool:
        """
        切换电台
        Switch station

        会话不活跃时不做修改并返回 False，调用方应改为调用 start_session。
        Does nothing and returns False for an inactive session; callers are
        expected to call start_session instead.
        """
        if not self._validate(session_id, station=new_station, quality=quality, require_station=True):
            return False

        now = self.clock()
        with self.store.transaction('switch_station') as conn:
            session = self.store.fetch_session(conn, session_id)
            if not session or not session.is_active:
                logger.debug(f"Station switch for inactive session ignored: {session_id}")
                return False

            final_quality = quality or session.quality
            self.store.update_playback(conn, session_id, new_station, final_quality)
            self.store.insert_stream_event(conn, StreamEvent(
                session_id=session_id,
                event_type=EventType.SWITCH_STATION.value,
                station=new_station,
                quality=final_quality,
                timestamp=now
            ))

        logger.debug(f"Station switched: {session_id} -> {new_station}")
        return True

    def change_quality(self, session_id: str, new_quality: str) -> bool:
        """
        切换音频质量
        Change quality
        """
        if not self._validate(session_id, quality=new_quality, require_quality=True):
            return False

        now = self.clock()
        with self.store.transaction('change_quality') as conn:
            session = self.store.fetch_session(conn, session_id)
            if not session or not session.is_active:
                logger.debug(f"Quality change for inactive session ignored: {session_id}")
                return False

            self.store.update_playback(conn, session_id, session.station, new_quality)
            self.store.insert_stream_event(conn, StreamEvent(
                session_id=session_id,
                event_type=EventType.CHANGE_QUALITY.value,
                station=session.station,
                quality=new_quality,
                timestamp=now
            ))

        logger.debug(f"Quality changed: {session_id} -> {new_quality}")
        return True

    def end_session(self, session_id: str) -> bool:
        """
        结束会话（幂等）
        End a session (idempotent)

        Returns:
            True 如果会话被关闭，False 如果会话未知或已结束
            True if the session was closed, False if unknown or already ended
        """
        if not self._validate(session_id):
            return False

        now = self.clock()
        with self.store.transaction('end_session') as conn:
            session = self.store.fetch_session(conn, session_id)
            if not session or not self.store.close_session(conn, session_id, now):
                logger.debug(f"Stop for unknown or ended session ignored: {session_id}")
                return False

            self.store.insert_stream_event(conn, StreamEvent(
                session_id=session_id,
                event_type=EventType.STOP.value,
                station=session.station,
                quality=session.quality,
                timestamp=max(now, session.last_heartbeat)
            ))

        logger.debug(f"Session ended: {session_id}")
        return True

    def log_article_view(self, article_id: str, title: str | None = None) -> bool:
        """
        记录文章浏览（与播放会话无关）
        Record an article view (independent of playback sessions)
        """
        if not _valid_id(article_id):
            logger.warning(f"Rejected article view with malformed article_id: {article_id!r}")
            return False

        now = self.clock()
        view = ArticleView(
            article_id=article_id,
            article_title=(title or '').strip() or UNKNOWN_TITLE,
            view_date=local_date(now, self.timezone),
            timestamp=now
        )
        with self.store.transaction('log_article_view') as conn:
            self.store.insert_article_view(conn, view)

        logger.debug(f"Article view recorded: {article_id}")
        return True

    def _validate(
        self,
        session_id: str,
        station: str | None = None,
        quality: str | None = None,
        require_station: bool = False,
        require_quality: bool = False
    ) -> bool:
        """校验会话 ID、电台和质量；无效时记录警告"""
        if not _valid_id(session_id):
            logger.warning(f"Rejected malformed session_id: {session_id!r}")
            return False
        if (station is None and require_station) or (station is not None and station not in STATIONS):
            logger.warning(f"Rejected station {station!r} for session {session_id}")
            return False
        if (quality is None and require_quality) or (quality is not None and quality not in QUALITIES):
            logger.warning(f"Rejected quality {quality!r} for session {session_id}")
            return False
        return True
