"""
过期会话回收器
Stale Session Reaper

周期性关闭客户端已失联的会话。ended_at 取最后心跳时间而不是清理时间，
使聚合反映真实收听时长。
Periodically closes sessions whose clients went silent. ended_at is the last
heartbeat rather than the sweep time, so aggregation reflects the real
listening duration.
"""

import logging
from typing import Callable

from radio_analytics.stats.models import EventType, StreamEvent
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.utils.timeutil import now_ms

logger = logging.getLogger(__name__)


class StaleSessionReaper:
    """
    过期会话回收器
    Stale Session Reaper

    每个候选会话通过比较并设置（last_heartbeat 未变）关闭，
    与同一会话并发到达的心跳只会有一方生效。
    Each candidate is closed with a compare-and-set on last_heartbeat, so a
    heartbeat racing the sweep for the same session either lands first (the
    session stays active) or loses (the session is closed); never both.

    Attributes:
        store: 统计数据存储
               Analytics data store
        stale_after_seconds: 过期阈值（秒）
                             Staleness threshold (seconds)
        clock: 返回当前毫秒时间戳的函数
               Callable returning the current time in ms
    """

    def __init__(
        self,
        store: AnalyticsStore,
        stale_after_seconds: int = 150,
        clock: Callable[[], int] = now_ms
    ):
        if stale_after_seconds <= 0:
            raise ValueError(f"stale_after_seconds must be > 0, got {stale_after_seconds}")
        self.store = store
        self.stale_after_seconds = stale_after_seconds
        self.clock = clock

    @property
    def stale_after_ms(self) -> int:
        return self.stale_after_seconds * 1000

    def cutoff(self, now: int | None = None) -> int:
        """心跳早于此时间的活跃会话视为过期 / Heartbeats older than this are stale"""
        return (self.clock() if now is None else now) - self.stale_after_ms

    def sweep(self) -> int:
        """
        执行一次回收
        Run one sweep

        Returns:
            被关闭的会话数
            Number of sessions closed
        """
        cutoff = self.cutoff()
        reaped = 0

        with self.store.transaction('reap_stale_sessions') as conn:
            for session in self.store.find_stale_sessions(conn, cutoff):
                if not self.store.close_if_still_stale(conn, session.session_id, session.last_heartbeat):
                    logger.debug(f"Session {session.session_id} heartbeat moved, not reaped")
                    continue

                self.store.insert_stream_event(conn, StreamEvent(
                    session_id=session.session_id,
                    event_type=EventType.STOP.value,
                    station=session.station,
                    quality=session.quality,
                    timestamp=session.last_heartbeat
                ))
                reaped += 1

        if reaped:
            logger.info(f"Reaped {reaped} stale session(s)")
        return reaped
