"""
调度器模块
Scheduler Module

周期性运行两个相互独立的后台任务：
Runs two independent background jobs:

- 过期会话回收（默认每 5 分钟）
  Stale session reaping (every 5 minutes by default)
- 前一日统计聚合（默认每天 00:05，服务时区）
  Aggregation of the previous day (00:05 daily in the service timezone)

每个任务由非阻塞锁保护：上一次运行尚未结束时本次跳过，不会重叠。
Each job is guarded by a non-blocking lock: while a previous run is still in
progress the new tick is skipped rather than overlapping it.
"""

import logging
import threading
from typing import Callable

import schedule

from radio_analytics.stats.aggregator import DailyAggregator
from radio_analytics.stats.reaper import StaleSessionReaper
from radio_analytics.utils.timeutil import previous_date

logger = logging.getLogger(__name__)


class AnalyticsScheduler:
    """
    统计任务调度器
    Analytics Job Scheduler

    聚合失败的日期进入待重试集合，在之后的重试检查或下一次每日任务中重新聚合。
    Dates whose aggregation failed go into a pending set and are retried by
    the periodic retry check or the next daily run.

    Attributes:
        reaper: 过期会话回收器
                Stale session reaper
        aggregator: 每日聚合器
                    Daily aggregator
        reaper_interval_minutes: 回收间隔（分钟）
                                 Reaper interval (minutes)
        aggregation_time: 每日聚合时间（HH:MM）
                          Daily aggregation time (HH:MM)
        timezone: 聚合时间所在时区
                  Timezone of the aggregation time
        run_in_thread: 是否在工作线程中执行任务
                       Whether jobs run in worker threads
        pending_dates: 待重试的聚合日期
                       Aggregation dates awaiting retry

    Examples:
        >>> scheduler = AnalyticsScheduler(reaper, aggregator)
        >>> scheduler.start_background()
        >>> scheduler.stop()
    """

    def __init__(
        self,
        reaper: StaleSessionReaper,
        aggregator: DailyAggregator,
        reaper_interval_minutes: int = 5,
        aggregation_time: str = '00:05',
        timezone: str = 'Europe/Bucharest',
        run_in_thread: bool = True,
        poll_seconds: float = 1.0
    ):
        self.reaper = reaper
        self.aggregator = aggregator
        self.reaper_interval_minutes = reaper_interval_minutes
        self.aggregation_time = aggregation_time
        self.timezone = timezone
        self.run_in_thread = run_in_thread
        self.poll_seconds = poll_seconds

        self.pending_dates: set[str] = set()
        self._pending_lock = threading.Lock()
        self._reaper_lock = threading.Lock()
        self._aggregation_lock = threading.Lock()

        self._scheduler = schedule.Scheduler()
        self._stop_event = threading.Event()
        self._loop_thread: threading.Thread | None = None

        logger.info(
            f"AnalyticsScheduler initialized: reaper every {reaper_interval_minutes} min, "
            f"aggregation daily at {aggregation_time} {timezone}"
        )

    # =========================================================================
    # Jobs
    # =========================================================================

    def run_reaper(self) -> int | None:
        """
        执行一次回收
        Run one reaper sweep

        Returns:
            被关闭的会话数；上一次仍在运行或本次失败时返回 None
            Sessions closed, or None when skipped or failed
        """
        if not self._reaper_lock.acquire(blocking=False):
            logger.warning("Reaper still running, skipping this tick")
            return None
        try:
            return self.reaper.sweep()
        except Exception as e:
            logger.error(f"Reaper sweep failed: {e}", exc_info=True)
            return None
        finally:
            self._reaper_lock.release()

    def run_aggregation(self, now: int | None = None) -> dict[str, bool] | None:
        """
        聚合前一日以及所有待重试日期
        Aggregate the previous day plus every pending date

        Returns:
            日期到是否成功的映射；上一次仍在运行时返回 None
            Mapping of date to success, or None when skipped
        """
        if not self._aggregation_lock.acquire(blocking=False):
            logger.warning("Aggregation still running, skipping this tick")
            return None
        try:
            target = previous_date(self.aggregator.clock() if now is None else now, self.aggregator.timezone)
            with self._pending_lock:
                dates = sorted(self.pending_dates | {target})
            return self._aggregate_dates(dates)
        finally:
            self._aggregation_lock.release()

    def retry_pending(self) -> dict[str, bool] | None:
        """
        重试失败的聚合日期
        Retry dates whose aggregation failed

        Returns:
            日期到是否成功的映射；无待重试日期或上一次仍在运行时返回 None
            Mapping of date to success, or None when nothing is pending or
            a run is in progress
        """
        with self._pending_lock:
            dates = sorted(self.pending_dates)
        if not dates:
            return None
        if not self._aggregation_lock.acquire(blocking=False):
            return None
        try:
            logger.info(f"Retrying aggregation for {len(dates)} pending date(s)")
            return self._aggregate_dates(dates)
        finally:
            self._aggregation_lock.release()

    def _aggregate_dates(self, dates: list[str]) -> dict[str, bool]:
        results = {}
        for date in dates:
            try:
                self.aggregator.aggregate_day(date)
                results[date] = True
                with self._pending_lock:
                    self.pending_dates.discard(date)
            except Exception as e:
                logger.error(f"Aggregation for {date} failed, will retry: {e}")
                results[date] = False
                with self._pending_lock:
                    self.pending_dates.add(date)
        return results

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _dispatch(self, job: Callable[[], object], name: str) -> None:
        """在工作线程中执行任务，使一个任务不会阻塞另一个"""
        if not self.run_in_thread:
            job()
            return
        threading.Thread(target=job, name=name, daemon=True).start()

    def register_jobs(self) -> None:
        """注册定时任务 / Register the scheduled jobs"""
        self._scheduler.clear()
        self._scheduler.every(self.reaper_interval_minutes).minutes.do(
            self._dispatch, self.run_reaper, 'analytics-reaper'
        )
        self._scheduler.every(self.reaper_interval_minutes).minutes.do(
            self._dispatch, self.retry_pending, 'analytics-retry'
        )
        self._scheduler.every().day.at(self.aggregation_time, self.timezone).do(
            self._dispatch, self.run_aggregation, 'analytics-aggregation'
        )

    @property
    def jobs(self) -> list[schedule.Job]:
        return list(self._scheduler.jobs)

    def run_pending(self) -> None:
        self._scheduler.run_pending()

    def start(self) -> None:
        """
        启动调度循环（阻塞）
        Start the scheduling loop (blocking)
        """
        self.register_jobs()
        logger.info("Scheduler started")

        try:
            while not self._stop_event.is_set():
                self._scheduler.run_pending()
                self._stop_event.wait(self.poll_seconds)
        except KeyboardInterrupt:
            logger.info("Scheduler stopped by user")
        except Exception as e:
            logger.error(f"Scheduler error: {e}", exc_info=True)
            raise
        finally:
            self._scheduler.clear()

    def start_background(self) -> threading.Thread:
        """在后台线程中启动调度循环 / Start the loop in a background thread"""
        self._stop_event.clear()
        self._loop_thread = threading.Thread(target=self.start, name='analytics-scheduler', daemon=True)
        self._loop_thread.start()
        return self._loop_thread

    def stop(self) -> None:
        """
        停止调度器
        Stop the scheduler
        """
        logger.info("Stopping scheduler...")
        self._stop_event.set()
        if self._loop_thread and self._loop_thread is not threading.current_thread():
            self._loop_thread.join(timeout=self.poll_seconds * 5)
        self._scheduler.clear()

    def run_once(self) -> None:
        """
        立即执行一次回收和聚合
        Run the reaper and the aggregation once, right now
        """
        logger.info("Running analytics jobs manually (once)...")
        self.run_reaper()
        self.run_aggregation()
        logger.info("Manual job execution completed")
