#!/usr/bin/env python3
"""
电台收听统计服务 - 主程序入口
Radio Listener Analytics - Main Entry Point

支持以下运行模式：
1. 服务模式（默认）：启动 HTTP 服务器和后台调度（回收 + 每日聚合）
2. 聚合模式（--aggregate DATE）：聚合指定日期后退出
3. 回填模式（--backfill START END）：重新聚合日期区间后退出
4. 回收模式（--reap-once）：执行一次过期会话回收后退出
5. 导出模式（--export START END）：把每日统计 CSV 写到文件或标准输出

使用方法 Usage:
    # 启动服务
    python main.py

    # 重新聚合某一天
    python main.py --aggregate 2024-03-01

    # 导出一周数据
    python main.py --export 2024-03-01 2024-03-07 --output stats.csv
"""

import argparse
import logging
import sys
from pathlib import Path

from radio_analytics.config import AnalyticsSettings, load_config_with_defaults
from radio_analytics.scheduler import AnalyticsScheduler
from radio_analytics.server import AnalyticsServer
from radio_analytics.stats.aggregator import DailyAggregator
from radio_analytics.stats.api import StatsAPI, export_filename
from radio_analytics.stats.errors import AnalyticsError
from radio_analytics.stats.reaper import StaleSessionReaper
from radio_analytics.stats.store import AnalyticsStore
from radio_analytics.stats.tracker import SessionTracker


# 配置日志格式
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def setup_logging(level: str = 'INFO', verbose: bool = False) -> None:
    """
    配置日志系统
    Setup logging system

    Args:
        level: 日志级别名称
               Log level name
        verbose: 是否强制使用 DEBUG 级别
                 Force DEBUG level
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # 降低第三方库的日志级别
    # Reduce log level for third-party libraries
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('schedule').setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    解析命令行参数
    Parse command line arguments
    """
    parser = argparse.ArgumentParser(
        description='电台收听统计服务 / Radio listener analytics service',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
运行模式 Modes:
  默认模式      启动 HTTP 服务器和后台调度
  --aggregate   聚合指定日期
  --backfill    重新聚合日期区间
  --reap-once   执行一次过期会话回收
  --export      导出每日统计 CSV

示例 Examples:
  python main.py
  python main.py --aggregate 2024-03-01
  python main.py --backfill 2024-03-01 2024-03-31
  python main.py --export 2024-03-01 2024-03-07 --output stats.csv
  python main.py --config my_config.yaml --verbose
        """
    )

    mode_group = parser.add_argument_group('运行模式 Mode Options')
    modes = mode_group.add_mutually_exclusive_group()
    modes.add_argument(
        '--aggregate',
        metavar='DATE',
        help='聚合指定日期 (YYYY-MM-DD) / Aggregate one date and exit'
    )
    modes.add_argument(
        '--backfill',
        nargs=2,
        metavar=('START', 'END'),
        help='重新聚合日期闭区间 / Re-aggregate an inclusive date range and exit'
    )
    modes.add_argument(
        '--reap-once',
        action='store_true',
        help='执行一次过期会话回收 / Run one stale session sweep and exit'
    )
    modes.add_argument(
        '--export',
        nargs=2,
        metavar=('START', 'END'),
        help='导出每日统计 CSV / Export daily statistics as CSV and exit'
    )

    config_group = parser.add_argument_group('配置选项 Config Options')
    config_group.add_argument(
        '--config', '-c',
        type=str,
        default='config.yaml',
        help='配置文件路径 (默认: config.yaml) / Config file path (default: config.yaml)'
    )
    config_group.add_argument(
        '--env',
        type=str,
        default=None,
        help='.env 文件路径 (默认: 自动查找) / .env file path (default: auto-discover)'
    )

    general_group = parser.add_argument_group('通用选项 General Options')
    general_group.add_argument(
        '--output', '-O',
        type=str,
        default=None,
        help='导出文件路径，"-" 表示标准输出 (默认: radio-stats-<start>-to-<end>.csv) / Export path'
    )
    general_group.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='启用详细日志输出 / Enable verbose logging'
    )

    return parser.parse_args(argv)


def build_components(settings: AnalyticsSettings) -> dict:
    """
    按设置构建所有组件
    Build every component from settings
    """
    store = AnalyticsStore(settings.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    return {
        'store': store,
        'tracker': SessionTracker(store, timezone=settings.timezone),
        'reaper': StaleSessionReaper(store, stale_after_seconds=settings.stale_after_seconds),
        'aggregator': DailyAggregator(
            store,
            timezone=settings.timezone,
            stale_after_seconds=settings.stale_after_seconds
        ),
        'api': StatsAPI(
            store,
            timezone=settings.timezone,
            stale_after_seconds=settings.stale_after_seconds
        ),
    }


def run_serve_mode(settings: AnalyticsSettings, components: dict, logger: logging.Logger) -> int:
    """
    运行服务模式：后台调度 + 前台 HTTP 服务器
    Run serve mode: background scheduler plus foreground HTTP server
    """
    if not settings.admin_token:
        logger.warning("admin.token is empty, admin endpoints will refuse every request")

    scheduler = AnalyticsScheduler(
        components['reaper'],
        components['aggregator'],
        reaper_interval_minutes=settings.reaper_interval_minutes,
        aggregation_time=settings.aggregation_time,
        timezone=settings.timezone,
    )
    server = AnalyticsServer(
        components['tracker'],
        components['api'],
        host=settings.host,
        port=settings.port,
        admin_token=settings.admin_token,
    )

    scheduler.start_background()
    try:
        server.run()
        return 0
    except KeyboardInterrupt:
        logger.info("用户中断，程序退出")
        return 0
    except Exception as e:
        logger.error(f"服务运行失败: {e}", exc_info=True)
        return 1
    finally:
        scheduler.stop()


def run_aggregate_mode(date: str, components: dict, logger: logging.Logger) -> int:
    try:
        stats = components['aggregator'].aggregate_day(date)
    except (ValueError, AnalyticsError) as e:
        logger.error(f"聚合失败: {e}")
        return 1
    print(stats.to_dict())
    return 0


def run_backfill_mode(start: str, end: str, components: dict, logger: logging.Logger) -> int:
    try:
        rows = components['aggregator'].backfill(start, end)
    except (ValueError, AnalyticsError) as e:
        logger.error(f"回填失败: {e}")
        return 1
    logger.info(f"回填完成: {len(rows)} 天")
    return 0


def run_reap_mode(components: dict, logger: logging.Logger) -> int:
    try:
        reaped = components['reaper'].sweep()
    except AnalyticsError as e:
        logger.error(f"回收失败: {e}")
        return 1
    logger.info(f"回收完成: {reaped} 个会话")
    return 0


def run_export_mode(
    start: str,
    end: str,
    output: str | None,
    components: dict,
    logger: logging.Logger
) -> int:
    try:
        body = components['api'].export_csv(start, end)
    except (ValueError, AnalyticsError) as e:
        logger.error(f"导出失败: {e}")
        return 1

    if output == '-':
        sys.stdout.write(body)
        return 0

    path = Path(output or export_filename(start, end))
    path.write_text(body, encoding='utf-8')
    logger.info(f"已导出到 {path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """
    主函数
    Main function

    Returns:
        退出码：0 表示成功，非 0 表示失败
        Exit code: 0 for success, non-zero for failure
    """
    args = parse_args(argv)

    config_path = Path(args.config)
    if not config_path.exists():
        print(f"错误: 配置文件不存在: {args.config}", file=sys.stderr)
        return 1

    try:
        config = load_config_with_defaults(str(config_path), args.env)
        settings = AnalyticsSettings.from_config(config)
    except Exception as e:
        print(f"错误: 加载配置文件失败: {e}", file=sys.stderr)
        return 1

    setup_logging(settings.log_level, args.verbose)
    logger = logging.getLogger(__name__)
    logger.info(f"已加载配置文件: {config_path}")

    try:
        components = build_components(settings)
    except AnalyticsError as e:
        logger.error(f"初始化失败: {e}")
        return 1

    if args.aggregate:
        return run_aggregate_mode(args.aggregate, components, logger)
    elif args.backfill:
        return run_backfill_mode(args.backfill[0], args.backfill[1], components, logger)
    elif args.reap_once:
        return run_reap_mode(components, logger)
    elif args.export:
        return run_export_mode(args.export[0], args.export[1], args.output, components, logger)
    else:
        return run_serve_mode(settings, components, logger)


if __name__ == '__main__':
    sys.exit(main())
