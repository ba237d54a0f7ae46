"""
配置加载模块
Config Loading Module

加载 YAML 配置文件，替换环境变量占位符，合并默认值并构建类型化设置。
Loads the YAML config file, substitutes environment variable placeholders,
merges defaults and builds typed settings.

管理令牌等敏感值通过 ${VAR:default} 从环境变量（或 .env 文件）读取。
Secrets such as the admin token come from the environment (or a .env file)
through ${VAR:default} placeholders.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv

from radio_analytics.stats.errors import ConfigurationError

ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


def load_env_file(env_path: str | None = None) -> bool:
    """
    加载 .env 文件中的环境变量
    Load environment variables from a .env file

    Args:
        env_path: .env 文件路径，None 时自动查找
                  Path to the .env file; auto-discovered when None

    Returns:
        是否加载了 .env 文件
        Whether a .env file was loaded
    """
    if env_path:
        env_file = Path(env_path)
        if not env_file.exists():
            return False
        return load_dotenv(env_file)
    return load_dotenv()


def replace_env_vars(value: Any) -> Any:
    """
    递归替换 ${VAR} 和 ${VAR:default} 占位符
    Recursively substitute ${VAR} and ${VAR:default} placeholders

    未设置且无默认值的变量替换为空字符串。
    Unset variables without a default become the empty string.

    Examples:
        >>> os.environ['LOG_LEVEL'] = 'DEBUG'
        >>> replace_env_vars({'level': '${LOG_LEVEL:INFO}'})
        {'level': 'DEBUG'}
    """
    if isinstance(value, str):
        return ENV_PATTERN.sub(
            lambda m: os.environ.get(m.group(1), m.group(2) if m.group(2) is not None else ''),
            value
        )
    if isinstance(value, dict):
        return {k: replace_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_env_vars(item) for item in value]
    return value


def load_config(config_path: str = "config.yaml", env_path: str | None = None) -> dict:
    """
    加载 YAML 配置文件并替换环境变量
    Load the YAML config file and substitute environment variables

    Raises:
        FileNotFoundError: 配置文件不存在
                           Config file not found
        yaml.YAMLError: YAML 解析错误
                        YAML parsing error
    """
    load_env_file(env_path)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_file, 'r', encoding='utf-8') as f:
        config = yaml.safe_load(f)

    if config is None:
        return {}
    return replace_env_vars(config)


def get_config_value(config: dict, key_path: str, default: Any = None) -> Any:
    """
    通过点分隔路径获取配置值
    Get a config value by dot-separated path

    Examples:
        >>> get_config_value({'server': {'port': 3001}}, 'server.port')
        3001
        >>> get_config_value({}, 'server.port', 8080)
        8080
    """
    value = config
    for key in key_path.split('.'):
        if isinstance(value, dict) and key in value:
            value = value[key]
        else:
            return default
    return value


# 默认配置值
# Default Configuration Values
DEFAULT_CONFIG: dict[str, Any] = {
    'database': {
        'path': 'data/analytics.db',
        'busy_timeout_ms': 5000
    },
    'analytics': {
        'timezone': 'Europe/Bucharest',
        'heartbeat_interval_seconds': 30,
        'stale_after_seconds': 150
    },
    'reaper': {
        'interval_minutes': 5
    },
    'aggregation': {
        'time': '00:05'
    },
    'server': {
        'host': '0.0.0.0',
        'port': 3001
    },
    'admin': {
        'token': ''
    },
    'logging': {
        'level': 'INFO'
    }
}


def _deep_merge(base: dict, override: dict) -> dict:
    """
    深度合并两个字典，override 优先
    Deep merge two dictionaries; override wins

    Examples:
        >>> _deep_merge({'a': {'b': 1, 'c': 2}}, {'a': {'b': 10}})
        {'a': {'b': 10, 'c': 2}}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def apply_defaults(config: dict) -> dict:
    """将默认配置合并到用户配置 / Fill missing items from DEFAULT_CONFIG"""
    return _deep_merge(DEFAULT_CONFIG, config)


def load_config_with_defaults(config_path: str = "config.yaml", env_path: str | None = None) -> dict:
    """
    加载配置文件并应用默认值
    Load the config file and apply defaults
    """
    return apply_defaults(load_config(config_path, env_path))


def _parse_time_of_day(value: str) -> str:
    match = re.fullmatch(r'(\d{1,2}):(\d{2})', str(value).strip())
    if not match or int(match.group(1)) > 23 or int(match.group(2)) > 59:
        raise ConfigurationError(f"aggregation.time must be HH:MM, got {value!r}")
    return f"{int(match.group(1)):02d}:{match.group(2)}"


def _as_int(config: dict, key_path: str) -> int:
    value = get_config_value(config, key_path, get_config_value(DEFAULT_CONFIG, key_path))
    if isinstance(value, bool):
        raise ConfigurationError(f"{key_path} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{key_path} must be an integer, got {value!r}") from e


@dataclass
class AnalyticsSettings:
    """
    统计服务设置
    Analytics Service Settings

    Attributes:
        db_path: 数据库文件路径
                 Database file path
        busy_timeout_ms: 写锁等待时间（毫秒）
                         Write lock wait (ms)
        timezone: 日历日所用时区
                  Timezone of calendar days
        heartbeat_interval_seconds: 客户端心跳间隔（秒）
                                    Client heartbeat interval (seconds)
        stale_after_seconds: 会话过期阈值（秒）
                             Session staleness threshold (seconds)
        reaper_interval_minutes: 回收间隔（分钟）
                                 Reaper interval (minutes)
        aggregation_time: 每日聚合时间（HH:MM，本地时区）
                          Daily aggregation time (HH:MM, local timezone)
        host: 监听地址
              Bind address
        port: 监听端口
              Bind port
        admin_token: 管理接口令牌，为空时管理接口全部拒绝
                     Admin token; admin routes refuse everything when empty
        log_level: 日志级别
                   Log level
    """
    db_path: str = 'data/analytics.db'
    busy_timeout_ms: int = 5000
    timezone: str = 'Europe/Bucharest'
    heartbeat_interval_seconds: int = 30
    stale_after_seconds: int = 150
    reaper_interval_minutes: int = 5
    aggregation_time: str = '00:05'
    host: str = '0.0.0.0'
    port: int = 3001
    admin_token: str = ''
    log_level: str = 'INFO'

    def validate(self) -> None:
        """
        校验设置
        Validate settings

        Raises:
            ConfigurationError: 设置无效
                                Invalid settings
        """
        if not self.db_path or self.db_path == ':memory:':
            raise ConfigurationError(f"database.path must be a file path, got {self.db_path!r}")
        if self.busy_timeout_ms < 0:
            raise ConfigurationError(f"database.busy_timeout_ms must be >= 0, got {self.busy_timeout_ms}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ConfigurationError(f"Unknown timezone: {self.timezone!r}") from e
        if self.heartbeat_interval_seconds <= 0:
            raise ConfigurationError(
                f"analytics.heartbeat_interval_seconds must be > 0, got {self.heartbeat_interval_seconds}"
            )
        if self.stale_after_seconds <= self.heartbeat_interval_seconds:
            raise ConfigurationError(
                f"analytics.stale_after_seconds ({self.stale_after_seconds}) must be greater than "
                f"the heartbeat interval ({self.heartbeat_interval_seconds})"
            )
        hours, minutes = (int(part) for part in _parse_time_of_day(self.aggregation_time).split(':'))
        if (hours * 60 + minutes) * 60 < self.stale_after_seconds:
            raise ConfigurationError(
                f"aggregation.time ({self.aggregation_time}) must be at least "
                f"stale_after_seconds ({self.stale_after_seconds}s) after midnight"
            )
        if self.reaper_interval_minutes <= 0:
            raise ConfigurationError(
                f"reaper.interval_minutes must be > 0, got {self.reaper_interval_minutes}"
            )
        if not 0 < self.port < 65536:
            raise ConfigurationError(f"server.port must be in 1-65535, got {self.port}")
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Unknown log level: {self.log_level!r}")

    @classmethod
    def from_config(cls, config: dict) -> "AnalyticsSettings":
        """
        由配置字典构建并校验设置
        Build and validate settings from a config dict

        Raises:
            ConfigurationError: 设置无效
                                Invalid settings
        """
        settings = cls(
            db_path=str(get_config_value(config, 'database.path', cls.db_path)),
            busy_timeout_ms=_as_int(config, 'database.busy_timeout_ms'),
            timezone=str(get_config_value(config, 'analytics.timezone', cls.timezone)),
            heartbeat_interval_seconds=_as_int(config, 'analytics.heartbeat_interval_seconds'),
            stale_after_seconds=_as_int(config, 'analytics.stale_after_seconds'),
            reaper_interval_minutes=_as_int(config, 'reaper.interval_minutes'),
            aggregation_time=_parse_time_of_day(get_config_value(config, 'aggregation.time', cls.aggregation_time)),
            host=str(get_config_value(config, 'server.host', cls.host)),
            port=_as_int(config, 'server.port'),
            admin_token=str(get_config_value(config, 'admin.token', '') or ''),
            log_level=str(get_config_value(config, 'logging.level', cls.log_level) or cls.log_level).upper(),
        )
        settings.validate()
        return settings
