"""
统计异常
Analytics Errors
"""


class AnalyticsError(Exception):
    """统计引擎异常基类 / Base class for analytics engine errors"""


class StorageError(AnalyticsError):
    """
    存储错误
    Storage Error

    数据库不可用或写入失败。属于暂时性错误，调用方可以重试。
    The store is unreachable or a write failed. Transient; the caller may
    retry. The engine itself never retries writes.

    Attributes:
        operation: 失败的操作名称
                   Name of the failed operation
    """

    def __init__(self, message: str, operation: str | None = None):
        self.message = message
        self.operation = operation
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if self.operation:
            return f"Storage failure during '{self.operation}': {self.message}"
        return f"Storage failure: {self.message}"


class AggregationError(AnalyticsError):
    """
    聚合错误
    Aggregation Error

    每日聚合失败；已有的 daily_stats 行保持不变。
    Daily aggregation failed; any existing daily_stats row is left untouched.
    """

    def __init__(self, message: str, date: str | None = None):
        self.message = message
        self.date = date
        super().__init__(
            f"Aggregation failed for {date}: {message}" if date
            else f"Aggregation failed: {message}"
        )


class ConfigurationError(AnalyticsError):
    """配置错误 / Invalid configuration"""
