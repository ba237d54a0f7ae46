# Utils module - 工具模块
# 包含时区与日期换算等工具函数

from .timeutil import (
    date_range,
    day_bounds,
    local_date,
    now_ms,
    parse_date,
    previous_date,
)

__all__ = [
    "date_range",
    "day_bounds",
    "local_date",
    "now_ms",
    "parse_date",
    "previous_date",
]
