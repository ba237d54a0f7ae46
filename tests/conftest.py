"""
共享测试夹具
Shared test fixtures
"""

import pytest

from radio_analytics.stats.store import AnalyticsStore

# 2024-03-01 00:00:00 UTC
DAY_START = 1709251200000
MINUTE = 60 * 1000
HOUR = 60 * MINUTE
DAY = 24 * HOUR
SECOND_DAY_NOON = DAY_START + DAY + 12 * HOUR


class FakeClock:
    """可控的毫秒时钟 / Controllable millisecond clock"""

    def __init__(self, now: int = DAY_START):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now

    def set(self, ms: int) -> int:
        self.now = ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / 'data' / 'analytics.db')


@pytest.fixture
def store(db_path):
    return AnalyticsStore(db_path)
