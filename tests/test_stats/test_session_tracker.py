"""
SessionTracker 单元测试

测试会话生命周期、软失败和输入校验。
"""

import pytest

from conftest import DAY_START, MINUTE, SECOND_DAY_NOON
from radio_analytics.stats.tracker import MAX_ID_LENGTH, SessionTracker


@pytest.fixture
def tracker(store, clock):
    return SessionTracker(store, timezone='UTC', clock=clock)


def fetch(store, session_id):
    with store.transaction(immediate=False) as conn:
        return store.fetch_session(conn, session_id)


def event_types(store, session_id):
    return [e.event_type for e in store.get_stream_events(session_id=session_id)]


class TestStartSession:
    """测试开始会话"""

    def test_start_creates_active_session(self, tracker, store):
        """测试创建活跃会话并记录 start 事件"""
        assert tracker.start_session('s1', 'fm', 'mp3_128', user_id='u1') is True

        session = fetch(store, 's1')
        assert session.is_active
        assert session.started_at == DAY_START
        assert session.last_heartbeat == DAY_START
        assert session.user_id == 'u1'
        assert event_types(store, 's1') == ['start']

    def test_restart_closes_previous_session(self, tracker, store, clock):
        """测试重复开始：先停止旧会话再替换"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        clock.advance(5 * MINUTE)
        tracker.start_session('s1', 'folclor', 'flac')

        session = fetch(store, 's1')
        assert session.station == 'folclor'
        assert session.started_at == DAY_START + 5 * MINUTE
        assert session.is_active
        assert event_types(store, 's1') == ['start', 'stop', 'start']

        stop = store.get_stream_events(session_id='s1')[1]
        assert stop.station == 'fm'
        assert stop.timestamp == DAY_START + 5 * MINUTE

    def test_restart_after_end_does_not_add_stop(self, tracker, store, clock):
        """测试已结束会话重新开始时不追加 stop"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        tracker.end_session('s1')
        clock.advance(MINUTE)
        tracker.start_session('s1', 'fm', 'mp3_256')

        assert event_types(store, 's1') == ['start', 'stop', 'start']
        assert fetch(store, 's1').quality == 'mp3_256'

    @pytest.mark.parametrize('station,quality', [
        ('am', 'mp3_128'),
        ('fm', 'mp3_320'),
        (None, 'mp3_128'),
        ('fm', None),
    ])
    def test_rejects_invalid_station_or_quality(self, tracker, store, station, quality):
        """测试拒绝无效电台或质量"""
        assert tracker.start_session('s1', station, quality) is False
        assert fetch(store, 's1') is None

    @pytest.mark.parametrize('session_id', ['', '   ', None, 'x' * (MAX_ID_LENGTH + 1)])
    def test_rejects_malformed_session_id(self, tracker, session_id):
        """测试拒绝格式错误的 session_id"""
        assert tracker.start_session(session_id, 'fm', 'mp3_128') is False

    def test_malformed_user_id_is_dropped(self, tracker, store):
        """测试格式错误的 user_id 被忽略"""
        assert tracker.start_session('s1', 'fm', 'mp3_128', user_id='u' * 500) is True
        assert fetch(store, 's1').user_id is None


class TestHeartbeat:
    """测试心跳"""

    def test_heartbeat_updates_active_session(self, tracker, store, clock):
        """测试更新活跃会话心跳"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        clock.advance(30 * 1000)

        assert tracker.update_heartbeat('s1') is True
        assert fetch(store, 's1').last_heartbeat == DAY_START + 30 * 1000

    def test_heartbeat_for_unknown_session_is_soft_miss(self, tracker, store):
        """测试未知会话的心跳不创建行"""
        assert tracker.update_heartbeat('ghost') is False
        assert fetch(store, 'ghost') is None

    def test_heartbeat_does_not_reopen_ended_session(self, tracker, store, clock):
        """测试心跳不会重新打开已结束会话"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        tracker.end_session('s1')
        clock.advance(MINUTE)

        assert tracker.update_heartbeat('s1') is False
        session = fetch(store, 's1')
        assert not session.is_active
        assert session.last_heartbeat == DAY_START


class TestPlaybackChanges:
    """测试切换电台与质量"""

    def test_switch_station_keeps_quality(self, tracker, store):
        """测试未指定质量时保留原质量"""
        tracker.start_session('s1', 'fm', 'flac')

        assert tracker.switch_station('s1', 'folclor') is True
        session = fetch(store, 's1')
        assert session.station == 'folclor'
        assert session.quality == 'flac'
        assert event_types(store, 's1') == ['start', 'switch_station']

    def test_switch_station_with_quality(self, tracker, store):
        """测试切换电台同时修改质量"""
        tracker.start_session('s1', 'fm', 'flac')
        tracker.switch_station('s1', 'folclor', 'mp3_128')

        assert fetch(store, 's1').quality == 'mp3_128'

    def test_switch_on_ended_session_is_noop(self, tracker, store):
        """测试已结束会话切换电台无效果"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        tracker.end_session('s1')

        assert tracker.switch_station('s1', 'folclor') is False
        assert fetch(store, 's1').station == 'fm'
        assert event_types(store, 's1') == ['start', 'stop']

    def test_change_quality(self, tracker, store):
        """测试切换质量"""
        tracker.start_session('s1', 'folclor', 'mp3_128')

        assert tracker.change_quality('s1', 'mp3_256') is True
        session = fetch(store, 's1')
        assert session.quality == 'mp3_256'
        assert session.station == 'folclor'

    def test_change_quality_unknown_session(self, tracker):
        """测试未知会话切换质量"""
        assert tracker.change_quality('ghost', 'flac') is False


class TestEndSession:
    """测试结束会话"""

    def test_end_is_idempotent(self, tracker, store, clock):
        """测试重复停止只记录一次"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        clock.advance(MINUTE)

        assert tracker.end_session('s1') is True
        clock.advance(MINUTE)
        assert tracker.end_session('s1') is False

        assert fetch(store, 's1').ended_at == DAY_START + MINUTE
        assert event_types(store, 's1') == ['start', 'stop']

    def test_stop_event_carries_final_playback(self, tracker, store):
        """测试 stop 事件带有最终电台和质量"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        tracker.switch_station('s1', 'folclor', 'flac')
        tracker.end_session('s1')

        stop = store.get_stream_events(session_id='s1')[-1]
        assert (stop.station, stop.quality) == ('folclor', 'flac')

    def test_end_unknown_session(self, tracker):
        """测试停止未知会话"""
        assert tracker.end_session('ghost') is False

    def test_session_fields_stay_consistent(self, tracker, store, clock):
        """测试 started_at <= last_heartbeat <= ended_at"""
        tracker.start_session('s1', 'fm', 'mp3_128')
        clock.advance(MINUTE)
        tracker.update_heartbeat('s1')
        clock.advance(-2 * MINUTE)
        tracker.end_session('s1')

        session = fetch(store, 's1')
        assert session.started_at <= session.last_heartbeat <= session.ended_at


class TestArticleViews:
    """测试文章浏览"""

    def test_logs_view_with_local_date(self, store, clock):
        """测试浏览日期使用本地时区"""
        clock.set(SECOND_DAY_NOON)
        tracker = SessionTracker(store, timezone='Europe/Bucharest', clock=clock)

        assert tracker.log_article_view('a1', 'Title') is True
        with store.transaction(immediate=False) as conn:
            assert store.count_article_views(conn, '2024-03-02') == 1

    def test_missing_title_becomes_unknown(self, tracker, store):
        """测试缺失标题记录为 Unknown"""
        tracker.log_article_view('a1', None)
        tracker.log_article_view('a2', '   ')

        titles = {r['article_id']: r['article_title'] for r in store.get_top_articles('2024-03-01', 10)}
        assert titles == {'a1': 'Unknown', 'a2': 'Unknown'}

    def test_rejects_malformed_article_id(self, tracker):
        """测试拒绝格式错误的 article_id"""
        assert tracker.log_article_view('', 'Title') is False
        assert tracker.log_article_view('a' * 200, 'Title') is False
