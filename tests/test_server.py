"""
统计 HTTP 服务器测试

使用 Flask 测试客户端测试追踪端点、管理端点和错误映射。
"""

import pytest
from flask import request

from conftest import DAY, DAY_START, HOUR
from radio_analytics.server import AnalyticsServer, bearer_token_guard, create_app
from radio_analytics.stats.aggregator import DailyAggregator
from radio_analytics.stats.api import StatsAPI
from radio_analytics.stats.errors import StorageError
from radio_analytics.stats.tracker import SessionTracker

TOKEN = 'secret-token'
AUTH = {'Authorization': f'Bearer {TOKEN}'}


@pytest.fixture
def tracker(store, clock):
    return SessionTracker(store, timezone='UTC', clock=clock)


@pytest.fixture
def api(store, clock):
    return StatsAPI(store, timezone='UTC', clock=clock)


@pytest.fixture
def client(tracker, api):
    app = create_app(tracker, api, admin_token=TOKEN)
    app.testing = True
    return app.test_client()


def fetch(store, session_id):
    with store.transaction(immediate=False) as conn:
        return store.fetch_session(conn, session_id)


class TestServerInit:
    """测试服务器初始化"""

    def test_defaults(self, tracker, api):
        """测试默认配置"""
        server = AnalyticsServer(tracker, api)

        assert server.host == '0.0.0.0'
        assert server.port == 3001
        assert server.app is not None
        assert not server.is_running

    def test_health(self, client):
        """测试健康检查"""
        response = client.get('/health')

        assert response.status_code == 200
        assert response.get_json()['status'] == 'ok'


class TestTrackingEndpoints:
    """测试公开追踪端点"""

    def test_session_start(self, client, store):
        """测试开始会话"""
        response = client.post('/api/analytics/session-start', json={
            'sessionId': 's1', 'station': 'fm', 'quality': 'mp3_128', 'userId': 'u1'
        })

        assert response.status_code == 200
        assert response.get_json() == {'success': True}
        assert fetch(store, 's1').user_id == 'u1'

    def test_session_start_missing_fields(self, client):
        """测试缺少字段返回 400"""
        response = client.post('/api/analytics/session-start', json={'sessionId': 's1'})

        assert response.status_code == 400

    def test_session_start_invalid_station(self, client):
        """测试无效电台返回 400"""
        response = client.post('/api/analytics/session-start', json={
            'sessionId': 's1', 'station': 'am', 'quality': 'mp3_128'
        })

        assert response.status_code == 400

    def test_heartbeat_always_succeeds(self, client):
        """测试未知会话的心跳同样返回成功"""
        response = client.post('/api/analytics/heartbeat', json={'sessionId': 'ghost'})

        assert response.status_code == 200
        assert response.get_json() == {'success': True}

    def test_heartbeat_missing_session_id(self, client):
        """测试缺少 sessionId"""
        assert client.post('/api/analytics/heartbeat', json={}).status_code == 400

    def test_session_events(self, client, store):
        """测试切换电台、切换质量和停止"""
        client.post('/api/analytics/session-start', json={
            'sessionId': 's1', 'station': 'fm', 'quality': 'mp3_128'
        })
        client.post('/api/analytics/session-event', json={
            'sessionId': 's1', 'event': 'switch_station', 'station': 'folclor'
        })
        client.post('/api/analytics/session-event', json={
            'sessionId': 's1', 'event': 'change_quality', 'quality': 'flac'
        })
        response = client.post('/api/analytics/session-event', json={'sessionId': 's1', 'event': 'stop'})

        assert response.get_json() == {'success': True}
        session = fetch(store, 's1')
        assert (session.station, session.quality) == ('folclor', 'flac')
        assert not session.is_active

    def test_stream_event_accepts_start(self, client, store):
        """测试 stream-event 端点接受 start 事件"""
        response = client.post('/api/analytics/stream-event', json={
            'sessionId': 's1', 'event': 'start', 'station': 'folclor', 'quality': 'mp3_256'
        })

        assert response.status_code == 200
        assert fetch(store, 's1').is_active

    @pytest.mark.parametrize('body', [
        {'sessionId': 's1', 'event': 'rewind'},
        {'sessionId': 's1', 'event': 'start', 'station': 'fm'},
        {'sessionId': 's1', 'event': 'switch_station'},
        {'sessionId': 's1', 'event': 'change_quality'},
        {'event': 'stop'},
    ])
    def test_session_event_bad_requests(self, client, body):
        """测试无效事件返回 400"""
        assert client.post('/api/analytics/session-event', json=body).status_code == 400

    def test_article_view(self, client, store):
        """测试记录文章浏览"""
        response = client.post('/api/analytics/article-view', json={'articleId': 'a1', 'title': 'Hello'})

        assert response.status_code == 200
        assert store.get_top_articles('2024-03-01', 10)[0]['article_title'] == 'Hello'

    def test_article_view_missing_id(self, client):
        """测试缺少 articleId"""
        assert client.post('/api/analytics/article-view', json={'title': 'x'}).status_code == 400

    def test_non_json_body(self, client):
        """测试非 JSON 请求体"""
        response = client.post('/api/analytics/heartbeat', data='not json', content_type='text/plain')

        assert response.status_code == 400


class TestAdminEndpoints:
    """测试管理端点"""

    @pytest.mark.parametrize('headers', [{}, {'Authorization': 'Bearer wrong'}, {'Authorization': TOKEN}])
    def test_requires_token(self, client, headers):
        """测试未授权请求返回 401"""
        assert client.get('/api/analytics/admin/current', headers=headers).status_code == 401

    def test_empty_token_refuses_everything(self, tracker, api):
        """测试未配置令牌时拒绝所有请求"""
        client = create_app(tracker, api, admin_token='').test_client()

        assert client.get('/api/analytics/admin/current', headers={'Authorization': 'Bearer '}).status_code == 401

    def test_custom_guard(self, tracker, api):
        """测试自定义权限校验"""
        app = create_app(tracker, api, admin_guard=lambda req: req.headers.get('X-Admin') == 'yes')
        client = app.test_client()

        assert client.get('/api/analytics/admin/current', headers={'X-Admin': 'yes'}).status_code == 200
        assert client.get('/api/analytics/admin/current').status_code == 401

    def test_current(self, client):
        """测试实时统计"""
        client.post('/api/analytics/session-start', json={
            'sessionId': 's1', 'station': 'fm', 'quality': 'flac'
        })

        body = client.get('/api/analytics/admin/current', headers=AUTH).get_json()

        assert body['total'] == 1
        assert body['byQuality']['flac'] == 1

    def test_today(self, client):
        """测试今日统计"""
        body = client.get('/api/analytics/admin/today', headers=AUTH).get_json()

        assert body['date'] == '2024-03-01'
        assert 'current' in body

    def test_daily_requires_range(self, client):
        """测试缺少日期参数"""
        assert client.get('/api/analytics/admin/daily', headers=AUTH).status_code == 400

    def test_daily_bad_date(self, client):
        """测试无效日期返回 400"""
        response = client.get('/api/analytics/admin/daily?start=bad&end=2024-03-01', headers=AUTH)

        assert response.status_code == 400

    def test_daily_after_aggregation(self, client, store, clock):
        """测试聚合后查询每日统计"""
        client.post('/api/analytics/session-start', json={
            'sessionId': 's1', 'station': 'fm', 'quality': 'flac'
        })
        clock.advance(HOUR)
        client.post('/api/analytics/session-event', json={'sessionId': 's1', 'event': 'stop'})
        clock.set(DAY_START + DAY + HOUR)
        DailyAggregator(store, timezone='UTC', clock=clock).aggregate_day('2024-03-01')

        rows = client.get(
            '/api/analytics/admin/daily?start=2024-03-01&end=2024-03-02', headers=AUTH
        ).get_json()

        assert len(rows) == 1
        assert rows[0]['flac_count'] == 1

    def test_articles(self, client):
        """测试热门文章"""
        client.post('/api/analytics/article-view', json={'articleId': 'a1', 'title': 'Hello'})

        body = client.get('/api/analytics/admin/articles?limit=5', headers=AUTH).get_json()

        assert body == [{'articleId': 'a1', 'articleTitle': 'Hello', 'viewCount': 1}]

    def test_articles_bad_limit(self, client):
        """测试无效 limit 返回 400"""
        assert client.get('/api/analytics/admin/articles?limit=abc', headers=AUTH).status_code == 400
        assert client.get('/api/analytics/admin/articles?limit=0', headers=AUTH).status_code == 400

    def test_export(self, client):
        """测试 CSV 导出"""
        response = client.get('/api/analytics/admin/export?start=2024-03-01&end=2024-03-07', headers=AUTH)

        assert response.status_code == 200
        assert response.mimetype == 'text/csv'
        assert 'radio-stats-2024-03-01-to-2024-03-07.csv' in response.headers['Content-Disposition']
        assert response.get_data(as_text=True).startswith('Date,Total Listeners,')

    def test_export_filename_uses_normalized_dates(self, client):
        """测试文件名使用规范化后的日期"""
        response = client.get('/api/analytics/admin/export?start=%202024-03-01&end=2024-03-07', headers=AUTH)

        assert response.status_code == 200
        assert 'filename="radio-stats-2024-03-01-to-2024-03-07.csv"' in response.headers['Content-Disposition']

    def test_quality_estimate(self, client):
        """测试质量估算"""
        body = client.get(
            '/api/analytics/admin/quality-estimate?start=2024-03-01&end=2024-03-07', headers=AUTH
        ).get_json()

        assert body['approximate'] is True

    def test_storage_error_maps_to_503(self, tracker, api, monkeypatch):
        """测试存储错误返回 503"""
        def broken():
            raise StorageError('database is locked', 'get_current_stats')

        monkeypatch.setattr(api, 'get_current_stats', broken)
        client = create_app(tracker, api, admin_token=TOKEN).test_client()

        assert client.get('/api/analytics/admin/current', headers=AUTH).status_code == 503

    def test_unexpected_error_maps_to_500(self, tracker, api, monkeypatch):
        """测试其他错误返回 500"""
        def broken():
            raise RuntimeError('boom')

        monkeypatch.setattr(api, 'get_current_stats', broken)
        client = create_app(tracker, api, admin_token=TOKEN).test_client()

        assert client.get('/api/analytics/admin/current', headers=AUTH).status_code == 500


class TestBearerTokenGuard:
    """测试令牌校验"""

    def test_accepts_matching_token(self, tracker, api):
        """测试令牌匹配"""
        guard = bearer_token_guard(TOKEN)
        app = create_app(tracker, api, admin_token=TOKEN)

        with app.test_request_context(headers=AUTH):
            assert guard(request) is True

        with app.test_request_context(headers={'Authorization': 'Bearer nope'}):
            assert guard(request) is False
