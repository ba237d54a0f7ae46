"""
统计 HTTP 服务器模块
Analytics HTTP Server Module

使用 Flask 暴露公开的追踪端点和受保护的管理端点。
Exposes the public tracking endpoints and the protected admin endpoints with
Flask.

公开端点（客户端播放器调用）：
Public endpoints (called by the client player):
    POST /api/analytics/session-start
    POST /api/analytics/heartbeat
    POST /api/analytics/session-event
    POST /api/analytics/stream-event
    POST /api/analytics/article-view

管理端点（需要 Bearer 令牌）：
Admin endpoints (bearer token required):
    GET /api/analytics/admin/current
    GET /api/analytics/admin/today
    GET /api/analytics/admin/daily?start=&end=
    GET /api/analytics/admin/articles?limit=&days=
    GET /api/analytics/admin/export?start=&end=
    GET /api/analytics/admin/quality-estimate?start=&end=
"""

import hmac
import logging
import threading
from typing import Any, Callable

from flask import Flask, Request, Response, jsonify, request

from radio_analytics.stats.api import StatsAPI, export_filename
from radio_analytics.stats.errors import StorageError
from radio_analytics.stats.models import QUALITIES, STATIONS, EventType
from radio_analytics.stats.tracker import SessionTracker

logger = logging.getLogger(__name__)

API_PREFIX = '/api/analytics'


def bearer_token_guard(admin_token: str) -> Callable[[Request], bool]:
    """
    构造基于 Bearer 令牌的管理权限校验
    Build an admin guard that checks a bearer token

    令牌为空时拒绝所有请求。
    An empty configured token refuses every request.
    """
    expected = (admin_token or '').encode('utf-8')

    def guard(req: Request) -> bool:
        if not expected:
            return False
        header = req.headers.get('Authorization', '')
        if not header.startswith('Bearer '):
            return False
        return hmac.compare_digest(header[len('Bearer '):].strip().encode('utf-8'), expected)

    return guard


class AnalyticsServer:
    """
    统计 HTTP 服务器
    Analytics HTTP Server

    Attributes:
        tracker: 会话追踪器
                 Session tracker
        api: 统计查询 API
             Statistics query API
        host: 监听地址
              Bind address
        port: 监听端口
              Bind port
        app: Flask 应用实例
             Flask application

    Example:
        >>> server = AnalyticsServer(tracker, api, admin_token='secret')
        >>> client = server.app.test_client()
        >>> client.post('/api/analytics/heartbeat', json={'sessionId': 's1'}).get_json()
        {'success': True}
    """

    def __init__(
        self,
        tracker: SessionTracker,
        api: StatsAPI,
        host: str = '0.0.0.0',
        port: int = 3001,
        admin_token: str = '',
        admin_guard: Callable[[Request], bool] | None = None
    ):
        self.tracker = tracker
        self.api = api
        self.host = host
        self.port = port
        self._admin_guard = admin_guard or bearer_token_guard(admin_token)

        self.app = Flask(__name__)
        self._setup_routes()

        self._server_thread: threading.Thread | None = None
        self._is_running = False

        logger.info(
            f"AnalyticsServer initialized: host={self.host}, port={self.port}, "
            f"admin_guard={'custom' if admin_guard else 'bearer-token'}"
        )

    @property
    def is_running(self) -> bool:
        return self._is_running

    def _setup_routes(self) -> None:
        """注册 Flask 路由 / Register Flask routes"""
        app = self.app

        @app.route(f"{API_PREFIX}/session-start", methods=["POST"])
        def session_start():
            return self._handle(self._session_start)

        @app.route(f"{API_PREFIX}/heartbeat", methods=["POST"])
        def heartbeat():
            return self._handle(self._heartbeat)

        @app.route(f"{API_PREFIX}/session-event", methods=["POST"])
        def session_event():
            return self._handle(self._session_event)

        @app.route(f"{API_PREFIX}/stream-event", methods=["POST"])
        def stream_event():
            return self._handle(self._session_event)

        @app.route(f"{API_PREFIX}/article-view", methods=["POST"])
        def article_view():
            return self._handle(self._article_view)

        @app.route(f"{API_PREFIX}/admin/current", methods=["GET"])
        def admin_current():
            return self._handle(lambda: (self.api.get_current_stats(), 200), admin=True)

        @app.route(f"{API_PREFIX}/admin/today", methods=["GET"])
        def admin_today():
            return self._handle(lambda: (self.api.get_today_stats(), 200), admin=True)

        @app.route(f"{API_PREFIX}/admin/daily", methods=["GET"])
        def admin_daily():
            return self._handle(self._daily, admin=True)

        @app.route(f"{API_PREFIX}/admin/articles", methods=["GET"])
        def admin_articles():
            return self._handle(self._articles, admin=True)

        @app.route(f"{API_PREFIX}/admin/export", methods=["GET"])
        def admin_export():
            return self._handle(self._export, admin=True)

        @app.route(f"{API_PREFIX}/admin/quality-estimate", methods=["GET"])
        def admin_quality_estimate():
            return self._handle(self._quality_estimate, admin=True)

        @app.route("/health", methods=["GET"])
        def health_check():
            return jsonify({"status": "ok", "service": "radio-analytics"})

    def _handle(self, handler: Callable[[], Any], admin: bool = False):
        """
        执行处理函数并把异常映射为 HTTP 状态码
        Run a handler and map exceptions to HTTP status codes

        ValueError → 400, StorageError → 503, 其他 → 500
        """
        if admin and not self._admin_guard(request):
            logger.warning(f"Unauthorized admin request: {request.path}")
            return jsonify({"error": "Unauthorized"}), 401

        try:
            result = handler()
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        except StorageError as e:
            logger.error(f"Storage unavailable for {request.path}: {e}")
            return jsonify({"error": "Storage temporarily unavailable"}), 503
        except Exception as e:
            logger.error(f"Error handling {request.path}: {e}", exc_info=True)
            return jsonify({"error": "Internal server error"}), 500

        if isinstance(result, Response):
            return result
        body, status = result
        return jsonify(body), status

    # =========================================================================
    # Tracking
    # =========================================================================

    @staticmethod
    def _json_body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _check_station(station: Any) -> None:
        if station not in STATIONS:
            raise ValueError(f"Invalid station: {station!r}")

    @staticmethod
    def _check_quality(quality: Any) -> None:
        if quality not in QUALITIES:
            raise ValueError(f"Invalid quality: {quality!r}")

    def _session_start(self) -> tuple[dict, int]:
        data = self._json_body()
        session_id = data.get('sessionId')
        station = data.get('station')
        quality = data.get('quality')
        if not session_id or not station or not quality:
            return {"error": "Missing required fields: sessionId, station, quality"}, 400
        self._check_station(station)
        self._check_quality(quality)

        if not self.tracker.start_session(session_id, station, quality, user_id=data.get('userId')):
            return {"error": "Invalid session"}, 400
        return {"success": True}, 200

    def _heartbeat(self) -> tuple[dict, int]:
        session_id = self._json_body().get('sessionId')
        if not session_id:
            return {"error": "Missing sessionId"}, 400
        # 未知或已结束的会话同样答复成功
        self.tracker.update_heartbeat(session_id)
        return {"success": True}, 200

    def _session_event(self) -> tuple[dict, int]:
        data = self._json_body()
        session_id = data.get('sessionId')
        event = data.get('event')
        station = data.get('station')
        quality = data.get('quality')
        if not session_id or not event:
            return {"error": "Missing required fields: sessionId, event"}, 400

        if event == EventType.START.value:
            if not station or not quality:
                return {"error": "Missing station or quality for start event"}, 400
            self._check_station(station)
            self._check_quality(quality)
            self.tracker.start_session(session_id, station, quality, user_id=data.get('userId'))
        elif event == EventType.STOP.value:
            self.tracker.end_session(session_id)
        elif event == EventType.SWITCH_STATION.value:
            if not station:
                return {"error": "Missing station for switch event"}, 400
            self._check_station(station)
            if quality:
                self._check_quality(quality)
            self.tracker.switch_station(session_id, station, quality or None)
        elif event == EventType.CHANGE_QUALITY.value:
            if not quality:
                return {"error": "Missing quality for quality change event"}, 400
            self._check_quality(quality)
            self.tracker.change_quality(session_id, quality)
        else:
            return {"error": "Invalid event type"}, 400

        return {"success": True}, 200

    def _article_view(self) -> tuple[dict, int]:
        data = self._json_body()
        article_id = data.get('articleId')
        if not article_id:
            return {"error": "Missing articleId"}, 400
        if not self.tracker.log_article_view(str(article_id), data.get('title')):
            return {"error": "Invalid articleId"}, 400
        return {"success": True}, 200

    # =========================================================================
    # Admin
    # =========================================================================

    @staticmethod
    def _date_range_args() -> tuple[str, str]:
        start = request.args.get('start')
        end = request.args.get('end')
        if not start or not end:
            raise ValueError("Missing start or end date parameters")
        return start, end

    @staticmethod
    def _int_arg(name: str, default: int) -> int:
        value = request.args.get(name)
        if value is None or value == '':
            return default
        try:
            return int(value)
        except ValueError as e:
            raise ValueError(f"{name} must be an integer, got {value!r}") from e

    def _daily(self) -> tuple[list, int]:
        start, end = self._date_range_args()
        return self.api.get_daily_stats(start, end), 200

    def _articles(self) -> tuple[list, int]:
        limit = self._int_arg('limit', 10)
        days = self._int_arg('days', 30)
        return self.api.get_most_viewed_articles(limit=limit, days=days), 200

    def _export(self) -> Response:
        start, end = self._date_range_args()
        body = self.api.export_csv(start, end)
        return Response(
            body,
            mimetype='text/csv',
            headers={'Content-Disposition': f'attachment; filename="{export_filename(start, end)}"'}
        )

    def _quality_estimate(self) -> tuple[dict, int]:
        start, end = self._date_range_args()
        return self.api.estimate_quality_by_station(start, end), 200

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self, threaded: bool = True, debug: bool = False) -> None:
        """
        启动服务器
        Start the server

        Args:
            threaded: 是否在后台线程中启动
                      Whether to start in a background thread
            debug: 是否启用 Flask 调试模式
                   Whether to enable Flask debug mode
        """
        if self._is_running:
            logger.warning("Server is already running")
            return

        logger.info(f"Starting AnalyticsServer on {self.host}:{self.port}")
        self._is_running = True
        if threaded:
            self._server_thread = threading.Thread(
                target=self._run_server,
                args=(debug,),
                daemon=True
            )
            self._server_thread.start()
        else:
            self._run_server(debug)

    def _run_server(self, debug: bool = False) -> None:
        try:
            self.app.run(
                host=self.host,
                port=self.port,
                debug=debug,
                use_reloader=False,
                threaded=True
            )
        except Exception as e:
            logger.error(f"Server error: {e}", exc_info=True)
            raise
        finally:
            self._is_running = False

    def run(self, debug: bool = False) -> None:
        """以阻塞模式运行 / Run in the foreground (blocking)"""
        self.start(threaded=False, debug=debug)


def create_app(
    tracker: SessionTracker,
    api: StatsAPI,
    admin_token: str = '',
    admin_guard: Callable[[Request], bool] | None = None
) -> Flask:
    """
    创建 Flask 应用的工厂函数（供 WSGI 服务器和测试使用）
    Factory returning the Flask app (for WSGI servers and tests)
    """
    return AnalyticsServer(tracker, api, admin_token=admin_token, admin_guard=admin_guard).app
