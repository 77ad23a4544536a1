from flask import Flask, request, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from flask_bcrypt import Bcrypt
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from config import get_config
from models import db
from errors import register_error_handlers
from realtime import socketio, init_realtime
from datetime import datetime
import logging
from logging.handlers import RotatingFileHandler
import os
import time

# 設定值 (RATELIMIT_*) 在 init_app 時才讀
limiter = Limiter(key_func=get_remote_address)

# ============================================
# Logging 設定
# ============================================

def setup_logging(app):
    """
    設定 logging

    1. 分開 info 和 error logs
    2. 使用 RotatingFileHandler 避免 log 檔案過大
    3. 各模組的 logger 都掛到 root,一起寫進檔案
    """
    log_dir = app.config.get('LOG_DIR', 'logs')
    if not os.path.exists(log_dir):
        os.mkdir(log_dir)

    formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )

    info_handler = RotatingFileHandler(
        os.path.join(log_dir, 'app.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    info_handler.setLevel(logging.INFO)
    info_handler.setFormatter(formatter)

    error_handler = RotatingFileHandler(
        os.path.join(log_dir, 'error.log'),
        maxBytes=10240000,  # 10MB
        backupCount=10
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.addHandler(info_handler)
    root.addHandler(error_handler)
    root.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    app.logger.info('Application startup')

# ============================================
# 資料庫初始化
# ============================================

def wait_for_database(app):
    """
    啟動時建立資料表,連不上就固定間隔重試

    只在啟動時重試,之後的單一操作失敗直接回 500
    """
    attempts = app.config.get('DB_CONNECT_MAX_ATTEMPTS', 10)
    delay = app.config.get('DB_CONNECT_RETRY_SECONDS', 5)

    for attempt in range(1, attempts + 1):
        try:
            with app.app_context():
                db.create_all()
            app.logger.info('Database tables created')
            return
        except OperationalError as e:
            if attempt >= attempts:
                app.logger.error(f"Database connection failed after {attempt} attempt(s): {str(e)}")
                raise
            app.logger.warning(
                f"Database connection failed (attempt {attempt}/{attempts}), retrying in {delay}s: {str(e)}"
            )
            time.sleep(delay)

# ============================================
# JWT 錯誤處理
# ============================================

def register_jwt_handlers(app, jwt):

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        app.logger.warning(f"Expired token attempt from: {request.remote_addr}")
        return jsonify({
            'error': 'token_expired',
            'message': 'The token has expired. Please refresh your token or login again.'
        }), 401

    @jwt.invalid_token_loader
    def invalid_token_callback(error):
        app.logger.warning(f"Invalid token attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'invalid_token',
            'message': 'Token validation failed. Please provide a valid token.'
        }), 401

    @jwt.unauthorized_loader
    def unauthorized_callback(error):
        app.logger.warning(f"Unauthorized access attempt from: {request.remote_addr}, error: {error}")
        return jsonify({
            'error': 'authentication_required',
            'message': 'Access token is required. Please provide an authorization token.'
        }), 401

    @jwt.revoked_token_loader
    def revoked_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': 'token_revoked',
            'message': 'The token has been revoked. Please login again.'
        }), 401

# ============================================
# 全域錯誤處理
# ============================================

def register_http_error_handlers(app):

    @app.errorhandler(400)
    def bad_request(error):
        return jsonify({
            'error': 'bad_request',
            'message': 'The request is malformed or invalid'
        }), 400

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'not_found',
            'message': 'The requested resource does not exist'
        }), 404

    @app.errorhandler(405)
    def method_not_allowed(error):
        return jsonify({
            'error': 'method_not_allowed',
            'message': 'The HTTP method is not allowed for this endpoint'
        }), 405

    @app.errorhandler(429)
    def rate_limit_exceeded(error):
        app.logger.warning(f"Rate limit exceeded from: {request.remote_addr}")
        return jsonify({
            'error': 'rate_limit_exceeded',
            'message': 'Too many requests. Please try again later.'
        }), 429

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        """
        最後的防線

        不洩漏錯誤細節給前端,完整 stack trace 只寫 log
        """
        if isinstance(error, HTTPException):
            return error

        db.session.rollback()
        app.logger.error(f"Unexpected error: {str(error)}", exc_info=True)

        return jsonify({
            'error': 'internal_error',
            'message': 'An unexpected error occurred. Please try again later.'
        }), 500

# ============================================
# Request/Response Logging
# ============================================

def register_request_hooks(app):

    @app.before_request
    def log_request():
        if not app.debug:
            app.logger.info(f"Request: {request.method} {request.path} from {request.remote_addr}")

    @app.after_request
    def log_response(response):
        if not app.debug:
            app.logger.info(f"Response: {response.status_code} for {request.method} {request.path}")

        # security headers
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-XSS-Protection'] = '1; mode=block'

        return response

# ============================================
# Health check / API 首頁
# ============================================

def register_core_routes(app):

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """給 load balancer 或監控系統用"""
        try:
            db.session.execute(text('SELECT 1'))
            return jsonify({
                'status': 'healthy',
                'database': 'connected',
                'timestamp': datetime.utcnow().isoformat()
            }), 200
        except Exception as e:
            db.session.rollback()
            app.logger.error(f"Health check failed: {str(e)}")
            return jsonify({
                'status': 'unhealthy',
                'database': 'disconnected',
                'error': 'Database connection failed'
            }), 503

    @app.route('/')
    @limiter.limit('10 per minute')
    def home():
        return jsonify({
            'message': 'Project Board API',
            'version': app.config['API_VERSION'],
            'endpoints': {
                'health': {'path': '/health', 'methods': ['GET']},
                'auth': {
                    'register': {'path': '/api/auth/register', 'methods': ['POST']},
                    'login': {'path': '/api/auth/login', 'methods': ['POST']},
                    'refresh': {'path': '/api/auth/refresh', 'methods': ['POST']},
                    'logout': {'path': '/api/auth/logout', 'methods': ['POST']},
                    'me': {'path': '/api/auth/me', 'methods': ['GET', 'PATCH']},
                    'change_password': {'path': '/api/auth/change-password', 'methods': ['POST']}
                },
                'projects': {
                    'list': {'path': '/api/projects', 'methods': ['GET', 'POST']},
                    'archived': {'path': '/api/projects/archived', 'methods': ['GET']},
                    'invitations': {'path': '/api/projects/invitations', 'methods': ['GET']},
                    'detail': {'path': '/api/projects/:id', 'methods': ['GET', 'DELETE']},
                    'settings': {'path': '/api/projects/:id/settings', 'methods': ['PUT']},
                    'markdown': {'path': '/api/projects/:id/markdown', 'methods': ['PUT']},
                    'members': {'path': '/api/projects/:id/members', 'methods': ['GET']},
                    'invite': {'path': '/api/projects/:id/invite', 'methods': ['POST']},
                    'respond': {'path': '/api/projects/:id/invitations/:invitation_id', 'methods': ['PUT']},
                    'member_role': {'path': '/api/projects/:id/members/:member_id/role', 'methods': ['PUT']},
                    'remove_member': {'path': '/api/projects/:id/members/:member_id', 'methods': ['DELETE']},
                    'archive': {'path': '/api/projects/:id/archive', 'methods': ['POST']},
                    'unarchive': {'path': '/api/projects/:id/unarchive', 'methods': ['POST']}
                },
                'tasks': {
                    'list': {'path': '/api/projects/:id/tasks', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/api/tasks/:id', 'methods': ['GET', 'PUT', 'DELETE']},
                    'comments': {'path': '/api/tasks/:id/comments', 'methods': ['POST']},
                    'archive': {'path': '/api/tasks/:id/archive', 'methods': ['PUT']}
                },
                'notes': {
                    'list': {'path': '/api/projects/:id/notes', 'methods': ['GET', 'POST']},
                    'detail': {'path': '/api/notes/:id', 'methods': ['PUT', 'DELETE']},
                    'pin': {'path': '/api/notes/:id/pin', 'methods': ['PUT']},
                    'archive': {'path': '/api/notes/:id/archive', 'methods': ['PUT']},
                    'restore': {'path': '/api/notes/:id/restore', 'methods': ['PUT']}
                },
                'notifications': {
                    'list': {'path': '/api/notifications', 'methods': ['GET', 'DELETE']},
                    'unread_count': {'path': '/api/notifications/unread-count', 'methods': ['GET']},
                    'mark_read': {'path': '/api/notifications/:id/read', 'methods': ['PUT']},
                    'mark_all_read': {'path': '/api/notifications/read-all', 'methods': ['PUT']},
                    'delete': {'path': '/api/notifications/:id', 'methods': ['DELETE']}
                }
            },
            'realtime': {
                'transport': 'socket.io',
                'client_events': ['join_project', 'leave_project', 'typing_start', 'typing_stop'],
                'server_events': ['notification_received', 'user_typing']
            }
        })

    if app.debug:
        @app.route('/debug/routes')
        def debug_routes():
            """列出所有註冊的路由 (僅開發環境)"""
            routes = []
            for rule in app.url_map.iter_rules():
                routes.append({
                    'endpoint': rule.endpoint,
                    'methods': sorted(rule.methods),
                    'path': str(rule)
                })
            return jsonify({'routes': routes})

# ============================================
# Application factory
# ============================================

def create_app(config_class=None, router=None):
    """
    建立 Flask app

    Args:
        config_class: 設定類別,預設依 FLASK_ENV 決定
        router: 測試時可以傳入替代的 fan-out router
    """
    config_class = config_class or get_config()

    app = Flask(__name__)
    app.config.from_object(config_class)
    if not app.testing:
        config_class.validate()

    # 不要用 '*',只允許設定裡的來源
    CORS(app,
         supports_credentials=True,
         origins=app.config['CORS_ORIGINS'],
         methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS'],
         allow_headers=['Content-Type', 'Authorization'])

    # 擴展初始化
    db.init_app(app)
    jwt = JWTManager(app)
    app.extensions['bcrypt'] = Bcrypt(app)
    limiter.init_app(app)

    if not app.debug and not app.testing:
        setup_logging(app)

    register_error_handlers(app)
    register_http_error_handlers(app)
    register_jwt_handlers(app, jwt)
    register_request_hooks(app)

    init_realtime(app, router)

    # 註冊 Blueprints
    from auth import auth_bp
    from projects import projects_bp
    from tasks import tasks_bp
    from notes import notes_bp
    from notifications import notifications_bp, purge_notifications_command, start_notification_cleanup

    app.register_blueprint(auth_bp, url_prefix='/api/auth')
    app.register_blueprint(projects_bp, url_prefix='/api/projects')
    app.register_blueprint(tasks_bp, url_prefix='/api')
    app.register_blueprint(notes_bp, url_prefix='/api')
    app.register_blueprint(notifications_bp, url_prefix='/api/notifications')

    app.cli.add_command(purge_notifications_command)

    register_core_routes(app)

    wait_for_database(app)

    if app.config.get('NOTIFICATION_CLEANUP_ENABLED'):
        start_notification_cleanup(app, socketio)

    return app

# ============================================
# 啟動應用
# ============================================

if __name__ == '__main__':
    # production 請用 gunicorn + eventlet worker
    app = create_app()
    port = int(os.getenv('FLASK_PORT', 8888))

    socketio.run(
        app,
        debug=app.debug,
        port=port,
        host='0.0.0.0',
        allow_unsafe_werkzeug=app.debug
    )
