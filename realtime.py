"""
即時通訊 (Socket.IO)

兩種 room:
    user_<id>     每條連線在 connect 時自動加入自己的個人 room
    project_<id>  前端進入專案頁時送 join_project 加入

廣播時兩種 room 都送,沒在看專案的成員 (例如在 dashboard) 也收得到。
同一個使用者可能收到兩份,由前端去重。
"""
from flask import current_app, request
from flask_socketio import SocketIO, ConnectionRefusedError, emit, join_room, leave_room
from flask_jwt_extended import decode_token
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from models import db, Project, User, Role
from errors import AppError
from access import authorize_project
from auth import public_identity
from side_effects import fire_and_forget
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

socketio = SocketIO()

# 事件名稱 -> 「誰做的」欄位名稱
DOMAIN_EVENTS = {
    'task_created': 'created_by',
    'task_updated': 'updated_by',
    'task_moved': 'moved_by',
    'task_deleted': 'deleted_by',
    'note_created': 'created_by',
    'note_updated': 'updated_by',
    'member_added': 'added_by',
    'member_removed': 'removed_by',
    'role_changed': 'changed_by',
    'project_updated': 'updated_by',
}

AUTH_ERROR_NO_TOKEN = 'Authentication error: No token provided'
AUTH_ERROR_USER_NOT_FOUND = 'Authentication error: User not found'
AUTH_ERROR_INVALID_TOKEN = 'Authentication error: Invalid token'


def project_room(project_id):
    return f'project_{project_id}'


def user_room(user_id):
    return f'user_{user_id}'


def actor_identity(actor):
    if isinstance(actor, User):
        return public_identity(actor)
    return dict(actor)


def enrich_event(event, payload, actor):
    """在事件內容加上操作者的公開身份"""
    enriched = dict(payload or {})
    enriched[DOMAIN_EVENTS.get(event, 'actor')] = actor_identity(actor)
    return enriched


def resolve_project_member_ids(project_id):
    project = db.session.get(Project, project_id)
    if not project:
        return []
    return project.member_user_ids()

# ============================================
# Fan-out router
# ============================================

class FanOutRouter:
    """
    把領域事件送到該收到的連線

    透過 app.extensions['realtime'] 取得,不要自己 new 一個
    """

    def __init__(self, socketio, member_resolver=resolve_project_member_ids):
        self.socketio = socketio
        self.member_resolver = member_resolver
        # sid -> 公開身份,只存在這個 process 的記憶體裡
        self.connections = {}

    # ---------- 連線登記 ----------

    def register_connection(self, sid, user):
        self.connections[sid] = actor_identity(user)

    def unregister_connection(self, sid):
        return self.connections.pop(sid, None)

    def identity_for(self, sid):
        return self.connections.get(sid)

    def online_user_ids(self):
        return {identity['id'] for identity in self.connections.values()}

    # ---------- 發送 ----------

    def _emit(self, event, payload, room, skip_sid=None):
        return fire_and_forget(
            f'emit {event} to {room}',
            self.socketio.emit, event, payload, to=room, skip_sid=skip_sid
        )

    def broadcast(self, event, project_id, payload, actor=None):
        """
        送到 project room,再送到每個成員的個人 room

        查不到成員名單時只送 project room,記 log 但不往上丟
        """
        if actor is not None:
            payload = enrich_event(event, payload, actor)
        else:
            payload = dict(payload or {})
        payload.setdefault('project_id', project_id)

        self._emit(event, payload, project_room(project_id))

        try:
            member_ids = self.member_resolver(project_id)
        except Exception as e:
            logger.error(
                f"Failed to resolve members of project {project_id} for {event}, "
                f"delivered to project room only: {str(e)}",
                exc_info=True
            )
            return payload

        for member_id in member_ids:
            self._emit(event, payload, user_room(member_id))

        return payload

    def notify_user(self, user_id, payload, event='notification_received'):
        self._emit(event, payload, user_room(user_id))
        return payload


def get_router():
    return current_app.extensions['realtime']


def init_realtime(app, router=None):
    """掛上 Socket.IO 並把 router 放進 app.extensions"""
    socketio.init_app(
        app,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE'),
        cors_allowed_origins=app.config.get('SOCKETIO_CORS_ORIGINS'),
        message_queue=app.config.get('SOCKETIO_MESSAGE_QUEUE')
    )
    app.extensions['realtime'] = router or FanOutRouter(socketio)
    return app.extensions['realtime']

# ============================================
# 連線驗證與線上狀態
# ============================================

def authenticate_socket(auth):
    """
    驗證 socket 連線的 token

    三種失敗各自有不同訊息: 沒 token / 使用者不存在 / token 無效
    """
    token = None
    if isinstance(auth, dict):
        token = auth.get('token')
    if not token:
        token = request.args.get('token')
    if not token:
        raise ConnectionRefusedError(AUTH_ERROR_NO_TOKEN)

    try:
        decoded = decode_token(token)
        if decoded.get('type') != 'access':
            raise ConnectionRefusedError(AUTH_ERROR_INVALID_TOKEN)
        user_id = int(decoded[current_app.config.get('JWT_IDENTITY_CLAIM', 'sub')])
    except (PyJWTError, JWTExtendedException, KeyError, ValueError) as e:
        logger.warning(f"Socket authentication failed: {str(e)}")
        raise ConnectionRefusedError(AUTH_ERROR_INVALID_TOKEN)

    user = db.session.get(User, user_id)
    if not user:
        raise ConnectionRefusedError(AUTH_ERROR_USER_NOT_FOUND)

    return user


def set_presence(user_id, online):
    """更新線上狀態與最後上線時間"""
    def _update():
        try:
            user = db.session.get(User, user_id)
            if user:
                user.is_online = online
                user.last_seen = datetime.utcnow()
                db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    return fire_and_forget(f'presence update for user {user_id}', _update)

# ============================================
# Socket event handlers
# ============================================

@socketio.on('connect')
def handle_connect(auth=None):
    user = authenticate_socket(auth)
    get_router().register_connection(request.sid, user)

    join_room(user_room(user.id))
    set_presence(user.id, True)

    logger.info(f"User {user.username} connected with socket {request.sid}")


@socketio.on('disconnect')
def handle_disconnect(reason=None):
    identity = get_router().unregister_connection(request.sid)
    if not identity:
        return

    set_presence(identity['id'], False)
    logger.info(f"User {identity['username']} disconnected ({reason})")


def _project_id_from(data):
    if isinstance(data, dict):
        return data.get('project_id')
    return data


def _authorized_sender(project_id, required_role):
    """確認送訊息的連線是專案成員,失敗時回傳 None"""
    identity = get_router().identity_for(request.sid)
    if not identity or project_id is None:
        return None
    try:
        authorize_project(identity['id'], int(project_id), required_role)
    except (AppError, ValueError, TypeError) as e:
        logger.warning(f"Socket {request.sid} rejected for project {project_id}: {e}")
        emit('socket_error', {'message': str(e)})
        return None
    return identity


@socketio.on('join_project')
def handle_join_project(data):
    project_id = _project_id_from(data)
    identity = _authorized_sender(project_id, Role.VIEWER)
    if not identity:
        return
    join_room(project_room(project_id))
    logger.info(f"User {identity['username']} joined project {project_id}")


@socketio.on('leave_project')
def handle_leave_project(data):
    project_id = _project_id_from(data)
    identity = get_router().identity_for(request.sid)
    if project_id is None or not identity:
        return
    leave_room(project_room(project_id))
    logger.info(f"User {identity['username']} left project {project_id}")


def _typing_handler(is_typing):
    def handler(data):
        project_id = _project_id_from(data)
        identity = _authorized_sender(project_id, Role.VIEWER)
        if not identity:
            return
        emit('user_typing', {
            'user_id': identity['id'],
            'user_name': identity['name'],
            'is_typing': is_typing
        }, to=project_room(project_id), include_self=False)
    return handler


socketio.on('typing_start')(_typing_handler(True))
socketio.on('typing_stop')(_typing_handler(False))


def _mirror_handler(event):
    """
    前端先送一份給同專案的其他分頁,正式的廣播由 REST API 之後送出
    """
    def handler(data):
        if not isinstance(data, dict):
            return
        project_id = data.get('project_id')
        identity = _authorized_sender(project_id, Role.EDITOR)
        if not identity:
            return
        emit(event, enrich_event(event, data, identity),
             to=project_room(project_id), include_self=False)
    handler.__name__ = f'handle_{event}'
    return handler


for _event in DOMAIN_EVENTS:
    socketio.on(_event)(_mirror_handler(_event))
