# ============================================
# 通知系統
# 持久化的通知紀錄 + 即時推播 + 7 天自動清除
# ============================================

from flask import Blueprint, request, jsonify, current_app
from flask.cli import with_appcontext
from flask_jwt_extended import jwt_required
from models import db, Notification
from auth import require_current_user
from errors import NotFound, NotOwnerError, InternalError
from side_effects import SideEffectResult, fire_and_forget
from realtime import get_router
from datetime import datetime, timedelta
import click
import logging

notifications_bp = Blueprint('notifications', __name__)
logger = logging.getLogger(__name__)

# ============================================
# 輔助函數
# ============================================

def serialize_notification(n):
    return {
        'id': n.id,
        'type': n.type,
        'title': n.title,
        'message': n.message,
        'data': n.data or {},
        'is_read': n.is_read,
        'read_at': n.read_at.isoformat() if n.read_at else None,
        'created_at': n.created_at.isoformat() if n.created_at else None
    }

def retention_cutoff(now=None):
    days = current_app.config.get('NOTIFICATION_RETENTION_DAYS', 7)
    return (now or datetime.utcnow()) - timedelta(days=days)

def get_owned_notification(notification_id, user_id):
    """使用者只能動自己的通知"""
    notification = db.session.get(Notification, notification_id)
    if not notification:
        raise NotFound('Notification not found')
    if notification.user_id != user_id:
        raise NotOwnerError('You can only modify your own notifications')
    return notification

# ============================================
# 建立通知 (供其他模組使用)
# ============================================

def _write_notifications(user_ids, notification_type, title, message, data):
    try:
        notifications = [
            Notification(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                data=data or {}
            )
            for user_id in user_ids
        ]
        db.session.add_all(notifications)
        db.session.commit()
        return notifications
    except Exception:
        # 主要操作已經 commit 過了,這裡只丟掉通知
        db.session.rollback()
        raise

def notify_users(user_ids, notification_type, title, message, data=None, exclude_user_ids=()):
    """
    批量建立通知並即時推播給線上的人

    best-effort: 失敗只記 log,回傳 SideEffectResult
    """
    recipients = []
    for user_id in user_ids:
        if user_id is None or user_id in exclude_user_ids or user_id in recipients:
            continue
        recipients.append(user_id)

    if not recipients:
        return SideEffectResult(True, [], None)

    result = fire_and_forget(
        f'{notification_type} notifications for {len(recipients)} user(s)',
        _write_notifications, recipients, notification_type, title, message, data
    )

    if result.ok:
        router = get_router()
        for notification in result.value:
            router.notify_user(notification.user_id, serialize_notification(notification))

    return result

def record_notification(user_id, notification_type, title, message, data=None):
    """單筆通知,不管對方是否在線上都會寫入"""
    return notify_users([user_id], notification_type, title, message, data)

def notify_project_members(project, notification_type, title, message, data=None, exclude_user_ids=()):
    """通知專案所有成員 (通常排除操作者本身)"""
    return notify_users(
        project.member_user_ids(), notification_type, title, message,
        data=data, exclude_user_ids=exclude_user_ids
    )

# ============================================
# 過期清除
# ============================================

def purge_expired_notifications(user_id=None, now=None):
    """刪除超過保留天數的通知,user_id 為 None 時掃全部"""
    query = Notification.query.filter(Notification.created_at < retention_cutoff(now))
    if user_id is not None:
        query = query.filter(Notification.user_id == user_id)

    deleted = query.delete(synchronize_session=False)
    db.session.commit()
    return deleted

def run_cleanup_cycle(app):
    with app.app_context():
        def _purge():
            try:
                return purge_expired_notifications()
            except Exception:
                db.session.rollback()
                raise

        result = fire_and_forget('periodic notification cleanup', _purge)
        if result.ok and result.value:
            logger.info(f"Cleaned up {result.value} old notifications")
        return result

def start_notification_cleanup(app, socketio):
    """啟動時先清一次,之後每 24 小時掃一次"""
    interval = app.config.get('NOTIFICATION_CLEANUP_INTERVAL_HOURS', 24) * 60 * 60

    def cleanup_loop():
        while True:
            run_cleanup_cycle(app)
            socketio.sleep(interval)

    socketio.start_background_task(cleanup_loop)
    logger.info('Notification cleanup scheduler started')

@click.command('purge-notifications')
@with_appcontext
def purge_notifications_command():
    """手動清除過期通知"""
    deleted = purge_expired_notifications()
    click.echo(f'Deleted {deleted} expired notifications')

# ============================================
# 1. 取得使用者的通知
# ============================================

@notifications_bp.route('', methods=['GET'])
@jwt_required()
def get_notifications():
    """
    取得當前使用者的通知

    順便刪掉這個使用者超過 7 天的通知
    """
    user = require_current_user()

    page = max(request.args.get('page', 1, type=int), 1)
    limit = request.args.get('limit', current_app.config['DEFAULT_PAGE_SIZE'], type=int)
    limit = min(max(limit, 1), current_app.config['MAX_PAGE_SIZE'])
    unread_only = request.args.get('unread_only', 'false').lower() == 'true'
    last_7_days = request.args.get('last_7_days', 'false').lower() == 'true'

    try:
        purge_expired_notifications(user_id=user.id)
    except Exception as e:
        db.session.rollback()
        logger.error(f"Notification purge failed for user {user.id}: {str(e)}", exc_info=True)
        raise InternalError('Failed to fetch notifications') from e

    cutoff = retention_cutoff()
    query = Notification.query.filter_by(user_id=user.id)
    if unread_only:
        query = query.filter_by(is_read=False)
    if last_7_days:
        query = query.filter(Notification.created_at >= cutoff)

    query = query.order_by(Notification.created_at.desc(), Notification.id.desc())

    if last_7_days:
        # 7 天檢視不分頁
        items = query.all()
        total = len(items)
        pages = 1
    else:
        paginated = query.paginate(page=page, per_page=limit, error_out=False)
        items = paginated.items
        total = paginated.total
        pages = paginated.pages

    unread_count = Notification.query.filter_by(user_id=user.id, is_read=False).count()
    last_7_days_count = Notification.query.filter(
        Notification.user_id == user.id,
        Notification.created_at >= cutoff
    ).count()

    return jsonify({
        'notifications': [serialize_notification(n) for n in items],
        'pagination': {
            'current': page,
            'pages': pages,
            'total': total,
            'unread_count': unread_count,
            'last_7_days_count': last_7_days_count
        }
    }), 200

@notifications_bp.route('/unread-count', methods=['GET'])
@jwt_required()
def get_unread_count():
    user = require_current_user()
    unread_count = Notification.query.filter_by(user_id=user.id, is_read=False).count()
    return jsonify({'unread_count': unread_count}), 200

# ============================================
# 2. 標記通知為已讀
# ============================================

@notifications_bp.route('/<int:notification_id>/read', methods=['PUT', 'PATCH'])
@jwt_required()
def mark_notification_read(notification_id):
    """標記單個通知為已讀"""
    user = require_current_user()
    notification = get_owned_notification(notification_id, user.id)

    notification.is_read = True
    notification.read_at = datetime.utcnow()

    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Mark notification read error: {str(e)}", exc_info=True)
        raise InternalError('Failed to update notification') from e

    return jsonify({
        'message': 'Notification marked as read',
        'notification': serialize_notification(notification)
    }), 200

@notifications_bp.route('/read-all', methods=['PUT', 'PATCH'])
@jwt_required()
def mark_all_notifications_read():
    """標記所有通知為已讀"""
    user = require_current_user()

    try:
        updated = Notification.query.filter_by(user_id=user.id, is_read=False)\
            .update({'is_read': True, 'read_at': datetime.utcnow()}, synchronize_session=False)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Mark all notifications read error: {str(e)}", exc_info=True)
        raise InternalError('Failed to update notifications') from e

    return jsonify({'message': 'All notifications marked as read', 'updated': updated}), 200

# ============================================
# 3. 刪除通知
# ============================================

@notifications_bp.route('/<int:notification_id>', methods=['DELETE'])
@jwt_required()
def delete_notification(notification_id):
    """刪除單個通知"""
    user = require_current_user()
    notification = get_owned_notification(notification_id, user.id)

    try:
        db.session.delete(notification)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete notification error: {str(e)}", exc_info=True)
        raise InternalError('Failed to delete notification') from e

    return jsonify({'message': 'Notification deleted successfully'}), 200

@notifications_bp.route('', methods=['DELETE'])
@jwt_required()
def clear_notifications():
    """清除自己的所有通知"""
    user = require_current_user()

    try:
        deleted = Notification.query.filter_by(user_id=user.id).delete(synchronize_session=False)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Clear notifications error: {str(e)}", exc_info=True)
        raise InternalError('Failed to clear notifications') from e

    return jsonify({'message': 'All notifications cleared', 'deleted': deleted}), 200
