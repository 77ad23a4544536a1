"""
專案邀請的狀態機

    pending -> accepted | declined   (使用者回應)
    pending -> invalid               (專案被封存或刪除)

終止狀態不能再轉換。accept 時把邀請上的角色原封不動複製到新的成員資料。
"""
from sqlalchemy.exc import IntegrityError
from models import db, Notification, ProjectInvitation, ProjectMember, InvitationStatus, Role
from errors import Conflict, Forbidden, InternalError, NotFound, ValidationFailed
from notifications import notify_project_members, record_notification
from side_effects import fire_and_forget
from realtime import get_router
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

RESPONSE_ACTIONS = {
    'accept': InvitationStatus.ACCEPTED,
    'decline': InvitationStatus.DECLINED,
}

# ============================================
# 序列化
# ============================================

def serialize_member(member):
    return {
        'id': member.id,
        'user': {
            'id': member.user.id,
            'username': member.user.username,
            'full_name': member.user.full_name,
            'email': member.user.email,
            'is_online': bool(member.user.is_online)
        } if member.user else {'id': member.user_id},
        'role': member.role.label,
        'joined_at': member.joined_at.isoformat() if member.joined_at else None
    }

def serialize_invitation(invitation):
    return {
        'id': invitation.id,
        'project_id': invitation.project_id,
        'user': {
            'id': invitation.user.id,
            'username': invitation.user.username,
            'full_name': invitation.user.full_name
        } if invitation.user else {'id': invitation.user_id},
        'invited_by': invitation.invited_by,
        'role': invitation.role.label,
        'status': invitation.status.value,
        'created_at': invitation.created_at.isoformat() if invitation.created_at else None,
        'responded_at': invitation.responded_at.isoformat() if invitation.responded_at else None
    }

# ============================================
# 輔助函數
# ============================================

def find_pending_invitation(project, user_id):
    return next(
        (i for i in project.invitations if i.user_id == user_id and i.is_pending),
        None
    )

def _update_invitation_notifications(user_id, project_id, invitation_id, changes, message=None):
    """更新受邀者收到的那則 project_invitation 通知"""
    try:
        notifications = Notification.query.filter_by(user_id=user_id, type='project_invitation').all()
        for notification in notifications:
            data = notification.data or {}
            if data.get('project_id') != project_id or data.get('invitation_id') != invitation_id:
                continue
            # JSON 欄位要整個重新指定才會被偵測到變更
            notification.data = {**data, **changes}
            if message:
                notification.message = message
                notification.is_read = True
                notification.read_at = datetime.utcnow()
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

def _commit(description):
    try:
        db.session.commit()
    except IntegrityError as e:
        db.session.rollback()
        logger.warning(f"{description} conflicted: {str(e)}")
        raise Conflict('The membership changed while processing this request') from e
    except Exception as e:
        db.session.rollback()
        logger.error(f"{description} failed: {str(e)}", exc_info=True)
        raise InternalError(f'{description} failed due to server error') from e

# ============================================
# 建立邀請
# ============================================

def create_invitation(project, inviter, invitee, role=Role.VIEWER):
    """
    邀請使用者加入專案

    Raises:
        Conflict: 已經是成員,或已經有一張 pending 的邀請
    """
    role = Role.parse(role)

    if project.find_member(invitee.id):
        raise Conflict('User is already a member of this project')

    # check-then-insert,沒有資料庫層的唯一性約束
    if find_pending_invitation(project, invitee.id):
        raise Conflict('Invitation already sent to this user')

    invitation = ProjectInvitation(user_id=invitee.id, invited_by=inviter.id, role=role)
    project.invitations.append(invitation)
    _commit('Invitation')

    record_notification(
        invitee.id,
        'project_invitation',
        'Project Invitation',
        f'You\'ve been invited to join the project "{project.name}" as {role.label}',
        {
            'project_id': project.id,
            'invitation_id': invitation.id,
            'invited_by': inviter.id,
            'role': role.label
        }
    )

    logger.info(f"User {invitee.username} invited to project {project.id} as {role.label} by {inviter.username}")
    return invitation

# ============================================
# 回應邀請
# ============================================

def respond_to_invitation(project, invitation_id, caller, action):
    """
    受邀者接受或拒絕邀請

    Returns:
        tuple: (invitation, member|None)
    """
    if action not in RESPONSE_ACTIONS:
        raise ValidationFailed([{'field': 'action', 'message': 'Action must be either accept or decline'}])

    invitation = project.find_invitation(invitation_id)
    if not invitation:
        raise NotFound('Invitation not found')

    if invitation.user_id != caller.id:
        raise Forbidden('Access denied. This invitation was sent to another user.')

    if invitation.status == InvitationStatus.INVALID:
        raise Conflict('This invitation is no longer valid. The project may have been archived or deleted.')

    if not invitation.is_pending:
        raise Conflict('Invitation already processed')

    member = None
    if action == 'accept' and project.find_member(caller.id):
        raise Conflict('User is already a member of this project')

    invitation.status = RESPONSE_ACTIONS[action]
    invitation.responded_at = datetime.utcnow()

    if action == 'accept':
        member = ProjectMember(user_id=caller.id, role=invitation.role, joined_at=datetime.utcnow())
        project.members.append(member)

    _commit('Invitation response')

    action_taken = invitation.status.value
    fire_and_forget(
        f'mark invitation {invitation.id} notification as {action_taken}',
        _update_invitation_notifications,
        caller.id, project.id, invitation.id,
        {'action_taken': action_taken},
        f'You {action_taken} the invitation to join "{project.name}"'
    )

    if member is not None:
        notify_project_members(
            project,
            'member_added',
            'New Team Member',
            f'{caller.full_name} joined the project "{project.name}"',
            {'project_id': project.id, 'user_id': caller.id},
            exclude_user_ids={caller.id}
        )
        if invitation.invited_by != caller.id:
            record_notification(
                invitation.invited_by,
                'invitation_accepted',
                'Invitation Accepted',
                f'{caller.full_name} accepted your invitation to join "{project.name}"',
                {'project_id': project.id, 'user_id': caller.id}
            )
        get_router().broadcast('member_added', project.id, {'member': serialize_member(member)}, actor=caller)

    logger.info(f"Invitation {invitation.id} for project {project.id} {action_taken} by {caller.username}")
    return invitation, member

# ============================================
# 專案封存/刪除時作廢邀請
# ============================================

def invalidate_pending_invitations(project):
    """
    把 pending 邀請標成 invalid (不 commit,由呼叫端一起 commit)

    Returns:
        list: 被作廢的邀請
    """
    invalidated = []
    for invitation in project.invitations:
        if invitation.is_pending:
            invitation.status = InvitationStatus.INVALID
            invitation.responded_at = datetime.utcnow()
            invalidated.append(invitation)
    return invalidated

def mark_invitation_notifications_invalid(project_id, invitations):
    """best-effort: 讓受邀者的通知顯示邀請已失效"""
    for invitation in invitations:
        fire_and_forget(
            f'invalidate invitation {invitation.id} notification',
            _update_invitation_notifications,
            invitation.user_id, project_id, invitation.id,
            {'is_invalid': True}
        )
