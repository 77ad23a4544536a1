from flask import Blueprint, request, jsonify, current_app, g
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate, pre_load, EXCLUDE
from models import db, Project, ProjectMember, ProjectInvitation, InvitationStatus, Task, Role
from auth import require_current_user, check_password, find_user_by_email_or_username
from access import project_access
from config import Config
from errors import (Conflict, Forbidden, InternalError, NotFound,
                    ValidationFailed, validate_request_data)
from invitations import (create_invitation, respond_to_invitation, invalidate_pending_invitations,
                         mark_invitation_notifications_invalid, serialize_member, serialize_invitation)
from notifications import notify_project_members, notify_users, record_notification
from realtime import get_router
from sqlalchemy import func
from datetime import datetime
import logging

projects_bp = Blueprint('projects', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

def _strip_strings(data, field_names):
    if not isinstance(data, dict):
        return data
    data = dict(data)
    for name in field_names:
        if isinstance(data.get(name), str):
            data[name] = data[name].strip()
    return data

class CreateProjectSchema(Schema):
    """建立專案驗證"""
    class Meta:
        unknown = EXCLUDE

    name = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=100, error='Project name must be between 1 and 100 characters'),
        error_messages={'required': 'Project name is required'}
    )
    description = fields.Str(
        allow_none=True,
        validate=validate.Length(max=500, error='Description cannot exceed 500 characters')
    )
    member_emails = fields.List(fields.Email(), load_default=list)

    @pre_load
    def strip(self, data, **kwargs):
        return _strip_strings(data, ['name', 'description'])

class ProjectSettingsSchema(Schema):
    """專案設定驗證 (admin)"""
    class Meta:
        unknown = EXCLUDE

    name = fields.Str(validate=validate.Length(min=1, max=100, error='Project name must be between 1 and 100 characters'))
    description = fields.Str(allow_none=True, validate=validate.Length(max=500, error='Description cannot exceed 500 characters'))
    doing_column_limit = fields.Int(validate=validate.Range(
        min=Config.DOING_COLUMN_LIMIT_MIN,
        max=Config.DOING_COLUMN_LIMIT_MAX,
        error=f'Doing column limit must be between {Config.DOING_COLUMN_LIMIT_MIN} and {Config.DOING_COLUMN_LIMIT_MAX}'
    ))
    notify_name_change = fields.Bool(load_default=False)

    @pre_load
    def strip(self, data, **kwargs):
        return _strip_strings(data, ['name', 'description'])

class MarkdownSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    content = fields.Str(load_default='')

class InviteSchema(Schema):
    """邀請成員: email 欄位也接受 username"""
    class Meta:
        unknown = EXCLUDE

    email = fields.Str(
        required=True,
        validate=validate.Length(min=1),
        error_messages={'required': 'Email or username is required'}
    )
    role = fields.Str(
        load_default=Role.VIEWER.label,
        validate=validate.OneOf(Role.labels(), error='Role must be viewer, editor, or admin')
    )

class RespondInvitationSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    action = fields.Str(
        required=True,
        validate=validate.OneOf(['accept', 'decline'], error='Action must be either accept or decline')
    )

class ChangeRoleSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    role = fields.Str(
        required=True,
        validate=validate.OneOf(Role.labels(), error='Role must be viewer, editor, or admin')
    )

class ArchiveSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    notify_members = fields.Bool(load_default=True)

class DeleteProjectSchema(Schema):
    """刪除專案需要再輸入一次專案名稱和密碼"""
    class Meta:
        unknown = EXCLUDE

    project_name = fields.Str(required=True, error_messages={'required': 'Project name is required for confirmation'})
    password = fields.Str(required=True, error_messages={'required': 'Password is required for confirmation'})
    notify_members = fields.Bool(load_default=True)

# ============================================
# 輔助函數
# ============================================

def _user_summary(user):
    if not user:
        return None
    return {
        'id': user.id,
        'username': user.username,
        'full_name': user.full_name,
        'email': user.email
    }

def serialize_project(project, user_id=None, include_details=False):
    """
    序列化專案

    include_details=True 時附上 markdown 內容與待回應的邀請
    """
    data = {
        'id': project.id,
        'name': project.name,
        'description': project.description,
        'creator': _user_summary(project.creator),
        'settings': {
            'doing_column_limit': project.doing_column_limit,
            'is_archived': project.is_archived,
            'archived_at': project.archived_at.isoformat() if project.archived_at else None,
            'archived_by': project.archived_by
        },
        'members': [serialize_member(m) for m in project.members],
        'created_at': project.created_at.isoformat() if project.created_at else None,
        'updated_at': project.updated_at.isoformat() if project.updated_at else None
    }

    if user_id is not None:
        member = project.find_member(user_id)
        data['my_role'] = member.role.label if member else None
        data['is_creator'] = project.creator_id == user_id

    if include_details:
        data['markdown_content'] = project.markdown_content or ''
        data['invitations'] = [serialize_invitation(i) for i in project.invitations if i.is_pending]

    return data

def _read_json():
    # DELETE/POST 沒帶 body 時當成空物件
    return request.get_json(silent=True) or {}

def _commit(description):
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"{description} error: {str(e)}", exc_info=True)
        raise InternalError(f'{description} failed due to server error') from e

def _projects_for(user, archived):
    query = Project.query.join(ProjectMember).filter(
        ProjectMember.user_id == user.id,
        Project.is_archived.is_(archived)
    )
    if archived:
        return query.order_by(Project.archived_at.desc()).all()
    return query.order_by(Project.updated_at.desc()).all()

# ============================================
# 1. 取得專案列表
# ============================================

@projects_bp.route('', methods=['GET'])
@jwt_required()
def get_my_projects():
    """取得自己參與的專案 (不含封存)"""
    user = require_current_user()
    projects = _projects_for(user, archived=False)

    # 一次查詢拿到每個專案的任務數,避免 N+1
    project_ids = [p.id for p in projects]
    task_counts = {}
    if project_ids:
        task_counts = dict(
            db.session.query(Task.project_id, func.count(Task.id))
            .filter(Task.project_id.in_(project_ids), Task.is_archived.is_(False))
            .group_by(Task.project_id)
            .all()
        )

    result = []
    for project in projects:
        data = serialize_project(project, user.id)
        data['task_count'] = task_counts.get(project.id, 0)
        result.append(data)

    return jsonify({'projects': result, 'total': len(result)}), 200

@projects_bp.route('/archived', methods=['GET'])
@jwt_required()
def get_archived_projects():
    user = require_current_user()
    projects = _projects_for(user, archived=True)
    return jsonify({'projects': [serialize_project(p, user.id) for p in projects]}), 200

@projects_bp.route('/invitations', methods=['GET'])
@jwt_required()
def get_my_invitations():
    """自己收到、還沒回應的邀請"""

    user = require_current_user()
    invitations = ProjectInvitation.query.filter_by(
        user_id=user.id, status=InvitationStatus.PENDING
    ).order_by(ProjectInvitation.created_at.desc()).all()

    result = []
    for invitation in invitations:
        data = serialize_invitation(invitation)
        data['project'] = {'id': invitation.project.id, 'name': invitation.project.name}
        data['inviter'] = _user_summary(invitation.inviter)
        result.append(data)

    return jsonify({'invitations': result}), 200

# ============================================
# 2. 取得單一專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['GET'])
@jwt_required()
@project_access(Role.VIEWER)
def get_project(project_id):
    project = g.access.project
    return jsonify({'project': serialize_project(project, g.current_user.id, include_details=True)}), 200

# ============================================
# 3. 建立專案
# ============================================

@projects_bp.route('', methods=['POST'])
@jwt_required()
def create_project():
    """
    建立專案

    建立者自動成為 admin;member_emails 裡的使用者會收到 viewer 邀請
    """
    user = require_current_user()
    result = validate_request_data(CreateProjectSchema, request.get_json(silent=True))

    project = Project.create_with_creator(
        user,
        name=result['name'],
        description=result.get('description'),
        doing_column_limit=current_app.config['DEFAULT_DOING_COLUMN_LIMIT']
    )

    try:
        db.session.add(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Create project error: {str(e)}", exc_info=True)
        raise InternalError('Project creation failed due to server error') from e

    for email in result['member_emails']:
        invitee = find_user_by_email_or_username(email)
        if not invitee or invitee.id == user.id:
            continue
        try:
            create_invitation(project, user, invitee, Role.VIEWER)
        except Conflict as e:
            logger.info(f"Skipped invitation for {email} on project {project.id}: {e.message}")

    logger.info(f"Project created: {project.name} by {user.username}")

    return jsonify({
        'message': 'Project created successfully',
        'project': serialize_project(project, user.id, include_details=True)
    }), 201

# ============================================
# 4. 專案設定 / markdown (admin)
# ============================================

@projects_bp.route('/<int:project_id>/settings', methods=['PUT'])
@jwt_required()
@project_access(Role.ADMIN)
def update_project_settings(project_id):
    user = g.current_user
    project = g.access.project
    result = validate_request_data(ProjectSettingsSchema, request.get_json(silent=True))

    old_name = project.name
    if result.get('name'):
        project.name = result['name']
    if 'description' in result:
        project.description = result['description']
    if 'doing_column_limit' in result:
        project.doing_column_limit = result['doing_column_limit']

    _commit('Update project settings')

    if result['notify_name_change'] and project.name != old_name:
        notify_project_members(
            project,
            'project_name_changed',
            'Project Name Updated',
            f'The project "{old_name}" has been renamed to "{project.name}" by {user.full_name}',
            {'project_id': project.id, 'old_name': old_name, 'new_name': project.name, 'changed_by': user.id},
            exclude_user_ids={user.id}
        )

    data = serialize_project(project, user.id)
    get_router().broadcast('project_updated', project.id, {'project': data}, actor=user)

    logger.info(f"Project {project.id} settings updated by {user.username}")
    return jsonify({'message': 'Project settings updated successfully', 'project': data}), 200

@projects_bp.route('/<int:project_id>/markdown', methods=['PUT'])
@jwt_required()
@project_access(Role.ADMIN)
def update_project_markdown(project_id):
    project = g.access.project
    result = validate_request_data(MarkdownSchema, _read_json())

    project.markdown_content = result['content']
    _commit('Update markdown')

    get_router().broadcast(
        'project_updated', project.id,
        {'project': {'id': project.id, 'markdown_content': project.markdown_content}},
        actor=g.current_user
    )

    return jsonify({
        'message': 'Markdown content updated successfully',
        'project': serialize_project(project, g.current_user.id, include_details=True)
    }), 200

# ============================================
# 5. 成員與邀請
# ============================================

@projects_bp.route('/<int:project_id>/members', methods=['GET'])
@jwt_required()
@project_access(Role.VIEWER)
def get_project_members(project_id):
    project = g.access.project
    return jsonify({
        'members': [serialize_member(m) for m in project.members],
        'total': len(project.members)
    }), 200

@projects_bp.route('/<int:project_id>/invite', methods=['POST'])
@jwt_required()
@project_access(Role.ADMIN)
def invite_member(project_id):
    """用 email 或 username 邀請使用者"""
    user = g.current_user
    project = g.access.project
    result = validate_request_data(InviteSchema, request.get_json(silent=True))

    invitee = find_user_by_email_or_username(result['email'].strip())
    if not invitee:
        raise NotFound('User not found')

    if invitee.id == user.id:
        raise ValidationFailed(
            [{'field': 'email', 'message': 'You cannot invite yourself to a project'}],
            message='You cannot invite yourself to a project'
        )

    invitation = create_invitation(project, user, invitee, result['role'])

    return jsonify({
        'message': 'Invitation sent successfully',
        'invitation': serialize_invitation(invitation)
    }), 201

@projects_bp.route('/<int:project_id>/invitations/<int:invitation_id>', methods=['PUT'])
@jwt_required()
def respond_invitation(project_id, invitation_id):
    """
    受邀者回應邀請

    還不是成員,所以不走 project_access,只要求是受邀者本人
    """
    user = require_current_user()
    result = validate_request_data(RespondInvitationSchema, request.get_json(silent=True))

    project = db.session.get(Project, project_id)
    if not project:
        raise NotFound('Project not found')

    invitation, member = respond_to_invitation(project, invitation_id, user, result['action'])

    response = {
        'message': f'Invitation {invitation.status.value} successfully',
        'invitation': serialize_invitation(invitation)
    }
    if member is not None:
        response['project'] = serialize_project(project, user.id)
    return jsonify(response), 200

@projects_bp.route('/<int:project_id>/members/<int:member_id>/role', methods=['PUT'])
@jwt_required()
@project_access(Role.ADMIN)
def change_member_role(project_id, member_id):
    user = g.current_user
    project = g.access.project
    result = validate_request_data(ChangeRoleSchema, request.get_json(silent=True))
    new_role = Role.parse(result['role'])

    member = next((m for m in project.members if m.id == member_id), None)
    if not member:
        raise NotFound('Member not found')

    if member.user_id == project.creator_id and new_role != Role.ADMIN:
        raise Conflict('Cannot change the role of the project creator')

    old_role = member.role
    member.role = new_role
    _commit('Update member role')

    if old_role != new_role:
        record_notification(
            member.user_id,
            'role_changed',
            'Role Updated',
            f'Your role in "{project.name}" has been changed from {old_role.label} to {new_role.label}',
            {'project_id': project.id, 'old_role': old_role.label, 'new_role': new_role.label}
        )
        get_router().broadcast('role_changed', project.id, {
            'member_id': member.id,
            'user_id': member.user_id,
            'old_role': old_role.label,
            'new_role': new_role.label
        }, actor=user)

    logger.info(f"Member {member.id} role in project {project.id}: {old_role.label} -> {new_role.label}")

    return jsonify({
        'message': 'Member role updated successfully',
        'member': serialize_member(member)
    }), 200

@projects_bp.route('/<int:project_id>/members/<int:member_id>', methods=['DELETE'])
@jwt_required()
@project_access(Role.VIEWER)
def remove_member(project_id, member_id):
    """
    移除成員

    任何成員都可以移除自己 (離開專案),移除別人需要 admin。
    建立者永遠不能被移除,不管呼叫者是什麼角色。
    """
    user = g.current_user
    project = g.access.project

    member = next((m for m in project.members if m.id == member_id), None)
    if not member:
        raise NotFound('Member not found')

    if member.user_id == project.creator_id:
        raise Conflict('Cannot remove project creator')

    is_self = member.user_id == user.id
    if not is_self and g.access.role != Role.ADMIN:
        raise Forbidden('You can only remove yourself from the project, or be an admin to remove others')

    removed_user = member.user
    removed_user_id = member.user_id

    project.members.remove(member)
    _commit('Remove member')

    if is_self:
        title = 'Left Project'
        personal_message = f'You have left the project "{project.name}"'
        team_message = f'{removed_user.full_name} has left the project "{project.name}"'
    else:
        title = 'Removed from Project'
        personal_message = f'You have been removed from the project "{project.name}" by {user.full_name}'
        team_message = f'{removed_user.full_name} has been removed from the project "{project.name}" by {user.full_name}'

    record_notification(removed_user_id, 'member_removed', title, personal_message, {'project_id': project.id})
    notify_project_members(
        project,
        'member_removed',
        'Team Member Update',
        team_message,
        {'project_id': project.id, 'user_id': removed_user_id, 'removed_by': user.id},
        exclude_user_ids={user.id}
    )

    payload = {'member_id': member_id, 'user_id': removed_user_id}
    get_router().broadcast('member_removed', project.id, payload, actor=user)
    # 被移除的人已經不在成員名單裡,另外送一份到對方的個人 room
    get_router().notify_user(removed_user_id, {**payload, 'project_id': project.id}, event='member_removed')

    message = f'You have successfully left the project "{project.name}"' if is_self else 'Member removed successfully'
    return jsonify({'message': message}), 200

# ============================================
# 6. 封存 / 解除封存
# ============================================

@projects_bp.route('/<int:project_id>/archive', methods=['POST'])
@jwt_required()
@project_access(Role.ADMIN)
def archive_project(project_id):
    user = g.current_user
    project = g.access.project
    result = validate_request_data(ArchiveSchema, _read_json())

    if project.is_archived:
        raise Conflict('Project is already archived')

    project.is_archived = True
    project.archived_at = datetime.utcnow()
    project.archived_by = user.id
    invalidated = invalidate_pending_invitations(project)
    _commit('Archive project')

    mark_invitation_notifications_invalid(project.id, invalidated)

    if result['notify_members']:
        notify_project_members(
            project,
            'project_archived',
            'Project Archived',
            f'The project "{project.name}" has been archived by {user.full_name}',
            {'project_id': project.id, 'archived_by': user.id, 'action': 'archived'},
            exclude_user_ids={user.id}
        )

    logger.info(f"Project {project.id} archived by {user.username}, {len(invalidated)} invitation(s) invalidated")

    return jsonify({
        'message': 'Project archived successfully',
        'project': serialize_project(project, user.id)
    }), 200

@projects_bp.route('/<int:project_id>/unarchive', methods=['POST'])
@jwt_required()
@project_access(Role.ADMIN)
def unarchive_project(project_id):
    user = g.current_user
    project = g.access.project
    result = validate_request_data(ArchiveSchema, _read_json())

    if not project.is_archived:
        raise Conflict('Project is not archived')

    project.is_archived = False
    project.archived_at = None
    project.archived_by = None
    _commit('Unarchive project')

    if result['notify_members']:
        notify_project_members(
            project,
            'project_unarchived',
            'Project Unarchived',
            f'The project "{project.name}" has been unarchived by {user.full_name}',
            {'project_id': project.id, 'unarchived_by': user.id, 'action': 'unarchived'},
            exclude_user_ids={user.id}
        )

    return jsonify({
        'message': 'Project unarchived successfully',
        'project': serialize_project(project, user.id)
    }), 200

# ============================================
# 7. 刪除專案
# ============================================

@projects_bp.route('/<int:project_id>', methods=['DELETE'])
@jwt_required()
@project_access(Role.ADMIN)
def delete_project(project_id):
    """
    刪除專案

    必須重新輸入專案名稱和自己的密碼。任務、筆記、成員、邀請一起刪除。
    """
    user = g.current_user
    project = g.access.project
    result = validate_request_data(DeleteProjectSchema, _read_json())

    if result['project_name'] != project.name:
        raise ValidationFailed(
            [{'field': 'project_name', 'message': 'Project name does not match'}],
            message='Project name does not match'
        )

    if not check_password(user, result['password']):
        raise ValidationFailed(
            [{'field': 'password', 'message': 'Incorrect password'}],
            message='Incorrect password'
        )

    project_name = project.name
    member_ids = project.member_user_ids()
    invalidated = invalidate_pending_invitations(project)

    # 先作廢邀請並 commit,讓受邀者的通知可以對得上
    _commit('Invalidate invitations')
    mark_invitation_notifications_invalid(project_id, invalidated)

    try:
        db.session.delete(project)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete project error: {str(e)}", exc_info=True)
        raise InternalError('Project deletion failed due to server error') from e

    if result['notify_members']:
        notify_users(
            member_ids,
            'project_deleted',
            'Project Deleted',
            f'The project "{project_name}" has been deleted by {user.full_name}',
            {'project_name': project_name, 'deleted_by': user.id, 'action': 'deleted'},
            exclude_user_ids={user.id}
        )

    logger.info(f"Project {project_id} ({project_name}) deleted by {user.username}, "
                f"{len(invalidated)} invitation(s) invalidated")

    return jsonify({'message': 'Project deleted successfully'}), 200
