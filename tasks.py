from flask import Blueprint, request, jsonify, g
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate, pre_load, EXCLUDE
from models import db, Task, TaskComment, User, Role, TASK_COLUMNS, TASK_PRIORITIES
from access import project_access, task_access, require_admin_to_delete
from errors import InternalError, LimitExceeded, ValidationFailed, validate_request_data
from notifications import notify_project_members, notify_users
from realtime import get_router
import logging

tasks_bp = Blueprint('tasks', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

def _strip_title(data):
    if isinstance(data, dict) and isinstance(data.get('title'), str):
        data = dict(data)
        data['title'] = data['title'].strip()
    return data

class CreateTaskSchema(Schema):
    """建立任務驗證"""
    class Meta:
        unknown = EXCLUDE

    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=200, error='Task title must be between 1 and 200 characters'),
        error_messages={'required': 'Task title is required'}
    )
    description = fields.Str(allow_none=True, validate=validate.Length(max=1000, error='Description cannot exceed 1000 characters'))
    column = fields.Str(
        load_default='todo',
        validate=validate.OneOf(TASK_COLUMNS, error='Column must be todo, doing, or done')
    )
    priority = fields.Str(
        load_default='medium',
        validate=validate.OneOf(TASK_PRIORITIES, error='Priority must be low, medium, high, or urgent')
    )
    assigned_to = fields.List(fields.Int(), load_default=list)
    due_date = fields.DateTime(allow_none=True)
    tags = fields.List(fields.Str(validate=validate.Length(max=50)), load_default=list)

    @pre_load
    def strip(self, data, **kwargs):
        return _strip_title(data)

class UpdateTaskSchema(Schema):
    """更新任務驗證 (包含換欄)"""
    class Meta:
        unknown = EXCLUDE

    title = fields.Str(validate=validate.Length(min=1, max=200, error='Task title must be between 1 and 200 characters'))
    description = fields.Str(allow_none=True, validate=validate.Length(max=1000, error='Description cannot exceed 1000 characters'))
    column = fields.Str(validate=validate.OneOf(TASK_COLUMNS, error='Column must be todo, doing, or done'))
    priority = fields.Str(validate=validate.OneOf(TASK_PRIORITIES, error='Priority must be low, medium, high, or urgent'))
    assigned_to = fields.List(fields.Int())
    due_date = fields.DateTime(allow_none=True)
    tags = fields.List(fields.Str(validate=validate.Length(max=50)))

    @pre_load
    def strip(self, data, **kwargs):
        return _strip_title(data)

class CommentSchema(Schema):
    class Meta:
        unknown = EXCLUDE

    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=500, error='Comment must be between 1 and 500 characters'),
        error_messages={'required': 'Comment content is required'}
    )

    @pre_load
    def strip(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('content'), str):
            data = dict(data)
            data['content'] = data['content'].strip()
        return data

# ============================================
# doing 欄位上限
# ============================================

def count_doing_tasks(project_id, exclude_task_id=None):
    query = Task.query.filter_by(project_id=project_id, column='doing', is_archived=False)
    if exclude_task_id is not None:
        query = query.filter(Task.id != exclude_task_id)
    return query.count()

def check_doing_column_limit(project, exclude_task_id=None):
    """
    建立或移入 doing 之前檢查上限

    檢查和之後的寫入不在同一個 transaction,
    兩個同時進來的請求可能都通過檢查,造成短暫超過上限。

    Raises:
        LimitExceeded: doing 欄位已滿
    """
    limit = project.doing_column_limit
    if count_doing_tasks(project.id, exclude_task_id) >= limit:
        raise LimitExceeded(limit)

# ============================================
# 輔助函數
# ============================================

def _user_brief(user):
    return {'id': user.id, 'username': user.username, 'full_name': user.full_name}

def serialize_comment(comment):
    return {
        'id': comment.id,
        'content': comment.content,
        'user': _user_brief(comment.user) if comment.user else None,
        'created_at': comment.created_at.isoformat() if comment.created_at else None
    }

def serialize_task(task, include_comments=False):
    data = {
        'id': task.id,
        'project_id': task.project_id,
        'title': task.title,
        'description': task.description,
        'column': task.column,
        'priority': task.priority,
        'tags': list(task.tags or []),
        'assigned_to': [_user_brief(u) for u in task.assignees],
        'created_by': _user_brief(task.creator) if task.creator else None,
        'due_date': task.due_date.isoformat() if task.due_date else None,
        'is_archived': task.is_archived,
        'comment_count': len(task.comments),
        'created_at': task.created_at.isoformat() if task.created_at else None,
        'updated_at': task.updated_at.isoformat() if task.updated_at else None
    }
    if include_comments:
        data['comments'] = [serialize_comment(c) for c in task.comments]
    return data

def resolve_assignees(project, user_ids):
    """被指派的人必須是專案成員"""
    member_ids = set(project.member_user_ids())
    unknown = [uid for uid in user_ids if uid not in member_ids]
    if unknown:
        raise ValidationFailed(
            [{'field': 'assigned_to', 'message': f'User {uid} is not a member of this project'} for uid in unknown],
            message='Assigned users must be project members'
        )
    if not user_ids:
        return []
    return User.query.filter(User.id.in_(set(user_ids))).all()

def _commit(description):
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"{description} error: {str(e)}", exc_info=True)
        raise InternalError(f'{description} failed due to server error') from e

# ============================================
# 1. 取得專案任務 (依欄位分組)
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['GET'])
@jwt_required()
@project_access(Role.VIEWER)
def get_project_tasks(project_id):
    tasks = Task.query.filter_by(project_id=project_id, is_archived=False)\
        .order_by(Task.created_at.desc(), Task.id.desc()).all()

    grouped = {column: [] for column in TASK_COLUMNS}
    for task in tasks:
        grouped.setdefault(task.column, []).append(serialize_task(task))

    return jsonify({
        'tasks': grouped,
        'doing_column_limit': g.access.project.doing_column_limit
    }), 200

# ============================================
# 2. 建立任務
# ============================================

@tasks_bp.route('/projects/<int:project_id>/tasks', methods=['POST'])
@jwt_required()
@project_access(Role.EDITOR)
def create_task(project_id):
    """
    建立任務

    放進 doing 時要先過欄位上限檢查
    """
    user = g.current_user
    project = g.access.project
    result = validate_request_data(CreateTaskSchema, request.get_json(silent=True))

    assignees = resolve_assignees(project, result['assigned_to'])

    if result['column'] == 'doing':
        check_doing_column_limit(project)

    task = Task(
        title=result['title'],
        description=result.get('description'),
        column=result['column'],
        priority=result['priority'],
        tags=result['tags'],
        due_date=result.get('due_date'),
        project_id=project.id,
        created_by=user.id
    )
    task.assignees = assignees

    try:
        db.session.add(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Create task error: {str(e)}", exc_info=True)
        raise InternalError('Task creation failed due to server error') from e

    # 以下都是 best-effort,失敗不影響回應
    notify_users(
        [u.id for u in assignees],
        'task_assigned',
        'Task Assigned',
        f'You have been assigned to task "{task.title}" in "{project.name}"',
        {'project_id': project.id, 'task_id': task.id},
        exclude_user_ids={user.id}
    )
    notify_project_members(
        project,
        'task_created',
        'New Task Created',
        f'A new task "{task.title}" has been created in "{project.name}"',
        {'project_id': project.id, 'task_id': task.id},
        exclude_user_ids={user.id}
    )

    data = serialize_task(task)
    get_router().broadcast('task_created', project.id, {'task': data}, actor=user)

    logger.info(f"Task created: {task.title} in project {project.id} by {user.username}")

    return jsonify({'message': 'Task created successfully', 'task': data}), 201

# ============================================
# 3. 取得 / 更新任務
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['GET'])
@jwt_required()
@task_access(Role.VIEWER)
def get_task(task_id):
    return jsonify({'task': serialize_task(g.access.task, include_comments=True)}), 200

@tasks_bp.route('/tasks/<int:task_id>', methods=['PUT', 'PATCH'])
@jwt_required()
@task_access(Role.EDITOR)
def update_task(task_id):
    """
    更新任務

    column 從非 doing 改成 doing 時檢查上限;已經在 doing 裡的任務更新其他欄位不檢查
    """
    user = g.current_user
    project = g.access.project
    task = g.access.task
    result = validate_request_data(UpdateTaskSchema, request.get_json(silent=True), partial=True)

    old_column = task.column
    new_column = result.get('column', old_column)
    moved = new_column != old_column

    if moved and new_column == 'doing':
        check_doing_column_limit(project, exclude_task_id=task.id)

    new_assignees = None
    if 'assigned_to' in result:
        new_assignees = resolve_assignees(project, result['assigned_to'])

    previous_assignee_ids = {u.id for u in task.assignees}

    for field in ['title', 'description', 'priority', 'due_date']:
        if field in result:
            setattr(task, field, result[field])
    if 'tags' in result:
        task.tags = list(result['tags'])
    if new_assignees is not None:
        task.assignees = new_assignees
    task.column = new_column

    _commit('Update task')

    if new_assignees is not None:
        added = [u.id for u in new_assignees if u.id not in previous_assignee_ids]
        notify_users(
            added,
            'task_assigned',
            'Task Assigned',
            f'You have been assigned to task "{task.title}" in "{project.name}"',
            {'project_id': project.id, 'task_id': task.id},
            exclude_user_ids={user.id}
        )

    data = serialize_task(task)
    if moved:
        notify_project_members(
            project,
            'task_moved',
            'Task Moved',
            f'Task "{task.title}" has been moved to {new_column} in "{project.name}"',
            {'project_id': project.id, 'task_id': task.id, 'from': old_column, 'to': new_column},
            exclude_user_ids={user.id}
        )
        get_router().broadcast('task_moved', project.id, {
            'task': data,
            'from_column': old_column,
            'to_column': new_column
        }, actor=user)
    else:
        get_router().broadcast('task_updated', project.id, {'task': data}, actor=user)

    return jsonify({'message': 'Task updated successfully', 'task': data}), 200

# ============================================
# 4. 留言
# ============================================

@tasks_bp.route('/tasks/<int:task_id>/comments', methods=['POST'])
@jwt_required()
@task_access(Role.EDITOR)
def create_task_comment(task_id):
    user = g.current_user
    task = g.access.task
    result = validate_request_data(CommentSchema, request.get_json(silent=True))

    comment = TaskComment(task_id=task.id, user_id=user.id, content=result['content'])

    try:
        db.session.add(comment)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Create comment error: {str(e)}", exc_info=True)
        raise InternalError('Comment creation failed due to server error') from e

    get_router().broadcast('task_updated', task.project_id, {
        'task': serialize_task(task),
        'comment': serialize_comment(comment)
    }, actor=user)

    return jsonify({
        'message': 'Comment added successfully',
        'comment': serialize_comment(comment)
    }), 201

# ============================================
# 5. 刪除 / 封存
# ============================================

@tasks_bp.route('/tasks/<int:task_id>', methods=['DELETE'])
@jwt_required()
@task_access(Role.EDITOR)
def delete_task(task_id):
    """
    刪除任務

    editor 才能走到這裡,真正刪除只有 admin 可以;editor 請用封存
    """
    grant = require_admin_to_delete(g.access)
    task = grant.task
    project_id = task.project_id
    title = task.title

    try:
        db.session.delete(task)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete task error: {str(e)}", exc_info=True)
        raise InternalError('Task deletion failed due to server error') from e

    get_router().broadcast('task_deleted', project_id, {'task_id': task_id}, actor=g.current_user)

    logger.info(f"Task deleted: {title} (id={task_id}) by {g.current_user.username}")
    return jsonify({'message': 'Task deleted successfully'}), 200

@tasks_bp.route('/tasks/<int:task_id>/archive', methods=['PUT'])
@jwt_required()
@task_access(Role.EDITOR)
def archive_task(task_id):
    task = g.access.task
    task.is_archived = True
    _commit('Archive task')

    # 前端把封存當成從看板上移除
    get_router().broadcast('task_deleted', task.project_id, {
        'task_id': task.id,
        'archived': True
    }, actor=g.current_user)

    return jsonify({'message': 'Task archived successfully', 'task': serialize_task(task)}), 200
