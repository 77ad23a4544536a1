"""
專案權限判斷

所有會改資料的操作都要先經過這裡。判斷本身不寫資料庫,
結果 (AccessGrant) 掛在 flask.g.access 上讓後面的 handler 直接用。
"""
from collections import namedtuple
from functools import wraps
from flask import g
from models import db, Project, Task, Note, Role
from errors import NotFound, Forbidden, NotMemberError, InsufficientRoleError, AdminOnlyError
from auth import require_current_user


AccessGrant = namedtuple('AccessGrant', ['project', 'role', 'is_creator', 'task', 'note'], defaults=(None, None))


def evaluate_membership(project, user_id, required_role):
    """
    對已載入的專案做角色判斷

    Raises:
        NotMemberError: 不是成員
        InsufficientRoleError: 角色等級不足
    """
    required_role = Role.parse(required_role)
    member = project.find_member(user_id)

    if not member:
        raise NotMemberError()

    if not member.role.satisfies(required_role):
        raise InsufficientRoleError(required_role, member.role)

    return member.role, project.creator_id == int(user_id)


def authorize_project(user_id, project_id, required_role=Role.VIEWER):
    """
    檢查使用者在專案中的角色是否 >= required_role

    Returns:
        AccessGrant: project / 實際角色 / 是否為建立者
    """
    project = db.session.get(Project, project_id)
    if not project:
        raise NotFound('Project not found')

    role, is_creator = evaluate_membership(project, user_id, required_role)
    return AccessGrant(project, role, is_creator)


def authorize_task(user_id, task_id, required_role=Role.VIEWER):
    """
    透過任務找到所屬專案再做同樣的判斷

    任務不存在一律先回 NotFound,跟成員資格無關
    """
    task = db.session.get(Task, task_id)
    if not task:
        raise NotFound('Task not found')

    project = db.session.get(Project, task.project_id)
    if not project:
        raise NotFound('Project not found')

    role, is_creator = evaluate_membership(project, user_id, required_role)
    return AccessGrant(project, role, is_creator, task=task)


def authorize_note(user_id, note_id, required_role=Role.VIEWER):
    note = db.session.get(Note, note_id)
    if not note:
        raise NotFound('Note not found')

    project = db.session.get(Project, note.project_id)
    if not project:
        raise NotFound('Project not found')

    role, is_creator = evaluate_membership(project, user_id, required_role)
    return AccessGrant(project, role, is_creator, note=note)


def require_admin_to_delete(grant):
    """
    刪除任務的第二道關卡

    能走到這裡代表至少是 editor;真正刪除還必須是 admin。
    editor 會在這裡拿到跟「不是成員」不同的錯誤訊息。
    """
    if grant.role != Role.ADMIN:
        raise AdminOnlyError(
            'Only project admins can delete tasks. Editors can archive tasks instead.',
            required_role=Role.ADMIN.label,
            actual_role=grant.role.label
        )
    return grant


def require_author_or_admin(grant, user_id):
    """
    刪除筆記: 作者本人或 admin 才可以
    """
    note = grant.note
    if grant.role == Role.ADMIN or note.created_by == user_id:
        return grant
    if grant.role == Role.EDITOR:
        message = 'Editors can only delete their own notes.'
    else:
        message = 'You do not have permission to delete this note. Only note authors and admins can delete notes.'
    raise Forbidden(message)

# ============================================
# Route decorators
# ============================================

def project_access(required_role=Role.VIEWER):
    """
    Route decorator: 依 URL 裡的 project_id 做權限檢查

    通過後 g.current_user / g.access 可直接使用
    """
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user = require_current_user()
            g.current_user = user
            g.access = authorize_project(user.id, kwargs['project_id'], required_role)
            return view(*args, **kwargs)
        return wrapper
    return decorator


def task_access(required_role=Role.VIEWER):
    """Route decorator: 依 URL 裡的 task_id 做權限檢查"""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user = require_current_user()
            g.current_user = user
            g.access = authorize_task(user.id, kwargs['task_id'], required_role)
            return view(*args, **kwargs)
        return wrapper
    return decorator


def note_access(required_role=Role.VIEWER):
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            user = require_current_user()
            g.current_user = user
            g.access = authorize_note(user.id, kwargs['note_id'], required_role)
            return view(*args, **kwargs)
        return wrapper
    return decorator
