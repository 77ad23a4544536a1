from flask import Blueprint, request, jsonify, g
from flask_jwt_extended import jwt_required
from marshmallow import Schema, fields, validate, pre_load, EXCLUDE
from models import db, Note, Task, User, Role, NOTE_TYPES
from access import project_access, note_access, require_author_or_admin
from errors import InternalError, ValidationFailed, validate_request_data
from notifications import notify_project_members, notify_users
from realtime import get_router
import logging

notes_bp = Blueprint('notes', __name__)
logger = logging.getLogger(__name__)

# ============================================
# Input Validation Schemas
# ============================================

class NoteSchema(Schema):
    """建立/更新筆記驗證 (更新時用 partial)"""
    class Meta:
        unknown = EXCLUDE

    title = fields.Str(
        required=True,
        validate=validate.Length(min=1, max=200, error='Note title must be between 1 and 200 characters'),
        error_messages={'required': 'Note title is required'}
    )
    content = fields.Str(
        required=True,
        validate=validate.Length(min=1, error='Note content is required'),
        error_messages={'required': 'Note content is required'}
    )
    type = fields.Str(
        required=True,
        validate=validate.OneOf(NOTE_TYPES, error='Note type must be notice, issue, reminder, important, or other')
    )
    tagged_users = fields.List(fields.Int())
    referenced_tasks = fields.List(fields.Int())

    @pre_load
    def strip(self, data, **kwargs):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for name in ('title', 'content'):
            if isinstance(data.get(name), str):
                data[name] = data[name].strip()
        return data

# ============================================
# 輔助函數
# ============================================

def serialize_note(note):
    return {
        'id': note.id,
        'project_id': note.project_id,
        'title': note.title,
        'content': note.content,
        'type': note.type,
        'is_pinned': note.is_pinned,
        'is_archived': note.is_archived,
        'created_by': {
            'id': note.author.id,
            'username': note.author.username,
            'full_name': note.author.full_name
        } if note.author else None,
        'tagged_users': [
            {'id': u.id, 'username': u.username, 'full_name': u.full_name}
            for u in note.tagged_users
        ],
        'referenced_tasks': [{'id': t.id, 'title': t.title} for t in note.referenced_tasks],
        'created_at': note.created_at.isoformat() if note.created_at else None,
        'updated_at': note.updated_at.isoformat() if note.updated_at else None
    }

def resolve_note_links(project, user_ids, task_ids):
    """
    標記的人必須是成員,引用的任務必須屬於同一個專案

    Returns:
        tuple: (users, tasks)
    """
    details = []
    member_ids = set(project.member_user_ids())
    for uid in user_ids or []:
        if uid not in member_ids:
            details.append({'field': 'tagged_users', 'message': f'User {uid} is not a member of this project'})

    tasks = []
    if task_ids:
        tasks = Task.query.filter(Task.id.in_(set(task_ids)), Task.project_id == project.id).all()
        found = {t.id for t in tasks}
        for tid in task_ids:
            if tid not in found:
                details.append({'field': 'referenced_tasks', 'message': f'Task {tid} does not belong to this project'})

    if details:
        raise ValidationFailed(details)

    users = User.query.filter(User.id.in_(set(user_ids))).all() if user_ids else []
    return users, tasks

def _commit(description):
    try:
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"{description} error: {str(e)}", exc_info=True)
        raise InternalError(f'{description} failed due to server error') from e

def _others(user_ids, actor):
    """不能標記自己"""
    if user_ids is None:
        return None
    return [uid for uid in user_ids if uid != actor.id]

def _notify_tagged(note, project, user_ids, actor):
    return notify_users(
        user_ids,
        'note_tagged',
        'Tagged in Note',
        f'You have been tagged in a note "{note.title}" in "{project.name}"',
        {'project_id': project.id, 'note_id': note.id},
        exclude_user_ids={actor.id}
    )

# ============================================
# 1. 取得專案筆記
# ============================================

@notes_bp.route('/projects/<int:project_id>/notes', methods=['GET'])
@jwt_required()
@project_access(Role.VIEWER)
def get_project_notes(project_id):
    """置頂的排前面,再依建立時間新到舊"""
    archived = request.args.get('archived', 'false').lower() == 'true'

    notes = Note.query.filter_by(project_id=project_id, is_archived=archived)\
        .order_by(Note.is_pinned.desc(), Note.created_at.desc(), Note.id.desc()).all()

    return jsonify({'notes': [serialize_note(n) for n in notes]}), 200

# ============================================
# 2. 建立筆記
# ============================================

@notes_bp.route('/projects/<int:project_id>/notes', methods=['POST'])
@jwt_required()
@project_access(Role.EDITOR)
def create_note(project_id):
    user = g.current_user
    project = g.access.project
    result = validate_request_data(NoteSchema, request.get_json(silent=True))

    tagged, referenced = resolve_note_links(
        project, _others(result.get('tagged_users', []), user), result.get('referenced_tasks', [])
    )

    note = Note(
        title=result['title'],
        content=result['content'],
        type=result['type'],
        project_id=project.id,
        created_by=user.id
    )
    note.tagged_users = tagged
    note.referenced_tasks = referenced

    try:
        db.session.add(note)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Create note error: {str(e)}", exc_info=True)
        raise InternalError('Note creation failed due to server error') from e

    _notify_tagged(note, project, [u.id for u in tagged], user)
    notify_project_members(
        project,
        'note_created',
        'New Note Created',
        f'A new note "{note.title}" has been created in "{project.name}"',
        {'project_id': project.id, 'note_id': note.id},
        exclude_user_ids={user.id}
    )

    data = serialize_note(note)
    get_router().broadcast('note_created', project.id, {'note': data}, actor=user)

    return jsonify({'message': 'Note created successfully', 'note': data}), 201

# ============================================
# 3. 更新筆記
# ============================================

@notes_bp.route('/notes/<int:note_id>', methods=['PUT'])
@jwt_required()
@note_access(Role.EDITOR)
def update_note(note_id):
    user = g.current_user
    project = g.access.project
    note = g.access.note
    result = validate_request_data(NoteSchema, request.get_json(silent=True), partial=True)

    tagged, referenced = resolve_note_links(
        project, _others(result.get('tagged_users'), user), result.get('referenced_tasks')
    )
    previous_tagged = {u.id for u in note.tagged_users}

    for field in ['title', 'content', 'type']:
        if field in result:
            setattr(note, field, result[field])
    if 'tagged_users' in result:
        note.tagged_users = tagged
    if 'referenced_tasks' in result:
        note.referenced_tasks = referenced

    _commit('Update note')

    if 'tagged_users' in result:
        _notify_tagged(note, project, [u.id for u in tagged if u.id not in previous_tagged], user)

    data = serialize_note(note)
    get_router().broadcast('note_updated', project.id, {'note': data}, actor=user)

    return jsonify({'message': 'Note updated successfully', 'note': data}), 200

# ============================================
# 4. 置頂 / 封存 / 還原
# ============================================

def _apply_and_broadcast(note, description):
    _commit(description)
    data = serialize_note(note)
    get_router().broadcast('note_updated', note.project_id, {'note': data}, actor=g.current_user)
    return data

@notes_bp.route('/notes/<int:note_id>/pin', methods=['PUT'])
@jwt_required()
@note_access(Role.EDITOR)
def toggle_note_pin(note_id):
    note = g.access.note
    note.is_pinned = not note.is_pinned
    data = _apply_and_broadcast(note, 'Toggle note pin')

    return jsonify({
        'message': f"Note {'pinned' if note.is_pinned else 'unpinned'} successfully",
        'note': data
    }), 200

@notes_bp.route('/notes/<int:note_id>/archive', methods=['PUT'])
@jwt_required()
@note_access(Role.EDITOR)
def archive_note(note_id):
    note = g.access.note
    note.is_archived = True
    # 封存時取消置頂
    note.is_pinned = False
    data = _apply_and_broadcast(note, 'Archive note')
    return jsonify({'message': 'Note archived successfully', 'note': data}), 200

@notes_bp.route('/notes/<int:note_id>/restore', methods=['PUT'])
@jwt_required()
@note_access(Role.EDITOR)
def restore_note(note_id):
    note = g.access.note
    note.is_archived = False
    data = _apply_and_broadcast(note, 'Restore note')
    return jsonify({'message': 'Note restored successfully', 'note': data}), 200

# ============================================
# 5. 刪除筆記
# ============================================

@notes_bp.route('/notes/<int:note_id>', methods=['DELETE'])
@jwt_required()
@note_access(Role.EDITOR)
def delete_note(note_id):
    """作者本人或 admin 才能刪除"""
    note = require_author_or_admin(g.access, g.current_user.id).note
    project_id = note.project_id

    try:
        db.session.delete(note)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.error(f"Delete note error: {str(e)}", exc_info=True)
        raise InternalError('Note deletion failed due to server error') from e

    # 沒有 note_deleted 事件,用 note_updated 帶 deleted 旗標
    get_router().broadcast('note_updated', project_id, {'note_id': note_id, 'deleted': True}, actor=g.current_user)

    return jsonify({'message': 'Note deleted successfully'}), 200
